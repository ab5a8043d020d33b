"""Password hashing tests."""

import hashlib

import pytest

from app.passwords import hash_password, verify_password


def test_hash_is_salted_bcrypt() -> None:
    first = hash_password("hunter2")
    second = hash_password("hunter2")

    assert first.startswith("$2b$")
    assert len(first) == 60
    assert first != second
    assert verify_password("hunter2", first)
    assert verify_password("hunter2", second)


def test_wrong_password_does_not_match() -> None:
    assert not verify_password("hunter3", hash_password("hunter2"))


@pytest.mark.parametrize(("password", "stored"), [("", "$2b$12$abc"), ("pw", None), ("pw", "")])
def test_empty_inputs_never_match(password: str, stored: str | None) -> None:
    assert not verify_password(password, stored)


def test_unrecognised_hash_never_matches() -> None:
    assert not verify_password("pw", hashlib.sha256(b"pw").hexdigest())


def test_long_passwords_hash_and_verify() -> None:
    password = "é" * 100
    stored = hash_password(password)
    assert verify_password(password, stored)
