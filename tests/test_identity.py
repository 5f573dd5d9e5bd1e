from __future__ import annotations

import json

import pytest

from clinic_chat import errors
from clinic_chat.errors import AuthError
from clinic_chat.identity import UserDirectory


@pytest.fixture
def users(tmp_data_dir) -> UserDirectory:
    return UserDirectory(str(tmp_data_dir))


def test_register_then_login(users: UserDirectory):
    created = users.register(" Alice@Example.com ", "s3cret", "Alice")
    assert created.email == "alice@example.com"
    assert users.current_user() == created

    users.logout()
    assert users.current_user() is None

    again = users.login("alice@example.com", "s3cret")
    assert again.id == created.id
    assert again.name == "Alice"
    assert users.current_user().id == created.id


def test_passwords_are_not_stored_in_clear(users: UserDirectory):
    users.register("bob@example.com", "hunter2", "Bob")
    raw = json.loads(users.path.read_text(encoding="utf-8"))
    (rec,) = raw.values()
    assert "hunter2" not in json.dumps(rec)
    assert rec["password_hash"] and rec["salt"]


@pytest.mark.parametrize(
    "email, password, code",
    [
        ("nobody@example.com", "x", errors.USER_NOT_FOUND),
        ("alice@example.com", "wrong", errors.WRONG_PASSWORD),
        ("not-an-email", "x", errors.INVALID_EMAIL),
    ],
)
def test_login_failures_have_codes(users: UserDirectory, email, password, code):
    users.register("alice@example.com", "s3cret", "Alice")
    users.logout()
    with pytest.raises(AuthError) as excinfo:
        users.login(email, password)
    assert excinfo.value.code == code
    assert users.current_user() is None


def test_register_rejects_duplicates_and_blanks(users: UserDirectory):
    users.register("alice@example.com", "s3cret", "Alice")
    with pytest.raises(AuthError) as excinfo:
        users.register("ALICE@example.com", "other", "Alice Two")
    assert excinfo.value.code == errors.EMAIL_IN_USE
    assert str(excinfo.value) == "Email already registered."

    with pytest.raises(AuthError) as excinfo:
        users.register("carol@example.com", "", "Carol")
    assert excinfo.value.code == errors.AUTH_FAILED
    assert str(excinfo.value) == "Please fill in all fields"


def test_update_profile(users: UserDirectory):
    alice = users.register("alice@example.com", "s3cret", "Alice")
    users.register("bob@example.com", "pw", "Bob")

    updated = users.update_profile(alice.id, name="Alice Smith", password="n3w")
    assert updated.name == "Alice Smith"
    assert users.get(alice.id).name == "Alice Smith"
    assert users.login("alice@example.com", "n3w").id == alice.id

    with pytest.raises(AuthError) as excinfo:
        users.update_profile(alice.id, email="bob@example.com")
    assert excinfo.value.code == errors.EMAIL_IN_USE

    with pytest.raises(AuthError) as excinfo:
        users.update_profile("missing", name="x")
    assert excinfo.value.code == errors.USER_NOT_FOUND


def test_unknown_codes_collapse_to_auth_failed():
    err = AuthError("quota-exceeded")
    assert err.code == errors.AUTH_FAILED
    assert str(err) == "Authentication failed."


def test_unreadable_directory_is_auth_failure(users: UserDirectory):
    users.path.write_text("not json", encoding="utf-8")
    with pytest.raises(AuthError) as excinfo:
        users.login("alice@example.com", "x")
    assert excinfo.value.code == errors.AUTH_FAILED


def test_list_users(users: UserDirectory):
    users.register("a@example.com", "pw", "A")
    users.register("b@example.com", "pw", "B")
    assert sorted(u.email for u in users.list_users()) == ["a@example.com", "b@example.com"]
