"""Disk-backed identity directory: registration, login and profile edits.

Stands in for the external identity provider. Every failure is reported as
an :class:`~clinic_chat.errors.AuthError` carrying one of a small fixed set
of codes, so callers never have to inspect provider-specific messages.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import errors
from .errors import AuthError
from .io import atomic_write_json, ensure_dir, read_json
from .models import utc_now

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PBKDF2_ROUNDS = 120_000


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _hash_password(password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), _PBKDF2_ROUNDS)
    return digest.hex()


@dataclass
class User:
    id: str
    email: str
    name: str
    created_at: str
    last_login: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "created_at": self.created_at,
            "last_login": self.last_login,
        }


class UserDirectory:
    """User records kept in a single JSON document.

    Layout:
        data_dir/users.json   # {"<user id>": {email, name, salt, password_hash, ...}}

    Also tracks the currently logged-in user of this process; it is not
    persisted and must be passed explicitly to whoever needs it.
    """

    def __init__(self, data_dir: str) -> None:
        self.path = ensure_dir(data_dir) / "users.json"
        self._lock = threading.RLock()
        self._current: Optional[User] = None

    # ---------- public API ----------

    def register(self, email: str, password: str, name: str) -> User:
        email = normalize_email(email)
        name = (name or "").strip()
        if not _EMAIL_RE.match(email):
            raise AuthError(errors.INVALID_EMAIL)
        if not password or not name:
            raise AuthError(errors.AUTH_FAILED, "Please fill in all fields")

        with self._lock:
            records = self._read()
            if self._find(records, email) is not None:
                raise AuthError(errors.EMAIL_IN_USE)
            now = utc_now().isoformat()
            salt = secrets.token_hex(16)
            user_id = uuid.uuid4().hex
            records[user_id] = {
                "email": email,
                "name": name,
                "salt": salt,
                "password_hash": _hash_password(password, salt),
                "created_at": now,
                "last_login": now,
            }
            self._write(records)
            user = self._to_user(user_id, records[user_id])

        logger.info("Registered user %s", user.id)
        self._current = user
        return user

    def login(self, email: str, password: str) -> User:
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise AuthError(errors.INVALID_EMAIL)

        with self._lock:
            records = self._read()
            user_id = self._find(records, email)
            if user_id is None:
                raise AuthError(errors.USER_NOT_FOUND)
            rec = records[user_id]
            expected = rec.get("password_hash", "")
            if not hmac.compare_digest(_hash_password(password or "", rec.get("salt", "")), expected):
                raise AuthError(errors.WRONG_PASSWORD)
            rec["last_login"] = utc_now().isoformat()
            self._write(records)
            user = self._to_user(user_id, rec)

        logger.info("User %s logged in", user.id)
        self._current = user
        return user

    def logout(self) -> None:
        if self._current is not None:
            logger.info("User %s logged out", self._current.id)
        self._current = None

    def current_user(self) -> Optional[User]:
        return self._current

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            rec = self._read().get(user_id)
        return self._to_user(user_id, rec) if rec else None

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        with self._lock:
            records = self._read()
            rec = records.get(user_id)
            if rec is None:
                raise AuthError(errors.USER_NOT_FOUND)

            if name is not None:
                if not name.strip():
                    raise AuthError(errors.AUTH_FAILED, "Name cannot be empty")
                rec["name"] = name.strip()
            if email is not None:
                email = normalize_email(email)
                if not _EMAIL_RE.match(email):
                    raise AuthError(errors.INVALID_EMAIL)
                other = self._find(records, email)
                if other is not None and other != user_id:
                    raise AuthError(errors.EMAIL_IN_USE)
                rec["email"] = email
            if password:
                rec["salt"] = secrets.token_hex(16)
                rec["password_hash"] = _hash_password(password, rec["salt"])

            self._write(records)
            user = self._to_user(user_id, rec)

        if self._current is not None and self._current.id == user_id:
            self._current = user
        return user

    def list_users(self) -> List[User]:
        with self._lock:
            records = self._read()
        return [self._to_user(uid, rec) for uid, rec in records.items()]

    # ---------- internals ----------

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as e:
            logger.exception("Failed to read user directory %s: %s", self.path, e)
            raise AuthError(errors.AUTH_FAILED) from e
        return data if isinstance(data, dict) else {}

    def _write(self, records: Dict[str, Dict[str, Any]]) -> None:
        try:
            atomic_write_json(self.path, records)
        except OSError as e:
            logger.exception("Failed to write user directory %s: %s", self.path, e)
            raise AuthError(errors.AUTH_FAILED) from e

    @staticmethod
    def _find(records: Dict[str, Dict[str, Any]], email: str) -> Optional[str]:
        for user_id, rec in records.items():
            if rec.get("email") == email:
                return user_id
        return None

    @staticmethod
    def _to_user(user_id: str, rec: Dict[str, Any]) -> User:
        return User(
            id=user_id,
            email=str(rec.get("email", "")),
            name=str(rec.get("name", "")),
            created_at=str(rec.get("created_at", "")),
            last_login=str(rec.get("last_login", "")),
        )
