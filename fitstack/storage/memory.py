from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from fitstack.logging import get_logger
from fitstack.storage.errors import ConstraintViolation
from fitstack.storage.models import (
    DOMAIN_TABLES,
    RefreshRotation,
    RefreshToken,
    User,
    utcnow,
)


class MemoryStore:
    """In-process user directory, refresh tokens and per-user domain rows."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.domain_rows: Dict[str, List[Dict[str, Any]]] = {
            table: [] for table in DOMAIN_TABLES
        }
        self._user_id_seq = itertools.count(1)
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()

    # Users -----------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        provider_subject_id: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if provider_subject_id and self._find_by_subject(provider_subject_id):
                raise ConstraintViolation(
                    "provider subject already linked", {"field": "provider_subject_id"}
                )
            user = User(
                id=next(self._user_id_seq),
                email=normalized,
                password_hash=password_hash,
                provider_subject_id=provider_subject_id,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def email_exists(self, email: str) -> bool:
        return self.get_user_by_email(email) is not None

    def _find_by_subject(self, subject_id: str) -> Optional[User]:
        return next(
            (u for u in self.users.values() if u.provider_subject_id == subject_id),
            None,
        )

    def get_user_by_provider_subject(self, subject_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_subject(subject_id)
            return replace(user) if user else None

    def link_provider_subject(
        self,
        user_id: int,
        subject_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            other = self._find_by_subject(subject_id)
            if other and other.id != user_id:
                raise ConstraintViolation(
                    "provider subject already linked", {"field": "provider_subject_id"}
                )
            user.provider_subject_id = subject_id
            if not user.first_name and first_name:
                user.first_name = first_name
            if not user.last_name and last_name:
                user.last_name = last_name
            return replace(user)

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if any(t.user_id == user_id for t in self.refresh_tokens.values()):
                raise ConstraintViolation(
                    "refresh tokens still reference user", {"user_id": user_id}
                )
            return self.users.pop(user_id, None) is not None

    @contextmanager
    def account_deletion(self, user_id: int) -> Iterator["MemoryStore"]:
        """Hold the data lock across a whole account deletion."""
        with self._data_lock:
            yield self

    # Refresh tokens ----------------------------------------------------------

    def _revoke_user_tokens(self, user_id: int) -> int:
        revoked = 0
        for token in self.refresh_tokens.values():
            if token.user_id == user_id and not token.revoked:
                token.revoked = True
                revoked += 1
        return revoked

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        """Revoke every live token of the user, then store ``token``."""
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            self._revoke_user_tokens(token.user_id)
            self.refresh_tokens[token.token] = replace(token)
            return token

    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_value)
            if token is None or token.revoked:
                return None
            return replace(token)

    def delete_refresh_token(self, token_value: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_value, None) is not None

    def rotate_refresh_token(
        self, token_value: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> RefreshRotation:
        current = now or utcnow()
        with self._data_lock:
            token = self.refresh_tokens.get(token_value)
            if token is None or token.revoked:
                return RefreshRotation("not_found")
            if token.is_expired(current):
                self.refresh_tokens.pop(token_value, None)
                return RefreshRotation("expired", previous=replace(token))
            self._revoke_user_tokens(token.user_id)
            issued = RefreshToken.new(token.user_id, ttl_minutes, now=current)
            self.refresh_tokens[issued.token] = replace(issued)
            return RefreshRotation("rotated", previous=replace(token), issued=issued)

    def revoke_refresh_tokens(self, user_id: int) -> int:
        with self._data_lock:
            return self._revoke_user_tokens(user_id)

    def delete_refresh_tokens(self, user_id: int) -> int:
        with self._data_lock:
            doomed = [k for k, t in self.refresh_tokens.items() if t.user_id == user_id]
            for key in doomed:
                self.refresh_tokens.pop(key, None)
            return len(doomed)

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [replace(t) for t in self.refresh_tokens.values() if t.user_id == user_id]
        return sorted(tokens, key=lambda t: t.created_at)

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            expired = [k for k, t in self.refresh_tokens.items() if t.is_expired(current)]
            for key in expired:
                self.refresh_tokens.pop(key, None)
        if expired:
            self.logger.info("refresh_tokens_purged", count=len(expired))
        return len(expired)

    # Domain data -------------------------------------------------------------

    def add_domain_row(self, table: str, user_id: int, **values: Any) -> Dict[str, Any]:
        if table not in self.domain_rows:
            raise ValueError(f"unknown domain table {table}")
        row = {"user_id": user_id, **values}
        with self._data_lock:
            self.domain_rows[table].append(row)
        return row

    def count_domain_rows(self, table: str, user_id: int) -> int:
        with self._data_lock:
            return sum(1 for row in self.domain_rows.get(table, []) if row["user_id"] == user_id)

    def delete_domain_rows(self, table: str, user_id: int) -> int:
        with self._data_lock:
            rows = self.domain_rows.get(table)
            if rows is None:
                return 0
            kept = [row for row in rows if row["user_id"] != user_id]
            self.domain_rows[table] = kept
            return len(rows) - len(kept)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
