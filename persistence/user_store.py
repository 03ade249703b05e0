"""
Warden User Store

Read / merge-write access to the sparse security subset of the external
user record: the fields this engine is allowed to change. Writes are
partial (upsert of the named columns only) and never clobber unrelated
fields of the record.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from supabase import Client


logger = logging.getLogger(__name__)


class UserStoreError(Exception):
    """Raised when the user record cannot be read or written."""
    pass


@dataclass
class UserSecurityState:
    """Security fields of a user record. Missing records read as defaults."""
    user_id: str
    email: Optional[str] = None
    disabled: bool = False
    disabled_reason: Optional[str] = None
    disabled_at: Optional[str] = None
    last_warn_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, user_id: str, row: Dict[str, Any]) -> UserSecurityState:
        return cls(
            user_id=user_id,
            email=row.get("email"),
            disabled=bool(row.get("disabled") or False),
            disabled_reason=row.get("disabled_reason"),
            disabled_at=row.get("disabled_at"),
            last_warn_count=int(row.get("last_screenshot_warn_count") or 0),
        )


# Attribute name -> column name on the users table
_COLUMNS = {
    "disabled": "disabled",
    "disabled_reason": "disabled_reason",
    "disabled_at": "disabled_at",
    "last_warn_count": "last_screenshot_warn_count",
}


class UserStore(ABC):

    @abstractmethod
    def get_security_state(self, user_id: str) -> UserSecurityState:
        ...

    @abstractmethod
    def merge(self, user_id: str, **fields: Any) -> None:
        """Set the given UserSecurityState fields, leaving all others untouched."""

    @staticmethod
    def _columns(fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"Fields not writable by this engine: {sorted(unknown)}")
        return {_COLUMNS[name]: value for name, value in fields.items()}


class SupabaseUserStore(UserStore):
    """User records in the Supabase `users` table, keyed by `id`."""

    TABLE_NAME = "users"

    def __init__(self, client: Client) -> None:
        self.client = client

    def get_security_state(self, user_id: str) -> UserSecurityState:
        try:
            response = self.client.table(self.TABLE_NAME).select(
                "email, disabled, disabled_reason, disabled_at, last_screenshot_warn_count"
            ).eq("id", user_id).execute()
        except Exception as e:
            raise UserStoreError(f"read of user {user_id} failed: {e}") from e
        if not response.data:
            return UserSecurityState(user_id=user_id)
        return UserSecurityState.from_row(user_id, response.data[0])

    def merge(self, user_id: str, **fields: Any) -> None:
        row = {"id": user_id, **self._columns(fields)}
        try:
            self.client.table(self.TABLE_NAME).upsert(row, on_conflict="id").execute()
        except Exception as e:
            raise UserStoreError(f"merge-write of user {user_id} failed: {e}") from e


class InMemoryUserStore(UserStore):
    """Process-local user records for development and tests."""

    def __init__(self) -> None:
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def seed(self, user_id: str, **row: Any) -> None:
        """Insert or extend a raw row (e.g. an email) outside the security subset."""
        with self._lock:
            self._rows.setdefault(user_id, {}).update(row)

    def get_security_state(self, user_id: str) -> UserSecurityState:
        with self._lock:
            row = dict(self._rows.get(user_id, {}))
        return UserSecurityState.from_row(user_id, row)

    def merge(self, user_id: str, **fields: Any) -> None:
        columns = self._columns(fields)
        with self._lock:
            self._rows.setdefault(user_id, {}).update(columns)
