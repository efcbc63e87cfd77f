"""
Push Token Store — persistence for the push_tokens table.

The token registry owns all writes through this interface. Rows are
flat dicts keyed by the token string (unique). Every mutation touches
a single row, so atomicity is per token:

- `compare_and_update` is a conditional UPDATE guarded by the current
  failure_count, which lets the registry do increment-and-compare
  without losing concurrent failure reports.
- Success resets are unconditional writes and commute with each other.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any

from supabase import Client

from app.db.supabase_client import execute

logger = logging.getLogger(__name__)

TABLE = "push_tokens"
IN_FILTER_CHUNK = 200


class PushTokenStore(ABC):
    """Abstract push_tokens storage."""

    @abstractmethod
    def get(self, token: str) -> dict | None:
        """Return the row for `token`, or None."""

    @abstractmethod
    def insert(self, row: dict[str, Any]) -> dict:
        """Insert a new row and return it."""

    @abstractmethod
    def update(self, token: str, changes: dict[str, Any]) -> dict | None:
        """Unconditionally update one row. None if the token does not exist."""

    @abstractmethod
    def compare_and_update(
        self, token: str, expected_failure_count: int, changes: dict[str, Any],
    ) -> dict | None:
        """
        Update one row only if its failure_count still equals
        `expected_failure_count`. None when the guard did not match.
        """

    @abstractmethod
    def list_for_recipients(
        self, recipient_ids: list[str], *, active_only: bool = True,
    ) -> list[dict]:
        """Rows owned by any of `recipient_ids`, newest last_used first."""

    @abstractmethod
    def deactivate_others(self, recipient_id: str, keep_token: str) -> int:
        """Deactivate every active token of `recipient_id` except `keep_token`."""

    @abstractmethod
    def deactivate_over_threshold(self, threshold: int) -> int:
        """Deactivate active rows with failure_count >= threshold. Returns count."""

    @abstractmethod
    def stats(self) -> dict[str, Any]:
        """Return total/active/inactive counts and active counts per platform."""


class SupabasePushTokenStore(PushTokenStore):
    """push_tokens backed by Supabase PostgREST."""

    def __init__(self, client: Client):
        self._client = client

    def _table(self):
        return self._client.table(TABLE)

    def get(self, token: str) -> dict | None:
        result = execute(
            self._table().select("*").eq("token", token).limit(1),
            "look up push token",
        )
        return result.data[0] if result.data else None

    def insert(self, row: dict[str, Any]) -> dict:
        result = execute(self._table().insert(row), "insert push token")
        return result.data[0] if result.data else row

    def update(self, token: str, changes: dict[str, Any]) -> dict | None:
        result = execute(
            self._table().update(changes).eq("token", token),
            "update push token",
        )
        return result.data[0] if result.data else None

    def compare_and_update(
        self, token: str, expected_failure_count: int, changes: dict[str, Any],
    ) -> dict | None:
        result = execute(
            self._table()
            .update(changes)
            .eq("token", token)
            .eq("failure_count", expected_failure_count),
            "update push token health",
        )
        return result.data[0] if result.data else None

    def list_for_recipients(
        self, recipient_ids: list[str], *, active_only: bool = True,
    ) -> list[dict]:
        rows: list[dict] = []
        # Keep the in.() filter inside PostgREST's URL length limit
        for start in range(0, len(recipient_ids), IN_FILTER_CHUNK):
            chunk = recipient_ids[start:start + IN_FILTER_CHUNK]
            query = self._table().select("*").in_("recipient_id", chunk)
            if active_only:
                query = query.eq("is_active", True)
            result = execute(query, "list push tokens")
            rows.extend(result.data or [])
        rows.sort(key=lambda row: row.get("last_used") or "", reverse=True)
        return rows

    def deactivate_others(self, recipient_id: str, keep_token: str) -> int:
        result = execute(
            self._table()
            .update({"is_active": False})
            .eq("recipient_id", recipient_id)
            .eq("is_active", True)
            .neq("token", keep_token),
            "deactivate sibling push tokens",
        )
        return len(result.data or [])

    def deactivate_over_threshold(self, threshold: int) -> int:
        result = execute(
            self._table()
            .update({"is_active": False})
            .eq("is_active", True)
            .gte("failure_count", threshold),
            "sweep failing push tokens",
        )
        return len(result.data or [])

    def stats(self) -> dict[str, Any]:
        total = execute(
            self._table().select("token", count="exact").limit(1),
            "count push tokens",
        ).count or 0
        active_rows = execute(
            self._table().select("platform").eq("is_active", True),
            "count active push tokens",
        ).data or []
        platforms = Counter(row.get("platform") or "unknown" for row in active_rows)
        return {
            "total_tokens": total,
            "active_tokens": len(active_rows),
            "inactive_tokens": max(total - len(active_rows), 0),
            "platform_stats": dict(platforms),
        }
