"""
Notification Record Store — persistence for the notifications table.

A record is created when a job is submitted and written once more when
its dispatch completes. `finalize` only touches records that are still
Draft or Scheduled, so Sent and Failed stay terminal even if two
deliveries of the same scheduled job race.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from supabase import Client

from app.db.supabase_client import execute

logger = logging.getLogger(__name__)

TABLE = "notifications"

OPEN_STATUSES = ["Draft", "Scheduled"]


class NotificationRecordStore(ABC):
    """Abstract notifications storage."""

    @abstractmethod
    def create(self, row: dict[str, Any]) -> dict:
        """Insert a new record and return it with its generated id."""

    @abstractmethod
    def finalize(self, notification_id: str, changes: dict[str, Any]) -> dict | None:
        """
        Apply final counts/status to a Draft or Scheduled record.

        Returns the updated row, or None if the record is missing or
        already terminal.
        """

    @abstractmethod
    def get(self, notification_id: str) -> dict | None:
        """Return one record, or None."""

    @abstractmethod
    def list_recent(self, limit: int = 100) -> list[dict]:
        """Newest records first."""

    @abstractmethod
    def delete(self, notification_id: str) -> bool:
        """Delete one record. False if it did not exist."""


class SupabaseNotificationRecordStore(NotificationRecordStore):
    """notifications backed by Supabase PostgREST."""

    def __init__(self, client: Client):
        self._client = client

    def _table(self):
        return self._client.table(TABLE)

    def create(self, row: dict[str, Any]) -> dict:
        result = execute(self._table().insert(row), "create notification record")
        return result.data[0]

    def finalize(self, notification_id: str, changes: dict[str, Any]) -> dict | None:
        result = execute(
            self._table()
            .update(changes)
            .eq("id", notification_id)
            .in_("status", OPEN_STATUSES),
            "finalize notification record",
        )
        return result.data[0] if result.data else None

    def get(self, notification_id: str) -> dict | None:
        result = execute(
            self._table().select("*").eq("id", notification_id).limit(1),
            "look up notification record",
        )
        return result.data[0] if result.data else None

    def list_recent(self, limit: int = 100) -> list[dict]:
        result = execute(
            self._table().select("*").order("created_at", desc=True).limit(limit),
            "list notification records",
        )
        return result.data or []

    def delete(self, notification_id: str) -> bool:
        result = execute(
            self._table().delete().eq("id", notification_id),
            "delete notification record",
        )
        return bool(result.data)
