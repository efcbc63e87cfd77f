"""
Recipient Directory — read access to the workers table.

Workers are owned by the marketplace domain; the push core only asks
which of them exist and which are eligible to be notified (approved and
with push enabled). The one write is the denormalized `has_push_token`
flag, a convenience for admin screens that is eventually consistent
and never consulted when resolving an audience.
"""

import logging
from abc import ABC, abstractmethod

from supabase import Client

from app.db.supabase_client import execute

logger = logging.getLogger(__name__)

TABLE = "workers"
ELIGIBLE_STATUS = "Approved"
IN_FILTER_CHUNK = 200
# PostgREST caps responses at 1000 rows by default
PAGE_SIZE = 1000


class RecipientDirectory(ABC):
    """Abstract view of the recipients the push core can address."""

    @abstractmethod
    def recipient_exists(self, recipient_id: str) -> bool:
        """True if a recipient with this id exists (eligible or not)."""

    @abstractmethod
    def find_active_recipients(
        self,
        *,
        attribute: str | None = None,
        values: list[str] | None = None,
        recipient_ids: list[str] | None = None,
    ) -> list[str]:
        """
        IDs of eligible recipients, optionally narrowed by an attribute
        membership filter or an explicit id list.
        """

    @abstractmethod
    def set_push_flag(self, recipient_id: str, has_active_token: bool) -> None:
        """Write the denormalized has_push_token flag."""


class SupabaseRecipientDirectory(RecipientDirectory):
    """workers backed by Supabase PostgREST."""

    def __init__(self, client: Client):
        self._client = client

    def _table(self):
        return self._client.table(TABLE)

    def recipient_exists(self, recipient_id: str) -> bool:
        result = execute(
            self._table().select("id").eq("id", recipient_id).limit(1),
            "look up recipient",
        )
        return bool(result.data)

    def _eligible(self):
        return (
            self._table()
            .select("id")
            .eq("status", ELIGIBLE_STATUS)
            .eq("push_enabled", True)
        )

    def find_active_recipients(
        self,
        *,
        attribute: str | None = None,
        values: list[str] | None = None,
        recipient_ids: list[str] | None = None,
    ) -> list[str]:
        if recipient_ids is not None:
            found: list[str] = []
            for start in range(0, len(recipient_ids), IN_FILTER_CHUNK):
                chunk = recipient_ids[start:start + IN_FILTER_CHUNK]
                result = execute(
                    self._eligible().in_("id", chunk),
                    "find recipients by id",
                )
                found.extend(row["id"] for row in result.data or [])
            return found

        ids: list[str] = []
        start = 0
        while True:
            query = self._eligible()
            if attribute is not None:
                query = query.in_(attribute, values or [])
            result = execute(
                query.order("id").range(start, start + PAGE_SIZE - 1),
                "find eligible recipients",
            )
            page = result.data or []
            ids.extend(row["id"] for row in page)
            if len(page) < PAGE_SIZE:
                return ids
            start += PAGE_SIZE

    def set_push_flag(self, recipient_id: str, has_active_token: bool) -> None:
        execute(
            self._table()
            .update({"has_push_token": has_active_token})
            .eq("id", recipient_id),
            "update recipient push flag",
        )
