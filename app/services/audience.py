"""
Audience Resolver — turns a targeting rule into concrete delivery targets.

Resolution happens in two steps: the recipient directory narrows the
rule down to eligible recipient ids, then the token registry expands
those ids into their active tokens. The result is a set keyed by
token, so a recipient reached through overlapping filters cannot cause
duplicate deliveries. An empty audience is a valid result.
"""

import logging
from typing import NamedTuple

from app.db.recipient_directory import RecipientDirectory
from app.models.notifications import (
    AllRecipients,
    ByAttribute,
    ExplicitRecipients,
)
from app.services.token_registry import TokenRegistry

logger = logging.getLogger(__name__)


class AudienceMember(NamedTuple):
    recipient_id: str
    token: str


class AudienceResolver:
    def __init__(self, directory: RecipientDirectory, registry: TokenRegistry):
        self.directory = directory
        self.registry = registry

    def recipients_for(self, rule) -> list[str]:
        """Eligible recipient ids for a rule, deduplicated, order kept."""
        if isinstance(rule, ExplicitRecipients):
            wanted = list(dict.fromkeys(r for r in rule.recipient_ids if r))
            if not wanted:
                return []
            ids = self.directory.find_active_recipients(recipient_ids=wanted)
        elif isinstance(rule, ByAttribute):
            values = list(dict.fromkeys(rule.values))
            if not values:
                return []
            ids = self.directory.find_active_recipients(
                attribute=rule.attribute, values=values,
            )
        elif isinstance(rule, AllRecipients):
            ids = self.directory.find_active_recipients()
        else:
            raise TypeError(f"Unsupported targeting rule: {rule!r}")
        return list(dict.fromkeys(ids))

    def resolve(self, rule) -> set[AudienceMember]:
        """
        Resolve a targeting rule into (recipient_id, token) pairs.

        Only active tokens of eligible recipients are returned. A token
        appears at most once.
        """
        recipient_ids = self.recipients_for(rule)
        if not recipient_ids:
            logger.info("Targeting rule %s matched no eligible recipients", rule.kind)
            return set()

        eligible = set(recipient_ids)
        members: dict[str, AudienceMember] = {}
        for push_token in self.registry.list_active_for(recipient_ids):
            if not push_token.is_active or push_token.recipient_id not in eligible:
                continue
            members.setdefault(
                push_token.token,
                AudienceMember(push_token.recipient_id, push_token.token),
            )

        logger.info(
            "Resolved %s rule to %d recipient(s) and %d token(s)",
            rule.kind, len(recipient_ids), len(members),
        )
        return set(members.values())
