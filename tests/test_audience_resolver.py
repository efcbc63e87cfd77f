"""
Audience Resolver Verification

Tests that:
1. All / by-attribute / explicit rules select the right recipients
2. Ineligible recipients (not approved, push disabled) are excluded
3. Only active tokens are returned, each token at most once
4. Empty rules and empty audiences resolve to an empty set

Run with: pytest tests/test_audience_resolver.py -v
"""

from app.models.notifications import AllRecipients, ByAttribute, ExplicitRecipients
from app.services.audience import AudienceMember


def _tokens(members) -> set[str]:
    return {m.token for m in members}


def _register_everyone(registry):
    registry.register("r1", "tok-1", "android")
    registry.register("r2", "tok-2", "ios")
    registry.register("r3", "tok-3", "android")
    registry.register("r4", "tok-4", "android")


class TestRecipients:

    def test_all_excludes_ineligible(self, resolver):
        assert resolver.recipients_for(AllRecipients()) == ["r1", "r2", "r3"]

    def test_push_disabled_is_excluded(self, resolver, directory):
        directory.recipients["r2"]["push_enabled"] = False
        assert resolver.recipients_for(AllRecipients()) == ["r1", "r3"]

    def test_by_attribute_membership(self, resolver):
        rule = ByAttribute(attribute="city", values=["Lagos"])
        assert resolver.recipients_for(rule) == ["r1", "r2"]

    def test_explicit_list_is_deduplicated(self, resolver):
        rule = ExplicitRecipients(recipient_ids=["r3", "r1", "r3", "ghost"])
        assert resolver.recipients_for(rule) == ["r3", "r1"]

    def test_empty_rules_select_nobody(self, resolver):
        assert resolver.recipients_for(ExplicitRecipients(recipient_ids=[])) == []
        assert resolver.recipients_for(ByAttribute(attribute="category", values=[])) == []


class TestResolve:

    def test_resolves_active_tokens_of_eligible_recipients(self, registry, resolver):
        _register_everyone(registry)
        members = resolver.resolve(AllRecipients())
        assert members == {
            AudienceMember("r1", "tok-1"),
            AudienceMember("r2", "tok-2"),
            AudienceMember("r3", "tok-3"),
        }

    def test_inactive_tokens_are_skipped(self, registry, resolver):
        _register_everyone(registry)
        registry.deactivate("r1", "tok-1")

        assert _tokens(resolver.resolve(AllRecipients())) == {"tok-2", "tok-3"}

    def test_multi_device_recipient_gets_every_active_token(self, registry, resolver):
        registry.register("r1", "tok-phone", "android")
        registry.register("r1", "tok-tablet", "ios")

        members = resolver.resolve(ExplicitRecipients(recipient_ids=["r1"]))
        assert _tokens(members) == {"tok-phone", "tok-tablet"}

    def test_by_attribute_resolves_category(self, registry, resolver):
        _register_everyone(registry)
        rule = ByAttribute(attribute="category", values=["plumbing"])
        assert _tokens(resolver.resolve(rule)) == {"tok-1", "tok-3"}

    def test_no_tokens_is_an_empty_audience(self, resolver):
        assert resolver.resolve(AllRecipients()) == set()
