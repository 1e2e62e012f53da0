from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from legalhub.domain.kinds import IP_RULE_ALLOW, IP_RULE_BLOCK
from legalhub.domain.models import IpRule
from legalhub.services.auth.ip_rules import find_blocking_rule, ip_allowed_by_list, ip_matches, rule_is_live


_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _rule(pattern: str, rule_type: str = IP_RULE_BLOCK, **fields) -> IpRule:
    values = {"id": f"rule-{pattern}", "ip_pattern": pattern, "rule_type": rule_type, "is_active": True}
    values.update(fields)
    return IpRule(**values)


@pytest.mark.parametrize(
    ("pattern", "ip", "expected"),
    [
        ("198.51.100.0/24", "198.51.100.77", True),
        ("198.51.100.0/24", "198.51.101.1", False),
        ("10.1.*", "10.1.200.3", True),
        ("10.1.*", "10.10.0.1", False),
        ("10.1.2.", "10.1.2.9", True),
        ("203.0.113.5", "203.0.113.5", True),
        ("203.0.113.5", "203.0.113.50", False),
        ("not-a-cidr/99", "10.0.0.1", False),
        ("*", "10.0.0.1", False),
        ("10.0.0.1", None, False),
    ],
)
def test_ip_matches(pattern: str, ip: str | None, expected: bool) -> None:
    assert ip_matches(pattern, ip) is expected


def test_expired_and_inactive_rules_are_ignored() -> None:
    assert rule_is_live(_rule("10.0.0.1"), _NOW)
    assert not rule_is_live(_rule("10.0.0.1", is_active=False), _NOW)
    assert not rule_is_live(_rule("10.0.0.1", expires_at=_NOW - timedelta(seconds=1)), _NOW)
    # Naive timestamps read back from SQLite are treated as UTC.
    assert rule_is_live(_rule("10.0.0.1", expires_at=(_NOW + timedelta(hours=1)).replace(tzinfo=None)), _NOW)


def test_global_block_rule_applies_to_every_client() -> None:
    rules = [_rule("198.51.100.0/24")]
    assert find_blocking_rule(rules, ip="198.51.100.77", client_id="client-a", now=_NOW) is rules[0]
    assert find_blocking_rule(rules, ip="198.51.100.77", client_id=None, now=_NOW) is rules[0]
    assert find_blocking_rule(rules, ip="192.0.2.1", client_id="client-a", now=_NOW) is None


def test_client_scoped_rule_only_applies_to_its_client() -> None:
    rules = [_rule("192.0.2.0/24", client_id="client-a")]
    assert find_blocking_rule(rules, ip="192.0.2.10", client_id="client-a", now=_NOW) is not None
    assert find_blocking_rule(rules, ip="192.0.2.10", client_id="client-b", now=_NOW) is None


def test_matching_allow_rule_exempts_from_block() -> None:
    rules = [
        _rule("10.0.0.0/8"),
        _rule("10.9.9.9", IP_RULE_ALLOW, client_id="client-a"),
    ]
    assert find_blocking_rule(rules, ip="10.9.9.9", client_id="client-a", now=_NOW) is None
    assert find_blocking_rule(rules, ip="10.9.9.9", client_id="client-b", now=_NOW) is rules[0]


def test_token_allow_list() -> None:
    assert ip_allowed_by_list(None, "10.0.0.1")
    assert ip_allowed_by_list([], None)
    assert ip_allowed_by_list(["10.0.0.*", "192.0.2.7"], "192.0.2.7")
    assert not ip_allowed_by_list(["10.0.0.*"], "10.0.1.1")
    assert not ip_allowed_by_list(["10.0.0.*"], None)
