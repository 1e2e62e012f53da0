from __future__ import annotations

from datetime import datetime
import ipaddress
from typing import Iterable

from legalhub.domain.kinds import IP_RULE_ALLOW, IP_RULE_BLOCK
from legalhub.domain.models import IpRule, as_utc


def ip_matches(pattern: str, ip: str | None) -> bool:
    """Match an address against an exact IP, a CIDR block, or a dotted prefix.

    Prefix patterns cover class-style ranges: ``"10.*"``, ``"10.1.*"``,
    ``"10.1.2.*"``, or a trailing-dot prefix such as ``"10.1."``.
    """
    if not ip or not pattern:
        return False
    pattern = pattern.strip()
    ip = ip.strip()
    if "/" in pattern:
        try:
            network = ipaddress.ip_network(pattern, strict=False)
            return ipaddress.ip_address(ip) in network
        except ValueError:
            return False
    if pattern.endswith("*"):
        prefix = pattern[:-1]
        return bool(prefix) and ip.startswith(prefix)
    if pattern.endswith("."):
        return ip.startswith(pattern)
    return pattern == ip


def rule_is_live(rule: IpRule, now: datetime) -> bool:
    # Inactive and expired rules are ignored.
    if not rule.is_active:
        return False
    expires_at = as_utc(rule.expires_at)
    return expires_at is None or expires_at > now


def _applies_to(rule: IpRule, client_id: str | None) -> bool:
    # Global rules apply to every caller; scoped rules only to their client.
    return rule.client_id is None or rule.client_id == client_id


def find_blocking_rule(
    rules: Iterable[IpRule], *, ip: str | None, client_id: str | None, now: datetime
) -> IpRule | None:
    """Return the block rule that denies ``ip``, if any.

    A live allow rule that matches the caller exempts it from block rules.
    """
    live = [rule for rule in rules if rule_is_live(rule, now) and _applies_to(rule, client_id)]
    for rule in live:
        if rule.rule_type == IP_RULE_ALLOW and ip_matches(rule.ip_pattern, ip):
            return None
    for rule in live:
        if rule.rule_type == IP_RULE_BLOCK and ip_matches(rule.ip_pattern, ip):
            return rule
    return None


def ip_allowed_by_list(allowed: Iterable[str] | None, ip: str | None) -> bool:
    # An empty or missing allow-list admits every address.
    patterns = [pattern for pattern in (allowed or []) if pattern]
    if not patterns:
        return True
    return any(ip_matches(pattern, ip) for pattern in patterns)
