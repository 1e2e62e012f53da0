from __future__ import annotations

from legalhub.core.errors import InvalidRequestError


# Client-facing record kinds; each has its own API route and delivery cursor.
KIND_PROCESSES = "processes"
KIND_DISTRIBUTIONS = "distributions"
KIND_PUBLICATIONS = "publications"

RECORD_KINDS = (KIND_PROCESSES, KIND_DISTRIBUTIONS, KIND_PUBLICATIONS)

# Monitored resource types registered with the vendor.
RESOURCE_CASE = "case"
RESOURCE_DISTRIBUTION_TERM = "distribution_term"
RESOURCE_PUBLICATION_TERM = "publication_term"

RESOURCE_TYPES = (RESOURCE_CASE, RESOURCE_DISTRIBUTION_TERM, RESOURCE_PUBLICATION_TERM)

# Which resource type grants visibility into each record kind.
RESOURCE_TYPE_FOR_KIND = {
    KIND_PROCESSES: RESOURCE_CASE,
    KIND_DISTRIBUTIONS: RESOURCE_DISTRIBUTION_TERM,
    KIND_PUBLICATIONS: RESOURCE_PUBLICATION_TERM,
}

# Monitored resource lifecycle.
RESOURCE_STATUS_PENDING = "pending"
RESOURCE_STATUS_REGISTERED = "registered"
RESOURCE_STATUS_REMOVED = "removed"
# Vendor answered "already registered" and the code could not be looked up yet.
RESOURCE_STATUS_CODE_UNKNOWN = "code_unknown"

# Wire dialects spoken by the vendor.
PROTOCOL_SOAP = "soap"
PROTOCOL_REST = "rest"

# Sync run lifecycle.
SYNC_IN_PROGRESS = "in_progress"
SYNC_SUCCESS = "success"
SYNC_ERROR = "error"
SYNC_CANCELLED = "cancelled"

# Gateway deny reasons recorded on security events.
REASON_INVALID_HEADER = "invalid_header"
REASON_INVALID_TOKEN = "invalid_token"
REASON_INACTIVE = "inactive"
REASON_BLOCKED = "blocked"
REASON_EXPIRED = "expired"
REASON_IP_BLOCKED = "ip_blocked"
REASON_IP_NOT_WHITELISTED = "ip_not_whitelisted"
REASON_RATE_LIMIT = "rate_limit"
REASON_SERVICE_DENIED = "service_denied"
REASON_PLATFORM_REQUIRED = "platform_required"

# IP rule effects.
IP_RULE_BLOCK = "block"
IP_RULE_ALLOW = "allow"


def normalize_kind(kind: str) -> str:
    # Keep kind vocabulary lowercased and closed.
    normalized = kind.strip().lower()
    if normalized not in RECORD_KINDS:
        raise InvalidRequestError(f"Unsupported record kind: {kind}")
    return normalized
