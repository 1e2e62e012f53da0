from __future__ import annotations

from datetime import date
from uuid import UUID

from legalhub.core.config import get_settings
from legalhub.core.errors import InvalidRequestError
from legalhub.services.delivery import RecordFilters


# Query parameters accepted per kind beyond paging; anything else is ignored.
FILTER_FIELDS: dict[str, tuple[str, ...]] = {
    "processes": ("numero", "tribunal", "instancia", "status", "uf"),
    "distributions": ("termo", "tribunal", "data_inicial", "data_final"),
    "publications": ("termo", "diario", "data_inicial", "data_final"),
}

INCLUDE_OPTIONS = {"movements", "documents"}


def parse_limit(raw: str | None) -> int:
    # Non-numeric is an error; out-of-range values are clamped, not rejected.
    settings = get_settings()
    if raw is None or raw == "":
        return settings.delivery_default_limit
    try:
        value = int(raw)
    except ValueError:
        raise InvalidRequestError("limit must be an integer") from None
    return max(1, min(value, settings.delivery_max_limit))


def parse_offset(raw: str | None) -> int:
    if raw is None or raw == "":
        return 0
    try:
        value = int(raw)
    except ValueError:
        raise InvalidRequestError("offset must be a non-negative integer") from None
    if value < 0:
        raise InvalidRequestError("offset must be a non-negative integer")
    return value


def parse_uuid(raw: str, *, name: str = "id") -> str:
    try:
        return str(UUID(raw))
    except (TypeError, ValueError):
        raise InvalidRequestError(f"{name} must be a valid UUID") from None


def parse_date(raw: str | None, *, name: str) -> date | None:
    if raw is None or raw == "":
        return None
    try:
        if len(raw) != 10:
            raise ValueError(raw)
        return date.fromisoformat(raw)
    except ValueError:
        raise InvalidRequestError(f"{name} must be a date in YYYY-MM-DD format") from None


def parse_include(raw: str | None) -> set[str]:
    if not raw:
        return set()
    requested = {part.strip().lower() for part in raw.split(",") if part.strip()}
    unknown = requested - INCLUDE_OPTIONS
    if unknown:
        raise InvalidRequestError(f"include accepts only: {', '.join(sorted(INCLUDE_OPTIONS))}")
    return requested


def parse_filters(kind: str, query: dict[str, str]) -> RecordFilters:
    filters = RecordFilters()
    for name in FILTER_FIELDS[kind]:
        raw = query.get(name)
        if raw is None or raw == "":
            continue
        if name in {"data_inicial", "data_final"}:
            setattr(filters, name, parse_date(raw, name=name))
        else:
            setattr(filters, name, raw.strip())
    if filters.data_inicial and filters.data_final and filters.data_inicial > filters.data_final:
        raise InvalidRequestError("data_inicial must not be after data_final")
    return filters
