"""Rules applied when creating jobs: timezone fan-out and filter case matching."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from marathon_api.helpers import ApiError, ValidationError

HOUR_NS = 3600 * 1_000_000_000
DAY_NS = 24 * HOUR_NS
FIRST_HOUR = -12
LAST_HOUR = 14
SKIP_STRATEGY = "skip"

LOCALE_KEYS = ("locale", "NOTlocale")
REGION_KEYS = ("region", "NOTregion")
FILTER_CHECK_KEYS = ("region", "NOTregion", "locale", "NOTlocale")

LOCALE_CASE_ERROR = "Locale case check failed in Push DB"
REGION_CASE_ERROR = "Region case check failed in Push DB"


def timezone_offsets(hour: int) -> list[str]:
    """Return the timezone offsets, as signed four-digit strings, served at ``hour``."""
    base = hour * 100
    return [f"{value:+05d}" for value in (base - 55, base, base + 15, base + 30)]


def localized_schedule(
    starts_at: int, now: int, past_time_strategy: str = ""
) -> list[tuple[int, int]]:
    """Return ``(hour, send_at)`` pairs, in nanoseconds, for each timezone hour.

    A send time before ``now`` is dropped when the strategy is ``"skip"`` and
    moved one day later otherwise.
    """
    schedule = []
    for hour in range(FIRST_HOUR, LAST_HOUR + 1):
        send_at = starts_at + hour * HOUR_NS
        if send_at < now:
            if past_time_strategy == SKIP_STRATEGY:
                continue
            send_at += DAY_NS
        schedule.append((hour, send_at))
    return schedule


def case_style(sample: str) -> str | None:
    """Return ``"upper"`` or ``"lower"`` for a sample with one clear case, else None."""
    is_upper = sample.upper() == sample
    is_lower = sample.lower() == sample
    if is_upper and not is_lower:
        return "upper"
    if is_lower and not is_upper:
        return "lower"
    return None


def needs_filter_check(filters: Mapping[str, Any] | None) -> bool:
    """Tell whether any locale or region filter is set."""
    if not filters:
        return False
    return any(filters.get(key) is not None for key in FILTER_CHECK_KEYS)


def _convert(value: Any, style: str | None, key: str, error: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"filter {key} must be a string")
    if style == "upper":
        return value.upper()
    if style == "lower":
        return value.lower()
    raise ApiError(error)


def normalize_filter_case(
    filters: Mapping[str, Any], sample_locale: str, sample_region: str
) -> dict[str, Any]:
    """Return a copy of ``filters`` with locale and region values in the stored case.

    Raises ApiError when a needed sample has no clear case.
    """
    result = dict(filters)
    locale_style = case_style(sample_locale)
    region_style = case_style(sample_region)
    for key in LOCALE_KEYS:
        if result.get(key) is not None:
            result[key] = _convert(result[key], locale_style, key, LOCALE_CASE_ERROR)
    for key in REGION_KEYS:
        if result.get(key) is not None:
            result[key] = _convert(result[key], region_style, key, REGION_CASE_ERROR)
    return result