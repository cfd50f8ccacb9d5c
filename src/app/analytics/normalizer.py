"""Pure helpers shared by the MQL collectors and the sync service."""

from __future__ import annotations

import re
from datetime import date, datetime

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Checked in order; the first bucket whose aliases contain the source wins.
CHANNEL_BUCKETS: tuple[tuple[str, frozenset[str]], ...] = (
    ("facebook", frozenset({"fb", "facebook", "meta"})),
    ("instagram", frozenset({"ig", "instagram"})),
    ("google", frozenset({"google", "adwords", "gads", "youtube"})),
    ("linkedin", frozenset({"linkedin"})),
    ("tiktok", frozenset({"tiktok"})),
    ("telegram", frozenset({"telegram"})),
    ("email", frozenset({"email", "newsletter", "sendpulse", "mailchimp"})),
    ("referral", frozenset({"referral", "partner"})),
    ("organic", frozenset({"organic", "seo", "direct"})),
)


def parse_timestamp(value: str | datetime | date | None) -> datetime | None:
    """Parse Pipedrive ("2025-03-04 10:00:00") and ISO-8601 timestamps."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip().replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def get_month_key(value: str | datetime | date | None) -> str | None:
    """``"YYYY-MM"`` for a timestamp, or None when it cannot be parsed."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return f"{parsed.year:04d}-{parsed.month:02d}"


def normalize_email(value: str | None) -> str | None:
    if not value or not isinstance(value, str):
        return None
    email = value.strip().lower()
    return email if _EMAIL_RE.match(email) else None


def resolve_channel_bucket(utm_source: str | None) -> str:
    source = (utm_source or "").strip().lower()
    if not source:
        return "unknown"
    for bucket, aliases in CHANNEL_BUCKETS:
        if source in aliases:
            return bucket
    return "other"


def build_dedupe_key(
    source: str,
    external_id: str | int | None = None,
    email: str | None = None,
    username: str | None = None,
) -> str | None:
    """Identity used to count a lead once across sources.

    Email beats username beats the per-source external id.
    """
    normalized = normalize_email(email)
    if normalized:
        return f"email:{normalized}"
    if username and isinstance(username, str) and username.strip():
        return f"username:{username.strip().lower()}"
    if external_id not in (None, ""):
        return f"{source or 'src'}:{external_id}"
    return None


def month_keys(year: int) -> list[str]:
    return [f"{year}-{month:02d}" for month in range(1, 13)]
