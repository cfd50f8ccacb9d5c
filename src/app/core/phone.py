"""Phone number and country normalization for CRM contacts.

Pipedrive stores phones in whatever format the salesperson typed. SMS
delivery needs E.164, and contractor records need ISO country codes.
"""

from __future__ import annotations

import re
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

COUNTRY_NAME_TO_CODE: dict[str, str] = {
    # English
    "poland": "PL",
    "germany": "DE",
    "france": "FR",
    "united kingdom": "GB",
    "uk": "GB",
    "great britain": "GB",
    "italy": "IT",
    "spain": "ES",
    "netherlands": "NL",
    "belgium": "BE",
    "austria": "AT",
    "switzerland": "CH",
    "czech republic": "CZ",
    "czechia": "CZ",
    "slovakia": "SK",
    "lithuania": "LT",
    "latvia": "LV",
    "estonia": "EE",
    "ukraine": "UA",
    "belarus": "BY",
    "russia": "RU",
    "sweden": "SE",
    "norway": "NO",
    "denmark": "DK",
    "finland": "FI",
    "united states": "US",
    "usa": "US",
    "canada": "CA",
    "israel": "IL",
    "brazil": "BR",
    "australia": "AU",
    # Polish
    "polska": "PL",
    "niemcy": "DE",
    "francja": "FR",
    "wielka brytania": "GB",
    "włochy": "IT",
    "hiszpania": "ES",
    "holandia": "NL",
    "belgia": "BE",
    "szwajcaria": "CH",
    "czechy": "CZ",
    "słowacja": "SK",
    "litwa": "LT",
    "łotwa": "LV",
    "ukraina": "UA",
    "białoruś": "BY",
    "rosja": "RU",
    "szwecja": "SE",
    "norwegia": "NO",
    "dania": "DK",
    "finlandia": "FI",
    "stany zjednoczone": "US",
    "kanada": "CA",
}

COUNTRY_PHONE_CODES: dict[str, str] = {
    "PL": "+48",
    "DE": "+49",
    "FR": "+33",
    "GB": "+44",
    "IT": "+39",
    "ES": "+34",
    "NL": "+31",
    "BE": "+32",
    "AT": "+43",
    "CH": "+41",
    "CZ": "+420",
    "SK": "+421",
    "LT": "+370",
    "LV": "+371",
    "EE": "+372",
    "UA": "+380",
    "BY": "+375",
    "RU": "+7",
    "SE": "+46",
    "NO": "+47",
    "DK": "+45",
    "FI": "+358",
    "US": "+1",
    "CA": "+1",
    "IL": "+972",
    "BR": "+55",
    "AU": "+61",
}

_E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")
_SEPARATORS_RE = re.compile(r"[\s\-().]")


def mask_phone(phone: str | None) -> str | None:
    """Mask a phone for logs: first 3 chars, ***, last 2."""
    if not phone:
        return phone
    if len(phone) <= 5:
        return "***"
    return f"{phone[:3]}***{phone[-2:]}"


def is_valid_e164(phone: str | None) -> bool:
    return bool(phone) and bool(_E164_RE.match(phone))


def normalize_phone_number(phone: str | None, country_code: str | None = None) -> str | None:
    """Normalize a free-form phone number to E.164.

    Numbers without a leading + get the country's dialing prefix when
    country_code is known, otherwise a bare + is prepended. Anything with
    fewer than 7 or more than 15 digits is rejected.
    """
    if not phone or not isinstance(phone, str):
        return None

    cleaned = _SEPARATORS_RE.sub("", phone)

    if cleaned.startswith("+"):
        digits = re.sub(r"\D", "", cleaned[1:])
        if 7 <= len(digits) <= 15:
            return f"+{digits}"
        logger.warning("phone.invalid_length", phone=mask_phone(phone))
        return None

    if not cleaned[:1].isdigit():
        logger.warning("phone.unrecognized_format", phone=mask_phone(phone))
        return None

    digits = re.sub(r"\D", "", cleaned)
    if digits.startswith("00"):
        digits = digits[2:]
    if len(digits) < 7 or len(digits) > 15:
        logger.warning("phone.invalid_length", phone=mask_phone(phone), digits=len(digits))
        return None

    prefix = COUNTRY_PHONE_CODES.get((country_code or "").upper())
    if prefix:
        prefix_digits = prefix[1:]
        if digits.startswith(prefix_digits) and len(digits) > 9:
            return f"+{digits}"
        return f"{prefix}{digits.lstrip('0')}"

    return f"+{digits}"


def normalize_country_code(country: str | None) -> str | None:
    """Map a country name (English or Polish) or ISO code to an ISO alpha-2 code."""
    if not country or not isinstance(country, str):
        return None
    trimmed = country.strip()
    if re.fullmatch(r"[A-Za-z]{2}", trimmed):
        return trimmed.upper()
    lowered = trimmed.lower()
    if lowered in COUNTRY_NAME_TO_CODE:
        return COUNTRY_NAME_TO_CODE[lowered]
    for name, code in COUNTRY_NAME_TO_CODE.items():
        if name in lowered:
            return code
    return None


def get_country_from_person(person: dict[str, Any] | None) -> str | None:
    """Country code for a Pipedrive person: country field, then postal address parts."""
    if not person:
        return None
    for candidate in (
        person.get("country"),
        person.get("postal_address_country"),
        (person.get("address") or {}).get("country_code") if isinstance(person.get("address"), dict) else None,
        (person.get("address") or {}).get("country") if isinstance(person.get("address"), dict) else None,
    ):
        code = normalize_country_code(candidate)
        if code:
            return code
    return None


def get_primary_phone(person: dict[str, Any] | None) -> str | None:
    """First non-empty phone value on a Pipedrive person (primary entry preferred)."""
    if not person:
        return None
    phones = person.get("phone") or []
    if isinstance(phones, str):
        return phones or None
    primary = [p for p in phones if isinstance(p, dict) and p.get("primary") and p.get("value")]
    others = [p for p in phones if isinstance(p, dict) and p.get("value")]
    for entry in primary + others:
        return str(entry["value"]).strip() or None
    return None
