from __future__ import annotations

import re

import phonenumbers

_NON_DIAL_CHARS_RE = re.compile(r"[^\d+]")


class PhoneNormalizationError(ValueError):
    """Raised when a phone number cannot be turned into a valid E.164 string."""


def normalize_phone(raw: str | None, *, default_region: str | None = None) -> str:
    """Return ``raw`` as E.164 (``+971501234567``).

    Provider webhooks deliver bare international digits (``971501234567``);
    those are treated as already carrying a country code. Numbers written in
    national format only parse when ``default_region`` is given.
    """
    if raw is None:
        raise PhoneNormalizationError("phone number is empty")
    cleaned = _NON_DIAL_CHARS_RE.sub("", raw.strip())
    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]
    if not cleaned or cleaned == "+":
        raise PhoneNormalizationError("phone number is empty")

    candidates: list[tuple[str, str | None]] = []
    if cleaned.startswith("+"):
        candidates.append((cleaned, None))
    else:
        candidates.append(("+" + cleaned, None))
        if default_region:
            candidates.append((cleaned, default_region.upper()))

    for number, region in candidates:
        try:
            parsed = phonenumbers.parse(number, region)
        except phonenumbers.NumberParseException:
            continue
        if phonenumbers.is_valid_number(parsed):
            return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)

    raise PhoneNormalizationError(f"invalid phone number: {raw!r}")


def try_normalize_phone(raw: str | None, *, default_region: str | None = None) -> str | None:
    try:
        return normalize_phone(raw, default_region=default_region)
    except PhoneNormalizationError:
        return None
