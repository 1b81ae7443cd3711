from __future__ import annotations

import re
from dataclasses import dataclass

E164_PATTERN = re.compile(r"^\+\d{10,15}$")
_STRIP_PATTERN = re.compile(r"[^\d+]")

# National significant number lengths for country codes we validate strictly.
NATIONAL_NUMBER_LENGTHS: dict[str, int] = {"91": 10}


class PhoneNumberError(ValueError):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class PhoneValidationResult:
    raw: str
    normalized: str | None
    reason: str | None = None

    @property
    def valid(self) -> bool:
        return self.normalized is not None


def _strip_punctuation(raw: str) -> str:
    return _STRIP_PATTERN.sub("", raw)


def normalize_phone_number(raw: str | None, default_country_code: str = "91") -> str:
    """Return the canonical ``+<country><number>`` form of ``raw``.

    Numbers without a leading ``+`` are treated as national numbers: one
    trunk ``0`` is dropped and ``default_country_code`` is prepended.
    Canonical output is a fixed point of this function.
    """
    if raw is None:
        raise PhoneNumberError("missing", "phone number is required")
    cleaned = _strip_punctuation(raw.strip())
    if not cleaned or cleaned == "+":
        raise PhoneNumberError("empty", "phone number has no digits")
    if "+" in cleaned[1:]:
        raise PhoneNumberError("invalid_format", "phone number contains a misplaced '+'")

    if not cleaned.startswith("+"):
        if cleaned.startswith("0"):
            cleaned = cleaned[1:]
        cleaned = f"+{default_country_code}{cleaned}"

    digits = cleaned[1:]
    if len(digits) < 10:
        raise PhoneNumberError("too_short", f"phone number has {len(digits)} digits, expected at least 10")
    if len(digits) > 15:
        raise PhoneNumberError("too_long", f"phone number has {len(digits)} digits, expected at most 15")
    if not E164_PATTERN.match(cleaned):
        raise PhoneNumberError("invalid_format", "phone number is not in E.164 format")

    # Country codes are prefix-free, so a leading code identifies the country.
    for country_code, national_length in NATIONAL_NUMBER_LENGTHS.items():
        if digits.startswith(country_code) and len(digits) != len(country_code) + national_length:
            raise PhoneNumberError(
                "invalid_national_length",
                f"+{country_code} numbers must have exactly {national_length} national digits",
            )
    return cleaned


def is_valid_phone_number(raw: str | None, default_country_code: str = "91") -> bool:
    try:
        normalize_phone_number(raw, default_country_code)
    except PhoneNumberError:
        return False
    return True


def normalize_inbound_phone(wa_id: str) -> str:
    """Provider callbacks carry the full international number without ``+``."""
    digits = "".join(ch for ch in wa_id if ch.isdigit())
    return f"+{digits}" if digits else ""


def phone_lookup_variants(raw: str, default_country_code: str = "91") -> tuple[str, ...]:
    """Probe forms for matching a callback phone against stored participants.

    Order is raw digits, ``+`` prefixed, then default country code prefixed.
    """
    stripped = _strip_punctuation(raw.strip())
    digits = stripped.lstrip("+")
    candidates = [stripped, f"+{digits}", f"+{default_country_code}{digits}"]
    variants: list[str] = []
    for candidate in candidates:
        if candidate and candidate != "+" and candidate not in variants:
            variants.append(candidate)
    return tuple(variants)


def batch_validate_phone_numbers(
    values: list[str], default_country_code: str = "91"
) -> list[PhoneValidationResult]:
    results: list[PhoneValidationResult] = []
    for value in values:
        try:
            normalized = normalize_phone_number(value, default_country_code)
        except PhoneNumberError as exc:
            results.append(PhoneValidationResult(raw=value, normalized=None, reason=exc.reason))
            continue
        results.append(PhoneValidationResult(raw=value, normalized=normalized))
    return results


def format_phone_number_for_display(phone: str, default_country_code: str = "91") -> str:
    try:
        normalized = normalize_phone_number(phone, default_country_code)
    except PhoneNumberError:
        return phone
    for country_code in NATIONAL_NUMBER_LENGTHS:
        if normalized.startswith(f"+{country_code}"):
            return f"+{country_code} {normalized[len(country_code) + 1:]}"
    return normalized


def mask_phone_number(phone: str | None) -> str:
    if not phone:
        return "***"
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "*" * len(digits) or "***"
