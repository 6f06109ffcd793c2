from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

CLIENT_REF_PATTERN = re.compile(r"cliente#([A-Za-z0-9_-]+)", re.IGNORECASE)
BARE_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def normalize(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_phone(raw: Any) -> Optional[str]:
    """Strip everything but digits, keeping a leading '+' when the raw value had one."""
    if raw is None:
        return None
    text = str(raw).strip()
    digits = "".join(char for char in text if char.isdigit())
    if not digits:
        return None
    return f"+{digits}" if text.startswith("+") else digits


def phone_variants(phone: Optional[str]) -> set[str]:
    normalized = normalize_phone(phone)
    if not normalized:
        return set()
    digits = normalized.lstrip("+")
    return {digits, f"+{digits}"}


def extract_client_ref(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = CLIENT_REF_PATTERN.search(text)
    return match.group(1) if match else None


def is_bare_token(value: Optional[str]) -> bool:
    return bool(value) and bool(BARE_TOKEN_PATTERN.match(value))


def minor_to_decimal(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value)) / Decimal(100)
    except (InvalidOperation, ValueError):
        return None
    return float(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def name_tokens(name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    parts = normalize(name).split()
    if not parts:
        return None, None
    if len(parts) == 1:
        return parts[0], None
    return parts[0], parts[-1]
