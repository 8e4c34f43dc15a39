"""
UPI identifier helpers — masking payer VPAs and bank UTRs before they are
stored or logged, and normalizing PhonePe instrument variants.
"""
from typing import Optional

MASK_CHARACTER = "*"


def _coerce(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def mask_vpa(value: Optional[str]) -> Optional[str]:
    """Mask a VPA, keeping two characters of the local part: ``ab*****@ybl``."""
    normalized = _coerce(value)
    if not normalized:
        return None
    if MASK_CHARACTER in normalized:
        return normalized

    local, _, domain = normalized.partition("@")
    visible = local[:2]
    masked = visible + MASK_CHARACTER * max(len(local) - len(visible), 3)
    return f"{masked}@{domain}" if domain else masked


def mask_utr(value: Optional[str]) -> Optional[str]:
    """Mask a UTR, keeping only the last four characters."""
    normalized = _coerce(value)
    if not normalized:
        return None
    if MASK_CHARACTER in normalized:
        return normalized
    if len(normalized) <= 4:
        return MASK_CHARACTER * len(normalized)
    suffix = normalized[-4:]
    return MASK_CHARACTER * max(len(normalized) - 4, 4) + suffix


def mask_upi_identifier(provider: Optional[str], value: Optional[str], kind: str) -> Optional[str]:
    """Only PhonePe identifiers are masked; other providers pass through trimmed."""
    if provider != "phonepe":
        return _coerce(value)
    return mask_vpa(value) if kind == "vpa" else mask_utr(value)


def normalize_upi_instrument_variant(variant: Optional[str]) -> Optional[str]:
    normalized = _coerce(variant)
    if not normalized:
        return None
    normalized = normalized.upper()
    if normalized.startswith("UPI") or "QR" in normalized:
        return normalized
    return None
