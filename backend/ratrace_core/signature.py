"""Verification of signed contract-event webhooks.

The event source signs each delivery with HMAC-SHA256 and sends the result
in ``x-hook0-signature`` as ``t=<unix seconds>,h=<header names>,v1=<hex>``.
The signed string is ``t.h.<header values joined by '.'>.<raw body>``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import WebhookAuthError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hook0-signature"
DEFAULT_MAX_AGE_MINUTES = 5


@dataclass(frozen=True)
class ParsedSignature:
    timestamp: int
    header_names: str
    digest: str


def parse_signature_header(signature_header: str) -> Optional[ParsedSignature]:
    if not signature_header:
        return None

    parts: dict[str, str] = {}
    for element in signature_header.split(","):
        key, sep, value = element.strip().partition("=")
        if not sep:
            continue
        parts.setdefault(key, value)

    timestamp_raw = parts.get("t")
    header_names = parts.get("h")
    digest = parts.get("v1")
    if not timestamp_raw or header_names is None or not digest:
        return None
    try:
        timestamp = int(timestamp_raw)
    except ValueError:
        return None
    return ParsedSignature(timestamp=timestamp, header_names=header_names, digest=digest.strip().lower())


def _header_values(header_names: str, headers: Mapping[str, str]) -> str:
    lowered = {str(key).lower(): value for key, value in headers.items()}
    values = []
    for name in header_names.split(" "):
        if not name:
            continue
        values.append(str(lowered.get(name.lower(), "") or ""))
    return ".".join(values)


def signed_payload(timestamp: int, header_names: str, headers: Mapping[str, str], raw_body: bytes) -> bytes:
    prefix = f"{timestamp}.{header_names}.{_header_values(header_names, headers)}."
    return prefix.encode("utf-8") + raw_body


def compute_signature(
    raw_body: bytes,
    secret: bytes,
    timestamp: int,
    header_names: str = "",
    headers: Optional[Mapping[str, str]] = None,
) -> str:
    payload = signed_payload(timestamp, header_names, headers or {}, raw_body)
    return hmac.new(secret, payload, hashlib.sha256).hexdigest()


def build_signature_header(
    raw_body: bytes,
    secret: bytes,
    timestamp: Optional[int] = None,
    header_names: str = "",
    headers: Optional[Mapping[str, str]] = None,
) -> str:
    """Produce a header value in the same format the event source sends."""

    ts = int(time.time()) if timestamp is None else int(timestamp)
    digest = compute_signature(raw_body, secret, ts, header_names, headers)
    return f"t={ts},h={header_names},v1={digest}"


def verify(
    raw_body: bytes,
    signature_header: str,
    secret: bytes,
    headers: Mapping[str, str],
    max_age_minutes: int = DEFAULT_MAX_AGE_MINUTES,
    now: Optional[float] = None,
) -> bool:
    """Return True only for an authentic delivery inside the replay window."""

    parsed = parse_signature_header(signature_header)
    if parsed is None:
        logger.warning("Rejected webhook: malformed signature header")
        return False

    expected = compute_signature(raw_body, secret, parsed.timestamp, parsed.header_names, headers)
    if not hmac.compare_digest(expected, parsed.digest):
        logger.warning("Rejected webhook: signature mismatch")
        return False

    current = time.time() if now is None else now
    age_seconds = abs(current - parsed.timestamp)
    if age_seconds > max_age_minutes * 60:
        logger.warning(
            "Rejected webhook: timestamp outside window (%.1f minutes > %s minutes)",
            age_seconds / 60,
            max_age_minutes,
        )
        return False

    return True


def require_valid_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: bytes,
    headers: Mapping[str, str],
    max_age_minutes: int = DEFAULT_MAX_AGE_MINUTES,
    now: Optional[float] = None,
) -> None:
    if not signature_header:
        raise WebhookAuthError("Missing signature")
    if not verify(raw_body, signature_header, secret, headers, max_age_minutes, now=now):
        raise WebhookAuthError("Invalid signature")
