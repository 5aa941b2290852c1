"""Baseline Nostr event validity checks."""

from __future__ import annotations

import hashlib
import json
import re
import secrets
import time
from datetime import timedelta
from typing import Optional, Union

from cityrelay import schnorr
from cityrelay.models import Event

_HEX64 = re.compile(r"[0-9a-fA-F]{64}")
_HEX128 = re.compile(r"[0-9a-fA-F]{128}")

# Escapes applied by the canonical id encoder on top of plain JSON.
_HTML_ESCAPES = {
    ord("<"): "\\u003c",
    ord(">"): "\\u003e",
    ord("&"): "\\u0026",
    0x2028: "\\u2028",
    0x2029: "\\u2029",
}


class ValidationError(ValueError):
    """An event failed validation."""


def _encode(payload: list, html_escape: bool) -> bytes:
    text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    if html_escape:
        text = text.translate(_HTML_ESCAPES)
    return text.encode("utf-8")


def _serialize(pubkey: str, created_at: int, kind: int, tags: list[list[str]], content: str) -> bytes:
    return _encode([0, pubkey, created_at, kind, tags, content], html_escape=False)


def compute_event_id(pubkey: str, created_at: int, kind: int, tags: list[list[str]], content: str) -> str:
    """Return the canonical event id hash as lowercase hex."""
    encoded = _encode([0, pubkey.lower(), created_at, kind, tags, content], html_escape=True)
    return hashlib.sha256(encoded).hexdigest()


def verify_signature(event: Event) -> None:
    """Raise ValidationError unless the event's Schnorr signature is valid."""
    if not _HEX128.fullmatch(event.sig):
        raise ValidationError("invalid signature")
    pubkey = event.pubkey.lower()
    digest = hashlib.sha256(
        _serialize(pubkey, event.created_at, event.kind, [list(tag) for tag in event.tags], event.content)
    ).digest()
    try:
        ok = schnorr.verify(pubkey, digest, event.sig.lower())
    except ValueError as exc:
        raise ValidationError(f"invalid signature: {exc}") from exc
    if not ok:
        raise ValidationError("invalid signature")


def sign_event(private_key: str, created_at: int, kind: int, tags: list[list[str]], content: str) -> Event:
    """Build and sign an event with the given private key."""
    pubkey = schnorr.public_key(private_key)
    copied = [list(tag) for tag in tags]
    digest = hashlib.sha256(_serialize(pubkey, created_at, kind, copied, content)).digest()
    sig = schnorr.sign(private_key, digest, secrets.token_bytes(32))
    return Event(
        id=digest.hex(),
        pubkey=pubkey,
        created_at=created_at,
        kind=kind,
        tags=copied,
        content=content,
        sig=sig,
    )


class Validator:
    """Checks event format, timestamp skew, id and signature."""

    def __init__(self, max_skew: Union[timedelta, float]) -> None:
        if isinstance(max_skew, timedelta):
            self.max_skew = max_skew.total_seconds()
        else:
            self.max_skew = float(max_skew)

    def validate_event(self, event: Event, now: Optional[int] = None) -> None:
        """Raise ValidationError describing the first problem found."""
        if not _HEX64.fullmatch(event.id):
            raise ValidationError("invalid event id")
        if not _HEX64.fullmatch(event.pubkey):
            raise ValidationError("invalid event pubkey")
        if not _HEX128.fullmatch(event.sig):
            raise ValidationError("invalid event signature format")
        if event.created_at == 0:
            raise ValidationError("event created_at is required")

        current = int(time.time()) if now is None else now
        if abs(current - event.created_at) > self.max_skew:
            raise ValidationError("event created_at out of allowed skew")

        for index, tag in enumerate(event.tags):
            if not tag:
                raise ValidationError(f"tag[{index}] is empty")
            if not tag[0].strip():
                raise ValidationError(f"tag[{index}] has empty name")

        expected = compute_event_id(event.pubkey, event.created_at, event.kind, event.tags, event.content)
        if expected.lower() != event.id.lower():
            raise ValidationError("event id does not match payload")

        verify_signature(event)