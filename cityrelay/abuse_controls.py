"""Per-pubkey rate limiting and proof-of-work minimums."""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from typing import Optional

from cityrelay.models import Event

KIND_POW_BITS: dict[int, int] = {
    9007: 28,
    1020: 24,
    0: 20,
    30022: 16,
    20002: 12,
    10006: 12,
    20011: 8,
    20012: 8,
}

_HEX = re.compile(r"[0-9a-fA-F]*")
_INT = re.compile(r"[+-]?[0-9]+")


class PowError(ValueError):
    """An event does not carry enough proof of work."""


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


def extract_nonce_difficulty(tags: list[list[str]]) -> int:
    """Return the positive target difficulty of the first usable nonce tag, or 0."""
    for tag in tags:
        if len(tag) < 3 or tag[0] != "nonce":
            continue
        if _INT.fullmatch(tag[2]):
            bits = int(tag[2])
            if bits > 0:
                return bits
    return 0


def leading_zero_bits(hex_id: str) -> int:
    """Count the leading zero bits of a hex string; raise ValueError if malformed."""
    hex_id = hex_id.strip()
    if len(hex_id) % 2 != 0:
        raise ValueError("odd hex length")
    if not _HEX.fullmatch(hex_id):
        raise ValueError(f"invalid hex: {hex_id!r}")
    bits = 0
    for byte in bytes.fromhex(hex_id):
        if byte == 0:
            bits += 8
            continue
        return bits + 8 - byte.bit_length()
    return bits


class AbuseControls:
    """Token-bucket rate limits per pubkey and per-kind PoW minimums."""

    def __init__(self, burst: int, sustained_per_minute: int, default_pow_bits: int) -> None:
        self.burst = burst
        self.sustained_per_minute = sustained_per_minute
        self.default_pow_bits = default_pow_bits
        self._lock = threading.Lock()
        self._buckets: dict[str, _Bucket] = {}

    def allow(self, pubkey: str, now: Optional[float] = None) -> bool:
        """Consume one token for pubkey; return False if none is available."""
        current = time.time() if now is None else now
        with self._lock:
            bucket = self._buckets.get(pubkey)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.burst), last_refill=current)
                self._buckets[pubkey] = bucket

            elapsed = current - bucket.last_refill
            if elapsed > 0:
                rate = self.sustained_per_minute / 60.0
                bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * rate)
                bucket.last_refill = current

            if bucket.tokens < 1:
                return False
            bucket.tokens -= 1
            return True

    def required_pow_bits(self, kind: int) -> int:
        """Return the PoW difficulty required for an event kind."""
        return KIND_POW_BITS.get(kind, self.default_pow_bits)

    def validate_pow(self, event: Event, required_bits: int) -> None:
        """Raise PowError unless the event id meets the required difficulty."""
        if required_bits <= 0:
            return
        try:
            bits = leading_zero_bits(event.id)
        except ValueError as exc:
            raise PowError(f"invalid event id for pow: {exc}") from exc
        if bits < required_bits:
            raise PowError(f"insufficient pow: have {bits} bits, need {required_bits}")
        target = extract_nonce_difficulty(event.tags)
        if 0 < target < required_bits:
            raise PowError("pow nonce tag difficulty below required target")