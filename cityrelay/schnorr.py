"""BIP-340 Schnorr signatures over secp256k1, with hex-encoded keys."""

from __future__ import annotations

import hashlib
import re
import secrets
from typing import Optional, Tuple

_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_G = (
    0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
    0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
)

_Point = Optional[Tuple[int, int]]
_HEX = re.compile(r"[0-9a-fA-F]*")


def _add(p1: _Point, p2: _Point) -> _Point:
    if p1 is None:
        return p2
    if p2 is None:
        return p1
    x1, y1 = p1
    x2, y2 = p2
    if x1 == x2 and y1 != y2:
        return None
    if p1 == p2:
        lam = 3 * x1 * x1 * pow(2 * y1, -1, _P) % _P
    else:
        lam = (y2 - y1) * pow(x2 - x1, -1, _P) % _P
    x3 = (lam * lam - x1 - x2) % _P
    return x3, (lam * (x1 - x3) - y1) % _P


def _mul(point: _Point, scalar: int) -> _Point:
    result: _Point = None
    addend = point
    while scalar:
        if scalar & 1:
            result = _add(result, addend)
        addend = _add(addend, addend)
        scalar >>= 1
    return result


def _lift_x(x: int) -> _Point:
    if x >= _P:
        return None
    y_sq = (pow(x, 3, _P) + 7) % _P
    y = pow(y_sq, (_P + 1) // 4, _P)
    if y * y % _P != y_sq:
        return None
    return x, y if y % 2 == 0 else _P - y


def _tagged_hash(tag: str, data: bytes) -> bytes:
    tag_digest = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_digest + tag_digest + data).digest()


def _int_bytes(value: int) -> bytes:
    return value.to_bytes(32, "big")


def _decode_hex(value: str, length: int, what: str) -> bytes:
    if not isinstance(value, str) or len(value) != length * 2 or not _HEX.fullmatch(value):
        raise ValueError(f"invalid {what}: expected {length * 2} hex characters")
    return bytes.fromhex(value)


def _secret_scalar(private_key: str) -> int:
    d = int.from_bytes(_decode_hex(private_key, 32, "private key"), "big")
    if not 1 <= d < _N:
        raise ValueError("invalid private key: out of range")
    return d


def generate_private_key() -> str:
    """Return a fresh random private key as 64 hex characters."""
    return _int_bytes(secrets.randbelow(_N - 1) + 1).hex()


def public_key(private_key: str) -> str:
    """Return the x-only public key of a hex private key."""
    point = _mul(_G, _secret_scalar(private_key))
    assert point is not None
    return _int_bytes(point[0]).hex()


def sign(private_key: str, message: bytes, aux_rand: Optional[bytes] = None) -> str:
    """Sign a message and return the 64-byte signature as hex."""
    if aux_rand is None:
        aux_rand = secrets.token_bytes(32)
    if len(aux_rand) != 32:
        raise ValueError("aux_rand must be 32 bytes")
    d0 = _secret_scalar(private_key)
    pub = _mul(_G, d0)
    assert pub is not None
    d = d0 if pub[1] % 2 == 0 else _N - d0
    masked = bytes(a ^ b for a, b in zip(_int_bytes(d), _tagged_hash("BIP0340/aux", aux_rand)))
    pub_bytes = _int_bytes(pub[0])
    k0 = int.from_bytes(_tagged_hash("BIP0340/nonce", masked + pub_bytes + message), "big") % _N
    if k0 == 0:
        raise ValueError("nonce generation failed")
    r_point = _mul(_G, k0)
    assert r_point is not None
    k = k0 if r_point[1] % 2 == 0 else _N - k0
    r_bytes = _int_bytes(r_point[0])
    e = int.from_bytes(_tagged_hash("BIP0340/challenge", r_bytes + pub_bytes + message), "big") % _N
    return (r_bytes + _int_bytes((k + e * d) % _N)).hex()


def verify(public_key: str, message: bytes, signature: str) -> bool:
    """Check a signature; raise ValueError when the inputs are malformed."""
    pub_bytes = _decode_hex(public_key, 32, "public key")
    sig_bytes = _decode_hex(signature, 64, "signature")
    pub = _lift_x(int.from_bytes(pub_bytes, "big"))
    r = int.from_bytes(sig_bytes[:32], "big")
    s = int.from_bytes(sig_bytes[32:], "big")
    if pub is None or r >= _P or s >= _N:
        return False
    e = int.from_bytes(_tagged_hash("BIP0340/challenge", sig_bytes[:32] + pub_bytes + message), "big") % _N
    point = _add(_mul(_G, s), _mul(pub, _N - e))
    return point is not None and point[1] % 2 == 0 and point[0] == r