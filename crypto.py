"""Crypto utilities for the APDL ledger.

Provides:
- ECDSA identity (keypair generation, PEM persistence, public key encoding)
- Signature verification for the dual-signature penalty gate
- Signing helper producing the "r,s" signature strings parties submit
- Canonical JSON for deterministic record encoding

Public keys travel as URL-safe base64 of a DER SubjectPublicKeyInfo.
Signatures travel as "r,s" with both halves written as big integers.

Messages are signed raw, not hashed first. The message bytes are turned
into the ECDSA integer the classic way: keep the leftmost order-length
bytes, then shift off any bits beyond the curve order's bit length.

Dependencies: base64, json, os, re, cryptography
"""

import base64
import json
import os
import re
from typing import NewType

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils


# Opaque party identity. Only this module looks inside it.
PublicKeyId = NewType("PublicKeyId", str)


# ---------------------------------------------------------------------------
# Curve support
# ---------------------------------------------------------------------------

# The digest algorithm only carries the length of the prehashed integer.
_CURVE_DIGESTS = {
    "secp224r1": hashes.SHA224,
    "secp256r1": hashes.SHA256,
    "secp256k1": hashes.SHA256,
    "secp384r1": hashes.SHA384,
    "secp521r1": hashes.SHA512,
}


def _message_digest(message: bytes, curve: ec.EllipticCurve):
    """Map raw message bytes to (algorithm, digest) for a prehashed ECDSA call.

    Returns None when the curve is unsupported or the derived integer
    does not fit the digest width (long messages on P-521).
    """
    digest_cls = _CURVE_DIGESTS.get(curve.name)
    if digest_cls is None:
        return None
    algorithm = digest_cls()

    order_bits = curve.key_size
    order_bytes = (order_bits + 7) // 8
    data = message[:order_bytes]
    e = int.from_bytes(data, "big")
    excess = len(data) * 8 - order_bits
    if excess > 0:
        e >>= excess

    # Prehashed digests top out at SHA-512 width, so wider P-521 integers
    # cannot be passed to cryptography.
    if e.bit_length() > algorithm.digest_size * 8:
        return None
    return algorithm, e.to_bytes(algorithm.digest_size, "big")


# ---------------------------------------------------------------------------
# Key encoding
# ---------------------------------------------------------------------------

def encode_public_key(public_key: ec.EllipticCurvePublicKey) -> PublicKeyId:
    """DER SubjectPublicKeyInfo, URL-safe base64 (padded)."""
    der = public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return PublicKeyId(base64.urlsafe_b64encode(der).decode("ascii"))


def decode_public_key(key_id: str) -> ec.EllipticCurvePublicKey:
    """Decode a PublicKeyId. Raises ValueError if malformed or not an EC key."""
    try:
        der = base64.urlsafe_b64decode(key_id.encode("ascii"))
        public_key = serialization.load_der_public_key(der)
    except (ValueError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
        raise ValueError(f"Invalid public key encoding: {e}")
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise ValueError(f"Not an elliptic-curve key: {type(public_key).__name__}")
    return public_key


def generate_ecdsa_keypair(curve: ec.EllipticCurve | None = None):
    """Generate a new ECDSA keypair (P-256 by default).

    Returns (private_key, public_key_id).
    """
    private_key = ec.generate_private_key(curve or ec.SECP256R1())
    return private_key, encode_public_key(private_key.public_key())


def load_ecdsa_key(path: str) -> ec.EllipticCurvePrivateKey:
    """Load a PEM-encoded EC private key from file."""
    with open(path, "rb") as f:
        data = f.read()
    private_key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        raise ValueError(f"Expected an EC private key in {path}")
    return private_key


def save_ecdsa_key(path: str, private_key: ec.EllipticCurvePrivateKey) -> None:
    """Save an EC private key as unencrypted PKCS#8 PEM (mode 0600)."""
    pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, pem)
    finally:
        os.close(fd)


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

# Sign, digits and separators only; int() does the base handling.
_BIG_INT = re.compile(r"([+-]?)([0-9A-Za-z_]+)")


def _parse_big_int(text: str) -> int | None:
    """Parse an integer the way base-0 big-int parsers do. None if malformed.

    Accepts an optional sign, 0x/0o/0b prefixes, and a bare leading 0 as
    octal ("0777" is 511). Surrounding whitespace is not allowed.
    """
    m = _BIG_INT.fullmatch(text)
    if m is None:
        return None
    sign, body = m.groups()
    if len(body) > 1 and body[0] == "0" and body[1] not in "xXoObB":
        body = "0o" + body[1:]
    try:
        value = int(body, 0)
    except ValueError:
        return None
    return -value if sign == "-" else value


def parse_signature(signature: str) -> tuple[int, int] | None:
    """Split "r,s" into integers. Extra components are ignored."""
    parts = signature.split(",")
    if len(parts) < 2:
        return None
    r = _parse_big_int(parts[0])
    s = _parse_big_int(parts[1])
    if r is None or s is None:
        return None
    return r, s


def ecdsa_sign(private_key: ec.EllipticCurvePrivateKey, message: str | bytes) -> str:
    """Sign a raw message. Returns "r,s" in decimal."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    prepared = _message_digest(message, private_key.curve)
    if prepared is None:
        raise ValueError(f"Cannot sign on curve {private_key.curve.name} with this message")
    algorithm, digest = prepared
    der = private_key.sign(digest, ec.ECDSA(utils.Prehashed(algorithm)))
    r, s = utils.decode_dss_signature(der)
    return f"{r},{s}"


def ecdsa_verify(public_key: ec.EllipticCurvePublicKey, message: bytes, r: int, s: int) -> bool:
    """Verify (r, s) over raw message bytes. Returns True if valid."""
    if r <= 0 or s <= 0:
        return False
    prepared = _message_digest(message, public_key.curve)
    if prepared is None:
        return False
    algorithm, digest = prepared
    try:
        public_key.verify(
            utils.encode_dss_signature(r, s),
            digest,
            ec.ECDSA(utils.Prehashed(algorithm)),
        )
        return True
    except InvalidSignature:
        return False


def verify_signatures(
    message: str,
    public_keys: list[str],
    signatures: list[str],
    require_all: bool = False,
) -> bool:
    """Check each signature against the public key at the same position.

    A malformed key, or a signature without an "r,s" pair, fails the whole
    check immediately. A pair whose halves are not numbers only fails its
    own position. The default mode reports the outcome of the LAST pair,
    which is how deployed ledgers have always behaved: an invalid earlier
    signature is masked by a valid final one. Pass require_all=True for
    the strict AND of every pair.
    """
    if len(public_keys) != len(signatures):
        return False

    data = message.encode("utf-8")
    verified = False
    all_ok = True
    for key_id, signature in zip(public_keys, signatures):
        try:
            public_key = decode_public_key(key_id)
        except ValueError:
            return False
        parts = signature.split(",")
        if len(parts) < 2:
            return False
        r = _parse_big_int(parts[0])
        s = _parse_big_int(parts[1])
        if r is None or s is None:
            verified = False
        else:
            verified = ecdsa_verify(public_key, data, r, s)
        all_ok = all_ok and verified

    if require_all:
        return all_ok and len(public_keys) > 0
    return verified


# ---------------------------------------------------------------------------
# Canonical JSON -- deterministic serialization for stored records
# ---------------------------------------------------------------------------

def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")
