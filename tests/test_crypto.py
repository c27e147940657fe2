"""Tests for ECDSA key handling and the dual-signature verifier."""

import base64
import os
import stat
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from crypto import (
    encode_public_key,
    decode_public_key,
    generate_ecdsa_keypair,
    load_ecdsa_key,
    save_ecdsa_key,
    parse_signature,
    ecdsa_sign,
    ecdsa_verify,
    verify_signatures,
    canonical_json,
)
from conftest import OWNER_PRIV, OWNER_KEY, USER_PRIV, USER_KEY, OTHER_PRIV


MSG = "penalty: license breach"


def _ed25519_key_id() -> str:
    pub = ed25519.Ed25519PrivateKey.generate().public_key()
    der = pub.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.urlsafe_b64encode(der).decode()


# ---- Key encoding ----

class TestKeyEncoding:
    def test_roundtrip(self):
        priv, key_id = generate_ecdsa_keypair()
        decoded = decode_public_key(key_id)
        assert decoded.public_numbers() == priv.public_key().public_numbers()

    def test_encoding_is_urlsafe(self):
        _, key_id = generate_ecdsa_keypair()
        assert "+" not in key_id and "/" not in key_id

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            decode_public_key("not a key at all!")

    def test_valid_base64_but_not_der(self):
        with pytest.raises(ValueError):
            decode_public_key(base64.urlsafe_b64encode(b"hello world").decode())

    def test_non_ec_key_rejected(self):
        with pytest.raises(ValueError, match="elliptic-curve"):
            decode_public_key(_ed25519_key_id())

    def test_save_and_load(self, tmp_path):
        priv, key_id = generate_ecdsa_keypair()
        path = str(tmp_path / "owner.pem")
        save_ecdsa_key(path, priv)
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        loaded = load_ecdsa_key(path)
        assert encode_public_key(loaded.public_key()) == key_id

    def test_load_rejects_non_ec(self, tmp_path):
        path = tmp_path / "ed.pem"
        path.write_bytes(ed25519.Ed25519PrivateKey.generate().private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ))
        with pytest.raises(ValueError):
            load_ecdsa_key(str(path))


# ---- Signature parsing ----

class TestParseSignature:
    def test_decimal(self):
        assert parse_signature("12,34") == (12, 34)

    def test_prefixed(self):
        assert parse_signature("0x1f,0b101") == (31, 5)

    def test_leading_zero_is_octal(self):
        assert parse_signature("0777,010") == (511, 8)
        assert parse_signature("0,00") == (0, 0)

    def test_bad_octal_digit(self):
        assert parse_signature("08,1") is None

    def test_sign_accepted(self):
        assert parse_signature("-5,+6") == (-5, 6)

    def test_whitespace_rejected(self):
        assert parse_signature(" 12,34") is None
        assert parse_signature("12, 34") is None

    def test_extra_components_ignored(self):
        assert parse_signature("1,2,3") == (1, 2)

    def test_single_component(self):
        assert parse_signature("12345") is None

    def test_non_numeric(self):
        assert parse_signature("abc,def") is None

    def test_empty(self):
        assert parse_signature("") is None


# ---- Sign / verify ----

class TestSignVerify:
    def test_sign_produces_decimal_pair(self):
        sig = ecdsa_sign(OWNER_PRIV, MSG)
        r, s = sig.split(",")
        assert r.isdigit() and s.isdigit()

    def test_valid(self):
        r, s = parse_signature(ecdsa_sign(OWNER_PRIV, MSG))
        assert ecdsa_verify(OWNER_PRIV.public_key(), MSG.encode(), r, s)

    def test_wrong_message(self):
        r, s = parse_signature(ecdsa_sign(OWNER_PRIV, MSG))
        assert not ecdsa_verify(OWNER_PRIV.public_key(), b"something else", r, s)

    def test_wrong_key(self):
        r, s = parse_signature(ecdsa_sign(OWNER_PRIV, MSG))
        assert not ecdsa_verify(USER_PRIV.public_key(), MSG.encode(), r, s)

    def test_non_positive_components(self):
        assert not ecdsa_verify(OWNER_PRIV.public_key(), MSG.encode(), 0, 5)
        assert not ecdsa_verify(OWNER_PRIV.public_key(), MSG.encode(), 5, -1)

    def test_empty_message(self):
        r, s = parse_signature(ecdsa_sign(OWNER_PRIV, ""))
        assert ecdsa_verify(OWNER_PRIV.public_key(), b"", r, s)

    def test_message_is_not_hashed(self):
        """Only the leading order-length bytes of a raw message are signed."""
        head = "x" * 32
        r, s = parse_signature(ecdsa_sign(OWNER_PRIV, head + "first tail"))
        assert ecdsa_verify(OWNER_PRIV.public_key(), (head + "other tail").encode(), r, s)

    def test_short_messages_differ(self):
        r, s = parse_signature(ecdsa_sign(OWNER_PRIV, "abc"))
        assert not ecdsa_verify(OWNER_PRIV.public_key(), b"abd", r, s)

    @pytest.mark.parametrize("curve", [ec.SECP256K1(), ec.SECP384R1(), ec.SECP521R1()])
    def test_other_curves(self, curve):
        priv, key_id = generate_ecdsa_keypair(curve)
        sig = ecdsa_sign(priv, MSG)
        assert verify_signatures(MSG, [key_id], [sig])

    def test_p521_long_message_unsupported(self):
        priv, key_id = generate_ecdsa_keypair(ec.SECP521R1())
        with pytest.raises(ValueError):
            ecdsa_sign(priv, "x" * 100)

    def test_bytes_message(self):
        sig = ecdsa_sign(OWNER_PRIV, MSG.encode())
        assert verify_signatures(MSG, [OWNER_KEY], [sig])


# ---- Dual-signature verification ----

class TestVerifySignatures:
    def test_both_valid(self):
        sigs = [ecdsa_sign(OWNER_PRIV, MSG), ecdsa_sign(USER_PRIV, MSG)]
        assert verify_signatures(MSG, [OWNER_KEY, USER_KEY], sigs)

    def test_length_mismatch(self):
        assert not verify_signatures(MSG, [OWNER_KEY, USER_KEY], [ecdsa_sign(OWNER_PRIV, MSG)])

    def test_empty_lists(self):
        assert not verify_signatures(MSG, [], [])
        assert not verify_signatures(MSG, [], [], require_all=True)

    def test_malformed_key_fails_even_if_last_valid(self):
        sigs = [ecdsa_sign(OWNER_PRIV, MSG), ecdsa_sign(USER_PRIV, MSG)]
        assert not verify_signatures(MSG, ["garbage", USER_KEY], sigs)

    def test_signature_without_pair_fails_even_if_last_valid(self):
        assert not verify_signatures(MSG, [OWNER_KEY, USER_KEY],
                                     ["nocomma", ecdsa_sign(USER_PRIV, MSG)])

    def test_non_numeric_pair_masked_by_valid_last(self):
        sigs = ["abc,def", ecdsa_sign(USER_PRIV, MSG)]
        assert verify_signatures(MSG, [OWNER_KEY, USER_KEY], sigs)
        assert not verify_signatures(MSG, [OWNER_KEY, USER_KEY], sigs, require_all=True)

    def test_non_numeric_last_pair_fails(self):
        sigs = [ecdsa_sign(OWNER_PRIV, MSG), "abc,def"]
        assert not verify_signatures(MSG, [OWNER_KEY, USER_KEY], sigs)

    def test_octal_encoded_signature_accepted(self):
        r, s = parse_signature(ecdsa_sign(USER_PRIV, MSG))
        assert verify_signatures(MSG, [USER_KEY], [f"0{r:o},0{s:o}"])

    def test_non_ec_key_fails(self):
        assert not verify_signatures(MSG, [_ed25519_key_id()], ["1,2"])

    def test_hex_encoded_signature_accepted(self):
        r, s = parse_signature(ecdsa_sign(USER_PRIV, MSG))
        assert verify_signatures(MSG, [USER_KEY], [f"{hex(r)},{hex(s)}"])

    def test_last_pair_decides_by_default(self):
        """A wrong owner signature is masked by a valid user signature."""
        sigs = [ecdsa_sign(OTHER_PRIV, MSG), ecdsa_sign(USER_PRIV, MSG)]
        assert verify_signatures(MSG, [OWNER_KEY, USER_KEY], sigs)

    def test_invalid_last_pair_fails_by_default(self):
        sigs = [ecdsa_sign(OWNER_PRIV, MSG), ecdsa_sign(OTHER_PRIV, MSG)]
        assert not verify_signatures(MSG, [OWNER_KEY, USER_KEY], sigs)

    def test_require_all_rejects_masked_signature(self):
        sigs = [ecdsa_sign(OTHER_PRIV, MSG), ecdsa_sign(USER_PRIV, MSG)]
        assert not verify_signatures(MSG, [OWNER_KEY, USER_KEY], sigs, require_all=True)

    def test_require_all_accepts_both_valid(self):
        sigs = [ecdsa_sign(OWNER_PRIV, MSG), ecdsa_sign(USER_PRIV, MSG)]
        assert verify_signatures(MSG, [OWNER_KEY, USER_KEY], sigs, require_all=True)


class TestCanonicalJSON:
    def test_sorted_compact(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'
