"""Tests for calbridge.signing."""

from __future__ import annotations

import base64
import json

import pytest

from calbridge.signing import SignatureError, Signer

pytestmark = pytest.mark.unit

SECRET = "0123456789abcdef0123456789abcdef"


class TestSigner:
    def test_payload_survives_signing(self):
        signer = Signer(SECRET)
        assert signer.verify(signer.sign({"sub": "t1", "n": 3})) == {"sub": "t1", "n": 3}

    def test_header_is_hs256(self):
        header = Signer(SECRET).sign({}).split(".")[0]
        decoded = json.loads(base64.urlsafe_b64decode(header + "=" * (-len(header) % 4)))
        assert decoded == {"alg": "HS256", "typ": "JWT"}

    def test_wrong_secret_is_rejected(self):
        token = Signer(SECRET).sign({"sub": "t1"})
        with pytest.raises(SignatureError, match="signature"):
            Signer("another-secret").verify(token)

    def test_modified_body_is_rejected(self):
        signer = Signer(SECRET)
        header, _, signature = signer.sign({"sub": "t1"}).split(".")
        body = base64.urlsafe_b64encode(b'{"sub":"t2"}').rstrip(b"=").decode()
        with pytest.raises(SignatureError):
            signer.verify(f"{header}.{body}.{signature}")

    def test_alg_none_header_is_rejected(self):
        signer = Signer(SECRET)
        _, body, signature = signer.sign({"sub": "t1"}).split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none"}').rstrip(b"=").decode()
        with pytest.raises(SignatureError, match="header"):
            signer.verify(f"{header}.{body}.{signature}")

    @pytest.mark.parametrize("token", ["", "a.b", "a.b.c.d"])
    def test_malformed_tokens(self, token):
        with pytest.raises(SignatureError):
            Signer(SECRET).verify(token)

    def test_expiry_is_enforced(self):
        signer = Signer(SECRET)
        token = signer.sign({"exp": 1_000})
        assert signer.verify(token, now=1_000) == {"exp": 1_000}
        with pytest.raises(SignatureError, match="expired"):
            signer.verify(token, now=1_001)

    def test_leeway_extends_expiry(self):
        signer = Signer(SECRET, leeway_s=30)
        assert signer.verify(signer.sign({"exp": 1_000}), now=1_020)

    def test_non_numeric_exp_is_rejected(self):
        signer = Signer(SECRET)
        with pytest.raises(SignatureError):
            signer.verify(signer.sign({"exp": "tomorrow"}))

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            Signer("")

    def test_repr_hides_secret(self):
        assert SECRET not in repr(Signer(SECRET))
