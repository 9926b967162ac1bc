"""Tests for the AES-GCM envelope cipher."""
import base64

import pytest

from parley.envelope.cipher import NONCE_SIZE, TAG_SIZE, EnvelopeCipher, derive_key
from parley.errors import DecryptionError


@pytest.fixture
def cipher():
    return EnvelopeCipher("unit-test-secret")


class TestEnvelopeCipher:

    def test_round_trip_preserves_nested_json(self, cipher):
        value = {"chatId": "c1", "userIds": ["a", "b"], "page": {"limit": 10}, "ok": True, "x": None}
        assert cipher.decrypt(cipher.encrypt(value)) == value

    def test_round_trip_scalars(self, cipher):
        for value in ("héllo", 42, 1.5, None, [1, "two"]):
            assert cipher.decrypt(cipher.encrypt(value)) == value

    def test_same_value_encrypts_differently(self, cipher):
        assert cipher.encrypt({"a": 1}) != cipher.encrypt({"a": 1})

    def test_token_is_urlsafe_and_carries_nonce_and_tag(self, cipher):
        token = cipher.encrypt({})
        raw = base64.urlsafe_b64decode(token)
        assert len(raw) == NONCE_SIZE + len(b"{}") + TAG_SIZE
        assert "+" not in token and "/" not in token

    def test_tampered_token_is_rejected(self, cipher):
        raw = bytearray(base64.urlsafe_b64decode(cipher.encrypt({"secret": "value"})))
        raw[-1] ^= 0x01
        tampered = base64.urlsafe_b64encode(bytes(raw)).decode("ascii")
        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered)

    def test_other_key_is_rejected(self, cipher):
        token = EnvelopeCipher("some-other-secret").encrypt({"a": 1})
        with pytest.raises(DecryptionError):
            cipher.decrypt(token)

    @pytest.mark.parametrize("token", ["", "not base64 !!", "c2hvcnQ=", None, 123])
    def test_garbage_is_rejected(self, cipher, token):
        with pytest.raises(DecryptionError):
            cipher.decrypt(token)

    def test_error_message_never_leaks_plaintext(self, cipher):
        token = EnvelopeCipher("other").encrypt({"password": "hunter2"})
        with pytest.raises(DecryptionError) as exc_info:
            cipher.decrypt(token)
        assert "hunter2" not in str(exc_info.value)
        assert exc_info.value.message == "Invalid encrypted payload"
        assert exc_info.value.status_code == 400

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            EnvelopeCipher("")

    def test_derive_key_is_256_bits(self):
        assert len(derive_key("anything")) == 32
        assert derive_key("a") != derive_key("b")
