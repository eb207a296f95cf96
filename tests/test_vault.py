import base64

import pytest

from paydesk.errors import AuthenticationFailure, VaultKeyError
from paydesk.services import vault
from paydesk.services.vault import Vault, SALT_LENGTH, NONCE_LENGTH

KEY_A = "YWFh" * 10 + "YWE="   # 32 x "a"
KEY_B = "YmJi" * 10 + "YmI="   # 32 x "b"
KEY_SHORT = "YWFh" * 5 + "YQ=="  # 16 bytes


def _flip(blob: str, index: int) -> str:
    raw = bytearray(base64.b64decode(blob))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


def test_round_trip_and_fresh_salt_nonce():
    v = Vault(KEY_A)
    a = v.encrypt("jane@example.com")
    b = v.encrypt("jane@example.com")
    assert a != b
    assert v.decrypt(a) == "jane@example.com"
    assert v.decrypt(b) == "jane@example.com"
    # unicode survives
    assert v.decrypt(v.encrypt("Café – 東京")) == "Café – 東京"

def test_empty_input_is_a_noop():
    v = Vault(KEY_A)
    assert v.encrypt("") == ""
    assert v.decrypt("") == ""

@pytest.mark.parametrize("region", ["ciphertext", "tag", "salt", "nonce"])
def test_tampered_blob_fails_authentication(region):
    v = Vault(KEY_A)
    blob = v.encrypt("555-0100")
    index = {
        "salt": 0,
        "nonce": SALT_LENGTH,
        "tag": SALT_LENGTH + NONCE_LENGTH,
        "ciphertext": -1,
    }[region]
    with pytest.raises(AuthenticationFailure):
        v.decrypt(_flip(blob, index))

def test_wrong_key_fails_authentication():
    blob = Vault(KEY_A).encrypt("secret")
    with pytest.raises(AuthenticationFailure):
        Vault(KEY_B).decrypt(blob)

def test_malformed_blob_fails_authentication():
    with pytest.raises(AuthenticationFailure):
        Vault(KEY_A).decrypt("not base64 at all!")
    with pytest.raises(AuthenticationFailure):
        Vault(KEY_A).decrypt(base64.b64encode(b"short").decode())

@pytest.mark.parametrize("key", [None, "", "not-a-key!!", KEY_SHORT])
def test_bad_key_refuses_every_operation(key):
    with pytest.raises(VaultKeyError):
        Vault(key)

@pytest.mark.parametrize("value", [
    "jane@example.com",
    "plain text with spaces",
    "aGVsbG8=",          # valid base64, far too short for a blob
    "",
    None,
])
def test_safe_decrypt_is_identity_on_non_blobs(value):
    assert Vault(KEY_A).safe_decrypt(value) == value

def test_safe_decrypt_returns_stored_value_on_tamper():
    v = Vault(KEY_A)
    tampered = _flip(v.encrypt("hello"), -1)
    assert v.safe_decrypt(tampered) == tampered
    assert v.safe_decrypt(v.encrypt("hello")) == "hello"

def test_is_encrypted_framing():
    blob = Vault(KEY_A).encrypt("x")
    assert vault.is_encrypted(blob)
    assert not vault.is_encrypted("x")
    assert not vault.is_encrypted(None)
    assert not vault.is_encrypted(base64.b64encode(b"\0" * 44).decode())

def test_secure_hash_is_keyed_and_deterministic():
    a = Vault(KEY_A)
    assert a.secure_hash("jane@example.com") == a.secure_hash("jane@example.com")
    assert a.secure_hash("jane@example.com") != Vault(KEY_B).secure_hash("jane@example.com")
    assert len(a.secure_hash("x")) == 64

def test_secure_compare_and_tokens():
    assert vault.secure_compare("abc", "abc")
    assert not vault.secure_compare("abc", "abd")
    assert not vault.secure_compare("abc", "abcd")
    assert not vault.secure_compare("abc", None)

    token = vault.generate_secure_token(16)
    assert len(token) == 32
    int(token, 16)
    assert vault.generate_secure_token() != vault.generate_secure_token()

def test_generated_key_is_usable():
    key = vault.generate_key()
    assert len(base64.b64decode(key)) == 32
    v = Vault(key)
    assert v.decrypt(v.encrypt("ok")) == "ok"

def test_app_bound_helpers_use_configured_key(app):
    with app.app_context():
        assert vault.is_configured()
        blob = vault.encrypt("555-0199")
        assert vault.decrypt(blob) == "555-0199"
        assert vault.safe_decrypt(blob) == "555-0199"

def test_safe_decrypt_without_key(app, monkeypatch):
    with app.app_context():
        blob = vault.encrypt("legacy")
        monkeypatch.setitem(app.config, "ENCRYPTION_KEY", None)
        assert not vault.is_configured()
        # plaintext never needs a key
        assert vault.safe_decrypt("legacy plaintext") == "legacy plaintext"
        # the read path hands back the stored blob; writes still refuse
        assert vault.safe_decrypt(blob) == blob
        with pytest.raises(VaultKeyError):
            vault.encrypt("anything")
