import logging

import pytest

from messenger.core.crypto import (
    DECRYPTION_PLACEHOLDER,
    MessageCipher,
    MissingEncryptionKey,
    build_cipher,
    decrypt_message,
    encrypt_message,
)


@pytest.mark.parametrize("plaintext", ["hello", "", "안녕하세요 👋", "x" * 4000, "line1\nline2\t%_"])
def test_round_trip(plaintext):
    cipher = MessageCipher("secret")
    assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext


def test_encryption_is_not_deterministic():
    cipher = MessageCipher("secret")
    first, second = cipher.encrypt("same text"), cipher.encrypt("same text")
    assert first != second
    assert "same text" not in first


def test_corrupted_ciphertext_returns_placeholder():
    cipher = MessageCipher("secret")
    token = cipher.encrypt("hello")
    assert cipher.decrypt(token[:-4] + "abcd") == DECRYPTION_PLACEHOLDER
    assert cipher.decrypt("not-a-token") == DECRYPTION_PLACEHOLDER
    assert cipher.decrypt("한글") == DECRYPTION_PLACEHOLDER


def test_wrong_key_returns_placeholder():
    token = MessageCipher("key-a").encrypt("hello")
    assert MessageCipher("key-b").decrypt(token) == DECRYPTION_PLACEHOLDER


def test_none_passes_through():
    assert MessageCipher("secret").decrypt(None) is None


def test_missing_key_is_fatal_when_required():
    with pytest.raises(MissingEncryptionKey):
        build_cipher(secret="", require_key=True)


def test_missing_key_falls_back_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="messenger.core.crypto"):
        cipher = build_cipher(secret="", require_key=False)
    assert "CHAT_ENCRYPTION_KEY" in caplog.text
    assert cipher.decrypt(cipher.encrypt("fallback")) == "fallback"


def test_module_helpers_use_configured_key():
    assert decrypt_message(encrypt_message("configured")) == "configured"
