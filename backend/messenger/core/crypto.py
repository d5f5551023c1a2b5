# backend/messenger/core/crypto.py
import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from messenger.core import config

logger = logging.getLogger(__name__)

DECRYPTION_PLACEHOLDER = "[Encrypted Message]"


class MissingEncryptionKey(RuntimeError):
    pass


def derive_fernet_key(secret: str) -> bytes:
    """임의 길이의 비밀 문자열을 Fernet 키(32바이트, urlsafe base64)로 변환합니다."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class MessageCipher:
    """
    메시지 본문 저장용 대칭 암호화 코덱.

    - encrypt: 매 호출마다 IV가 달라 같은 평문도 다른 암호문이 됩니다.
    - decrypt: 실패 시 예외 대신 placeholder 문자열을 반환합니다.
    """

    def __init__(self, secret: str):
        self._fernet = Fernet(derive_fernet_key(secret))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if ciphertext is None:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError) as e:
            logger.warning(f"[Crypto] 메시지 복호화 실패: {type(e).__name__}")
            return DECRYPTION_PLACEHOLDER


def build_cipher(secret: Optional[str] = None, require_key: Optional[bool] = None) -> MessageCipher:
    if secret is None:
        secret = config.CHAT_ENCRYPTION_KEY
    if require_key is None:
        require_key = config.CHAT_REQUIRE_ENCRYPTION_KEY

    if not secret:
        if require_key:
            raise MissingEncryptionKey(
                "CHAT_ENCRYPTION_KEY is not set. Set it in the environment or .env file."
            )
        logger.warning("[Crypto] CHAT_ENCRYPTION_KEY 미설정: 기본 키를 사용합니다. 운영 환경에서는 반드시 설정하세요.")
        secret = config.DEFAULT_CHAT_ENCRYPTION_KEY
    return MessageCipher(secret)


_cipher: Optional[MessageCipher] = None


def get_cipher() -> MessageCipher:
    global _cipher
    if _cipher is None:
        _cipher = build_cipher()
    return _cipher


def encrypt_message(text: str) -> str:
    return get_cipher().encrypt(text)


def decrypt_message(encrypted_text: Optional[str]) -> Optional[str]:
    return get_cipher().decrypt(encrypted_text)
