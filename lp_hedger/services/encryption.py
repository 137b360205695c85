"""Fernet encryption for exchange private keys at rest."""

from cryptography.fernet import Fernet, InvalidToken

from lp_hedger.config import settings

_fernet: Fernet | None = None


class CredentialDecryptError(Exception):
    """Stored key cannot be decrypted with the configured LPH_ENCRYPTION_KEY."""


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        key = settings.encryption_key
        if not key:
            raise RuntimeError(
                "LPH_ENCRYPTION_KEY not set. Generate one with: "
                "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        _fernet = Fernet(key.encode())
    return _fernet


def encrypt(plaintext: str) -> str:
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        raise CredentialDecryptError("Stored credential does not match LPH_ENCRYPTION_KEY") from e
