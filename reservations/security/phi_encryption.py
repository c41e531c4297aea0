"""
PHI encryption for patient identity.

The patient's name and contact details are encrypted with Fernet (AES-128-CBC
+ HMAC-SHA256) before they are written to a reservation draft or a durable
appointment. Plaintext only exists in memory for the duration of a request.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from reservations.models.booking import PatientIdentity

logger = logging.getLogger(__name__)


class PHIDecryptionError(Exception):
    """Raised when ciphertext cannot be decrypted with the configured key."""


class PatientIdentityCipher:
    """
    Encrypt/decrypt PatientIdentity blobs.

    Usage:
        cipher = PatientIdentityCipher(settings.PHI_ENCRYPTION_KEY)
        token = cipher.encrypt(PatientIdentity(name="Ana", phone="+15551234567"))
        identity = cipher.decrypt(token)
    """

    def __init__(self, key: str):
        if not key:
            raise RuntimeError("PHI_ENCRYPTION_KEY not configured. Set the environment variable before starting the service.")

        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as exc:
            raise RuntimeError("Invalid PHI_ENCRYPTION_KEY value; expected a urlsafe base64 Fernet key") from exc

    def encrypt(self, identity: PatientIdentity) -> str:
        return self._fernet.encrypt(identity.model_dump_json().encode()).decode()

    def decrypt(self, token: str) -> PatientIdentity:
        try:
            payload = self._fernet.decrypt(token.encode())
        except InvalidToken as exc:
            # Never log the token itself
            logger.error("Failed to decrypt patient identity (invalid token or wrong key)")
            raise PHIDecryptionError("Patient identity could not be decrypted") from exc

        return PatientIdentity.model_validate_json(payload)
