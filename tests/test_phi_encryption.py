"""
Tests for patient identity encryption
"""

import pytest
from cryptography.fernet import Fernet

from reservations.models.booking import PatientIdentity
from reservations.security.phi_encryption import PatientIdentityCipher, PHIDecryptionError


class TestPatientIdentityCipher:

    def test_encrypt_hides_identity(self, cipher, patient):
        token = cipher.encrypt(patient)

        assert "Maria" not in token
        assert "5551234567" not in token
        assert cipher.decrypt(token) == patient

    def test_email_only_identity(self, cipher):
        identity = PatientIdentity(name="Joao", email="joao@example.com")

        decrypted = cipher.decrypt(cipher.encrypt(identity))
        assert decrypted.contact_channel == "email"
        assert decrypted.contact_identifier == "joao@example.com"

    def test_wrong_key_cannot_decrypt(self, cipher, patient):
        token = cipher.encrypt(patient)
        other = PatientIdentityCipher(Fernet.generate_key().decode())

        with pytest.raises(PHIDecryptionError):
            other.decrypt(token)

    def test_tampered_token(self, cipher, patient):
        token = cipher.encrypt(patient)
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

        with pytest.raises(PHIDecryptionError):
            cipher.decrypt(tampered)

    def test_missing_key(self):
        with pytest.raises(RuntimeError, match="not configured"):
            PatientIdentityCipher("")

    def test_malformed_key(self):
        with pytest.raises(RuntimeError, match="Invalid PHI_ENCRYPTION_KEY"):
            PatientIdentityCipher("not-a-fernet-key")


class TestPatientIdentity:

    def test_contact_is_required(self):
        with pytest.raises(ValueError):
            PatientIdentity(name="Nobody")

    def test_phone_preferred_and_normalized(self):
        identity = PatientIdentity(name="Ana", phone=" +1555 ", email="Ana@Example.com")

        assert identity.contact_identifier == "+1555"
        assert identity.contact_channel == "sms"
