"""
Cryptographic Signing

Uses Ed25519 for every signature in the registry:
- attestation signatures an actor hands to a facilitator
- caller proofs on API commands

An actor's address IS their verify key: "0x" followed by the 64 hex
characters of the 32-byte Ed25519 public key. Verifying a signature for
an address therefore needs no separate key registry.
"""

import base64
import re
from typing import Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .hasher import Hasher


ADDRESS_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")


class Signer:
    """Ed25519 signing and verification bound to registry addresses."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, address)
        """
        signing_key = SigningKey.generate()
        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        return private_b64, Signer.address_for_verify_key(bytes(signing_key.verify_key))

    @staticmethod
    def address_for_verify_key(verify_key: bytes) -> str:
        return "0x" + verify_key.hex()

    @staticmethod
    def address_from_private_key(private_key_b64: str) -> str:
        """Derive the address that a private key signs for."""
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        return Signer.address_for_verify_key(bytes(signing_key.verify_key))

    @staticmethod
    def is_address(value: str) -> bool:
        return isinstance(value, str) and ADDRESS_PATTERN.match(value.lower()) is not None

    @staticmethod
    def normalize_address(value: str) -> str:
        """
        Lowercase an address and check its shape.

        Raises:
            ValueError: If value is not "0x" + 64 hex characters
        """
        if not Signer.is_address(value):
            raise ValueError(
                f"Invalid address {value!r}: expected '0x' followed by 64 hex characters"
            )
        return value.lower()

    @staticmethod
    def _verify_key_for(address: str) -> VerifyKey:
        return VerifyKey(bytes.fromhex(Signer.normalize_address(address)[2:]))

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        """
        Sign a raw string (typically a request hash).

        Returns:
            Base64-encoded signature
        """
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        signed = signing_key.sign(message.encode("utf-8"))
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify(message: str, signature_b64: str, address: str) -> bool:
        """
        Verify a raw-string signature against an address.

        Returns:
            True if signature is valid, False otherwise
        """
        try:
            verify_key = Signer._verify_key_for(address)
            signature_bytes = base64.b64decode(signature_b64, validate=True)
            verify_key.verify(message.encode("utf-8"), signature_bytes)
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False

    @staticmethod
    def sign_personal_message(message: str, private_key_b64: str) -> str:
        """
        Produce an attestation signature over the prefixed message digest.

        This is what an actor hands to a facilitator so the facilitator
        can register on their behalf.
        """
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        signed = signing_key.sign(Hasher.personal_message_digest(message))
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify_personal_message(signer: str, message: str, signature_b64: str) -> bool:
        """
        Check that signer authored message.

        Args:
            signer: Address expected to have signed
            message: The attestation message, exactly as signed
            signature_b64: Base64-encoded Ed25519 signature

        Returns:
            True only if the signature was made by signer's key over the
            prefixed digest of message
        """
        try:
            verify_key = Signer._verify_key_for(signer)
            signature_bytes = base64.b64decode(signature_b64, validate=True)
            verify_key.verify(Hasher.personal_message_digest(message), signature_bytes)
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False
