"""
Key pair generation and raw signature primitives.
"""
import logging
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from ..errors import ConfigurationError


PrivateKey = Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]
PublicKey = Union[ec.EllipticCurvePublicKey, rsa.RSAPublicKey]

ECDSA_256 = "ecdsa256"
RSA_2048 = "rsa2048"
SUPPORTED_ALGORITHMS = (ECDSA_256, RSA_2048)


@dataclass(frozen=True)
class KeyPair:
    """An asymmetric key pair."""
    private_key: PrivateKey
    public_key: PublicKey
    algorithm: str

    @classmethod
    def from_private_key(cls, private_key: PrivateKey) -> 'KeyPair':
        """Wrap an existing private key."""
        if isinstance(private_key, rsa.RSAPrivateKey):
            algorithm = RSA_2048
        elif isinstance(private_key, ec.EllipticCurvePrivateKey):
            algorithm = ECDSA_256
        else:
            raise ConfigurationError(f"Unsupported private key type: {type(private_key).__name__}")
        return cls(private_key, private_key.public_key(), algorithm)


class KeyPairFactory:
    """Generates key pairs and signs or verifies raw data with them."""

    def __init__(self, rsa_key_size: int = 2048):
        self.rsa_key_size = rsa_key_size
        self.logger = logging.getLogger(__name__)

    def generate(self, algorithm: str = ECDSA_256) -> KeyPair:
        """
        Generate a fresh key pair.

        Args:
            algorithm: ``"ecdsa256"`` (NIST P-256) or ``"rsa2048"``

        Returns:
            KeyPair holding both halves

        Raises:
            ConfigurationError: If the algorithm is unknown
        """
        if algorithm == ECDSA_256:
            private_key = ec.generate_private_key(ec.SECP256R1())
        elif algorithm == RSA_2048:
            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=self.rsa_key_size
            )
        else:
            raise ConfigurationError(
                f"Unknown key algorithm '{algorithm}', expected one of {SUPPORTED_ALGORITHMS}"
            )

        self.logger.debug(f"Generated {algorithm} key pair")
        return KeyPair(private_key, private_key.public_key(), algorithm)


def sign(private_key: PrivateKey, data: bytes) -> bytes:
    """Sign data with SHA-256 using the scheme matching the key type."""
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    return private_key.sign(data, ec.ECDSA(hashes.SHA256()))


def verify(public_key: PublicKey, signature: bytes, data: bytes,
           hash_algorithm: hashes.HashAlgorithm = None) -> bool:
    """Return True if signature over data is valid for public_key."""
    hash_algorithm = hash_algorithm or hashes.SHA256()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hash_algorithm)
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(hash_algorithm))
        else:
            return False
    except InvalidSignature:
        return False
    return True


def public_key_bytes(public_key: PublicKey) -> bytes:
    """DER SubjectPublicKeyInfo encoding, used to compare keys."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


def public_keys_match(first: PublicKey, second: PublicKey) -> bool:
    """Check whether two public keys are the same key."""
    return public_key_bytes(first) == public_key_bytes(second)
