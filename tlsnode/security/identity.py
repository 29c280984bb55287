"""
Node identity: a private key and the certificate chain it presents.
"""
import logging
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from ..errors import ConfigurationError
from .held_certificate import HeldCertificate, basic_constraints, signature_valid
from .key_pairs import public_keys_match
from .models import CertificateChain, NodeIdentity


logger = logging.getLogger(__name__)

IDENTITY_ALIAS = "private"


class IdentityConfig:
    """Accumulates at most one (private key, chain) pair."""

    def __init__(self):
        self._private_key = None
        self._chain: Optional[CertificateChain] = None

    def held_certificate(self, held: HeldCertificate, *intermediates: x509.Certificate) -> 'IdentityConfig':
        """Present held's certificate followed by intermediates, in that order."""
        if not isinstance(held, HeldCertificate):
            raise ConfigurationError("held_certificate() requires a HeldCertificate")
        return self.identity(held.key_pair.private_key, (held.certificate,) + tuple(intermediates))

    def identity(self, private_key, chain: Sequence[x509.Certificate]) -> 'IdentityConfig':
        if self._chain is not None:
            raise ConfigurationError("An identity has already been configured")
        self._private_key = private_key
        self._chain = tuple(chain)
        return self

    def build(self) -> Optional[NodeIdentity]:
        """
        Validate and freeze the configured identity.

        Returns:
            NodeIdentity, or None if no identity was configured

        Raises:
            ConfigurationError: If the key does not match the leaf or the chain is malformed
        """
        if self._chain is None:
            return None
        identity = NodeIdentity(self._private_key, self._chain)
        validate_identity(identity)
        return identity


def validate_identity(identity: NodeIdentity):
    """
    Check that identity's chain is well formed and its leaf certifies its private key.

    Raises:
        ConfigurationError: If the key does not match the leaf or the chain is malformed
    """
    if not hasattr(identity.private_key, "public_key"):
        raise ConfigurationError(f"Unsupported private key type: {type(identity.private_key).__name__}")
    validate_chain(identity.chain)
    leaf = identity.leaf
    if not public_keys_match(leaf.public_key(), identity.private_key.public_key()):
        logger.error(f"Private key does not match leaf {leaf.subject.rfc4514_string()}")
        raise ConfigurationError("Private key does not match the leaf certificate's public key")


def validate_chain(chain: Sequence[x509.Certificate]):
    """
    Check that chain is leaf first, each element signed by the next.

    Raises:
        ConfigurationError: Empty chain, repeated certificate, non-CA in a
            non-leaf position or broken issuer link
    """
    if not chain:
        raise ConfigurationError("Certificate chain must not be empty")

    seen = set()
    for index, cert in enumerate(chain):
        if not isinstance(cert, x509.Certificate):
            raise ConfigurationError(f"Chain element {index} is not an x509.Certificate")
        der = cert.public_bytes(serialization.Encoding.DER)
        if der in seen:
            raise ConfigurationError(f"Chain contains a cycle at element {index}")
        seen.add(der)

    for index in range(1, len(chain)):
        child, issuer = chain[index - 1], chain[index]
        is_ca, _ = basic_constraints(issuer)
        if not is_ca:
            raise ConfigurationError(
                f"Chain element {index} ({issuer.subject.rfc4514_string()}) is not a certificate authority"
            )
        if child.issuer != issuer.subject or not signature_valid(child, issuer.public_key()):
            raise ConfigurationError(
                f"Chain element {index - 1} is not signed by element {index}"
            )


class KeyManager:
    """Looks up the node identity by alias. There is a single alias, ``"private"``."""

    def __init__(self, identity: Optional[NodeIdentity]):
        self._identity = identity

    def aliases(self) -> List[str]:
        return [IDENTITY_ALIAS] if self._identity is not None else []

    def get_private_key(self, alias: str):
        if alias != IDENTITY_ALIAS or self._identity is None:
            return None
        return self._identity.private_key

    def get_certificate_chain(self, alias: str) -> Optional[CertificateChain]:
        if alias != IDENTITY_ALIAS or self._identity is None:
            return None
        return self._identity.chain
