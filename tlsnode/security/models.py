"""
Security models for certificate chains, node identities and handshakes.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes

if TYPE_CHECKING:
    from .held_certificate import HeldCertificate


CertificateChain = Tuple[x509.Certificate, ...]


@dataclass(frozen=True)
class SelfSigned:
    """Signer reference for a certificate signed with its own key."""


@dataclass(frozen=True)
class IssuedBy:
    """Signer reference for a certificate signed by another certificate's key."""
    issuer_name: x509.Name
    # None when the issuer is not held in-process (decoded certificates)
    issuer: Optional['HeldCertificate'] = None


@dataclass(frozen=True)
class NodeIdentity:
    """A private key plus the leaf-first chain it proves ownership of."""
    private_key: Any
    chain: CertificateChain

    @property
    def leaf(self) -> x509.Certificate:
        return self.chain[0]


@dataclass(frozen=True)
class Handshake:
    """Snapshot of a completed TLS handshake."""
    tls_version: str
    cipher_suite: str
    peer_certificates: CertificateChain
    local_certificates: CertificateChain

    @property
    def peer_principal(self) -> Optional[x509.Name]:
        """Subject of the peer's leaf certificate, if it presented one."""
        return self.peer_certificates[0].subject if self.peer_certificates else None

    @property
    def local_principal(self) -> Optional[x509.Name]:
        """Subject of the local leaf certificate, if one was presented."""
        return self.local_certificates[0].subject if self.local_certificates else None


@dataclass
class CertificateInfo:
    """Information about a certificate."""
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    is_valid: bool
    is_certificate_authority: bool
    max_intermediate_cas: Optional[int]
    fingerprint: str

    @classmethod
    def from_certificate(cls, cert: x509.Certificate) -> 'CertificateInfo':
        """Extract information from a certificate."""
        now = datetime.now(timezone.utc)
        not_before = cert.not_valid_before_utc
        not_after = cert.not_valid_after_utc

        try:
            constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
            is_ca = constraints.ca
            path_length = constraints.path_length if constraints.ca else None
        except x509.ExtensionNotFound:
            is_ca = False
            path_length = None

        return cls(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial_number=str(cert.serial_number),
            not_before=not_before,
            not_after=not_after,
            is_valid=not_before <= now <= not_after,
            is_certificate_authority=is_ca,
            max_intermediate_cas=path_length,
            fingerprint=cert.fingerprint(hashes.SHA256()).hex()
        )
