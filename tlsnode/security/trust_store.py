"""
Trust anchors and peer chain verification.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from ..errors import ConfigurationError, HandshakeError, UntrustedChainError
from .held_certificate import basic_constraints, signature_valid
from .models import CertificateChain


logger = logging.getLogger(__name__)


class TrustAnchorSet:
    """Immutable set of certificates accepted as chain termini."""

    def __init__(self, certificates: Iterable[x509.Certificate] = ()):
        anchors = {}
        for cert in certificates:
            anchors.setdefault(cert.public_bytes(serialization.Encoding.DER), cert)
        self._anchors = anchors

    def __contains__(self, cert: x509.Certificate) -> bool:
        return cert.public_bytes(serialization.Encoding.DER) in self._anchors

    def __iter__(self) -> Iterator[x509.Certificate]:
        return iter(self._anchors.values())

    def __len__(self) -> int:
        return len(self._anchors)

    def __eq__(self, other) -> bool:
        if not isinstance(other, TrustAnchorSet):
            return NotImplemented
        return self._anchors.keys() == other._anchors.keys()

    def __hash__(self) -> int:
        return hash(frozenset(self._anchors))

    def __repr__(self) -> str:
        subjects = [c.subject.rfc4514_string() for c in self]
        return f"TrustAnchorSet({subjects})"

    def find_issuer(self, cert: x509.Certificate) -> Optional[x509.Certificate]:
        """Return the anchor that signed cert, if any."""
        for anchor in self:
            if anchor.subject == cert.issuer and signature_valid(cert, anchor.public_key()):
                return anchor
        return None

    def to_pem(self) -> str:
        """All anchors as concatenated PEM, e.g. for ``ssl.SSLContext.load_verify_locations``."""
        return "".join(c.public_bytes(serialization.Encoding.PEM).decode() for c in self)


class TrustStoreConfig:
    """Accumulates trusted root certificates."""

    def __init__(self):
        self._certificates: List[x509.Certificate] = []

    def add_trusted_certificate(self, certificate: x509.Certificate) -> 'TrustStoreConfig':
        if not isinstance(certificate, x509.Certificate):
            raise ConfigurationError(
                f"Trusted certificates must be x509.Certificate, got {type(certificate).__name__}"
            )
        self._certificates.append(certificate)
        return self

    def build(self) -> TrustAnchorSet:
        return TrustAnchorSet(self._certificates)


class ChainVerifier:
    """Verifies leaf-first certificate chains against a set of trust anchors."""

    def __init__(self, trust_anchors: TrustAnchorSet):
        self.trust_anchors = trust_anchors

    def accepted_issuers(self) -> CertificateChain:
        return tuple(self.trust_anchors)

    def verify(self, chain: Sequence[x509.Certificate], now: Optional[datetime] = None) -> CertificateChain:
        """
        Walk the chain from the leaf towards a trust anchor.

        Args:
            chain: Certificates as presented, leaf first
            now: Time to check validity windows against, defaults to now

        Returns:
            The trusted path, leaf first, ending with the anchor

        Raises:
            UntrustedChainError: Unknown issuer, broken signature, non-CA
                issuer or path length violation
            HandshakeError: A certificate is outside its validity window
        """
        if not chain:
            raise UntrustedChainError("Peer presented no certificates")

        now = now or datetime.now(timezone.utc)
        path: List[x509.Certificate] = []

        for index, cert in enumerate(chain):
            self._check_validity(cert, now)
            path.append(cert)

            if cert in self.trust_anchors:
                return tuple(path)

            if index + 1 < len(chain):
                issuer = chain[index + 1]
                if issuer.subject != cert.issuer:
                    raise UntrustedChainError(
                        f"{_name(cert)} was issued by {cert.issuer.rfc4514_string()}, "
                        f"not by {_name(issuer)}"
                    )
            else:
                issuer = self.trust_anchors.find_issuer(cert)
                if issuer is None:
                    raise UntrustedChainError(f"No trusted issuer for {_name(cert)}")

            if not signature_valid(cert, issuer.public_key()):
                raise UntrustedChainError(f"Signature of {_name(cert)} does not verify with {_name(issuer)}")

            is_ca, path_length = basic_constraints(issuer)
            if not is_ca:
                raise UntrustedChainError(f"{_name(issuer)} is not a certificate authority")

            # Intermediate CAs between this issuer and the leaf
            if path_length is not None and index > path_length:
                raise UntrustedChainError(
                    f"{_name(issuer)} allows {path_length} intermediate CAs but the chain has {index}"
                )

            if issuer not in self.trust_anchors:
                continue

            self._check_validity(issuer, now)
            path.append(issuer)
            return tuple(path)

        raise UntrustedChainError(f"Chain ending at {_name(chain[-1])} does not reach a trust anchor")

    def _check_validity(self, cert: x509.Certificate, now: datetime):
        if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
            logger.warning(f"Certificate {_name(cert)} is outside its validity window")
            raise HandshakeError(
                f"Certificate {_name(cert)} is not valid at {now.isoformat()} "
                f"({cert.not_valid_before_utc.isoformat()} .. {cert.not_valid_after_utc.isoformat()})"
            )


def _name(cert: x509.Certificate) -> str:
    return cert.subject.rfc4514_string()
