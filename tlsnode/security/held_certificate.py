"""
Certificate synthesis: self-signed roots, intermediate CAs and leaf certificates.
"""
import ipaddress
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ..errors import ConfigurationError, SigningError
from ..models.config import TlsSettings
from .key_pairs import ECDSA_256, RSA_2048, KeyPair, KeyPairFactory, PublicKey, public_keys_match, verify
from .models import CertificateChain, CertificateInfo, IssuedBy, SelfSigned


logger = logging.getLogger(__name__)

SignerRef = Union[SelfSigned, IssuedBy]

_PEM_BLOCK = re.compile(
    r"-----BEGIN ([A-Z ]+)-----\s.*?-----END \1-----",
    re.DOTALL
)


def basic_constraints(cert: x509.Certificate) -> Tuple[bool, Optional[int]]:
    """Return (is_ca, path_length) from the BasicConstraints extension."""
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False, None
    return constraints.ca, constraints.path_length if constraints.ca else None


def signature_valid(cert: x509.Certificate, issuer_public_key: PublicKey) -> bool:
    """Check that issuer_public_key produced the signature on cert."""
    return verify(
        issuer_public_key,
        cert.signature,
        cert.tbs_certificate_bytes,
        cert.signature_hash_algorithm
    )


def is_self_signed(cert: x509.Certificate) -> bool:
    """A certificate is self-signed if it names itself as issuer and its own key verifies it."""
    return cert.issuer == cert.subject and signature_valid(cert, cert.public_key())


@dataclass(frozen=True, eq=False)
class HeldCertificate:
    """A certificate together with the key pair it certifies."""
    certificate: x509.Certificate
    key_pair: KeyPair
    signed_by: SignerRef
    is_certificate_authority: bool
    max_intermediate_cas: Optional[int] = None

    @staticmethod
    def builder(settings: Optional[TlsSettings] = None) -> 'HeldCertificateBuilder':
        return HeldCertificateBuilder(settings)

    @property
    def is_self_signed(self) -> bool:
        return isinstance(self.signed_by, SelfSigned)

    def chain(self) -> CertificateChain:
        """
        Follow signer links from this certificate up to its root.

        Returns:
            Tuple of certificates, this certificate first. Stops early when an
            issuer is not held in-process.
        """
        chain = [self.certificate]
        current = self
        while isinstance(current.signed_by, IssuedBy) and current.signed_by.issuer is not None:
            current = current.signed_by.issuer
            chain.append(current.certificate)
        return tuple(chain)

    def info(self) -> CertificateInfo:
        return CertificateInfo.from_certificate(self.certificate)

    def certificate_pem(self) -> str:
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode()

    def private_key_pkcs8_pem(self) -> str:
        return self.key_pair.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ).decode()

    def private_key_pkcs1_pem(self) -> str:
        """PKCS#1 ("BEGIN RSA PRIVATE KEY") encoding, RSA keys only."""
        if not isinstance(self.key_pair.private_key, rsa.RSAPrivateKey):
            raise ConfigurationError("PKCS#1 encoding is only available for RSA keys")
        return self.key_pair.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()
        ).decode()

    @classmethod
    def decode(cls, pem: str) -> 'HeldCertificate':
        """
        Decode a certificate and its private key from concatenated PEM blocks.

        Args:
            pem: Text containing exactly one CERTIFICATE block and one
                PRIVATE KEY (PKCS#8) or RSA PRIVATE KEY (PKCS#1) block

        Returns:
            HeldCertificate; the signer is SelfSigned or an IssuedBy without a
            held issuer

        Raises:
            ConfigurationError: If blocks are missing, duplicated or mismatched
        """
        certificates = []
        private_keys = []
        for match in _PEM_BLOCK.finditer(pem):
            label = match.group(1)
            block = match.group(0).encode()
            try:
                if label == "CERTIFICATE":
                    certificates.append(x509.load_pem_x509_certificate(block))
                elif label in ("PRIVATE KEY", "RSA PRIVATE KEY"):
                    private_keys.append(serialization.load_pem_private_key(block, password=None))
                else:
                    raise ConfigurationError(f"Unexpected PEM block: {label}")
            except ValueError as e:
                raise ConfigurationError(f"Failed to decode {label} block: {e}") from e

        if len(certificates) != 1:
            raise ConfigurationError(f"Expected 1 certificate, found {len(certificates)}")
        if len(private_keys) != 1:
            raise ConfigurationError(f"Expected 1 private key, found {len(private_keys)}")

        certificate = certificates[0]
        key_pair = KeyPair.from_private_key(private_keys[0])
        if not public_keys_match(certificate.public_key(), key_pair.public_key):
            raise ConfigurationError("Private key does not match the certificate's public key")

        is_ca, path_length = basic_constraints(certificate)
        signed_by = SelfSigned() if is_self_signed(certificate) else IssuedBy(certificate.issuer)
        return cls(certificate, key_pair, signed_by, is_ca, path_length)


class HeldCertificateBuilder:
    """
    Builds a HeldCertificate. With no issuer the result is a self-signed root;
    call certificate_authority() to allow the result to sign other certificates.
    """

    def __init__(self, settings: Optional[TlsSettings] = None):
        self.settings = settings or TlsSettings()
        self._not_before: Optional[datetime] = None
        self._not_after: Optional[datetime] = None
        self._duration: Optional[timedelta] = None
        self._common_name: Optional[str] = None
        self._organizational_unit: Optional[str] = None
        self._alt_names: List[str] = []
        self._serial_number: Optional[int] = None
        self._key_pair: Optional[KeyPair] = None
        self._key_algorithm = self.settings.key_algorithm
        self._max_intermediate_cas: Optional[int] = None
        self._issued_by: Optional[HeldCertificate] = None

    def validity_interval(self, not_before: datetime, not_after: datetime) -> 'HeldCertificateBuilder':
        if not_after <= not_before:
            raise ConfigurationError(f"Invalid validity interval: {not_before} .. {not_after}")
        self._not_before = not_before
        self._not_after = not_after
        return self

    def duration(self, duration: timedelta) -> 'HeldCertificateBuilder':
        """Valid from now for the given duration."""
        if duration <= timedelta(0):
            raise ConfigurationError(f"Duration must be positive: {duration}")
        self._duration = duration
        self._not_before = None
        self._not_after = None
        return self

    def common_name(self, cn: str) -> 'HeldCertificateBuilder':
        self._common_name = cn
        return self

    def organizational_unit(self, ou: str) -> 'HeldCertificateBuilder':
        self._organizational_unit = ou
        return self

    def add_subject_alternative_name(self, alt_name: str) -> 'HeldCertificateBuilder':
        """Add a hostname or IP address literal."""
        if not alt_name:
            raise ConfigurationError("Subject alternative name must not be empty")
        self._alt_names.append(alt_name)
        return self

    def serial_number(self, serial_number: int) -> 'HeldCertificateBuilder':
        if serial_number <= 0:
            raise ConfigurationError("Serial number must be positive")
        self._serial_number = serial_number
        return self

    def key_pair(self, key_pair: KeyPair) -> 'HeldCertificateBuilder':
        self._key_pair = key_pair
        return self

    def ecdsa256(self) -> 'HeldCertificateBuilder':
        self._key_algorithm = ECDSA_256
        return self

    def rsa2048(self) -> 'HeldCertificateBuilder':
        self._key_algorithm = RSA_2048
        return self

    def certificate_authority(self, max_intermediate_cas: int) -> 'HeldCertificateBuilder':
        """Make the certificate a CA that may sign up to max_intermediate_cas levels of CAs below it."""
        if not isinstance(max_intermediate_cas, int) or max_intermediate_cas < 0:
            raise ConfigurationError(f"max_intermediate_cas < 0: {max_intermediate_cas}")
        self._max_intermediate_cas = max_intermediate_cas
        return self

    def issued_by(self, issuer: HeldCertificate) -> 'HeldCertificateBuilder':
        if not isinstance(issuer, HeldCertificate):
            raise ConfigurationError("issued_by() requires a HeldCertificate")
        self._issued_by = issuer
        return self

    def build(self) -> HeldCertificate:
        """
        Build and sign the certificate.

        Raises:
            SigningError: If the issuer is not a CA or its path length is exhausted
        """
        is_ca = self._max_intermediate_cas is not None
        not_before, not_after = self._validity()
        key_pair = self._key_pair or KeyPairFactory(self.settings.rsa_key_size).generate(self._key_algorithm)
        subject = self._subject()

        if self._issued_by is None:
            signing_key = key_pair.private_key
            issuer_public_key = key_pair.public_key
            issuer_name = subject
            signed_by: SignerRef = SelfSigned()
        else:
            issuer = self._issued_by
            self._check_issuer(issuer, is_ca)
            signing_key = issuer.key_pair.private_key
            issuer_public_key = issuer.key_pair.public_key
            issuer_name = issuer.certificate.subject
            signed_by = IssuedBy(issuer_name, issuer)

        builder = x509.CertificateBuilder().subject_name(
            subject
        ).issuer_name(
            issuer_name
        ).public_key(
            key_pair.public_key
        ).serial_number(
            self._serial_number or x509.random_serial_number()
        ).not_valid_before(
            not_before
        ).not_valid_after(
            not_after
        ).add_extension(
            x509.BasicConstraints(ca=is_ca, path_length=self._max_intermediate_cas),
            critical=True,
        ).add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key_pair.public_key),
            critical=False,
        ).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_public_key),
            critical=False,
        )

        if is_ca:
            builder = builder.add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False
                ),
                critical=True,
            )

        if self._alt_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([_general_name(n) for n in self._alt_names]),
                critical=False,
            )

        certificate = builder.sign(signing_key, hashes.SHA256())
        logger.debug(
            f"Built {'CA' if is_ca else 'leaf'} certificate {subject.rfc4514_string()} "
            f"signed by {issuer_name.rfc4514_string()}"
        )
        return HeldCertificate(certificate, key_pair, signed_by, is_ca, self._max_intermediate_cas)

    def _validity(self) -> Tuple[datetime, datetime]:
        if self._not_before is not None:
            return self._not_before, self._not_after
        now = datetime.now(timezone.utc)
        duration = self._duration or timedelta(hours=self.settings.certificate_validity_hours)
        return now, now + duration

    def _subject(self) -> x509.Name:
        attributes = [x509.NameAttribute(NameOID.COMMON_NAME, self._common_name or str(uuid.uuid4()))]
        if self._organizational_unit:
            attributes.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, self._organizational_unit))
        return x509.Name(attributes)

    def _check_issuer(self, issuer: HeldCertificate, issuing_ca: bool):
        issuer_name = issuer.certificate.subject.rfc4514_string()
        if not issuer.is_certificate_authority:
            logger.warning(f"Refusing to sign with non-CA certificate {issuer_name}")
            raise SigningError(f"{issuer_name} is not a certificate authority")

        if not issuing_ca or issuer.max_intermediate_cas is None:
            return

        if issuer.max_intermediate_cas <= 0:
            logger.warning(f"Path length of {issuer_name} is exhausted")
            raise SigningError(f"{issuer_name} may not issue intermediate CAs (path length 0)")

        if self._max_intermediate_cas >= issuer.max_intermediate_cas:
            raise SigningError(
                f"{issuer_name} allows at most {issuer.max_intermediate_cas - 1} "
                f"intermediate CAs below a new CA, requested {self._max_intermediate_cas}"
            )


def _general_name(alt_name: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(alt_name))
    except ValueError:
        return x509.DNSName(alt_name)


def build_certificate(issuer: Optional[HeldCertificate] = None,
                      is_ca: bool = False,
                      max_intermediate_cas: int = 0,
                      subject: Optional[str] = None,
                      validity: Optional[Tuple[datetime, datetime]] = None,
                      key_pair: Optional[KeyPair] = None,
                      settings: Optional[TlsSettings] = None) -> HeldCertificate:
    """
    Build a certificate in one call.

    Args:
        issuer: Signing certificate, or None for a self-signed root
        is_ca: Whether the new certificate may sign others
        max_intermediate_cas: Path length constraint for CA certificates
        subject: Common name, random when omitted
        validity: (not_before, not_after), defaults to the settings window
        key_pair: Key pair to certify, generated when omitted
        settings: Defaults for key algorithm and validity

    Returns:
        HeldCertificate
    """
    builder = HeldCertificateBuilder(settings)
    if issuer is not None:
        builder.issued_by(issuer)
    if is_ca:
        builder.certificate_authority(max_intermediate_cas)
    if subject:
        builder.common_name(subject)
    if validity is not None:
        builder.validity_interval(*validity)
    if key_pair is not None:
        builder.key_pair(key_pair)
    return builder.build()
