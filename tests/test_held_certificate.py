"""
Tests for certificate synthesis.
"""
import ipaddress
import unittest
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from tlsnode.errors import ConfigurationError, SigningError
from tlsnode.models.config import TlsSettings
from tlsnode.security.held_certificate import (
    HeldCertificate, basic_constraints, build_certificate, is_self_signed, signature_valid
)
from tlsnode.security.key_pairs import KeyPairFactory, public_keys_match, sign, verify
from tlsnode.security.models import IssuedBy, SelfSigned


class TestHeldCertificate(unittest.TestCase):
    """Test cases for HeldCertificate and its builder."""

    def setUp(self):
        """Build a root -> intermediate -> leaf hierarchy."""
        self.root = HeldCertificate.builder().certificate_authority(1).build()
        self.intermediate = HeldCertificate.builder() \
            .certificate_authority(0) \
            .issued_by(self.root) \
            .build()
        self.leaf = HeldCertificate.builder().issued_by(self.intermediate).build()

    def test_root_is_self_signed(self):
        """Test a certificate without issuer signs itself."""
        cert = self.root.certificate

        self.assertIsInstance(self.root.signed_by, SelfSigned)
        self.assertTrue(self.root.is_self_signed)
        self.assertEqual(cert.issuer, cert.subject)
        self.assertTrue(signature_valid(cert, cert.public_key()))
        self.assertTrue(is_self_signed(cert))

    def test_ca_extensions(self):
        """Test CA certificates carry the path length constraint."""
        constraints = self.root.certificate.extensions.get_extension_for_class(x509.BasicConstraints)
        key_usage = self.root.certificate.extensions.get_extension_for_class(x509.KeyUsage).value

        self.assertTrue(constraints.critical)
        self.assertTrue(constraints.value.ca)
        self.assertEqual(constraints.value.path_length, 1)
        self.assertTrue(key_usage.key_cert_sign)
        self.assertEqual(basic_constraints(self.intermediate.certificate), (True, 0))

    def test_leaf_extensions(self):
        """Test leaf certificates are marked as not a CA."""
        self.assertFalse(self.leaf.is_certificate_authority)
        self.assertIsNone(self.leaf.max_intermediate_cas)
        self.assertEqual(basic_constraints(self.leaf.certificate), (False, None))
        with self.assertRaises(x509.ExtensionNotFound):
            self.leaf.certificate.extensions.get_extension_for_class(x509.KeyUsage)

    def test_issued_certificate_signed_by_issuer_key(self):
        """Test the issuer's key, not the subject's, signs the certificate."""
        cert = self.intermediate.certificate

        self.assertEqual(cert.issuer, self.root.certificate.subject)
        self.assertTrue(signature_valid(cert, self.root.key_pair.public_key))
        self.assertFalse(signature_valid(cert, self.intermediate.key_pair.public_key))
        self.assertFalse(is_self_signed(cert))

    def test_signed_by_reference(self):
        """Test the signer reference points at the issuing certificate."""
        self.assertIsInstance(self.leaf.signed_by, IssuedBy)
        self.assertIs(self.leaf.signed_by.issuer, self.intermediate)
        self.assertEqual(self.leaf.signed_by.issuer_name, self.intermediate.certificate.subject)

    def test_key_identifiers(self):
        """Test the authority key identifier matches the issuer's subject key identifier."""
        aki = self.leaf.certificate.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier).value
        ski = self.intermediate.certificate.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value

        self.assertEqual(aki.key_identifier, ski.digest)

    def test_chain_follows_signers_to_root(self):
        """Test chain() walks from the leaf to the self-signed root."""
        self.assertEqual(
            self.leaf.chain(),
            (self.leaf.certificate, self.intermediate.certificate, self.root.certificate)
        )
        self.assertEqual(self.root.chain(), (self.root.certificate,))

    def test_leaf_cannot_issue(self):
        """Test a non-CA issuer is refused."""
        builder = HeldCertificate.builder().issued_by(self.leaf)

        with self.assertRaises(SigningError):
            builder.build()

    def test_exhausted_path_length_cannot_issue_ca(self):
        """Test a CA with path length 0 cannot issue another CA."""
        builder = HeldCertificate.builder().certificate_authority(0).issued_by(self.intermediate)

        with self.assertRaises(SigningError):
            builder.build()

    def test_exhausted_path_length_can_issue_leaf(self):
        """Test a CA with path length 0 can still issue leaves."""
        leaf = HeldCertificate.builder().issued_by(self.intermediate).build()

        self.assertFalse(leaf.is_certificate_authority)

    def test_child_path_length_must_be_below_issuer(self):
        """Test a new CA may not claim more intermediate levels than its issuer allows."""
        builder = HeldCertificate.builder().certificate_authority(1).issued_by(self.root)

        with self.assertRaises(SigningError):
            builder.build()

    def test_negative_path_length_rejected(self):
        """Test negative path length constraints are malformed."""
        with self.assertRaises(ConfigurationError):
            HeldCertificate.builder().certificate_authority(-1)

    def test_issued_by_requires_held_certificate(self):
        """Test issued_by rejects bare certificates."""
        with self.assertRaises(ConfigurationError):
            HeldCertificate.builder().issued_by(self.root.certificate)

    def test_subject_fields(self):
        """Test common name and organizational unit end up in the subject."""
        held = HeldCertificate.builder() \
            .common_name("cash.app") \
            .organizational_unit("cash") \
            .build()
        subject = held.certificate.subject

        self.assertEqual(subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value, "cash.app")
        self.assertEqual(subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)[0].value, "cash")

    def test_default_common_name_is_random(self):
        """Test certificates without a common name get distinct random ones."""
        first = HeldCertificate.builder().build()
        second = HeldCertificate.builder().build()

        self.assertNotEqual(first.certificate.subject, second.certificate.subject)

    def test_subject_alternative_names(self):
        """Test hostnames become DNS names and literals become IP addresses."""
        held = HeldCertificate.builder() \
            .add_subject_alternative_name("localhost") \
            .add_subject_alternative_name("127.0.0.1") \
            .build()
        san = held.certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value

        self.assertEqual(san.get_values_for_type(x509.DNSName), ["localhost"])
        self.assertEqual(san.get_values_for_type(x509.IPAddress), [ipaddress.ip_address("127.0.0.1")])

    def test_validity_interval(self):
        """Test explicit validity windows are used as given."""
        not_before = datetime(2030, 1, 1, tzinfo=timezone.utc)
        not_after = datetime(2030, 1, 2, tzinfo=timezone.utc)

        held = HeldCertificate.builder().validity_interval(not_before, not_after).build()

        self.assertEqual(held.certificate.not_valid_before_utc, not_before)
        self.assertEqual(held.certificate.not_valid_after_utc, not_after)

    def test_default_validity_uses_settings(self):
        """Test the default window length comes from the settings."""
        settings = TlsSettings(certificate_validity_hours=2)

        held = HeldCertificate.builder(settings).build()
        cert = held.certificate

        self.assertEqual(cert.not_valid_after_utc - cert.not_valid_before_utc, timedelta(hours=2))

    def test_duration(self):
        """Test a duration sets the window starting now."""
        held = HeldCertificate.builder().duration(timedelta(minutes=30)).build()
        cert = held.certificate

        self.assertEqual(cert.not_valid_after_utc - cert.not_valid_before_utc, timedelta(minutes=30))
        with self.assertRaises(ConfigurationError):
            HeldCertificate.builder().duration(timedelta(0))

    def test_empty_validity_interval_rejected(self):
        """Test not_after must be after not_before."""
        now = datetime.now(timezone.utc)

        with self.assertRaises(ConfigurationError):
            HeldCertificate.builder().validity_interval(now, now)

    def test_serial_number(self):
        """Test explicit serial numbers are used."""
        held = HeldCertificate.builder().serial_number(42).build()

        self.assertEqual(held.certificate.serial_number, 42)

    def test_supplied_key_pair_is_certified(self):
        """Test a supplied key pair is used instead of a generated one."""
        key_pair = KeyPairFactory().generate()

        held = HeldCertificate.builder().key_pair(key_pair).build()

        self.assertIs(held.key_pair, key_pair)
        self.assertTrue(public_keys_match(held.certificate.public_key(), key_pair.public_key))

    def test_private_key_signatures_verify_with_certificate(self):
        """Test signatures made with the held key verify against the certificate."""
        data = b"handshake transcript"

        signature = sign(self.leaf.key_pair.private_key, data)

        self.assertTrue(verify(self.leaf.certificate.public_key(), signature, data))
        self.assertFalse(verify(self.root.certificate.public_key(), signature, data))

    def test_rsa_certificate(self):
        """Test RSA keys can be selected."""
        held = HeldCertificate.builder().rsa2048().build()

        self.assertIsInstance(held.key_pair.private_key, rsa.RSAPrivateKey)
        self.assertTrue(is_self_signed(held.certificate))
        self.assertIn("BEGIN RSA PRIVATE KEY", held.private_key_pkcs1_pem())

    def test_pkcs1_requires_rsa(self):
        """Test PKCS#1 encoding is refused for EC keys."""
        self.assertIsInstance(self.leaf.key_pair.private_key, ec.EllipticCurvePrivateKey)

        with self.assertRaises(ConfigurationError):
            self.leaf.private_key_pkcs1_pem()

    def test_rsa_issuer_signs_ec_subject(self):
        """Test issuers and subjects may use different key types."""
        root = HeldCertificate.builder().rsa2048().certificate_authority(0).build()
        leaf = HeldCertificate.builder().ecdsa256().issued_by(root).build()

        self.assertTrue(signature_valid(leaf.certificate, root.key_pair.public_key))

    def test_decode_pem(self):
        """Test a certificate and key can be read back from PEM."""
        pem = self.intermediate.certificate_pem() + self.intermediate.private_key_pkcs8_pem()

        decoded = HeldCertificate.decode(pem)

        self.assertEqual(decoded.certificate, self.intermediate.certificate)
        self.assertTrue(decoded.is_certificate_authority)
        self.assertEqual(decoded.max_intermediate_cas, 0)
        self.assertIsInstance(decoded.signed_by, IssuedBy)
        self.assertIsNone(decoded.signed_by.issuer)
        self.assertTrue(public_keys_match(decoded.key_pair.public_key, self.intermediate.key_pair.public_key))

    def test_decoded_root_is_self_signed(self):
        """Test decoding recognizes self-signed roots."""
        decoded = HeldCertificate.decode(self.root.private_key_pkcs8_pem() + self.root.certificate_pem())

        self.assertIsInstance(decoded.signed_by, SelfSigned)

    def test_decode_mismatched_key(self):
        """Test decoding fails when the key belongs to another certificate."""
        pem = self.root.certificate_pem() + self.leaf.private_key_pkcs8_pem()

        with self.assertRaises(ConfigurationError):
            HeldCertificate.decode(pem)

    def test_decode_missing_key(self):
        """Test decoding requires a private key."""
        with self.assertRaises(ConfigurationError):
            HeldCertificate.decode(self.root.certificate_pem())

    def test_certificate_info(self):
        """Test certificate summaries."""
        info = self.intermediate.info()

        self.assertTrue(info.is_valid)
        self.assertTrue(info.is_certificate_authority)
        self.assertEqual(info.max_intermediate_cas, 0)
        self.assertEqual(info.issuer, self.root.certificate.subject.rfc4514_string())
        self.assertEqual(len(info.fingerprint), 64)


class TestBuildCertificate(unittest.TestCase):
    """Test cases for the single-call build_certificate form."""

    def test_build_hierarchy(self):
        """Test building a root, an intermediate and a leaf in one call each."""
        root = build_certificate(is_ca=True, max_intermediate_cas=1, subject="root")
        intermediate = build_certificate(issuer=root, is_ca=True, max_intermediate_cas=0, subject="intermediate")
        leaf = build_certificate(issuer=intermediate, subject="leaf")

        self.assertEqual(leaf.chain(), (leaf.certificate, intermediate.certificate, root.certificate))
        self.assertEqual(
            leaf.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value,
            "leaf"
        )

    def test_build_with_leaf_issuer_fails(self):
        """Test the single-call form enforces issuer eligibility."""
        leaf = build_certificate()

        with self.assertRaises(SigningError):
            build_certificate(issuer=leaf)

    def test_build_with_validity(self):
        """Test validity windows are passed through."""
        not_before = datetime(2031, 5, 1, tzinfo=timezone.utc)
        not_after = not_before + timedelta(days=1)

        held = build_certificate(validity=(not_before, not_after))

        self.assertEqual(held.certificate.not_valid_after_utc, not_after)


if __name__ == '__main__':
    unittest.main()
