"""
Tests for node identities and the key manager.
"""
import unittest

from tlsnode.errors import ConfigurationError
from tlsnode.security.held_certificate import HeldCertificate
from tlsnode.security.identity import IDENTITY_ALIAS, IdentityConfig, KeyManager, validate_chain
from tlsnode.security.models import NodeIdentity


class TestIdentityConfig(unittest.TestCase):
    """Test cases for IdentityConfig."""

    def setUp(self):
        self.root = HeldCertificate.builder().certificate_authority(1).build()
        self.intermediate = HeldCertificate.builder().certificate_authority(0).issued_by(self.root).build()
        self.leaf = HeldCertificate.builder().issued_by(self.intermediate).build()

    def test_no_identity(self):
        """Test an empty config builds no identity."""
        self.assertIsNone(IdentityConfig().build())

    def test_held_certificate_with_intermediates(self):
        """Test the held certificate is presented first, then its intermediates."""
        identity = IdentityConfig().held_certificate(self.leaf, self.intermediate.certificate).build()

        self.assertIsInstance(identity, NodeIdentity)
        self.assertIs(identity.private_key, self.leaf.key_pair.private_key)
        self.assertEqual(identity.chain, (self.leaf.certificate, self.intermediate.certificate))
        self.assertEqual(identity.leaf, self.leaf.certificate)

    def test_explicit_identity(self):
        """Test a raw private key and chain can be supplied."""
        identity = IdentityConfig().identity(self.leaf.key_pair.private_key, list(self.leaf.chain())).build()

        self.assertEqual(identity.chain, self.leaf.chain())

    def test_self_signed_identity(self):
        """Test a lone self-signed certificate is a valid identity."""
        held = HeldCertificate.builder().build()

        identity = IdentityConfig().held_certificate(held).build()

        self.assertEqual(identity.chain, (held.certificate,))

    def test_second_identity_rejected(self):
        """Test only one identity may be configured."""
        config = IdentityConfig().held_certificate(self.leaf, self.intermediate.certificate)

        with self.assertRaises(ConfigurationError):
            config.held_certificate(self.intermediate)

    def test_mismatched_key(self):
        """Test the private key must match the leaf."""
        config = IdentityConfig().identity(self.root.key_pair.private_key, [self.leaf.certificate])

        with self.assertRaises(ConfigurationError):
            config.build()

    def test_unsupported_key(self):
        """Test private keys must be key objects."""
        config = IdentityConfig().identity(b"not a key", [self.leaf.certificate])

        with self.assertRaises(ConfigurationError):
            config.build()

    def test_empty_chain(self):
        """Test an identity needs at least a leaf."""
        config = IdentityConfig().identity(self.leaf.key_pair.private_key, [])

        with self.assertRaises(ConfigurationError):
            config.build()

    def test_requires_held_certificate(self):
        """Test held_certificate() rejects bare certificates."""
        with self.assertRaises(ConfigurationError):
            IdentityConfig().held_certificate(self.leaf.certificate)


class TestValidateChain(unittest.TestCase):
    """Test cases for chain shape validation."""

    def setUp(self):
        self.root = HeldCertificate.builder().certificate_authority(1).build()
        self.intermediate = HeldCertificate.builder().certificate_authority(0).issued_by(self.root).build()
        self.leaf = HeldCertificate.builder().issued_by(self.intermediate).build()

    def test_valid_chain(self):
        """Test a well formed chain passes."""
        validate_chain(self.leaf.chain())

    def test_wrong_order(self):
        """Test a chain presented root first is rejected."""
        with self.assertRaises(ConfigurationError):
            validate_chain(tuple(reversed(self.leaf.chain())))

    def test_skipped_link(self):
        """Test each element must be signed by the next."""
        with self.assertRaises(ConfigurationError):
            validate_chain((self.leaf.certificate, self.root.certificate))

    def test_repeated_certificate(self):
        """Test repeated certificates are reported as a cycle."""
        chain = (self.leaf.certificate, self.intermediate.certificate, self.intermediate.certificate)

        with self.assertRaises(ConfigurationError) as context:
            validate_chain(chain)

        self.assertIn("cycle", str(context.exception))

    def test_non_ca_in_chain(self):
        """Test only CA certificates may follow the leaf."""
        other_leaf = HeldCertificate.builder().issued_by(self.intermediate).build()

        with self.assertRaises(ConfigurationError) as context:
            validate_chain((self.leaf.certificate, other_leaf.certificate))

        self.assertIn("not a certificate authority", str(context.exception))

    def test_non_certificate_element(self):
        """Test every element must be a certificate."""
        with self.assertRaises(ConfigurationError):
            validate_chain((self.leaf.certificate, self.intermediate.certificate_pem()))


class TestKeyManager(unittest.TestCase):
    """Test cases for KeyManager."""

    def setUp(self):
        self.held = HeldCertificate.builder().build()
        self.identity = IdentityConfig().held_certificate(self.held).build()

    def test_single_alias(self):
        """Test the identity is exposed under one alias."""
        key_manager = KeyManager(self.identity)

        self.assertEqual(key_manager.aliases(), [IDENTITY_ALIAS])
        self.assertIs(key_manager.get_private_key(IDENTITY_ALIAS), self.held.key_pair.private_key)
        self.assertEqual(key_manager.get_certificate_chain(IDENTITY_ALIAS), (self.held.certificate,))

    def test_unknown_alias(self):
        """Test unknown aliases resolve to nothing."""
        key_manager = KeyManager(self.identity)

        self.assertIsNone(key_manager.get_private_key("public"))
        self.assertIsNone(key_manager.get_certificate_chain("public"))

    def test_no_identity(self):
        """Test a key manager without identity has no aliases."""
        key_manager = KeyManager(None)

        self.assertEqual(key_manager.aliases(), [])
        self.assertIsNone(key_manager.get_private_key(IDENTITY_ALIAS))
        self.assertIsNone(key_manager.get_certificate_chain(IDENTITY_ALIAS))


if __name__ == '__main__':
    unittest.main()
