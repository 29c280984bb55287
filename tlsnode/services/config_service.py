"""
Configuration service for loading and validating tlsnode settings.
"""
import configparser
import logging
import os
from typing import Any, Dict, Optional

from ..errors import ConfigurationError
from ..models.config import SettingsIssue, SettingsValidationResult, TlsSettings


class ConfigService:
    """Service for loading and validating settings from INI files."""

    def __init__(self, config_path: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self._settings = None
        if config_path:
            self._settings = self.load_config(config_path)

    def get_settings(self) -> TlsSettings:
        """
        Get the loaded settings.

        Returns:
            TlsSettings object

        Raises:
            ConfigurationError: If no settings have been loaded
        """
        if self._settings is None:
            raise ConfigurationError("No settings loaded. Call load_config() first.")
        return self._settings

    def load_config(self, config_path: str) -> TlsSettings:
        """
        Load settings from an INI file.

        Args:
            config_path: Path to the configuration file

        Returns:
            TlsSettings with loaded values

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If config file is invalid or has validation errors
        """
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        config_data = self._load_config_file(config_path)
        settings = self._create_settings_from_data(config_data)

        validation_result = self.validate_settings(settings)

        if validation_result.has_errors():
            error_summary = validation_result.get_error_summary()
            raise ConfigurationError(f"Settings validation failed:\n{error_summary}")

        if validation_result.has_warnings():
            warning_summary = validation_result.get_error_summary()
            self.logger.warning(f"Settings warnings:\n{warning_summary}")

        self._settings = settings
        return settings

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration data from file."""
        config_parser = configparser.ConfigParser()

        try:
            config_parser.read(config_path)
        except configparser.Error as e:
            raise ConfigurationError(f"Failed to parse configuration file: {e}") from e

        # Flatten to section.key
        config_data = {}
        for section in config_parser.sections():
            for key, value in config_parser.items(section):
                config_data[f"{section}.{key}"] = value

        for key, value in config_parser.defaults().items():
            config_data.setdefault(key, value)

        return config_data

    def _create_settings_from_data(self, config_data: Dict[str, Any]) -> TlsSettings:
        """Create TlsSettings from configuration data."""
        config_mapping = {
            # Key settings
            "keys.algorithm": ("key_algorithm", str),
            "key_algorithm": ("key_algorithm", str),
            "keys.rsa_key_size": ("rsa_key_size", int),
            "rsa_key_size": ("rsa_key_size", int),
            "keys.validity_hours": ("certificate_validity_hours", int),
            "certificate_validity_hours": ("certificate_validity_hours", int),

            # TLS settings
            "tls.min_version": ("min_tls_version", str),
            "min_tls_version": ("min_tls_version", str),

            # Harness settings
            "harness.handshake_timeout_seconds": ("handshake_timeout_seconds", float),
            "handshake_timeout_seconds": ("handshake_timeout_seconds", float),
            "harness.listen_host": ("listen_host", str),
            "listen_host": ("listen_host", str),
            "harness.listen_backlog": ("listen_backlog", int),
            "listen_backlog": ("listen_backlog", int),

            # Application settings
            "app.log_level": ("log_level", str),
            "log_level": ("log_level", str),
            "app.log_file_path": ("log_file_path", str),
            "log_file_path": ("log_file_path", str),
        }

        settings_kwargs = {}

        for config_key, raw_value in config_data.items():
            if config_key not in config_mapping:
                self.logger.debug(f"Ignoring unknown setting: {config_key}")
                continue

            field_name, field_type = config_mapping[config_key]
            try:
                if field_type == int:
                    value = int(raw_value)
                elif field_type == float:
                    value = float(raw_value)
                else:
                    value = str(raw_value).strip() or None
                settings_kwargs[field_name] = value
            except (ValueError, TypeError) as e:
                raise ConfigurationError(f"Invalid value for {config_key}: {raw_value} ({e})") from e

        # Empty strings mean "use the default"
        settings_kwargs = {k: v for k, v in settings_kwargs.items() if v is not None}
        return TlsSettings(**settings_kwargs)

    def validate_settings(self, settings: TlsSettings) -> SettingsValidationResult:
        """
        Validate settings beyond their types.

        Args:
            settings: Settings object to validate

        Returns:
            SettingsValidationResult with validation results
        """
        errors = []
        warnings = []

        if settings.certificate_validity_hours > 24 * 365:
            warnings.append(SettingsIssue(
                "certificate_validity_hours",
                "Validity over one year is unusual for test certificates",
                "warning"
            ))

        if settings.handshake_timeout_seconds > 300:
            warnings.append(SettingsIssue(
                "handshake_timeout_seconds",
                "Handshake timeout over 5 minutes may hide stalled peers",
                "warning"
            ))

        if settings.listen_host not in ("127.0.0.1", "::1", "localhost"):
            warnings.append(SettingsIssue(
                "listen_host",
                f"Harness listener is not bound to loopback: {settings.listen_host}",
                "warning"
            ))

        if settings.key_algorithm == "ecdsa256" and settings.rsa_key_size != 2048:
            warnings.append(SettingsIssue(
                "rsa_key_size",
                "rsa_key_size has no effect while key_algorithm is ecdsa256",
                "warning"
            ))

        if settings.log_file_path:
            log_dir = os.path.dirname(settings.log_file_path)
            if log_dir and os.path.exists(log_dir) and not os.path.isdir(log_dir):
                errors.append(SettingsIssue(
                    "log_file_path",
                    f"Log directory is not a directory: {log_dir}"
                ))

        return SettingsValidationResult(
            is_valid=len(errors) == 0,
            errors=errors + warnings,
            warnings=[]
        )

    def create_default_config_file(self, config_path: str) -> None:
        """
        Create a default configuration file with example settings.

        Args:
            config_path: Path where to create the config file
        """
        config_content = """# tlsnode configuration file

[keys]
algorithm = ecdsa256
rsa_key_size = 2048
validity_hours = 24

[tls]
min_version = TLSv1.2

[harness]
handshake_timeout_seconds = 10
listen_host = 127.0.0.1
listen_backlog = 50

[app]
log_level = INFO
log_file_path =
"""

        config_dir = os.path.dirname(config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)

        with open(config_path, 'w') as f:
            f.write(config_content)
