"""
Configuration data models for TLS nodes and the handshake harness.
"""
from dataclasses import dataclass
from typing import Optional

from ..errors import ConfigurationError


KEY_ALGORITHMS = ["ecdsa256", "rsa2048"]
TLS_VERSIONS = ["TLSv1.2", "TLSv1.3"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class TlsSettings:
    """Settings shared by certificate builders, nodes and the harness."""
    
    # Key settings
    key_algorithm: str = "ecdsa256"
    rsa_key_size: int = 2048
    
    # Certificate settings
    certificate_validity_hours: int = 24
    
    # TLS settings
    min_tls_version: str = "TLSv1.2"
    
    # Harness settings
    handshake_timeout_seconds: float = 10.0
    listen_host: str = "127.0.0.1"
    listen_backlog: int = 50
    
    # Application settings
    log_level: str = "INFO"
    log_file_path: Optional[str] = None
    
    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_types()
    
    def _validate_types(self):
        """Ensure all configuration values have correct types."""
        if self.key_algorithm not in KEY_ALGORITHMS:
            raise ConfigurationError(f"key_algorithm must be one of: {', '.join(KEY_ALGORITHMS)}")
        
        if not isinstance(self.rsa_key_size, int) or self.rsa_key_size < 2048:
            raise ConfigurationError("rsa_key_size must be an integer of at least 2048")
        
        if not isinstance(self.certificate_validity_hours, int) or self.certificate_validity_hours <= 0:
            raise ConfigurationError("certificate_validity_hours must be a positive integer")
        
        if self.min_tls_version not in TLS_VERSIONS:
            raise ConfigurationError(f"min_tls_version must be one of: {', '.join(TLS_VERSIONS)}")
        
        if not isinstance(self.handshake_timeout_seconds, (int, float)) or self.handshake_timeout_seconds <= 0:
            raise ConfigurationError("handshake_timeout_seconds must be a positive number")
        
        if not self.listen_host:
            raise ConfigurationError("listen_host must not be empty")
        
        if not isinstance(self.listen_backlog, int) or self.listen_backlog <= 0:
            raise ConfigurationError("listen_backlog must be a positive integer")
        
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")


@dataclass
class SettingsIssue:
    """Represents a settings validation problem."""
    field: str
    message: str
    severity: str = "error"  # error, warning
    
    def __str__(self):
        return f"{self.severity.upper()}: {self.field} - {self.message}"


@dataclass
class SettingsValidationResult:
    """Result of settings validation."""
    is_valid: bool
    errors: list[SettingsIssue]
    warnings: list[SettingsIssue]
    
    def __post_init__(self):
        """Separate errors and warnings."""
        all_issues = self.errors + self.warnings
        self.errors = [e for e in all_issues if e.severity == "error"]
        self.warnings = [e for e in all_issues if e.severity == "warning"]
    
    def has_errors(self) -> bool:
        """Check if there are any validation errors."""
        return len(self.errors) > 0
    
    def has_warnings(self) -> bool:
        """Check if there are any validation warnings."""
        return len(self.warnings) > 0
    
    def get_error_summary(self) -> str:
        """Get a formatted summary of all errors and warnings."""
        lines = []
        
        if self.errors:
            lines.append("Settings Errors:")
            for error in self.errors:
                lines.append(f"  - {error}")
        
        if self.warnings:
            lines.append("Settings Warnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")
        
        return "\n".join(lines) if lines else "Settings are valid"
