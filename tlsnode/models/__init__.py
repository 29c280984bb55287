"""
Models package for tlsnode settings.
"""

from .config import TlsSettings, SettingsIssue, SettingsValidationResult

__all__ = [
    'TlsSettings',
    'SettingsIssue',
    'SettingsValidationResult'
]
