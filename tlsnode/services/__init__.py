"""
Services package for tlsnode.
"""

from .config_service import ConfigService
from .logging_service import LoggingService, PerformanceMonitor, log_with_context
from .handshake_harness import HandshakePair, HandshakeTestHarness, HarnessState

__all__ = [
    'ConfigService',
    'LoggingService',
    'PerformanceMonitor',
    'log_with_context',
    'HandshakePair',
    'HandshakeTestHarness',
    'HarnessState'
]
