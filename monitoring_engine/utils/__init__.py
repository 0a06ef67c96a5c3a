"""工具模块"""

from .encryption import Encryptor
from .exceptions import (
    MonitoringError, ConfigError, CheckerError, AlertError, AlertConfigError,
    AlertSendError, StoreError, TargetNotFoundError, IncidentError, EncryptionError
)
from .log_manager import LogManager, LogLevel, get_logger, configure_logging, log_manager

__all__ = [
    'Encryptor', 'MonitoringError', 'ConfigError', 'CheckerError', 'AlertError',
    'AlertConfigError', 'AlertSendError', 'StoreError', 'TargetNotFoundError',
    'IncidentError', 'EncryptionError',
    'LogManager', 'LogLevel', 'get_logger', 'configure_logging', 'log_manager'
]
