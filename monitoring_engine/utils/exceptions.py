"""自定义异常类和错误代码"""

import traceback
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime


class ErrorCode(Enum):
    """错误代码枚举"""
    # 通用错误 (1000-1999)
    UNKNOWN_ERROR = 1000
    INITIALIZATION_ERROR = 1001
    VALIDATION_ERROR = 1002

    # 配置错误 (2000-2999)
    CONFIG_FILE_NOT_FOUND = 2000
    CONFIG_PARSE_ERROR = 2001
    CONFIG_VALIDATION_ERROR = 2002
    CONFIG_RELOAD_ERROR = 2003

    # 探测错误 (3000-3999)
    CHECKER_INITIALIZATION_ERROR = 3000
    CONNECTION_ERROR = 3001
    TIMEOUT_ERROR = 3002
    TARGET_BLOCKED = 3003
    INVALID_URL = 3004

    # 通知错误 (4000-4999)
    ALERT_CONFIG_ERROR = 4000
    ALERT_SEND_ERROR = 4001
    ENCRYPTION_ERROR = 4002

    # 调度错误 (5000-5999)
    SCHEDULER_ERROR = 5000
    TASK_EXECUTION_ERROR = 5001

    # 存储错误 (6000-6999)
    STORE_ERROR = 6000
    STATE_PERSISTENCE_ERROR = 6001
    TARGET_NOT_FOUND = 6002

    # 事件单错误 (7000-7999)
    INCIDENT_ERROR = 7000


class MonitoringError(Exception):
    """监控引擎基础异常类"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            'error_code': self.error_code.value,
            'error_name': self.error_code.name,
            'message': self.message,
            'details': self.details,
            'recoverable': self.recoverable,
            'timestamp': self.timestamp.isoformat(),
            'cause': str(self.cause) if self.cause else None,
            'traceback': traceback.format_exc() if self.cause else None
        }

    def format_error(self) -> str:
        """格式化错误信息"""
        error_msg = f"[{self.error_code.name}] {self.message}"
        if self.details:
            details_str = ", ".join([f"{k}={v}" for k, v in self.details.items()])
            error_msg += f" (详情: {details_str})"
        if self.cause:
            error_msg += f" (原因: {str(self.cause)})"
        return error_msg


class ConfigError(MonitoringError):
    """配置相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_VALIDATION_ERROR,
        config_path: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if config_path:
            details['config_path'] = config_path
        super().__init__(message, error_code, details, **kwargs)


class CheckerError(MonitoringError):
    """探测器相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONNECTION_ERROR,
        target_name: Optional[str] = None,
        kind: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if target_name:
            details['target_name'] = target_name
        if kind:
            details['kind'] = kind
        super().__init__(message, error_code, details, **kwargs)


class TargetBlockedError(CheckerError):
    """目标地址被私有网络策略拦截"""

    def __init__(self, host: str, reason: str = 'private_blocked', **kwargs):
        super().__init__(
            f"目标地址被网络策略拦截: {host}",
            ErrorCode.TARGET_BLOCKED,
            details={'host': host, 'reason': reason},
            recoverable=False,
            **kwargs
        )
        self.host = host
        self.reason = reason


class InvalidTargetError(CheckerError):
    """目标地址配置无效（URL、主机或端口）"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCode.INVALID_URL, recoverable=False, **kwargs)


class AlertError(MonitoringError):
    """通知相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.ALERT_SEND_ERROR,
        alert_name: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if alert_name:
            details['alert_name'] = alert_name
        super().__init__(message, error_code, details, **kwargs)


class AlertConfigError(AlertError):
    """通知渠道配置异常"""

    def __init__(self, message: str, alert_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            ErrorCode.ALERT_CONFIG_ERROR,
            alert_name=alert_name,
            recoverable=False,
            **kwargs
        )


class AlertSendError(AlertError):
    """通知发送异常"""

    def __init__(self, message: str, alert_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            ErrorCode.ALERT_SEND_ERROR,
            alert_name=alert_name,
            recoverable=True,
            **kwargs
        )


class EncryptionError(MonitoringError):
    """密钥加解密异常"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCode.ENCRYPTION_ERROR, recoverable=False, **kwargs)


class SchedulerError(MonitoringError):
    """调度器相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.SCHEDULER_ERROR,
        task_name: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if task_name:
            details['task_name'] = task_name
        super().__init__(message, error_code, details, **kwargs)


class StoreError(MonitoringError):
    """存储层异常，会中止当前目标的本次检查"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STORE_ERROR,
        **kwargs
    ):
        super().__init__(message, error_code, **kwargs)


class TargetNotFoundError(StoreError):
    """监控目标不存在"""

    def __init__(self, target_id: str, **kwargs):
        super().__init__(
            f"监控目标不存在: {target_id}",
            ErrorCode.TARGET_NOT_FOUND,
            details={'target_id': target_id},
            recoverable=False,
            **kwargs
        )
        self.target_id = target_id


class IncidentError(MonitoringError):
    """事件单存储相关异常"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCode.INCIDENT_ERROR, **kwargs)
