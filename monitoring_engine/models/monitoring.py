"""监控引擎的数据模型"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, List, Set, Iterable, Union

KIND_HTTP = 'http'
KIND_TCP = 'tcp'

STATUS_UP = 'up'
STATUS_DOWN = 'down'
STATUS_UNKNOWN = 'unknown'

EVENT_UP = 'up'
EVENT_DOWN = 'down'
EVENT_MAINTENANCE_START = 'maintenance_start'
EVENT_MAINTENANCE_END = 'maintenance_end'
EVENT_TYPES = (EVENT_UP, EVENT_DOWN, EVENT_MAINTENANCE_START, EVENT_MAINTENANCE_END)

INCIDENT_SOURCE_MONITORING = 'monitoring'
DEFAULT_INCIDENT_SEVERITY = 'medium'


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）"""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """把时间统一为带时区的 UTC；无时区的值按 UTC 解释"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_tags(tags: Optional[Iterable[str]]) -> Set[str]:
    """标签去空白、转大写、去重"""
    if not tags:
        return set()
    if isinstance(tags, str):
        tags = [tags]
    return {str(t).strip().upper() for t in tags if str(t).strip()}


class ErrorKind(Enum):
    """探测失败分类"""
    OK = 'ok'
    TIMEOUT = 'timeout'
    DNS = 'dns'
    CONNECT = 'connect'
    CONNECTION_REFUSED = 'connection_refused'
    NETWORK_UNREACHABLE = 'network_unreachable'
    TLS = 'tls'
    INVALID_URL = 'invalid_url'
    PRIVATE_BLOCKED = 'private_blocked'
    HTTP_STATUS = 'http_status'
    REQUEST_FAILED = 'request_failed'
    UNKNOWN = 'unknown'


@dataclass
class MonitorSettings:
    """引擎全局设置"""
    engine_enabled: bool = True
    allow_private_networks: bool = False
    default_timeout_seconds: int = 20
    default_interval_seconds: int = 60
    notify_suppress_minutes: int = 5
    notify_repeat_down_minutes: int = 30
    max_concurrent_checks: int = 10
    tick_seconds: float = 1.0
    metrics_retention_days: int = 30
    events_retention_days: int = 0
    retention_sweep_minutes: int = 60
    incident_reg_format: str = 'INC-{seq}'
    shutdown_grace_seconds: float = 10.0
    default_retry_interval_seconds: int = 5
    jitter_percent: int = 0
    jitter_max_seconds: int = 10

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MonitorSettings':
        """从配置字典创建，忽略未知键"""
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Target:
    """监控目标（只读配置）"""
    id: str
    name: str
    kind: str
    url: Optional[str] = None
    method: str = 'GET'
    allowed_status: List[Union[str, int]] = field(default_factory=list)
    host: Optional[str] = None
    port: Optional[int] = None
    timeout_seconds: Optional[int] = None
    interval_seconds: Optional[int] = None
    tags: Set[str] = field(default_factory=set)
    is_active: bool = True
    auto_incident: bool = False
    incident_severity: Optional[str] = None
    owner: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    request_body: Optional[str] = None
    ignore_tls_errors: bool = False
    retries: int = 0
    retry_interval_seconds: Optional[int] = None

    def __post_init__(self):
        self.kind = (self.kind or '').strip().lower()
        self.method = (self.method or 'GET').strip().upper()
        self.tags = normalize_tags(self.tags)

    @property
    def address(self) -> str:
        """用于消息展示的目标地址"""
        if self.kind == KIND_TCP:
            return f"{(self.host or '').strip()}:{self.port}"
        return (self.url or '').strip()

    def effective_timeout(self, settings: MonitorSettings) -> int:
        if self.timeout_seconds and self.timeout_seconds > 0:
            return self.timeout_seconds
        if settings.default_timeout_seconds and settings.default_timeout_seconds > 0:
            return settings.default_timeout_seconds
        return 20

    def effective_interval(self, settings: MonitorSettings) -> int:
        if self.interval_seconds and self.interval_seconds > 0:
            return self.interval_seconds
        if settings.default_interval_seconds and settings.default_interval_seconds > 0:
            return settings.default_interval_seconds
        return 60

    def effective_retry_interval(self, settings: MonitorSettings) -> int:
        if self.retry_interval_seconds and self.retry_interval_seconds > 0:
            return self.retry_interval_seconds
        if settings.default_retry_interval_seconds and settings.default_retry_interval_seconds > 0:
            return settings.default_retry_interval_seconds
        return 5


@dataclass
class TLSInfo:
    """https 探测时对端证书的摘要"""
    not_after: datetime
    not_before: datetime
    common_name: str = ''
    issuer: str = ''
    sans: List[str] = field(default_factory=list)
    fingerprint_sha256: str = ''

    def days_left(self, now: datetime) -> float:
        return (self.not_after - ensure_utc(now)).total_seconds() / 86400


@dataclass
class CheckResult:
    """单次探测结果，不直接持久化"""
    ok: bool
    latency: float
    error: Optional[str] = None
    error_kind: ErrorKind = ErrorKind.OK
    status_code: Optional[int] = None
    checked_at: datetime = field(default_factory=utcnow)
    tls: Optional[TLSInfo] = None


@dataclass
class TargetState:
    """目标当前状态，每个目标一条记录"""
    target_id: str
    status: str = STATUS_UNKNOWN
    last_result_status: Optional[str] = None
    last_error: Optional[str] = None
    maintenance_active: bool = False
    last_checked_at: Optional[datetime] = None
    last_notified_at: Optional[datetime] = None
    down_since: Optional[datetime] = None
    down_sequence: int = 0
    retry_attempt: int = 0
    retry_at: Optional[datetime] = None

    def copy(self) -> 'TargetState':
        return replace(self)


@dataclass
class Event:
    """状态或维护边界事件，只追加"""
    target_id: str
    timestamp: datetime
    event_type: str
    message: str = ''
    id: Optional[int] = None


@dataclass
class Metric:
    """每次检查的耗时/成功样本，只追加"""
    target_id: str
    timestamp: datetime
    latency: float
    ok: bool
    status_code: Optional[int] = None
    error_kind: Optional[str] = None
    id: Optional[int] = None


@dataclass
class MaintenanceWindow:
    """维护窗口；target_id 为空时按标签匹配"""
    name: str
    starts_at: datetime
    ends_at: datetime
    target_id: Optional[str] = None
    tags: Set[str] = field(default_factory=set)
    is_active: bool = True
    recurrence: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.tags = normalize_tags(self.tags)
        self.starts_at = ensure_utc(self.starts_at)
        self.ends_at = ensure_utc(self.ends_at)


@dataclass
class NotificationChannel:
    """通知渠道，密钥只以密文保存"""
    name: str
    destination: str
    secret_enc: bytes = b''
    type: str = 'telegram'
    thread_id: Optional[int] = None
    silent: bool = False
    protect_content: bool = False
    is_default: bool = False
    is_active: bool = True
    id: Optional[int] = None

    def __repr__(self) -> str:
        return (f"NotificationChannel(id={self.id!r}, name={self.name!r}, "
                f"type={self.type!r}, destination={self.destination!r})")


@dataclass
class NotificationMessage:
    """发送给传输层的消息；secret 只在发送调用期间存在"""
    destination: str
    text: str
    silent: bool = False
    protect_content: bool = False
    thread_id: Optional[int] = None
    secret: Optional[str] = field(default=None, repr=False)


@dataclass
class Incident:
    """事件单（由外部事件单模块持有）"""
    title: str
    description: str
    severity: str
    source: str
    source_id: str
    status: str = 'open'
    owner: Optional[str] = None
    reg_no: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class EventFilter:
    """事件流查询条件"""
    since: Optional[datetime] = None
    target_id: Optional[str] = None
    types: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    limit: int = 0
