"""数据模型模块"""

from .monitoring import (
    Target, TargetState, Event, Metric, MaintenanceWindow, NotificationChannel,
    NotificationMessage, CheckResult, Incident, EventFilter, MonitorSettings,
    ErrorKind, ensure_utc, utcnow
)

__all__ = ['Target', 'TargetState', 'Event', 'Metric', 'MaintenanceWindow',
           'NotificationChannel', 'NotificationMessage', 'CheckResult', 'Incident',
           'EventFilter', 'MonitorSettings', 'ErrorKind', 'ensure_utc', 'utcnow']
