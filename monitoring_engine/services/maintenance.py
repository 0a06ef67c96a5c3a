"""维护窗口解析

判断某个目标在给定时刻是否处于维护中。窗口可以按目标ID或标签匹配，
也可以带简单的重复规则（FREQ=DAILY|WEEKLY;INTERVAL=n;BYDAY=MO,TU）。
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, date
from typing import List, Optional, Iterable

from ..models.monitoring import MaintenanceWindow, ensure_utc, normalize_tags

_WEEKDAYS = {'MO': 0, 'TU': 1, 'WE': 2, 'TH': 3, 'FR': 4, 'SA': 5, 'SU': 6}


@dataclass
class RecurrenceRule:
    """维护窗口的重复规则"""
    freq: str
    interval: int = 1
    by_day: List[int] = field(default_factory=list)

    @classmethod
    def parse(cls, raw: Optional[str]) -> 'RecurrenceRule':
        """
        解析重复规则

        Raises:
            ValueError: 规则格式无效
        """
        raw = (raw or '').strip()
        if not raw:
            raise ValueError("重复规则为空")

        rule = cls(freq='')
        for part in raw.split(';'):
            if '=' not in part:
                raise ValueError(f"重复规则片段无效: {part}")
            key, value = (s.strip().upper() for s in part.split('=', 1))
            if key == 'FREQ':
                rule.freq = value
            elif key == 'INTERVAL':
                if not value.isdigit() or int(value) <= 0:
                    raise ValueError(f"INTERVAL 必须是正整数: {value}")
                rule.interval = int(value)
            elif key == 'BYDAY':
                rule.by_day = [_WEEKDAYS[d.strip()] for d in value.split(',')
                               if d.strip() in _WEEKDAYS]
            else:
                raise ValueError(f"不支持的重复规则字段: {key}")

        if rule.freq not in ('DAILY', 'WEEKLY'):
            raise ValueError(f"不支持的重复频率: {rule.freq}")
        if rule.freq == 'WEEKLY' and not rule.by_day:
            rule.by_day = [_WEEKDAYS['MO']]
        return rule

    def matches_day(self, start_day: date, day: date) -> bool:
        """某一天是否有一次重复发生"""
        days = (day - start_day).days
        if days < 0:
            return False
        if self.freq == 'DAILY':
            return days % self.interval == 0
        if (days // 7) % self.interval != 0:
            return False
        return day.weekday() in self.by_day


def window_active_at(window: MaintenanceWindow, now: datetime) -> bool:
    """
    窗口在 now 时刻是否生效（两端都包含）

    带重复规则的窗口以 starts_at 的时刻为每次起点，持续 ends_at - starts_at；
    规则无效的窗口永不生效。
    """
    if not window.is_active:
        return False
    now = ensure_utc(now)
    starts_at = ensure_utc(window.starts_at)
    ends_at = ensure_utc(window.ends_at)

    if not window.recurrence:
        return starts_at <= now <= ends_at

    try:
        rule = RecurrenceRule.parse(window.recurrence)
    except ValueError:
        return False

    duration = ends_at - starts_at
    if duration <= timedelta(0):
        duration = timedelta(hours=1)

    start_day = starts_at.date()
    # 跨午夜的窗口可能从前几天开始
    lookback = duration.days + 1
    for offset in range(lookback + 1):
        day = now.date() - timedelta(days=offset)
        if not rule.matches_day(start_day, day):
            continue
        occurrence = datetime.combine(day, starts_at.timetz())
        if occurrence <= now <= occurrence + duration:
            return True
    return False


def window_applies(window: MaintenanceWindow, target_id: str, tags: Iterable[str]) -> bool:
    """
    窗口是否作用于目标

    指定了目标ID的窗口只匹配该目标（若同时带标签，还要求标签有交集）；
    未指定目标ID的窗口按标签交集匹配。
    """
    tag_set = normalize_tags(tags)
    if window.target_id is not None:
        if window.target_id != target_id:
            return False
        return not window.tags or bool(window.tags & tag_set)
    return bool(window.tags & tag_set)


class MaintenanceResolver:
    """维护窗口解析器，只依赖存储层的 active_windows_for"""

    def __init__(self, store):
        """
        Args:
            store: 提供 active_windows_for(target_id, tags, now) 的存储对象
        """
        self.store = store

    def active_windows(self, target_id: str, tags: Iterable[str],
                       now: datetime) -> List[MaintenanceWindow]:
        """返回目标在 now 时刻生效的全部维护窗口，不做合并"""
        return self.store.active_windows_for(target_id, tags, now)

    def is_in_maintenance(self, target_id: str, tags: Iterable[str], now: datetime) -> bool:
        return bool(self.active_windows(target_id, tags, now))
