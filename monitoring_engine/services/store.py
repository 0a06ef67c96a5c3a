"""监控存储

保存监控目标、目标状态、指标、事件、维护窗口和通知渠道。
数据保存在内存中，可选地持久化运行时数据：目标状态和证书信息写入一个小的JSON状态文件，
指标和事件逐条追加到旁边的 JSON Lines 历史文件，写状态时不会重写历史。
"""

import json
import os
import tempfile
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any, Iterable

from ..models.monitoring import (
    Target, TargetState, Event, Metric, MaintenanceWindow, NotificationChannel,
    EventFilter, TLSInfo, ensure_utc, normalize_tags
)
from ..utils.exceptions import StoreError, ErrorCode
from ..utils.log_manager import get_logger
from .maintenance import window_active_at, window_applies

STATE_DATETIME_KEYS = ('last_checked_at', 'last_notified_at', 'down_since', 'retry_at')


def _encode_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _decode_datetime(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


def history_path_for(state_file: str) -> str:
    """state.json -> state.history.jsonl"""
    return str(Path(state_file).with_suffix('.history.jsonl'))


def _history_record(item) -> Dict[str, Any]:
    data = asdict(item)
    data['timestamp'] = _encode_datetime(item.timestamp)
    data['kind'] = 'metric' if isinstance(item, Metric) else 'event'
    return data


class MonitoringStore:
    """监控存储

    所有集合由同一把可重入锁保护；目标状态以整条记录替换的方式写入，
    读取方不会看到写了一半的状态。
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        初始化存储

        Args:
            state_file: 状态文件路径，为None时只保存在内存中；
                历史文件与它同目录，扩展名为 .history.jsonl
        """
        self.state_file = state_file
        self.history_file = history_path_for(state_file) if state_file else None
        self.logger = get_logger('store')
        self._lock = threading.RLock()

        self._targets: Dict[str, Target] = {}
        self._states: Dict[str, TargetState] = {}
        self._tls: Dict[str, TLSInfo] = {}
        self._metrics: List[Metric] = []
        self._events: List[Event] = []
        self._windows: Dict[int, MaintenanceWindow] = {}
        self._channels: Dict[int, NotificationChannel] = {}

        self._next_metric_id = 1
        self._next_event_id = 1
        self._next_window_id = 1
        self._next_channel_id = 1

        if self.state_file:
            self._load()

    # ---- 监控目标 ----

    def upsert_target(self, target: Target) -> Target:
        with self._lock:
            self._targets[target.id] = target
            return target

    def get_target(self, target_id: str) -> Optional[Target]:
        with self._lock:
            return self._targets.get(target_id)

    def list_targets(self, active_only: bool = False) -> List[Target]:
        with self._lock:
            targets = list(self._targets.values())
        if active_only:
            targets = [t for t in targets if t.is_active]
        return targets

    def remove_target(self, target_id: str) -> bool:
        """删除目标及其当前状态，历史指标和事件保留"""
        with self._lock:
            removed = self._targets.pop(target_id, None) is not None
            had_tls = self._tls.pop(target_id, None) is not None
            if self._states.pop(target_id, None) is not None or had_tls:
                self._save_state()
            return removed

    # ---- 目标状态 ----

    def get_state(self, target_id: str) -> Optional[TargetState]:
        """返回状态副本，调用方修改不会影响存储"""
        with self._lock:
            state = self._states.get(target_id)
            return state.copy() if state is not None else None

    def upsert_state(self, state: TargetState,
                     events: Optional[Iterable[Event]] = None) -> List[Event]:
        """
        整条替换目标状态，并与本次检查产生的事件一起提交

        状态文件写入失败时状态和事件都不生效。

        Args:
            state: 新状态
            events: 与状态一起提交的事件

        Returns:
            List[Event]: 分配了ID的事件

        Raises:
            StoreError: 持久化失败
        """
        with self._lock:
            previous = self._states.get(state.target_id)
            self._states[state.target_id] = state.copy()
            try:
                self._save_state()
            except StoreError:
                # 持久化失败时回退内存中的记录
                if previous is None:
                    self._states.pop(state.target_id, None)
                else:
                    self._states[state.target_id] = previous
                raise
            return [self.add_event(event) for event in events or ()]

    def list_states(self) -> List[TargetState]:
        with self._lock:
            return [s.copy() for s in self._states.values()]

    # ---- 证书信息 ----

    def upsert_tls(self, target_id: str, info: TLSInfo) -> None:
        """记录目标最近一次 https 探测的证书，随下一次状态写入持久化"""
        with self._lock:
            self._tls[target_id] = info

    def get_tls(self, target_id: str) -> Optional[TLSInfo]:
        with self._lock:
            return self._tls.get(target_id)

    # ---- 指标 ----

    def add_metric(self, metric: Metric) -> Metric:
        with self._lock:
            metric = replace(metric, id=self._next_metric_id,
                             timestamp=ensure_utc(metric.timestamp))
            self._next_metric_id += 1
            self._metrics.append(metric)
            self._append_history(metric)
            return metric

    def list_metrics(self, target_id: str, since: Optional[datetime] = None) -> List[Metric]:
        """按时间升序返回目标的指标"""
        since = ensure_utc(since)
        with self._lock:
            items = [m for m in self._metrics if m.target_id == target_id
                     and (since is None or m.timestamp >= since)]
        return sorted(items, key=lambda m: (m.timestamp, m.id))

    def delete_metrics_before(self, cutoff: datetime) -> int:
        """删除早于 cutoff 的指标，返回删除数量"""
        cutoff = ensure_utc(cutoff)
        with self._lock:
            before = len(self._metrics)
            self._metrics = [m for m in self._metrics if m.timestamp >= cutoff]
            removed = before - len(self._metrics)
            if removed:
                self._compact_history()
        return removed

    # ---- 事件 ----

    def add_event(self, event: Event) -> Event:
        with self._lock:
            event = replace(event, id=self._next_event_id,
                            timestamp=ensure_utc(event.timestamp))
            self._next_event_id += 1
            self._events.append(event)
            self._append_history(event)
            return event

    def list_events(self, target_id: str, since: Optional[datetime] = None) -> List[Event]:
        """按追加顺序返回目标的事件"""
        since = ensure_utc(since)
        with self._lock:
            return [e for e in self._events if e.target_id == target_id
                    and (since is None or e.timestamp >= since)]

    def list_events_feed(self, event_filter: Optional[EventFilter] = None) -> List[Event]:
        """
        跨目标的事件流，按时间倒序

        Args:
            event_filter: 过滤条件；tags 与目标标签有交集才保留

        Returns:
            List[Event]: 事件列表
        """
        event_filter = event_filter or EventFilter()
        since = ensure_utc(event_filter.since)
        types = {t.strip().lower() for t in event_filter.types if t and t.strip()}
        tags = normalize_tags(event_filter.tags)

        with self._lock:
            events = list(self._events)
            target_tags = {tid: t.tags for tid, t in self._targets.items()}

        result = []
        for event in events:
            if since is not None and event.timestamp < since:
                continue
            if event_filter.target_id and event.target_id != event_filter.target_id:
                continue
            if types and event.event_type not in types:
                continue
            if tags and not (target_tags.get(event.target_id, set()) & tags):
                continue
            result.append(event)

        result.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        if event_filter.limit and event_filter.limit > 0:
            result = result[:event_filter.limit]
        return result

    def delete_events_before(self, cutoff: datetime) -> int:
        cutoff = ensure_utc(cutoff)
        with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.timestamp >= cutoff]
            removed = before - len(self._events)
            if removed:
                self._compact_history()
        return removed

    # ---- 维护窗口 ----

    def create_maintenance(self, window: MaintenanceWindow) -> MaintenanceWindow:
        with self._lock:
            window = replace(window, id=self._next_window_id)
            self._next_window_id += 1
            self._windows[window.id] = window
            return window

    def update_maintenance(self, window: MaintenanceWindow) -> MaintenanceWindow:
        """
        Raises:
            StoreError: 窗口不存在
        """
        with self._lock:
            if window.id not in self._windows:
                raise StoreError(f"维护窗口不存在: {window.id}", recoverable=False)
            self._windows[window.id] = window
            return window

    def delete_maintenance(self, window_id: int) -> bool:
        with self._lock:
            return self._windows.pop(window_id, None) is not None

    def get_maintenance(self, window_id: int) -> Optional[MaintenanceWindow]:
        with self._lock:
            return self._windows.get(window_id)

    def list_maintenance(self, active_only: bool = False) -> List[MaintenanceWindow]:
        with self._lock:
            windows = list(self._windows.values())
        if active_only:
            windows = [w for w in windows if w.is_active]
        return windows

    def active_windows_for(self, target_id: str, tags: Iterable[str],
                           now: datetime) -> List[MaintenanceWindow]:
        """返回作用于目标且在 now 时刻生效的维护窗口"""
        tags = normalize_tags(tags)
        with self._lock:
            windows = list(self._windows.values())
        return [w for w in windows
                if w.is_active and window_applies(w, target_id, tags) and window_active_at(w, now)]

    # ---- 通知渠道 ----

    def upsert_channel(self, channel: NotificationChannel) -> NotificationChannel:
        """按ID更新；没有ID时按名称匹配已有渠道，否则新建"""
        with self._lock:
            if channel.id is None:
                existing = next((c for c in self._channels.values()
                                 if c.name == channel.name), None)
                if existing is not None:
                    channel = replace(channel, id=existing.id)
                else:
                    channel = replace(channel, id=self._next_channel_id)
                    self._next_channel_id += 1
            self._channels[channel.id] = channel
            return channel

    def get_channel(self, channel_id: int) -> Optional[NotificationChannel]:
        with self._lock:
            return self._channels.get(channel_id)

    def list_channels(self, active_only: bool = False) -> List[NotificationChannel]:
        with self._lock:
            channels = sorted(self._channels.values(), key=lambda c: c.id)
        if active_only:
            channels = [c for c in channels if c.is_active]
        return channels

    def delete_channel(self, channel_id: int) -> bool:
        with self._lock:
            return self._channels.pop(channel_id, None) is not None

    # ---- 持久化 ----

    def _state_snapshot(self) -> Dict[str, Any]:
        states = []
        for state in self._states.values():
            data = asdict(state)
            for key in STATE_DATETIME_KEYS:
                data[key] = _encode_datetime(data[key])
            states.append(data)

        tls = {}
        for target_id, info in self._tls.items():
            data = asdict(info)
            data['not_after'] = _encode_datetime(info.not_after)
            data['not_before'] = _encode_datetime(info.not_before)
            tls[target_id] = data

        return {
            'states': states,
            'tls': tls,
            'last_updated': _encode_datetime(datetime.now().astimezone()),
        }

    def _write_atomic(self, path: str, write) -> None:
        """
        临时文件 + os.replace 原子写入

        Raises:
            StoreError: 写入失败
        """
        tmp_path = None
        try:
            directory = Path(path).parent
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(directory), prefix='.state-', suffix='.tmp')
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                write(f)
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as e:
            self.logger.error(f"保存 {path} 失败: {e}")
            raise StoreError(f"保存 {path} 失败: {e}",
                             ErrorCode.STATE_PERSISTENCE_ERROR, cause=e)
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def _save_state(self) -> None:
        if not self.state_file:
            return
        snapshot = self._state_snapshot()
        self._write_atomic(self.state_file,
                           lambda f: json.dump(snapshot, f, ensure_ascii=False, indent=2))

    def _append_history(self, item) -> None:
        """追加一行历史记录；失败只记录日志，内存中的数据仍然有效"""
        if not self.history_file:
            return
        try:
            Path(self.history_file).parent.mkdir(parents=True, exist_ok=True)
            with open(self.history_file, 'a', encoding='utf-8') as f:
                f.write(json.dumps(_history_record(item), ensure_ascii=False) + '\n')
        except OSError as e:
            self.logger.error(f"追加历史记录失败: {e}")

    def _compact_history(self) -> None:
        """清理过期数据后重写历史文件"""
        if not self.history_file:
            return
        items = list(self._metrics) + list(self._events)

        def write(f):
            for item in items:
                f.write(json.dumps(_history_record(item), ensure_ascii=False) + '\n')

        self._write_atomic(self.history_file, write)

    def _load(self) -> None:
        """
        从状态文件和历史文件加载运行时数据

        历史文件中无法解析的行（例如进程中断时写了一半的最后一行）会被跳过。

        Raises:
            StoreError: 状态文件存在但无法解析
        """
        if os.path.exists(self.state_file):
            try:
                with open(self.state_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)

                for item in data.get('states', []):
                    for key in STATE_DATETIME_KEYS:
                        item[key] = _decode_datetime(item.get(key))
                    state = TargetState(**item)
                    self._states[state.target_id] = state

                for target_id, item in data.get('tls', {}).items():
                    item['not_after'] = _decode_datetime(item['not_after'])
                    item['not_before'] = _decode_datetime(item['not_before'])
                    self._tls[target_id] = TLSInfo(**item)
            except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
                self.logger.error(f"加载状态失败: {e}")
                raise StoreError(f"加载状态失败: {e}",
                                 ErrorCode.STATE_PERSISTENCE_ERROR, cause=e)

        if os.path.exists(self.history_file):
            self._load_history()

        self._next_metric_id = max((m.id for m in self._metrics), default=0) + 1
        self._next_event_id = max((e.id for e in self._events), default=0) + 1

        self.logger.info(
            f"从 {self.state_file} 加载了 {len(self._states)} 个目标状态、"
            f"{len(self._events)} 条事件和 {len(self._metrics)} 条指标")

    def _load_history(self) -> None:
        skipped = 0
        try:
            with open(self.history_file, 'r', encoding='utf-8') as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        item = json.loads(line)
                        kind = item.pop('kind')
                        item['timestamp'] = _decode_datetime(item['timestamp'])
                        if kind == 'metric':
                            self._metrics.append(Metric(**item))
                        else:
                            self._events.append(Event(**item))
                    except (ValueError, TypeError, KeyError) as e:
                        skipped += 1
                        self.logger.warning(f"跳过无法解析的历史记录: {e}")
        except OSError as e:
            self.logger.error(f"加载历史记录失败: {e}")
            raise StoreError(f"加载历史记录失败: {e}",
                             ErrorCode.STATE_PERSISTENCE_ERROR, cause=e)
        if skipped:
            self.logger.warning(f"历史文件 {self.history_file} 中有 {skipped} 行被跳过")
