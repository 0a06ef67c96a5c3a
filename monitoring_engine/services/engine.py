"""监控引擎

check_now 是对单个目标执行一次完整检查的状态机步骤：探测、记录指标、
计算状态与维护覆盖，把目标状态和事件一起提交，然后发通知、开关事件单。
同一目标的 check_now 由按目标划分的锁串行化，不同目标之间完全并行。
"""

import asyncio
from collections import Counter
from datetime import datetime
from typing import Callable, Awaitable, Dict, Optional, Union

from ..alerts.dispatcher import NotificationDispatcher, repeat_down_due
from ..checkers import probe
from ..models.monitoring import (
    Target, TargetState, CheckResult, Event, Metric, MonitorSettings,
    STATUS_UP, STATUS_DOWN, STATUS_UNKNOWN,
    EVENT_UP, EVENT_DOWN, EVENT_MAINTENANCE_START, EVENT_MAINTENANCE_END,
    ensure_utc, utcnow
)
from ..utils.exceptions import TargetNotFoundError
from ..utils.log_manager import get_logger
from .incidents import AutoIncidentManager
from .maintenance import MaintenanceResolver
from .retry_policy import decide_retry

Prober = Callable[[Target, MonitorSettings], Awaitable[CheckResult]]
SettingsSource = Union[MonitorSettings, Callable[[], MonitorSettings]]


class Engine:
    """监控引擎（状态机编排）"""

    def __init__(self, store,
                 settings: Optional[SettingsSource] = None,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 incident_manager: Optional[AutoIncidentManager] = None,
                 prober: Prober = probe,
                 clock: Callable[[], datetime] = utcnow):
        """
        初始化监控引擎

        Args:
            store: 监控存储
            settings: 全局设置，或返回当前设置的可调用对象
            dispatcher: 通知调度器，为None时不发送通知
            incident_manager: 自动事件单管理器，为None时不处理事件单
            prober: 探测函数，默认按目标类型分发到已注册的探测器
            clock: 时钟，返回带时区的当前时间
        """
        self.store = store
        self.dispatcher = dispatcher
        self.incident_manager = incident_manager
        self.prober = prober
        self.clock = clock
        self.resolver = MaintenanceResolver(store)
        self.logger = get_logger('engine')

        self._settings_source: SettingsSource = settings or MonitorSettings()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._in_flight = 0
        self._stats = Counter()
        self._error_kinds = Counter()

    @property
    def settings(self) -> MonitorSettings:
        source = self._settings_source
        return source() if callable(source) else source

    def update_settings(self, settings: SettingsSource) -> None:
        self._settings_source = settings

    def _lock_for(self, target_id: str) -> asyncio.Lock:
        lock = self._locks.get(target_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[target_id] = lock
        return lock

    def forget_target(self, target_id: str) -> None:
        """目标被删除后释放它的锁"""
        lock = self._locks.get(target_id)
        if lock is not None and not lock.locked():
            del self._locks[target_id]

    async def check_now(self, target_id: str, now: Optional[datetime] = None) -> TargetState:
        """
        对目标执行一次检查

        Args:
            target_id: 目标ID
            now: 检查时间，默认取引擎时钟

        Returns:
            TargetState: 写入后的目标状态

        Raises:
            TargetNotFoundError: 目标不存在
            StoreError: 存储读写失败，本次检查中止
        """
        target = self.store.get_target(target_id)
        if target is None:
            raise TargetNotFoundError(target_id)

        async with self._lock_for(target_id):
            self._in_flight += 1
            try:
                return await self._check_locked(target, now)
            except Exception:
                self._stats['checks_failed'] += 1
                raise
            finally:
                self._in_flight -= 1

    async def _check_locked(self, target: Target, now: Optional[datetime]) -> TargetState:
        settings = self.settings
        now = ensure_utc(now) if now is not None else self.clock()

        previous = self.store.get_state(target.id)
        result = await self.prober(target, settings)

        self._stats['checks_total'] += 1
        self._error_kinds[result.error_kind.value] += 1

        self.store.add_metric(Metric(
            target_id=target.id,
            timestamp=now,
            latency=result.latency,
            ok=result.ok,
            status_code=result.status_code,
            error_kind=None if result.ok else result.error_kind.value
        ))
        if result.tls is not None:
            self.store.upsert_tls(target.id, result.tls)

        new_status = STATUS_UP if result.ok else STATUS_DOWN
        windows = self.resolver.active_windows(target.id, target.tags, now)
        in_maintenance = bool(windows)
        events = []

        previous_maintenance = previous.maintenance_active if previous else False
        if in_maintenance != previous_maintenance:
            if in_maintenance:
                names = ', '.join(w.name for w in windows)
                events.append(Event(target.id, now, EVENT_MAINTENANCE_START,
                                    f"{target.name} 进入维护: {names}"))
                self.logger.info(f"目标 {target.name} 进入维护窗口: {names}")
            else:
                events.append(Event(target.id, now, EVENT_MAINTENANCE_END,
                                    f"{target.name} 维护结束"))
                self.logger.info(f"目标 {target.name} 维护结束")

        previous_status = previous.status if previous else None
        # 首次检查即正常只建立基线；首次检查即不可达按状态变化处理
        if previous_status in (None, STATUS_UNKNOWN):
            transitioned = new_status == STATUS_DOWN
        else:
            transitioned = new_status != previous_status
        if transitioned:
            if new_status == STATUS_DOWN:
                events.append(Event(target.id, now, EVENT_DOWN,
                                    f"{target.name} 不可达: {result.error}"))
                self.logger.warning(
                    f"目标 {target.name} 状态变化: {previous_status or STATUS_UNKNOWN} -> down "
                    f"({result.error})")
            else:
                events.append(Event(target.id, now, EVENT_UP, f"{target.name} 已恢复"))
                self.logger.info(
                    f"目标 {target.name} 状态变化: {previous_status or STATUS_UNKNOWN} -> up")

        if new_status == STATUS_DOWN:
            down_since = previous.down_since if previous and previous.status == STATUS_DOWN else None
            down_since = down_since or now
            down_sequence = (previous.down_sequence if previous else 0) + 1
        else:
            down_since = None
            down_sequence = 0

        retry = decide_retry(target, previous, result, now, settings)
        if retry.scheduled:
            self.logger.info(f"目标 {target.name} 第 {retry.attempt}/{target.retries} 次重试"
                             f"安排在 {retry.retry_at.isoformat()}")

        last_notified_at = previous.last_notified_at if previous else None
        state = TargetState(
            target_id=target.id,
            status=new_status,
            last_result_status=new_status,
            last_error=result.error,
            maintenance_active=in_maintenance,
            last_checked_at=now,
            last_notified_at=last_notified_at,
            down_since=down_since,
            down_sequence=down_sequence,
            retry_attempt=retry.attempt,
            retry_at=retry.retry_at
        )
        # 状态和事件先于通知、事件单提交；之后被取消也不会在下一次检查时重复状态变化
        self.store.upsert_state(state, events)
        if transitioned:
            self._stats['transitions'] += 1

        if in_maintenance:
            self.logger.debug(f"目标 {target.name} 处于维护中，跳过通知和事件单")
            return state

        if await self._notify(target, result, new_status, transitioned,
                              last_notified_at, now, settings):
            state.last_notified_at = now
            self.store.upsert_state(state)
        await self._drive_incident(target, new_status, now)
        return state

    async def _notify(self, target: Target, result: CheckResult,
                      new_status: str, transitioned: bool,
                      last_notified_at: Optional[datetime], now: datetime,
                      settings: MonitorSettings) -> bool:
        """发送状态变化通知或仍不可达提醒，返回是否有渠道发送成功"""
        if self.dispatcher is None:
            return False

        # 没有状态变化时只有持续不可达的提醒
        repeat = not transitioned
        if repeat and (new_status != STATUS_DOWN
                       or not repeat_down_due(last_notified_at, now, settings)):
            return False

        try:
            sent = await self.dispatcher.notify(new_status, target, result, last_notified_at,
                                                now, settings, repeat_down=repeat)
        except Exception as e:
            self.logger.error(f"目标 {target.name} 通知发送异常: {e}", exc_info=True)
            return False

        if sent:
            self._stats['notifications_sent'] += 1
        return sent

    async def _drive_incident(self, target: Target, new_status: str, now: datetime) -> None:
        """不可达时确保存在事件单，正常时关闭仍处于打开状态的事件单"""
        if self.incident_manager is None or not target.auto_incident:
            return
        try:
            if new_status == STATUS_DOWN:
                if await self.incident_manager.on_down(target, now) is not None:
                    self._stats['incidents_opened'] += 1
            else:
                # 在维护期间恢复的目标没有状态变化，也要在维护结束后关闭事件单
                if await self.incident_manager.on_up(target, now) is not None:
                    self._stats['incidents_closed'] += 1
        except Exception as e:
            self.logger.error(f"目标 {target.name} 自动事件单处理失败: {e}", exc_info=True)

    async def check_all_now(self) -> Dict[str, Optional[TargetState]]:
        """
        立即检查全部启用的目标

        Returns:
            Dict[str, Optional[TargetState]]: 目标ID到检查后状态的映射，失败的为None
        """
        targets = self.store.list_targets(active_only=True)
        results = await asyncio.gather(
            *(self.check_now(t.id) for t in targets), return_exceptions=True)

        states = {}
        for target, result in zip(targets, results):
            if isinstance(result, Exception):
                self.logger.error(f"检查目标 {target.name} 失败: {result}")
                states[target.id] = None
            else:
                states[target.id] = result
        return states

    def get_stats(self) -> Dict[str, object]:
        return {
            'checks_total': self._stats['checks_total'],
            'checks_failed': self._stats['checks_failed'],
            'transitions': self._stats['transitions'],
            'notifications_sent': self._stats['notifications_sent'],
            'incidents_opened': self._stats['incidents_opened'],
            'incidents_closed': self._stats['incidents_closed'],
            'error_kinds': dict(self._error_kinds),
            'in_flight': self._in_flight,
        }
