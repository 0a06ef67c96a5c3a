"""监控调度器模块

按 tick 周期扫描到期的目标，通过有界并发把 check_now 分发给引擎，
并定期清理过期的指标和事件。
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, List, Optional, Set

from ..models.monitoring import MonitorSettings, Target, ensure_utc, utcnow
from ..utils.exceptions import MonitoringError
from ..utils.log_manager import get_logger
from .retry_policy import eligible_at


class MonitorScheduler:
    """监控调度器

    调度器持有自己的循环任务、停止事件和时钟，测试中可以直接调用 tick(now)。
    """

    def __init__(self, engine, store,
                 settings_provider: Optional[Callable[[], MonitorSettings]] = None,
                 clock: Callable[[], datetime] = utcnow):
        """初始化监控调度器

        Args:
            engine: 监控引擎
            store: 监控存储
            settings_provider: 返回当前全局设置的函数，默认使用引擎的设置
            clock: 时钟，返回带时区的当前时间
        """
        self.engine = engine
        self.store = store
        self.settings_provider = settings_provider or (lambda: engine.settings)
        self.clock = clock
        self.logger = get_logger('scheduler')

        self.is_running = False
        self.running_tasks: Set[asyncio.Task] = set()
        self.in_flight: Set[str] = set()
        self.semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_size = 0
        self._stop_event: Optional[asyncio.Event] = None
        self._last_sweep_at: Optional[datetime] = None

        self._stats = {
            'ticks': 0,
            'dispatched': 0,
            'skipped_in_flight': 0,
            'failed': 0,
            'metrics_pruned': 0,
            'events_pruned': 0,
            'last_tick_at': None,
        }

    def _get_semaphore(self, settings: MonitorSettings) -> asyncio.Semaphore:
        size = max(int(settings.max_concurrent_checks or 1), 1)
        if self.semaphore is None:
            self.semaphore = asyncio.Semaphore(size)
            self._semaphore_size = size
        elif size != self._semaphore_size:
            # 进行中的检查还持有旧信号量，空闲后再换，总并发不会超过旧上限
            if self.running_tasks:
                self.logger.debug(f"并发上限将在空闲后从 {self._semaphore_size} 调整为 {size}")
            else:
                self.logger.info(f"并发上限调整为 {size}")
                self.semaphore = asyncio.Semaphore(size)
                self._semaphore_size = size
        return self.semaphore

    async def start(self):
        """启动调度循环，直到 stop() 被调用"""
        if self.is_running:
            self.logger.warning("监控调度器已经在运行")
            return

        self.is_running = True
        self._stop_event = asyncio.Event()
        settings = self.settings_provider()
        self.logger.info(f"启动监控调度器，最大并发检查数: {settings.max_concurrent_checks}")

        try:
            await self._schedule_loop()
        except asyncio.CancelledError:
            self.logger.info("监控调度器被取消")
            raise
        finally:
            self.is_running = False

    async def stop(self):
        """停止调度：不再产生新的 tick，等待进行中的检查完成，超时后取消"""
        if self._stop_event is not None:
            self._stop_event.set()
        self.is_running = False
        self.logger.info("正在停止监控调度器...")

        pending = [t for t in self.running_tasks if not t.done()]
        if pending:
            grace = self.settings_provider().shutdown_grace_seconds
            self.logger.info(f"等待 {len(pending)} 个进行中的检查完成（最多 {grace} 秒）")
            _, still_pending = await asyncio.wait(pending, timeout=grace)
            for task in still_pending:
                task.cancel()
            if still_pending:
                self.logger.warning(f"取消了 {len(still_pending)} 个未完成的检查")
                await asyncio.gather(*still_pending, return_exceptions=True)

        self.running_tasks.clear()
        self.logger.info("监控调度器已停止")

    async def _schedule_loop(self):
        """调度循环"""
        while self.is_running:
            settings = self.settings_provider()
            try:
                if settings.engine_enabled:
                    await self.tick()
            except Exception as e:
                self.logger.error(f"调度循环异常: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(),
                                       timeout=max(settings.tick_seconds, 0.05))
            except asyncio.TimeoutError:
                continue

    def is_due(self, target: Target, now: datetime, settings: MonitorSettings) -> bool:
        """
        判断目标是否到期

        Returns:
            bool: 从未检查过、已到安排的重试时间，或距上次检查已超过检查间隔加抖动
        """
        due_at = eligible_at(target, self.store.get_state(target.id), settings)
        return due_at is None or now >= ensure_utc(due_at)

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        执行一次调度

        Args:
            now: 当前时间，默认取调度器时钟

        Returns:
            List[str]: 本次分发检查的目标ID
        """
        settings = self.settings_provider()
        if not settings.engine_enabled:
            self.logger.debug("引擎已禁用，跳过本次调度")
            return []

        now = ensure_utc(now) if now is not None else self.clock()
        self._stats['ticks'] += 1
        self._stats['last_tick_at'] = now

        semaphore = self._get_semaphore(settings)
        dispatched = []
        for target in self.store.list_targets(active_only=True):
            if target.id in self.in_flight:
                self._stats['skipped_in_flight'] += 1
                continue
            if not self.is_due(target, now, settings):
                continue

            self.in_flight.add(target.id)
            task = asyncio.create_task(self._check_target(target, semaphore, now))
            self.running_tasks.add(task)
            task.add_done_callback(self.running_tasks.discard)
            dispatched.append(target.id)

        if dispatched:
            self._stats['dispatched'] += len(dispatched)
            self.logger.debug(f"本次调度分发 {len(dispatched)} 个检查")

        self.sweep_retention(now, settings)
        return dispatched

    async def _check_target(self, target: Target, semaphore: asyncio.Semaphore, now: datetime):
        try:
            async with semaphore:
                state = await self.engine.check_now(target.id, now)
                self.logger.debug(f"目标 {target.name} 检查完成: {state.status}")
        except MonitoringError as e:
            self._stats['failed'] += 1
            self.logger.error(f"检查目标 {target.name} 失败: {e.format_error()}")
        except Exception as e:
            self._stats['failed'] += 1
            self.logger.error(f"检查目标 {target.name} 时发生异常: {e}", exc_info=True)
        finally:
            self.in_flight.discard(target.id)

    async def wait_idle(self):
        """等待当前所有进行中的检查结束"""
        while self.running_tasks:
            await asyncio.gather(*list(self.running_tasks), return_exceptions=True)

    def sweep_retention(self, now: datetime, settings: Optional[MonitorSettings] = None,
                        force: bool = False) -> Dict[str, int]:
        """
        清理过期的指标和事件

        Args:
            now: 当前时间
            settings: 全局设置
            force: 忽略清理周期立即执行

        Returns:
            Dict[str, int]: 删除的指标和事件数量
        """
        settings = settings or self.settings_provider()
        now = ensure_utc(now)
        period = timedelta(minutes=max(settings.retention_sweep_minutes, 1))
        if not force and self._last_sweep_at is not None and now - self._last_sweep_at < period:
            return {'metrics': 0, 'events': 0}
        self._last_sweep_at = now

        removed = {'metrics': 0, 'events': 0}
        try:
            if settings.metrics_retention_days > 0:
                cutoff = now - timedelta(days=settings.metrics_retention_days)
                removed['metrics'] = self.store.delete_metrics_before(cutoff)
            if settings.events_retention_days > 0:
                cutoff = now - timedelta(days=settings.events_retention_days)
                removed['events'] = self.store.delete_events_before(cutoff)
        except MonitoringError as e:
            self.logger.error(f"清理过期数据失败: {e.format_error()}")
            return removed

        self._stats['metrics_pruned'] += removed['metrics']
        self._stats['events_pruned'] += removed['events']
        if removed['metrics'] or removed['events']:
            self.logger.info(
                f"清理过期数据: 指标 {removed['metrics']} 条，事件 {removed['events']} 条")
        return removed

    def get_scheduler_stats(self) -> Dict[str, Any]:
        """获取调度器统计信息"""
        stats = dict(self._stats)
        last_tick = stats.pop('last_tick_at')
        stats.update({
            'is_running': self.is_running,
            'running_checks': len(self.in_flight),
            'max_concurrent_checks': self._semaphore_size,
            'last_tick_at': last_tick.isoformat() if last_tick else None,
            'last_sweep_at': self._last_sweep_at.isoformat() if self._last_sweep_at else None,
        })
        return stats
