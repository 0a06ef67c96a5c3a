#!/usr/bin/env python3
"""
监控告警引擎主应用程序入口

加载配置、组装存储、引擎、通知和调度组件，
并处理信号实现优雅关闭。
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional, Dict, Any

from monitoring_engine import __version__
from monitoring_engine.alerts.dispatcher import NotificationDispatcher
from monitoring_engine.alerts.telegram_sender import TelegramSender
from monitoring_engine.models.monitoring import MonitorSettings, utcnow
from monitoring_engine.services.config_manager import ConfigManager
from monitoring_engine.services.config_watcher import ConfigWatcher
from monitoring_engine.services.engine import Engine
from monitoring_engine.services.incidents import AutoIncidentManager, MemoryIncidentsStore
from monitoring_engine.services.monitor_scheduler import MonitorScheduler
from monitoring_engine.services.store import MonitoringStore
from monitoring_engine.utils.encryption import Encryptor
from monitoring_engine.utils.exceptions import MonitoringError, ConfigError
from monitoring_engine.utils.log_manager import log_manager, get_logger


class MonitoringEngineApp:
    """监控告警引擎主应用程序类"""

    def __init__(self, config_path: str, log_overrides: Optional[Dict[str, Any]] = None):
        """初始化应用程序

        Args:
            config_path: 配置文件路径
            log_overrides: 命令行传入的日志配置，覆盖配置文件
        """
        self.config_path = config_path
        self.log_overrides = log_overrides or {}
        self.logger: Optional[logging.Logger] = None
        self.is_running = False
        self.shutdown_event = asyncio.Event()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

        self.config_manager: Optional[ConfigManager] = None
        self.config_watcher: Optional[ConfigWatcher] = None
        self.settings = MonitorSettings()
        self.encryptor: Optional[Encryptor] = None
        self.store: Optional[MonitoringStore] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.incident_manager: Optional[AutoIncidentManager] = None
        self.engine: Optional[Engine] = None
        self.scheduler: Optional[MonitorScheduler] = None

        self.background_tasks = set()
        self.last_config_error: Optional[Dict[str, Any]] = None

    async def initialize(self):
        """初始化应用程序组件"""
        self.loop = asyncio.get_running_loop()

        self.config_manager = ConfigManager(self.config_path)
        config = self.config_manager.load_config()

        global_config = config.get('global') or {}
        self._configure_logging(global_config)
        self.logger = get_logger('main')
        self.logger.info("开始初始化监控告警引擎")

        self.settings = self.config_manager.get_settings()
        self.encryptor = self.config_manager.create_encryptor()
        if self.encryptor is None:
            self.logger.warning("未配置加密密钥，通知渠道将无法使用")

        self.store = MonitoringStore(global_config.get('state_file'))
        self.config_manager.apply_to_store(self.store, self.encryptor)

        telegram_config = global_config.get('telegram') or {}
        self.dispatcher = NotificationDispatcher(
            self.store, self.encryptor,
            {'telegram': TelegramSender('telegram', telegram_config)})

        self.incident_manager = AutoIncidentManager(
            MemoryIncidentsStore(), self.settings.incident_reg_format)

        self.engine = Engine(
            self.store,
            settings=lambda: self.settings,
            dispatcher=self.dispatcher,
            incident_manager=self.incident_manager)
        self.scheduler = MonitorScheduler(self.engine, self.store, lambda: self.settings)

        self.config_watcher = ConfigWatcher(self.config_manager)
        self.config_watcher.add_change_callback(self._on_config_changed_callback)

        self.logger.info("应用程序组件初始化完成")

    def _configure_logging(self, global_config: Dict[str, Any]):
        log_config = {
            'log_level': global_config.get('log_level', 'INFO'),
            'enable_console': True,
            'enable_file': bool(global_config.get('log_file')),
        }
        if global_config.get('log_file'):
            log_config['log_file'] = global_config['log_file']
            log_config['max_file_size'] = global_config.get('max_log_size', 10 * 1024 * 1024)
            log_config['backup_count'] = global_config.get('log_backup_count', 5)

        log_config.update(self.log_overrides)
        if self.log_overrides.get('log_file'):
            log_config['enable_file'] = True
        log_manager.configure(log_config)

    def _on_config_changed_callback(self, old_config: Dict[str, Any],
                                    new_config: Dict[str, Any]):
        """配置文件变更回调（观察者线程），切回事件循环中应用"""
        if self.loop is not None:
            self.loop.call_soon_threadsafe(self._apply_new_config, new_config)

    def _apply_new_config(self, new_config: Dict[str, Any]):
        try:
            self._configure_logging(new_config.get('global') or {})
            old_ids = {t.id for t in self.store.list_targets()}

            self.settings = self.config_manager.get_settings()
            self.incident_manager.reg_format = self.settings.incident_reg_format
            self.config_manager.apply_to_store(self.store, self.encryptor)

            for target_id in old_ids - {t.id for t in self.store.list_targets()}:
                self.engine.forget_target(target_id)
            self.last_config_error = None
            self.logger.info("配置重新加载完成")
        except MonitoringError as e:
            self.last_config_error = e.to_dict()
            self.logger.error(f"应用新配置失败: {e.format_error()}")

    async def start(self):
        """启动应用程序，直到收到关闭信号"""
        if self.is_running:
            self.logger.warning("应用程序已经在运行")
            return

        self.is_running = True
        self.logger.info("启动监控告警引擎")
        try:
            self.config_watcher.start_watching()

            scheduler_task = asyncio.create_task(self.scheduler.start())
            self.background_tasks.add(scheduler_task)
            scheduler_task.add_done_callback(self.background_tasks.discard)

            self.logger.info("监控告警引擎启动完成")
            await self.shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self):
        """停止应用程序"""
        if not self.is_running:
            return

        self.logger.info("正在停止监控告警引擎...")
        self.is_running = False

        if self.scheduler:
            await self.scheduler.stop()

        if self.config_watcher:
            self.config_watcher.stop_watching()

        for task in self.background_tasks:
            if not task.done():
                task.cancel()
        if self.background_tasks:
            await asyncio.gather(*self.background_tasks, return_exceptions=True)
        self.background_tasks.clear()

        self.logger.info("监控告警引擎已停止")
        log_manager.cleanup()

    def shutdown(self):
        """触发应用程序关闭"""
        if self.logger:
            self.logger.info("收到关闭信号")
        self.shutdown_event.set()

    def get_status(self) -> Dict[str, Any]:
        status = {
            'is_running': self.is_running,
            'config_path': self.config_path,
            'background_tasks_count': len(self.background_tasks),
            'last_config_error': self.last_config_error,
        }
        if self.scheduler:
            status['scheduler_stats'] = self.scheduler.get_scheduler_stats()
        if self.engine:
            status['engine_stats'] = self.engine.get_stats()
        if self.dispatcher:
            status['notification_stats'] = self.dispatcher.get_stats()
        if self.store:
            status['states'] = {s.target_id: s.status for s in self.store.list_states()}
        return status


def create_argument_parser() -> argparse.ArgumentParser:
    """创建命令行参数解析器"""
    parser = argparse.ArgumentParser(
        prog='monitoring-engine',
        description='监控告警引擎 - 探测 HTTP/TCP 目标、维护状态并发送告警通知',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例用法:
  %(prog)s config.yaml                    # 使用指定配置文件启动监控
  %(prog)s --validate config.yaml         # 验证配置文件格式
  %(prog)s --check-once config.yaml       # 立即检查全部目标后退出
  %(prog)s --test-notify config.yaml      # 向全部通知渠道发送测试通知

配置文件格式请参考 examples/config.example.yaml
        """
    )

    parser.add_argument('config_file', nargs='?', help='YAML配置文件路径')
    parser.add_argument('--version', '-v', action='version',
                        version=f'%(prog)s {__version__}')
    parser.add_argument('--validate', action='store_true', help='验证配置文件格式并退出')
    parser.add_argument('--check-once', action='store_true', help='执行一次检查后退出')
    parser.add_argument('--test-notify', action='store_true', help='向通知渠道发送测试通知并退出')
    parser.add_argument('--generate-key', action='store_true', help='生成新的加密密钥并退出')
    parser.add_argument('--log-level',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='设置日志级别（覆盖配置文件设置）')
    parser.add_argument('--log-file', help='日志文件路径（覆盖配置文件设置）')
    return parser


def validate_config_file(config_path: str) -> bool:
    """验证配置文件"""
    print(f"正在验证配置文件: {config_path}")
    try:
        config_manager = ConfigManager(config_path)
        config_manager.load_config()
        targets = config_manager.get_targets()
        windows = config_manager.get_maintenance_windows()
    except MonitoringError as e:
        print(f"❌ 配置文件验证失败: {e}")
        return False

    print("✅ 配置文件验证成功!")
    print(f"   - 监控目标数量: {len(targets)}")
    for target in targets:
        print(f"     * {target.name} ({target.kind}) {target.address}")
    print(f"   - 维护窗口数量: {len(windows)}")
    print(f"   - 通知渠道数量: {len(config_manager.config.get('channels') or [])}")
    return True


async def check_once(app: MonitoringEngineApp) -> bool:
    """立即检查全部目标，全部正常时返回True"""
    states = await app.engine.check_all_now()
    print(f"✅ 检查完成，共检查 {len(states)} 个目标:")

    all_up = True
    for target_id, state in states.items():
        target = app.store.get_target(target_id)
        if state is None:
            print(f"   ❌ {target.name}: 检查失败")
            all_up = False
        elif state.status == 'up':
            print(f"   ✅ {target.name}: 正常")
            tls = app.store.get_tls(target_id)
            if tls is not None:
                print(f"      证书 {tls.common_name or '-'} 剩余 {tls.days_left(utcnow()):.0f} 天")
        else:
            print(f"   ❌ {target.name}: 不可达 - {state.last_error}")
            all_up = False
    return all_up


async def send_test_notifications(app: MonitoringEngineApp) -> bool:
    """向每个启用的通知渠道发送测试通知"""
    channels = app.store.list_channels(active_only=True)
    if not channels:
        print("❌ 没有启用的通知渠道")
        return False

    success = True
    for channel in channels:
        try:
            await app.dispatcher.test_channel(channel)
            print(f"   ✅ {channel.name}: 测试通知已发送")
        except MonitoringError as e:
            print(f"   ❌ {channel.name}: {e.message}")
            success = False
    return success


async def main() -> int:
    """主函数，返回进程退出码"""
    parser = create_argument_parser()
    args = parser.parse_args()

    if args.generate_key:
        print(Encryptor.generate_key())
        return 0

    if not args.config_file:
        parser.print_help()
        return 1

    config_path = args.config_file
    if not os.path.exists(config_path):
        print(f"配置文件不存在: {config_path}", file=sys.stderr)
        return 1

    if args.validate:
        return 0 if validate_config_file(config_path) else 1

    log_overrides = {}
    if args.log_level:
        log_overrides['log_level'] = args.log_level
    if args.log_file:
        log_overrides['log_file'] = args.log_file

    app = MonitoringEngineApp(config_path, log_overrides)
    try:
        await app.initialize()

        if args.check_once:
            return 0 if await check_once(app) else 1
        if args.test_notify:
            return 0 if await send_test_notifications(app) else 1

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, app.shutdown)
            except NotImplementedError:
                # Windows 事件循环不支持 add_signal_handler
                signal.signal(sig, lambda signum, frame: app.shutdown())

        print(f"监控告警引擎 v{__version__} 已启动")
        print(f"配置文件: {config_path}")
        print("按 Ctrl+C 停止程序")

        await app.start()
        return 0

    except ConfigError as e:
        print(f"配置错误: {e.format_error()}", file=sys.stderr)
        return 1
    except MonitoringError as e:
        print(f"监控引擎错误: {e.format_error()}", file=sys.stderr)
        return 1


def run():
    """命令行入口"""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
