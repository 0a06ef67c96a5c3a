"""配置文件监控器"""

import os
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config_manager import ConfigManager
from ..utils.exceptions import ConfigError
from ..utils.log_manager import get_logger


class ConfigFileHandler(FileSystemEventHandler):
    """配置文件变更事件处理器

    编辑器常以“写临时文件再重命名”的方式保存，所以同时处理创建和移动事件。
    """

    def __init__(self, config_path: str, callback: Callable[[], None]):
        self.config_path = config_path
        self.callback = callback
        self.logger = get_logger('config_watcher.handler')

    def _handle(self, path: str):
        if os.path.abspath(path) != self.config_path:
            return
        self.logger.info(f"检测到配置文件变更: {self.config_path}")
        try:
            self.callback()
        except Exception as e:
            self.logger.error(f"处理配置变更失败: {e}")

    def on_modified(self, event):
        if not event.is_directory:
            self._handle(event.src_path)

    def on_created(self, event):
        if not event.is_directory:
            self._handle(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._handle(event.dest_path)


class ConfigWatcher:
    """配置文件监控器，支持热更新"""

    def __init__(self, config_manager: ConfigManager):
        """
        Args:
            config_manager: 配置管理器实例
        """
        self.config_manager = config_manager
        self.observer: Optional[Observer] = None
        self.logger = get_logger('config_watcher')
        self.change_callbacks = []
        self._running = False

    def add_change_callback(self, callback: Callable):
        """
        添加配置变更回调函数

        Args:
            callback: 回调函数，参数为 (old_config, new_config)，在观察者线程中调用
        """
        self.change_callbacks.append(callback)

    def remove_change_callback(self, callback: Callable):
        if callback in self.change_callbacks:
            self.change_callbacks.remove(callback)

    def _on_config_changed(self):
        """重新加载配置并通知回调；新配置无效时保留旧配置"""
        if not self.config_manager.is_config_changed():
            return

        old_config = dict(self.config_manager.config)
        try:
            new_config = self.config_manager.reload_config()
        except ConfigError as e:
            self.logger.error(f"配置重新加载失败，继续使用旧配置: {e.format_error()}")
            return

        self.logger.info("配置文件已重新加载")
        for callback in self.change_callbacks:
            try:
                callback(old_config, new_config)
            except Exception as e:
                self.logger.error(f"配置变更回调执行失败: {e}")

    def start_watching(self):
        """
        开始监控配置文件

        Raises:
            ConfigError: 启动失败
        """
        if self._running:
            self.logger.warning("配置监控器已经在运行")
            return

        config_path = os.path.abspath(self.config_manager.config_path)
        try:
            self.observer = Observer()
            handler = ConfigFileHandler(config_path, self._on_config_changed)
            self.observer.schedule(handler, os.path.dirname(config_path), recursive=False)
            self.observer.start()
        except OSError as e:
            self.logger.error(f"启动配置监控失败: {e}")
            self.observer = None
            raise ConfigError(f"启动配置监控失败: {e}", config_path=config_path)

        self._running = True
        self.logger.info(f"开始监控配置文件: {config_path}")

    def stop_watching(self):
        if not self._running:
            return

        if self.observer:
            self.observer.stop()
            self.observer.join()
            self.observer = None

        self._running = False
        self.logger.info("配置文件监控已停止")

    def is_running(self) -> bool:
        return self._running

    def __enter__(self):
        self.start_watching()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop_watching()
