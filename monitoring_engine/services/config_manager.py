"""配置管理器"""

import os
from datetime import datetime, date, time as dt_time
from typing import Dict, Any, Optional, List

import yaml

from ..models.monitoring import (
    Target, MaintenanceWindow, NotificationChannel, MonitorSettings, ensure_utc
)
from ..utils.encryption import Encryptor
from ..utils.exceptions import ConfigError, EncryptionError
from ..utils.config_validator import ConfigValidator
from ..utils.log_manager import get_logger

ENCRYPTION_KEY_ENV = 'MONITORING_ENCRYPTION_KEY'


def parse_datetime(value: Any) -> datetime:
    """
    解析配置中的时间，YAML 已解析的 datetime/date 直接使用；无时区的值按 UTC 处理

    Raises:
        ConfigError: 时间格式无效
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return ensure_utc(datetime.combine(value, dt_time.min))
    try:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        raise ConfigError(f"时间格式无效: {value}")


def target_from_config(name: str, config: Dict[str, Any]) -> Target:
    """把 targets 下的一项配置转换为 Target"""
    return Target(
        id=str(config.get('id', name)),
        name=config.get('name', name),
        kind=config['kind'],
        url=config.get('url'),
        method=config.get('method', 'GET'),
        allowed_status=list(config.get('allowed_status') or []),
        host=config.get('host'),
        port=config.get('port'),
        timeout_seconds=config.get('timeout_seconds'),
        interval_seconds=config.get('interval_seconds'),
        tags=config.get('tags') or [],
        is_active=config.get('is_active', True),
        auto_incident=config.get('auto_incident', False),
        incident_severity=config.get('incident_severity'),
        owner=config.get('owner'),
        headers=dict(config.get('headers') or {}),
        request_body=config.get('request_body'),
        ignore_tls_errors=config.get('ignore_tls_errors', False),
        retries=config.get('retries', 0),
        retry_interval_seconds=config.get('retry_interval_seconds'),
    )


def window_from_config(config: Dict[str, Any]) -> MaintenanceWindow:
    """把 maintenance 下的一项配置转换为 MaintenanceWindow"""
    target = config.get('target')
    return MaintenanceWindow(
        name=config['name'],
        starts_at=parse_datetime(config['starts_at']),
        ends_at=parse_datetime(config['ends_at']),
        target_id=str(target) if target else None,
        tags=config.get('tags') or [],
        is_active=config.get('is_active', True),
        recurrence=config.get('recurrence'),
    )


def channel_from_config(config: Dict[str, Any],
                        encryptor: Optional[Encryptor]) -> NotificationChannel:
    """
    把 channels 下的一项配置转换为 NotificationChannel

    明文凭据（secret 或 secret_env 指向的环境变量）在这里立即加密，
    渠道对象只保存密文。

    Raises:
        ConfigError: 凭据缺失或无法加密
    """
    name = config['name']
    secret_enc = config.get('secret_enc')
    if secret_enc:
        secret_enc = secret_enc.encode('ascii') if isinstance(secret_enc, str) else secret_enc
    else:
        plain = config.get('secret')
        if not plain and config.get('secret_env'):
            plain = os.environ.get(config['secret_env'])
        if not plain:
            raise ConfigError(f"通知渠道 '{name}' 的凭据为空")
        if encryptor is None:
            raise ConfigError(f"通知渠道 '{name}' 需要加密密钥（{ENCRYPTION_KEY_ENV}）")
        secret_enc = encryptor.encrypt(str(plain))

    thread_id = config.get('thread_id')
    return NotificationChannel(
        name=name,
        type=config.get('type', 'telegram'),
        destination=str(config['destination']),
        secret_enc=secret_enc,
        thread_id=int(thread_id) if thread_id is not None else None,
        silent=config.get('silent', False),
        protect_content=config.get('protect_content', False),
        is_default=config.get('is_default', False),
        is_active=config.get('is_active', True),
    )


class ConfigManager:
    """配置管理器，负责YAML配置文件的加载、解析和验证"""

    def __init__(self, config_path: str):
        """
        初始化配置管理器

        Args:
            config_path: 配置文件路径
        """
        self.config_path = config_path
        self.config: Dict[str, Any] = {}
        self.last_modified: Optional[float] = None
        self.logger = get_logger('config_manager')

    def load_config(self) -> Dict[str, Any]:
        """
        加载YAML配置文件

        Returns:
            Dict[str, Any]: 配置字典

        Raises:
            ConfigError: 配置加载或验证失败
        """
        self.logger.info(f"开始加载配置文件: {self.config_path}")

        try:
            with open(self.config_path, 'r', encoding='utf-8') as file:
                config = yaml.safe_load(file)
        except yaml.YAMLError as e:
            self.logger.error(f"YAML格式错误: {e}")
            raise ConfigError(f"YAML格式错误: {e}", config_path=self.config_path)
        except FileNotFoundError:
            self.logger.error(f"配置文件不存在: {self.config_path}")
            raise ConfigError(f"配置文件不存在: {self.config_path}",
                              config_path=self.config_path)
        except PermissionError:
            self.logger.error(f"没有权限读取配置文件: {self.config_path}")
            raise ConfigError(f"没有权限读取配置文件: {self.config_path}",
                              config_path=self.config_path)

        if config is None:
            self.logger.error("配置文件为空")
            raise ConfigError("配置文件为空", config_path=self.config_path)

        self._validate_config(config)

        self.logger.info(
            f"配置验证成功，包含 {len(config.get('targets') or {})} 个监控目标、"
            f"{len(config.get('maintenance') or [])} 个维护窗口和 "
            f"{len(config.get('channels') or [])} 个通知渠道")

        old_config = self.config
        self.config = config
        self.last_modified = os.path.getmtime(self.config_path)

        if old_config:
            self._log_config_changes(old_config, config)
        else:
            self.logger.info("首次加载配置文件")

        return self.config

    def _validate_config(self, config: Dict[str, Any]) -> None:
        """
        验证配置文件内容

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(config, dict):
            raise ConfigError("配置文件根节点必须是字典类型")

        if 'global' in config:
            ConfigValidator.validate_global_config(config['global'])

        if 'settings' in config:
            ConfigValidator.validate_settings_config(config['settings'])

        targets = config.get('targets') or {}
        if not isinstance(targets, dict):
            raise ConfigError("targets配置必须是字典类型")
        for target_name, target_config in targets.items():
            ConfigValidator.validate_target_config(target_name, target_config)

        windows = config.get('maintenance') or []
        if not isinstance(windows, list):
            raise ConfigError("maintenance配置必须是列表类型")
        for window in windows:
            ConfigValidator.validate_maintenance_config(window)
            parse_datetime(window['starts_at'])
            parse_datetime(window['ends_at'])

        channels = config.get('channels') or []
        if not isinstance(channels, list):
            raise ConfigError("channels配置必须是列表类型")
        for channel in channels:
            ConfigValidator.validate_channel_config(channel)

    def get_global_config(self) -> Dict[str, Any]:
        return self.config.get('global') or {}

    def get_settings(self) -> MonitorSettings:
        return MonitorSettings.from_dict(self.config.get('settings'))

    def get_targets(self) -> List[Target]:
        targets = self.config.get('targets') or {}
        return [target_from_config(name, cfg) for name, cfg in targets.items()]

    def get_maintenance_windows(self) -> List[MaintenanceWindow]:
        return [window_from_config(cfg) for cfg in self.config.get('maintenance') or []]

    def get_channels(self, encryptor: Optional[Encryptor]) -> List[NotificationChannel]:
        return [channel_from_config(cfg, encryptor) for cfg in self.config.get('channels') or []]

    def get_encryption_key(self) -> Optional[str]:
        """加密密钥：环境变量优先，其次是 global.encryption_key"""
        return os.environ.get(ENCRYPTION_KEY_ENV) or self.get_global_config().get('encryption_key')

    def create_encryptor(self) -> Optional[Encryptor]:
        """
        根据配置创建加密器，未配置密钥时返回None

        Raises:
            ConfigError: 密钥格式无效
        """
        key = self.get_encryption_key()
        if not key:
            return None
        try:
            return Encryptor(key)
        except EncryptionError as e:
            raise ConfigError(f"加密密钥无效: {e.message}", cause=e)

    def apply_to_store(self, store, encryptor: Optional[Encryptor]) -> None:
        """
        把配置中的目标、维护窗口和通知渠道同步到存储

        配置文件是这三类数据的唯一来源：配置中删除的目标会从存储移除，
        维护窗口整体替换，通知渠道按名称更新，多余的渠道被删除。
        """
        targets = self.get_targets()
        channels = self.get_channels(encryptor)
        windows = self.get_maintenance_windows()

        target_ids = {t.id for t in targets}
        for existing in store.list_targets():
            if existing.id not in target_ids:
                store.remove_target(existing.id)
                self.logger.info(f"移除监控目标: {existing.name}")
        for target in targets:
            store.upsert_target(target)

        for window in store.list_maintenance():
            store.delete_maintenance(window.id)
        for window in windows:
            store.create_maintenance(window)

        channel_names = {c.name for c in channels}
        for existing in store.list_channels():
            if existing.name not in channel_names:
                store.delete_channel(existing.id)
        for channel in channels:
            store.upsert_channel(channel)

        self.logger.info(
            f"配置已应用: {len(targets)} 个目标，{len(windows)} 个维护窗口，{len(channels)} 个通知渠道")

    def is_config_changed(self) -> bool:
        try:
            current_modified = os.path.getmtime(self.config_path)
        except OSError:
            return False
        return self.last_modified is None or current_modified > self.last_modified

    def reload_config(self) -> Dict[str, Any]:
        """
        重新加载配置文件

        Raises:
            ConfigError: 配置重新加载失败
        """
        self.logger.info("重新加载配置文件")
        return self.load_config()

    def _log_config_changes(self, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> None:
        old_targets = old_config.get('targets') or {}
        new_targets = new_config.get('targets') or {}

        added = set(new_targets) - set(old_targets)
        if added:
            self.logger.info(f"新增监控目标: {', '.join(sorted(added))}")

        removed = set(old_targets) - set(new_targets)
        if removed:
            self.logger.info(f"删除监控目标: {', '.join(sorted(removed))}")

        for name in set(old_targets) & set(new_targets):
            if old_targets[name] != new_targets[name]:
                self.logger.info(f"监控目标配置已修改: {name}")

        if (old_config.get('maintenance') or []) != (new_config.get('maintenance') or []):
            self.logger.info("维护窗口配置已修改")

        # 渠道配置可能包含明文凭据，只记录名称
        old_channels = [c.get('name') for c in old_config.get('channels') or []]
        new_channels = [c.get('name') for c in new_config.get('channels') or []]
        if old_channels != new_channels:
            self.logger.info(f"通知渠道变更: {old_channels} -> {new_channels}")

        if (old_config.get('settings') or {}) != (new_config.get('settings') or {}):
            self.logger.info("引擎设置已修改")
