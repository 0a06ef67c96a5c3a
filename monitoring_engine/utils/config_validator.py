"""配置验证工具"""

import re
from typing import Dict, Any, List

from .exceptions import ConfigError
from ..checkers import prober_factory

_STATUS_PATTERN = re.compile(r'^\s*(\d{3})\s*(?:-\s*(\d{3})\s*)?$')
_SEQ_PATTERN = re.compile(r'\{seq(?::[^}]*)?\}')


class ConfigValidator:
    """配置验证器"""

    SUPPORTED_CHANNEL_TYPES = ['telegram']
    HTTP_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'HEAD', 'OPTIONS', 'PATCH']

    @staticmethod
    def validate_target_config(target_name: str, config: Dict[str, Any]) -> None:
        """
        验证监控目标配置

        Args:
            target_name: 目标名称
            config: 目标配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(config, dict):
            raise ConfigError(f"目标 '{target_name}' 的配置必须是字典类型")

        if 'kind' not in config:
            raise ConfigError(f"目标 '{target_name}' 缺少必需的配置项: kind")

        kind = str(config.get('kind')).strip().lower()
        if not prober_factory.is_type_supported(kind):
            raise ConfigError(
                f"目标 '{target_name}' 的类型 '{kind}' 不受支持。"
                f"支持的类型: {prober_factory.get_supported_types()}")

        if kind == 'http':
            url = config.get('url')
            if not isinstance(url, str) or not url.strip().lower().startswith(('http://', 'https://')):
                raise ConfigError(f"目标 '{target_name}' 的 url 必须以 http:// 或 https:// 开头")
            method = str(config.get('method', 'GET')).upper()
            if method not in ConfigValidator.HTTP_METHODS:
                raise ConfigError(f"目标 '{target_name}' 的 method 不受支持: {method}")
            ConfigValidator.validate_allowed_status(
                target_name, config.get('allowed_status') or [])
        else:
            host = config.get('host')
            if not isinstance(host, str) or not host.strip():
                raise ConfigError(f"目标 '{target_name}' 缺少必需的配置项: host")
            port = config.get('port')
            if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
                raise ConfigError(f"目标 '{target_name}' 的 port 必须是 1-65535 之间的整数")

        for key in ('timeout_seconds', 'interval_seconds', 'retry_interval_seconds'):
            value = config.get(key)
            if value is not None and (not isinstance(value, int) or value <= 0):
                raise ConfigError(f"目标 '{target_name}' 的 {key} 必须是正整数")

        retries = config.get('retries')
        if retries is not None and (not isinstance(retries, int) or isinstance(retries, bool)
                                    or retries < 0):
            raise ConfigError(f"目标 '{target_name}' 的 retries 必须是非负整数")

        tags = config.get('tags')
        if tags is not None and not isinstance(tags, list):
            raise ConfigError(f"目标 '{target_name}' 的 tags 必须是列表")

    @staticmethod
    def validate_allowed_status(target_name: str, allowed_status: List[Any]) -> None:
        """验证状态码列表，元素为单个状态码或 '200-299' 形式的闭区间"""
        if not isinstance(allowed_status, list):
            raise ConfigError(f"目标 '{target_name}' 的 allowed_status 必须是列表")
        for entry in allowed_status:
            match = _STATUS_PATTERN.match(str(entry))
            if not match:
                raise ConfigError(f"目标 '{target_name}' 的状态码格式无效: {entry}")
            low = int(match.group(1))
            high = int(match.group(2) or low)
            if low > high or low < 100 or high > 599:
                raise ConfigError(f"目标 '{target_name}' 的状态码范围无效: {entry}")

    @staticmethod
    def validate_maintenance_config(window: Dict[str, Any]) -> None:
        """
        验证维护窗口配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(window, dict):
            raise ConfigError("维护窗口配置必须是字典类型")

        for field in ('name', 'starts_at', 'ends_at'):
            if field not in window:
                raise ConfigError(f"维护窗口缺少必需的配置项: {field}")

        if not window.get('target') and not window.get('tags'):
            raise ConfigError(f"维护窗口 '{window['name']}' 必须指定 target 或 tags")

    @staticmethod
    def validate_channel_config(channel: Dict[str, Any]) -> None:
        """
        验证通知渠道配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(channel, dict):
            raise ConfigError("通知渠道配置必须是字典类型")

        for field in ('name', 'type', 'destination'):
            if field not in channel:
                raise ConfigError(f"通知渠道缺少必需的配置项: {field}")

        if channel['type'] not in ConfigValidator.SUPPORTED_CHANNEL_TYPES:
            raise ConfigError(
                f"通知渠道 '{channel['name']}' 的类型 '{channel['type']}' 不受支持")

        if not any(channel.get(key) for key in ('secret', 'secret_env', 'secret_enc')):
            raise ConfigError(
                f"通知渠道 '{channel['name']}' 缺少 secret、secret_env 或 secret_enc")

    @staticmethod
    def validate_settings_config(settings: Dict[str, Any]) -> None:
        """
        验证引擎设置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(settings, dict):
            raise ConfigError("settings 配置必须是字典类型")

        for key in ('default_timeout_seconds', 'default_interval_seconds',
                    'max_concurrent_checks', 'retention_sweep_minutes',
                    'default_retry_interval_seconds'):
            value = settings.get(key)
            if value is not None and (not isinstance(value, int) or value <= 0):
                raise ConfigError(f"{key} 必须是正整数")

        for key in ('notify_suppress_minutes', 'notify_repeat_down_minutes',
                    'metrics_retention_days', 'events_retention_days',
                    'jitter_max_seconds'):
            value = settings.get(key)
            if value is not None and (not isinstance(value, int) or value < 0):
                raise ConfigError(f"{key} 必须是非负整数")

        jitter = settings.get('jitter_percent')
        if jitter is not None and (not isinstance(jitter, int) or not 0 <= jitter <= 100):
            raise ConfigError("jitter_percent 必须是 0-100 之间的整数")

        tick = settings.get('tick_seconds')
        if tick is not None and (not isinstance(tick, (int, float)) or tick <= 0):
            raise ConfigError("tick_seconds 必须是正数")

        reg_format = settings.get('incident_reg_format')
        if reg_format is not None and not _SEQ_PATTERN.search(str(reg_format)):
            raise ConfigError("incident_reg_format 必须包含 {seq} 占位符")

    @staticmethod
    def validate_global_config(global_config: Dict[str, Any]) -> None:
        """
        验证全局配置

        Args:
            global_config: 全局配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(global_config, dict):
            raise ConfigError("全局配置必须是字典类型")

        log_level = global_config.get('log_level')
        if log_level is not None:
            valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
            if log_level not in valid_levels:
                raise ConfigError(f"log_level 必须是以下值之一: {valid_levels}")
