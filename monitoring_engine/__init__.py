"""HTTP/TCP 目标监控与告警引擎"""

__version__ = '0.1.0'
