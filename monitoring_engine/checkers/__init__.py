"""探测器模块"""

from .base import BaseProber
from .factory import ProberFactory, prober_factory, register_checker, probe
from .http_checker import HttpProber, status_allowed, parse_status_ranges
from .tcp_checker import TcpProber
from .error_kind import classify_exception, classify_error_text, is_dns_error_text
from .netguard import guard_host, is_blocked_address

__all__ = ['BaseProber', 'ProberFactory', 'prober_factory', 'register_checker', 'probe',
           'HttpProber', 'TcpProber', 'status_allowed', 'parse_status_ranges',
           'classify_exception', 'classify_error_text', 'is_dns_error_text',
           'guard_host', 'is_blocked_address']
