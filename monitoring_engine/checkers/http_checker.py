"""HTTP 探测器"""

import asyncio
import re
import ssl
from typing import Iterable, List, Optional, Tuple, Union
from urllib.parse import urlsplit

import aiohttp
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from .base import BaseProber
from .factory import register_checker
from .netguard import guard_host
from ..models.monitoring import CheckResult, ErrorKind, TLSInfo
from ..utils.exceptions import InvalidTargetError

DEFAULT_STATUS_RANGES = [(200, 299)]

_RANGE_PATTERN = re.compile(r'^(\d+)\s*-\s*(\d+)$')


def parse_status_ranges(allowed: Iterable[Union[str, int]]) -> List[Tuple[int, int]]:
    """
    解析允许的状态码列表

    每个元素可以是单个状态码（200 或 "200"）或闭区间（"200-299"），
    无法解析的元素被忽略。

    Returns:
        List[Tuple[int, int]]: (最小值, 最大值) 列表
    """
    ranges = []
    for entry in allowed or []:
        value = str(entry).strip()
        if not value:
            continue
        match = _RANGE_PATTERN.match(value)
        if match:
            low, high = int(match.group(1)), int(match.group(2))
            if 0 < low <= high:
                ranges.append((low, high))
            continue
        if value.isdigit() and int(value) > 0:
            ranges.append((int(value), int(value)))
    return ranges


def status_allowed(code: int, allowed: Iterable[Union[str, int]]) -> bool:
    """状态码是否命中允许列表；列表为空时按 200-299 处理"""
    ranges = parse_status_ranges(allowed) or DEFAULT_STATUS_RANGES
    return any(low <= code <= high for low, high in ranges)


def redirects_allowed_as_status(allowed: Iterable[Union[str, int]]) -> bool:
    """允许列表覆盖 3xx 时不跟随重定向，直接用重定向状态码判定"""
    ranges = parse_status_ranges(allowed) or DEFAULT_STATUS_RANGES
    return any(low <= 399 and high >= 300 for low, high in ranges)


def _common_name(name: x509.Name) -> str:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attributes[0].value).strip() if attributes else ''


def tls_info_from_der(der: bytes) -> TLSInfo:
    """从 DER 编码的对端证书提取到期时间、主体、签发者、SAN 和 SHA-256 指纹"""
    cert = x509.load_der_x509_certificate(der)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        sans = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        sans = []

    return TLSInfo(
        not_after=cert.not_valid_after_utc,
        not_before=cert.not_valid_before_utc,
        common_name=_common_name(cert.subject),
        issuer=_common_name(cert.issuer) or cert.issuer.rfc4514_string(),
        sans=sans,
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex()
    )


@register_checker('http')
class HttpProber(BaseProber):
    """HTTP 探测器"""

    def validate_config(self) -> bool:
        url = (self.target.url or '').strip()
        if not url.lower().startswith(('http://', 'https://')):
            return False
        try:
            return bool(urlsplit(url).hostname)
        except ValueError:
            return False

    async def fetch_peer_tls(self, host: str, port: int, timeout: float) -> Optional[TLSInfo]:
        """
        单独握手读取对端证书

        aiohttp 读完短响应后会立即释放连接，响应对象上拿不到 ssl_object，
        因此证书通过一次独立的 TLS 握手获取。失败时返回 None，不影响探测结果。
        """
        context = ssl.create_default_context()
        if self.target.ignore_tls_errors:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        writer = None
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=context, server_hostname=host),
                timeout=timeout)
            ssl_object = writer.get_extra_info('ssl_object')
            der = ssl_object.getpeercert(binary_form=True) if ssl_object is not None else None
            return tls_info_from_der(der) if der else None
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            self.logger.debug(f"读取 {host}:{port} 的证书失败: {e}")
            return None
        finally:
            if writer is not None:
                writer.close()

    async def _probe(self, timeout: float) -> CheckResult:
        url = self.target.url.strip()
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as e:
            raise InvalidTargetError(f"URL 格式无效: {e}", target_name=self.target.name)

        await guard_host(parts.hostname, self.settings.allow_private_networks, port)

        allow_redirects = not redirects_allowed_as_status(self.target.allowed_status)
        request_kwargs = {
            'headers': self.target.headers or {},
            'allow_redirects': allow_redirects,
        }
        if self.target.request_body is not None:
            request_kwargs['data'] = self.target.request_body
        if self.target.ignore_tls_errors:
            request_kwargs['ssl'] = False

        tls_task = None
        if parts.scheme.lower() == 'https':
            # 证书握手与请求并行，不拉长记录的耗时
            tls_task = asyncio.ensure_future(
                self.fetch_peer_tls(parts.hostname, port or 443, timeout))

        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.request(self.target.method or 'GET', url,
                                           **request_kwargs) as response:
                    status = response.status
            tls = await tls_task if tls_task is not None else None
        finally:
            if tls_task is not None and not tls_task.done():
                tls_task.cancel()

        if status_allowed(status, self.target.allowed_status):
            return CheckResult(ok=True, latency=0.0, status_code=status, tls=tls)

        return CheckResult(
            ok=False,
            latency=0.0,
            error=f"status_{status}",
            error_kind=ErrorKind.HTTP_STATUS,
            status_code=status,
            tls=tls
        )
