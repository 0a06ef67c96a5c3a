"""通知渠道密钥的加解密"""

from typing import Union

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import EncryptionError


class Encryptor:
    """基于 Fernet 的对称加密器

    通知渠道只保存密文，发送前才调用 decrypt，明文不做缓存。
    """

    def __init__(self, key: Union[str, bytes]):
        """
        Args:
            key: Fernet 密钥（urlsafe base64 编码的32字节）
        """
        if isinstance(key, str):
            key = key.strip().encode('ascii')
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"加密密钥格式无效: {e}")

    @staticmethod
    def generate_key() -> str:
        """生成新的密钥"""
        return Fernet.generate_key().decode('ascii')

    def encrypt(self, data: Union[str, bytes]) -> bytes:
        """加密明文，返回密文"""
        if isinstance(data, str):
            data = data.encode('utf-8')
        return self._fernet.encrypt(data)

    def decrypt(self, blob: Union[str, bytes]) -> bytes:
        """
        解密密文

        Raises:
            EncryptionError: 密文为空、损坏或密钥不匹配
        """
        if not blob:
            raise EncryptionError("密文为空")
        if isinstance(blob, str):
            blob = blob.encode('ascii')
        try:
            return self._fernet.decrypt(blob)
        except InvalidToken:
            raise EncryptionError("密文无法解密，密钥不匹配或数据已损坏")
