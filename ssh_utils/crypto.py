"""
加密原语模块

提供主密钥派生（scrypt，内存困难）、AES-256-GCM 认证加密、
以及密钥材料的安全清零。

安全说明:
    绝不记录明文、密文或密钥。Python 的 str 与 bytes 不可变，
    只有 bytearray 中的副本可以被清零，因此所有长期持有的秘密
    都放在 SecretBuffer 中。
"""

import hmac
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import IntegrityError, KdfError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
SALT_SIZE = 16
NONCE_SIZE = 12  # 96-bit GCM nonce
MAC_SIZE = 16  # GCM tag

BufferLike = Union[bytearray, memoryview]


def wipe(buffer: Optional[BufferLike]) -> None:
    """用零覆盖可变缓冲区"""
    if buffer is None:
        return
    view = memoryview(buffer).cast("B")
    view[:] = bytes(len(view))


class SecretBuffer:
    """秘密句柄

    持有秘密字节的唯一可变副本。wipe()、退出 with 块或被回收时
    都会清零；repr 永远不显示内容。
    """

    __slots__ = ("_buf", "__weakref__")

    def __init__(self, value: Union[str, bytes, bytearray]):
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._buf = bytearray(value)

    @classmethod
    def adopt(cls, buf: bytearray) -> "SecretBuffer":
        """接管已有的 bytearray，不再复制"""
        handle = cls.__new__(cls)
        handle._buf = buf
        return handle

    @property
    def wiped(self) -> bool:
        return self._buf is None

    def reveal(self) -> str:
        """返回 UTF-8 解码后的明文（仅在即将使用时调用）"""
        return self.reveal_bytes().decode("utf-8")

    def reveal_bytes(self) -> bytes:
        if self._buf is None:
            raise ValueError("secret has been wiped")
        return bytes(self._buf)

    def view(self) -> memoryview:
        if self._buf is None:
            raise ValueError("secret has been wiped")
        return memoryview(self._buf)

    def wipe(self) -> None:
        if self._buf is not None:
            wipe(self._buf)
            self._buf = None

    def __len__(self) -> int:
        return 0 if self._buf is None else len(self._buf)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretBuffer):
            return NotImplemented
        if self._buf is None or other._buf is None:
            return self._buf is other._buf
        return hmac.compare_digest(self._buf, other._buf)

    __hash__ = None  # 可变对象

    def __repr__(self) -> str:
        if self._buf is None:
            return "SecretBuffer(<wiped>)"
        return "SecretBuffer('**********')"

    __str__ = __repr__

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __del__(self) -> None:
        try:
            self.wipe()
        except Exception:
            pass


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KdfParams:
    """scrypt 成本参数，随保险库文件持久化"""

    n: int = 2**15
    r: int = 8
    p: int = 1

    def validate(self) -> None:
        if self.n < 2 or self.n & (self.n - 1) != 0:
            raise KdfError(f"scrypt n must be a power of two greater than 1, got {self.n}")
        if self.r < 1:
            raise KdfError(f"scrypt r must be >= 1, got {self.r}")
        if self.p < 1:
            raise KdfError(f"scrypt p must be >= 1, got {self.p}")


def derive_key(
    secret: Union[str, bytes, SecretBuffer], salt: bytes, params: KdfParams
) -> SecretBuffer:
    """从主密钥派生 32 字节加密密钥

    相同输入总是得到相同密钥。

    Raises:
        KdfError: 参数无效或盐为空。
    """
    params.validate()
    if not salt:
        raise KdfError("salt must not be empty")

    if isinstance(secret, SecretBuffer):
        material = secret.reveal_bytes()
    elif isinstance(secret, str):
        material = secret.encode("utf-8")
    else:
        material = bytes(secret)

    try:
        kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=params.n, r=params.r, p=params.p)
        key = bytearray(kdf.derive(material))
    except (ValueError, MemoryError) as e:
        raise KdfError(f"Key derivation failed: {e}") from e

    logger.debug(f"密钥派生完成 (n={params.n}, r={params.r}, p={params.p})")
    return SecretBuffer.adopt(key)


def new_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def new_nonce() -> bytes:
    return os.urandom(NONCE_SIZE)


# ---------------------------------------------------------------------------
# Authenticated encryption
# ---------------------------------------------------------------------------


def _cipher(key: SecretBuffer) -> AESGCM:
    return AESGCM(key.reveal_bytes())


def encrypt(
    key: SecretBuffer, nonce: bytes, plaintext: bytes, associated_data: bytes
) -> Tuple[bytes, bytes]:
    """AES-256-GCM 加密

    associated_data 参与完整性标签计算但不加密。

    Returns:
        (ciphertext, mac) 元组，mac 为 16 字节 GCM 标签。
    """
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    sealed = _cipher(key).encrypt(nonce, bytes(plaintext), associated_data)
    return sealed[:-MAC_SIZE], sealed[-MAC_SIZE:]


def decrypt(
    key: SecretBuffer,
    nonce: bytes,
    ciphertext: bytes,
    mac: bytes,
    associated_data: bytes,
) -> bytearray:
    """校验并解密

    GCM 在校验标签通过前不会释放任何明文。

    Returns:
        可被调用方清零的 bytearray 明文。

    Raises:
        IntegrityError: 标签校验失败。
    """
    if len(nonce) != NONCE_SIZE or len(mac) != MAC_SIZE:
        raise IntegrityError("malformed nonce or mac")
    try:
        plaintext = _cipher(key).decrypt(nonce, bytes(ciphertext) + bytes(mac), associated_data)
    except InvalidTag as e:
        raise IntegrityError("integrity check failed") from e
    return bytearray(plaintext)
