"""
错误定义模块

定义保险库、加密原语和 SSH 会话引擎的异常层次，
以及进程退出码。
"""

from enum import IntEnum
from typing import List, Optional, Sequence


class ExitCode(IntEnum):
    """进程退出码"""

    OK = 0
    ERROR = 1
    VAULT = 2
    AUTH_EXHAUSTED = 3
    TRANSPORT = 4
    CHANNEL = 5
    PROFILE_NOT_FOUND = 6
    PERSIST = 7
    INTERRUPTED = 130


UNLOCK_FAILED_MESSAGE = "unable to unlock vault: wrong master secret or damaged vault file"


class SshUtilsError(Exception):
    """所有 ssh-utils 错误的基类"""

    exit_code: ExitCode = ExitCode.ERROR

    @property
    def user_message(self) -> str:
        return str(self)


# ---------------------------------------------------------------------------
# 加密原语
# ---------------------------------------------------------------------------


class CryptoError(SshUtilsError):
    """加密原语错误"""

    exit_code = ExitCode.VAULT


class KdfError(CryptoError):
    """密钥派生参数无效"""


class IntegrityError(CryptoError):
    """完整性校验失败，不得使用任何解密结果"""


# ---------------------------------------------------------------------------
# 保险库
# ---------------------------------------------------------------------------


class VaultError(SshUtilsError):
    """保险库错误"""

    exit_code = ExitCode.VAULT


class VaultNotFound(VaultError):
    """保险库文件不存在（首次运行）"""

    @property
    def user_message(self) -> str:
        return "no vault found: initialize one first"


class WrongSecret(VaultError):
    """主密钥错误（完整性校验失败）"""

    @property
    def user_message(self) -> str:
        return UNLOCK_FAILED_MESSAGE


class CorruptVault(VaultError):
    """保险库文件结构损坏"""

    @property
    def user_message(self) -> str:
        return UNLOCK_FAILED_MESSAGE


class UnsupportedFormat(VaultError):
    """未知的保险库格式版本"""

    def __init__(self, version: int):
        super().__init__(f"Unsupported vault format version: {version}")
        self.version = version


class PersistError(VaultError):
    """保险库写入失败，原文件保持不变"""

    exit_code = ExitCode.PERSIST


class ProfileNotFound(VaultError):
    """配置不存在"""

    exit_code = ExitCode.PROFILE_NOT_FOUND

    def __init__(self, profile_id: str):
        super().__init__(f"Profile not found: {profile_id}")
        self.profile_id = profile_id


# ---------------------------------------------------------------------------
# 会话引擎
# ---------------------------------------------------------------------------


class SessionError(SshUtilsError):
    """SSH 会话错误"""


class TransportError(SessionError):
    """传输层建立失败（拒绝、超时、DNS、握手）"""

    exit_code = ExitCode.TRANSPORT


class AuthExhausted(SessionError):
    """所有认证方法均已尝试且未成功"""

    exit_code = ExitCode.AUTH_EXHAUSTED

    def __init__(self, tried: Sequence[str], skipped: Optional[Sequence[str]] = None):
        self.tried: List[str] = list(tried)
        self.skipped: List[str] = list(skipped or [])
        tried_text = ", ".join(self.tried) if self.tried else "none"
        message = f"Authentication exhausted (tried: {tried_text}"
        if self.skipped:
            message += f"; skipped: {', '.join(self.skipped)}"
        super().__init__(message + ")")


class ChannelError(SessionError):
    """远端拒绝 PTY 或 shell 通道"""

    exit_code = ExitCode.CHANNEL


class SessionInterrupted(SessionError):
    """会话建立期间收到中断信号"""

    exit_code = ExitCode.INTERRUPTED
