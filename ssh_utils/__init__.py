"""
ssh-utils - 加密的 SSH 配置保险库与交互式会话

在一个主密钥下保存多个远程服务器的连接配置，
并直接打开到任一服务器的交互式 shell。
"""

from .errors import ExitCode, SshUtilsError
from .session import SessionEngine
from .vault import UnlockedVault, Vault

__version__ = "0.1.0"
__all__ = ["ExitCode", "SshUtilsError", "SessionEngine", "UnlockedVault", "Vault"]
