"""
会话编排

解锁 → 查找配置 → 连接 → shell → 关闭 → 锁定。
无论从哪条路径退出，解密的凭据都会在返回前清零。
"""

import logging
from typing import List, Optional

from .config import AppConfig
from .errors import ExitCode, SshUtilsError
from .models.profile import ProfileSummary
from .session import SessionEngine
from .terminal import LocalTerminal
from .vault import MasterSecret, Vault

logger = logging.getLogger(__name__)


def exit_code_for(error: BaseException) -> int:
    """把异常映射为进程退出码"""
    if isinstance(error, SshUtilsError):
        return int(error.exit_code)
    if isinstance(error, KeyboardInterrupt):
        return int(ExitCode.INTERRUPTED)
    return int(ExitCode.ERROR)


def list_profiles(master_secret: MasterSecret, config: Optional[AppConfig] = None) -> List[ProfileSummary]:
    """解锁后返回不含凭据的配置摘要"""
    config = config or AppConfig.from_env()
    with Vault(config.expanded_vault_path()).unlock(master_secret) as unlocked:
        return unlocked.list_profiles()


def initialize(master_secret: MasterSecret, config: Optional[AppConfig] = None) -> None:
    """创建空保险库"""
    config = config or AppConfig.from_env()
    Vault(config.expanded_vault_path()).initialize(master_secret, config.kdf_params).lock()


async def run(
    profile_id: str,
    master_secret: MasterSecret,
    config: Optional[AppConfig] = None,
    engine: Optional[SessionEngine] = None,
    terminal: Optional[LocalTerminal] = None,
) -> int:
    """为指定配置运行一个交互式会话

    Returns:
        ExitCode.OK 或 ExitCode.INTERRUPTED。

    Raises:
        SshUtilsError: 保险库、认证、传输或通道失败。
    """
    config = config or AppConfig.from_env()
    engine = engine or SessionEngine(config)

    unlocked = Vault(config.expanded_vault_path()).unlock(master_secret)
    try:
        profile = unlocked.find(profile_id)
        logger.info(f"启动会话: {profile.id} ({profile.username}@{profile.host})")
        return await engine.run_session(profile, terminal)
    finally:
        unlocked.lock()
