"""
配置管理模块

管理保险库位置、SSH 连接超时、身份文件顺序等应用设置。
"""

import os
import json
from typing import List, Optional
from dataclasses import dataclass, field
import logging

from .crypto import KdfParams

logger = logging.getLogger(__name__)

CONFIG_DIR = os.path.join("~", ".config", "ssh-utils")

# 与 OpenSSH 客户端默认顺序一致（仅保留 paramiko 支持的类型）
DEFAULT_IDENTITY_FILES = [
    os.path.join("~", ".ssh", "id_rsa"),
    os.path.join("~", ".ssh", "id_ecdsa"),
    os.path.join("~", ".ssh", "id_ed25519"),
]


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


@dataclass
class AppConfig:
    """应用配置"""

    log_level: str = "WARNING"
    vault_path: str = os.path.join(CONFIG_DIR, "encrypted_data.bin")
    connect_timeout: float = 10.0
    auth_timeout: float = 15.0
    teardown_timeout: float = 2.0
    kdf_n: int = 2**15
    kdf_r: int = 8
    kdf_p: int = 1
    identity_files: List[str] = field(default_factory=lambda: list(DEFAULT_IDENTITY_FILES))
    use_agent: bool = True
    known_hosts: str = os.path.join("~", ".ssh", "known_hosts")
    term: str = "xterm"

    @property
    def kdf_params(self) -> KdfParams:
        return KdfParams(n=self.kdf_n, r=self.kdf_r, p=self.kdf_p)

    def expanded_vault_path(self) -> str:
        return os.path.expanduser(self.vault_path)

    def expanded_identity_files(self) -> List[str]:
        return [os.path.expanduser(path) for path in self.identity_files]

    def expanded_known_hosts(self) -> str:
        return os.path.expanduser(self.known_hosts)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """从环境变量创建配置"""
        config = cls(
            log_level=os.getenv("SSH_UTILS_LOG_LEVEL", "WARNING"),
            vault_path=os.getenv("SSH_UTILS_VAULT", cls.vault_path),
            connect_timeout=float(os.getenv("SSH_UTILS_CONNECT_TIMEOUT", "10")),
            auth_timeout=float(os.getenv("SSH_UTILS_AUTH_TIMEOUT", "15")),
            teardown_timeout=float(os.getenv("SSH_UTILS_TEARDOWN_TIMEOUT", "2")),
            kdf_n=int(os.getenv("SSH_UTILS_KDF_N", str(2**15))),
            kdf_r=int(os.getenv("SSH_UTILS_KDF_R", "8")),
            kdf_p=int(os.getenv("SSH_UTILS_KDF_P", "1")),
            use_agent=_env_bool("SSH_UTILS_USE_AGENT", True),
            known_hosts=os.getenv("SSH_UTILS_KNOWN_HOSTS", cls.known_hosts),
            term=os.getenv("TERM", "xterm") or "xterm",
        )

        identity_files = os.getenv("SSH_UTILS_IDENTITY_FILES", "")
        if identity_files:
            config.identity_files = [
                path.strip() for path in identity_files.split(os.pathsep) if path.strip()
            ]
        return config

    @classmethod
    def from_file(cls, config_path: str) -> Optional["AppConfig"]:
        """从配置文件创建配置，文件中的值覆盖环境变量"""
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"读取配置文件失败: {e}")
            return None

        config = cls.from_env()
        for key in [
            "log_level",
            "vault_path",
            "connect_timeout",
            "auth_timeout",
            "teardown_timeout",
            "kdf_n",
            "kdf_r",
            "kdf_p",
            "identity_files",
            "use_agent",
            "known_hosts",
            "term",
        ]:
            if key in data:
                setattr(config, key, data[key])

        return config


class ConfigManager:
    """配置管理器"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.getenv(
            "SSH_UTILS_CONFIG", os.path.expanduser(os.path.join(CONFIG_DIR, "config.json"))
        )
        self.config: AppConfig = self._load_config()

    def _load_config(self) -> AppConfig:
        """加载配置"""
        # 首先从环境变量加载
        config = AppConfig.from_env()

        # 如果配置文件存在，则从文件加载并合并
        if os.path.exists(self.config_path):
            file_config = AppConfig.from_file(self.config_path)
            if file_config:
                config = file_config

        logger.debug(f"配置加载完成，日志级别: {config.log_level}")
        return config

    def reload(self) -> AppConfig:
        """重新加载配置"""
        self.config = self._load_config()
        return self.config
