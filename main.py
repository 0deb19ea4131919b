"""
ssh-utils 入口点

不带参数时列出保险库中的配置；带配置 ID 时打开到该服务器的交互式 shell。
"""

import asyncio
import getpass
import logging
import os
import sys

from ssh_utils.config import ConfigManager
from ssh_utils.crypto import SecretBuffer
from ssh_utils.errors import ExitCode, SshUtilsError
from ssh_utils.runner import exit_code_for, initialize, list_profiles, run


def setup_logging(log_level=None):
    """设置日志配置"""
    log_level = log_level or os.getenv("SSH_UTILS_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def read_master_secret(prompt="Master secret: ") -> SecretBuffer:
    return SecretBuffer(getpass.getpass(prompt))


def show_profiles(config, master_secret) -> int:
    for summary in list_profiles(master_secret, config):
        print(f"{summary.id}  {summary.label}  {summary.username}@{summary.host}")
    return ExitCode.OK


def main(argv=None):
    """主函数"""
    argv = sys.argv[1:] if argv is None else argv
    config = ConfigManager().config
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    vault_exists = os.path.exists(config.expanded_vault_path())
    master_secret = None
    try:
        if not argv and not vault_exists:
            master_secret = read_master_secret("New master secret: ")
            initialize(master_secret, config)
            print(f"Vault created: {config.expanded_vault_path()}")
            code = ExitCode.OK
        else:
            master_secret = read_master_secret()
            if argv:
                code = asyncio.run(run(argv[0], master_secret, config))
            else:
                code = show_profiles(config, master_secret)
    except SshUtilsError as e:
        logger.debug(f"{type(e).__name__}: {e}")
        print(f"ssh-utils: {e.user_message}", file=sys.stderr)
        code = e.exit_code
    except KeyboardInterrupt:
        logger.info("被用户中断")
        code = exit_code_for(KeyboardInterrupt())
    finally:
        if master_secret is not None:
            master_secret.wipe()

    sys.exit(int(code))


if __name__ == "__main__":
    main()
