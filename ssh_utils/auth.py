"""
认证策略模块

把 SSH 认证回退顺序表示为策略列表，每个策略提供统一的 attempt()，
引擎依次尝试，首个成功即停止。

回退顺序:
    1. 明确的密码 → 只尝试密码认证
    2. 身份文件 → 配置的文件，然后默认身份文件（固定优先级）
    3. 代理 → SSH_AUTH_SOCK 上的 ssh-agent
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

import paramiko

from .crypto import SecretBuffer
from .errors import AuthExhausted
from .models.connection import AuthMethod
from .models.profile import AuthSecret, DefaultAuth, IdentityAuth, PasswordAuth

logger = logging.getLogger(__name__)


class AuthOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass
class AuthResult:
    """单个方法的尝试结果，reason 不含敏感信息"""

    label: str
    outcome: AuthOutcome
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == AuthOutcome.SUCCESS


class AuthStrategy:
    """认证策略基类"""

    method: AuthMethod

    @property
    def label(self) -> str:
        return self.method.value

    def attempt(self, transport: paramiko.Transport, username: str) -> AuthResult:
        raise NotImplementedError

    def _result(self, outcome: AuthOutcome, reason: str = "") -> AuthResult:
        return AuthResult(label=self.label, outcome=outcome, reason=reason)

    def _publickey(
        self, transport: paramiko.Transport, username: str, key: paramiko.PKey
    ) -> AuthResult:
        try:
            remaining = transport.auth_publickey(username, key)
        except paramiko.BadAuthenticationType:
            return self._result(AuthOutcome.FAILURE, "publickey not allowed")
        except paramiko.AuthenticationException:
            return self._result(AuthOutcome.FAILURE, "rejected")
        except paramiko.SSHException:
            return self._result(AuthOutcome.FAILURE, "protocol error")

        if transport.is_authenticated():
            return self._result(AuthOutcome.SUCCESS)
        if remaining:
            return self._result(AuthOutcome.FAILURE, "further authentication required")
        return self._result(AuthOutcome.FAILURE, "rejected")


class PasswordStrategy(AuthStrategy):
    method = AuthMethod.PASSWORD

    def __init__(self, password: SecretBuffer):
        self.password = password

    def attempt(self, transport: paramiko.Transport, username: str) -> AuthResult:
        try:
            remaining = transport.auth_password(username, self.password.reveal())
        except paramiko.BadAuthenticationType as e:
            if "keyboard-interactive" in (e.allowed_types or []):
                return self._keyboard_interactive(transport, username)
            return self._result(AuthOutcome.FAILURE, "password not allowed")
        except paramiko.AuthenticationException:
            return self._result(AuthOutcome.FAILURE, "rejected")
        except paramiko.SSHException:
            return self._result(AuthOutcome.FAILURE, "protocol error")

        if transport.is_authenticated():
            return self._result(AuthOutcome.SUCCESS)
        if remaining:
            return self._result(AuthOutcome.FAILURE, "further authentication required")
        return self._result(AuthOutcome.FAILURE, "rejected")

    def _keyboard_interactive(
        self, transport: paramiko.Transport, username: str
    ) -> AuthResult:
        """服务器只接受 keyboard-interactive 时，用同一密码回答提示"""

        def handler(title, instructions, prompts):
            return [self.password.reveal() for _ in prompts]

        try:
            transport.auth_interactive(username, handler)
        except paramiko.AuthenticationException:
            return self._result(AuthOutcome.FAILURE, "rejected")
        except paramiko.SSHException:
            return self._result(AuthOutcome.FAILURE, "protocol error")

        if transport.is_authenticated():
            return self._result(AuthOutcome.SUCCESS)
        return self._result(AuthOutcome.FAILURE, "rejected")


class IdentityFileStrategy(AuthStrategy):
    """本地私钥文件认证；文件不存在或无法解析时跳过"""

    method = AuthMethod.KEY
    KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)

    def __init__(self, path: str, passphrase: Optional[SecretBuffer] = None):
        self.path = os.path.expanduser(path)
        self.passphrase = passphrase

    @property
    def label(self) -> str:
        return f"publickey:{self.path}"

    def load_key(self) -> Optional[paramiko.PKey]:
        """按类型依次尝试解析，全部失败返回 None"""
        password = self.passphrase.reveal() if self.passphrase is not None else None
        for key_class in self.KEY_CLASSES:
            try:
                return key_class.from_private_key_file(self.path, password=password)
            except paramiko.PasswordRequiredException:
                logger.debug(f"身份文件需要口令: {self.path}")
                return None
            except (paramiko.SSHException, ValueError, OSError):
                continue
        return None

    def attempt(self, transport: paramiko.Transport, username: str) -> AuthResult:
        if not os.path.isfile(self.path):
            return self._result(AuthOutcome.SKIPPED, "not found")

        key = self.load_key()
        if key is None:
            return self._result(AuthOutcome.SKIPPED, "unreadable")

        return self._publickey(transport, username, key)


class AgentStrategy(AuthStrategy):
    """委托给正在运行的 ssh-agent；没有代理时跳过"""

    method = AuthMethod.AGENT

    def __init__(self, agent_factory: Optional[Callable[[], paramiko.Agent]] = None):
        self.agent_factory = agent_factory or paramiko.Agent

    def attempt(self, transport: paramiko.Transport, username: str) -> AuthResult:
        try:
            agent = self.agent_factory()
        except (paramiko.SSHException, OSError):
            return self._result(AuthOutcome.SKIPPED, "agent unreachable")

        try:
            keys = agent.get_keys()
            if not keys:
                return self._result(AuthOutcome.SKIPPED, "no agent keys")

            for key in keys:
                result = self._publickey(transport, username, key)
                if result.succeeded or not transport.is_active():
                    return result
            return self._result(AuthOutcome.FAILURE, "rejected")
        finally:
            agent.close()


def build_strategies(
    auth: AuthSecret,
    identity_files: Sequence[str],
    use_agent: bool = True,
    agent_factory: Optional[Callable[[], paramiko.Agent]] = None,
) -> List[AuthStrategy]:
    """根据凭据类型构造有序的策略列表"""
    if isinstance(auth, PasswordAuth):
        return [PasswordStrategy(auth.password)]

    strategies: List[AuthStrategy] = []
    seen = set()
    if isinstance(auth, IdentityAuth):
        configured = IdentityFileStrategy(auth.path, auth.passphrase)
        strategies.append(configured)
        seen.add(configured.path)
    elif not isinstance(auth, DefaultAuth):
        raise TypeError(f"Unsupported credential type: {type(auth).__name__}")

    for path in identity_files:
        strategy = IdentityFileStrategy(path)
        if strategy.path not in seen:
            strategies.append(strategy)
            seen.add(strategy.path)

    if use_agent:
        strategies.append(AgentStrategy(agent_factory))
    return strategies


def run_auth_chain(
    strategies: Sequence[AuthStrategy], transport: paramiko.Transport, username: str
) -> AuthResult:
    """依次尝试，首个成功即返回

    Raises:
        AuthExhausted: 没有任何方法成功；tried 按尝试顺序列出实际尝试过的方法。
    """
    tried: List[str] = []
    skipped: List[str] = []
    for strategy in strategies:
        result = strategy.attempt(transport, username)
        if result.outcome == AuthOutcome.SKIPPED:
            logger.debug(f"跳过认证方法 {result.label}: {result.reason}")
            skipped.append(result.label)
            continue

        tried.append(result.label)
        if result.succeeded:
            logger.info(f"认证成功: {result.label}")
            return result
        logger.info(f"认证方法失败: {result.label}")

    logger.warning(f"认证方法已用尽: {tried}")
    raise AuthExhausted(tried, skipped)
