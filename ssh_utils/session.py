"""
SSH 会话引擎

管理单个 SSH 连接的生命周期：传输握手、认证回退、PTY 分配、
本地终端与远程 shell 的双向桥接、窗口尺寸同步和有界的关闭过程。

paramiko 的阻塞调用都放到默认线程池执行，桥接本身由协作式任务完成。
"""

import asyncio
import logging
import os
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

import paramiko

from .auth import AuthStrategy, build_strategies, run_auth_chain
from .config import AppConfig
from .errors import (
    AuthExhausted,
    ChannelError,
    ExitCode,
    SessionInterrupted,
    TransportError,
)
from .models.connection import SESSION_TRANSITIONS, SessionState, TerminalSize
from .models.profile import Profile
from .terminal import (
    InterruptEvent,
    LocalTerminal,
    ResizeEvent,
    install_signal_events,
    wait_readable,
)

logger = logging.getLogger(__name__)

RECV_SIZE = 32768

STDOUT = "stdout"
STDERR = "stderr"
EOF = "eof"


@dataclass
class Session:
    """一次活动连接，不持久化"""

    profile_id: str
    host: str
    port: int
    username: str
    state: SessionState = SessionState.IDLE
    transport: Optional[paramiko.Transport] = None
    channel: Optional[paramiko.Channel] = None
    auth_method: Optional[str] = None
    exit_status: Optional[int] = None
    history: List[SessionState] = field(default_factory=list)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in SESSION_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal session transition: {self.state.value} -> {new_state.value}"
            )
        self.history.append(self.state)
        logger.debug(f"会话 {self.profile_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state


@dataclass
class ShellHandle:
    """已分配 PTY 的 shell 通道"""

    session: Session
    channel: paramiko.Channel
    size: TerminalSize
    bridge_result: Optional["BridgeResult"] = None

    def exit_status(self) -> int:
        if self.channel.exit_status_ready():
            return self.channel.recv_exit_status()
        return -1


class BridgeResult(str, Enum):
    REMOTE_CLOSED = "remote_closed"
    INTERRUPTED = "interrupted"


class ChannelStream:
    """paramiko Channel 的异步适配

    通过 channel.fileno() 管道等待数据，读写不会阻塞事件循环。
    """

    def __init__(self, channel: paramiko.Channel):
        self.channel = channel

    async def read(self) -> Tuple[str, bytes]:
        """返回 (stream, data)；stream 为 EOF 时表示远端关闭"""
        channel = self.channel
        while True:
            if channel.recv_stderr_ready():
                return STDERR, channel.recv_stderr(RECV_SIZE)
            if channel.recv_ready():
                data = channel.recv(RECV_SIZE)
                return (STDOUT, data) if data else (EOF, b"")
            if channel.closed or channel.eof_received:
                return EOF, b""
            await wait_readable(channel.fileno())

    async def write(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.channel.sendall, data)

    async def send_eof(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.channel.shutdown_write)

    async def resize(self, size: TerminalSize) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, lambda: self.channel.resize_pty(width=size.columns, height=size.rows)
        )


class TerminalBridge:
    """本地终端与远程通道之间的字节透传

    三个并发活动：本地输入、远端输出、事件（尺寸变化/中断）。
    每个方向内的字节保持发送顺序。
    """

    def __init__(self, remote, terminal, events: asyncio.Queue):
        self.remote = remote
        self.terminal = terminal
        self.events = events
        self.resizes = 0

    async def _pump_input(self) -> None:
        while True:
            data = await self.terminal.read()
            if not data:
                await self.remote.send_eof()
                return
            await self.remote.write(data)

    async def _pump_output(self) -> None:
        while True:
            stream, data = await self.remote.read()
            if stream == EOF:
                return
            await self.terminal.write(data)

    async def _watch_events(self) -> None:
        while True:
            event = await self.events.get()
            if isinstance(event, ResizeEvent):
                await self.remote.resize(event.size)
                self.resizes += 1
                logger.debug(f"窗口尺寸已同步: {event.size.columns}x{event.size.rows}")
            elif isinstance(event, InterruptEvent):
                logger.info(f"收到中断信号: {event.signum}")
                return

    async def run(self) -> BridgeResult:
        output = asyncio.ensure_future(self._pump_output())
        input_ = asyncio.ensure_future(self._pump_input())
        watcher = asyncio.ensure_future(self._watch_events())
        pending = {output, input_, watcher}
        try:
            while True:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    task.result()
                if output in done:
                    return BridgeResult.REMOTE_CLOSED
                if watcher in done:
                    return BridgeResult.INTERRUPTED
                # 本地 EOF 已转发，继续读取远端输出
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


class _PendingTransport:
    """连接阶段的资源，取消时由事件循环线程关闭"""

    def __init__(self):
        self.sock: Optional[socket.socket] = None
        self.transport: Optional[paramiko.Transport] = None
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True
        if self.transport is not None:
            self.transport.close()
        if self.sock is not None:
            self.sock.close()


class SessionEngine:
    """SSH 会话引擎"""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        identity_files: Optional[List[str]] = None,
        agent_factory: Optional[Callable[[], paramiko.Agent]] = None,
        transport_factory: Optional[Callable[[socket.socket], paramiko.Transport]] = None,
        socket_factory: Optional[Callable[..., socket.socket]] = None,
        stream_factory: Optional[Callable[[paramiko.Channel], ChannelStream]] = None,
    ):
        self.config = config or AppConfig.from_env()
        self.identity_files = (
            identity_files
            if identity_files is not None
            else self.config.expanded_identity_files()
        )
        self.agent_factory = agent_factory
        self.transport_factory = transport_factory or paramiko.Transport
        self.socket_factory = socket_factory or socket.create_connection
        self.stream_factory = stream_factory or ChannelStream

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _open_transport(self, host: str, port: int, pending: _PendingTransport) -> paramiko.Transport:
        timeout = self.config.connect_timeout
        try:
            pending.sock = self.socket_factory((host, port), timeout)
        except socket.gaierror as e:
            raise TransportError(f"Unable to resolve {host}: {e.strerror or e}") from e
        except socket.timeout as e:
            raise TransportError(f"Connection to {host}:{port} timed out") from e
        except OSError as e:
            raise TransportError(f"Unable to connect to {host}:{port}: {e.strerror or e}") from e

        if pending.aborted:
            pending.abort()
            raise TransportError("Connection attempt cancelled")

        transport = self.transport_factory(pending.sock)
        pending.transport = transport
        try:
            transport.start_client(timeout=timeout)
        except (paramiko.SSHException, EOFError, OSError) as e:
            transport.close()
            raise TransportError(f"SSH handshake with {host}:{port} failed: {e}") from e

        if hasattr(transport, "auth_timeout"):
            transport.auth_timeout = self.config.auth_timeout
        self._check_host_key(transport, host, port)
        return transport

    def _check_host_key(self, transport: paramiko.Transport, host: str, port: int) -> None:
        """已知主机密钥不匹配时拒绝；未知主机接受并记录"""
        key = transport.get_remote_server_key()
        host_keys = paramiko.HostKeys()
        known_hosts = self.config.expanded_known_hosts()
        if os.path.exists(known_hosts):
            try:
                host_keys.load(known_hosts)
            except (OSError, paramiko.SSHException) as e:
                logger.warning(f"读取 known_hosts 失败: {e}")

        entry = host if port == 22 else f"[{host}]:{port}"
        known = host_keys.lookup(entry)
        key_type = key.get_name()
        if known is None or key_type not in known:
            logger.warning(f"未知主机密钥 {entry} ({key_type})，已接受")
            return
        if known[key_type] != key:
            transport.close()
            raise TransportError(f"Host key for {entry} does not match known_hosts")

    async def connect(self, profile: Profile) -> Session:
        """建立传输并按回退顺序认证

        Raises:
            TransportError: 连接被拒绝、超时、DNS 失败或握手失败。
            AuthExhausted: 所有认证方法均未成功。
        """
        session = Session(
            profile_id=profile.id,
            host=profile.host,
            port=profile.port,
            username=profile.username,
        )
        loop = asyncio.get_running_loop()

        session.transition(SessionState.CONNECTING)
        logger.info(f"连接 {profile.username}@{profile.host}:{profile.port}")
        pending = _PendingTransport()
        try:
            transport = await loop.run_in_executor(
                None, self._open_transport, profile.host, profile.port, pending
            )
        except asyncio.CancelledError:
            pending.abort()
            session.transition(SessionState.FAILED)
            logger.info("连接已取消")
            raise
        except TransportError as e:
            session.transition(SessionState.FAILED)
            logger.error(f"SSH 连接失败: {e}")
            raise

        session.transport = transport
        session.transition(SessionState.AUTHENTICATING)
        strategies = self.strategies_for(profile)
        try:
            result = await loop.run_in_executor(
                None, run_auth_chain, strategies, transport, profile.username
            )
        except BaseException as e:
            session.transition(SessionState.FAILED)
            await self._release(session)
            if isinstance(e, AuthExhausted):
                logger.error(f"认证失败: {e}")
            raise

        session.auth_method = result.label
        session.transition(SessionState.AUTHENTICATED)
        return session

    def strategies_for(self, profile: Profile) -> List[AuthStrategy]:
        return build_strategies(
            profile.auth,
            self.identity_files,
            use_agent=self.config.use_agent,
            agent_factory=self.agent_factory,
        )

    # ------------------------------------------------------------------
    # Shell
    # ------------------------------------------------------------------

    def _open_channel(self, transport: paramiko.Transport, size: TerminalSize) -> paramiko.Channel:
        channel = transport.open_session(timeout=self.config.connect_timeout)
        try:
            channel.get_pty(term=self.config.term, width=size.columns, height=size.rows)
            channel.invoke_shell()
            channel.set_combine_stderr(True)
        except BaseException:
            channel.close()
            raise
        return channel

    async def open_shell(self, session: Session, size: TerminalSize) -> ShellHandle:
        """请求 PTY 和 shell

        Raises:
            ChannelError: 远端拒绝 PTY 或 shell。
        """
        if session.state != SessionState.AUTHENTICATED:
            raise RuntimeError(f"Cannot open shell in state {session.state.value}")

        loop = asyncio.get_running_loop()
        try:
            channel = await loop.run_in_executor(
                None, self._open_channel, session.transport, size
            )
        except (paramiko.SSHException, EOFError, OSError) as e:
            session.transition(SessionState.FAILED)
            logger.error(f"创建交互式 shell 失败: {e}")
            await self._release(session)
            raise ChannelError(f"Remote refused shell: {e}") from e

        session.channel = channel
        session.transition(SessionState.SHELL_OPEN)
        logger.info(f"交互式 shell 创建成功: {session.username}@{session.host}")
        return ShellHandle(session=session, channel=channel, size=size)

    async def interact(self, shell: ShellHandle, terminal, events: asyncio.Queue) -> int:
        """运行桥接循环直到远端 shell 退出、中断或 I/O 错误

        Returns:
            远端退出状态，未知时为 -1。

        Raises:
            ChannelError: 桥接过程中出现 I/O 错误。
        """
        bridge = TerminalBridge(self.stream_factory(shell.channel), terminal, events)
        try:
            result = await bridge.run()
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.error(f"会话 I/O 错误: {e}")
            raise ChannelError(f"Session I/O failed: {e}") from e

        shell.bridge_result = result
        status = shell.exit_status()
        shell.session.exit_status = status
        if result == BridgeResult.REMOTE_CLOSED:
            logger.info(f"远程 shell 已退出: {status}")
        return status

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _release(self, session: Session) -> None:
        """关闭通道和传输，最多等待 teardown_timeout"""
        channel, transport = session.channel, session.transport
        session.channel = session.transport = None
        if channel is None and transport is None:
            return

        def _shutdown():
            if channel is not None:
                channel.close()
            if transport is not None:
                transport.close()

        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, _shutdown), timeout=self.config.teardown_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("等待传输关闭超时，强制结束")
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.warning(f"关闭连接时出错: {e}")

    async def close(self, session: Session) -> None:
        """尽力关闭；超时后仍进入 CLOSED。重复调用无副作用"""
        if session.state in (SessionState.CLOSED, SessionState.FAILED):
            await self._release(session)
            return
        if session.state == SessionState.IDLE:
            return

        session.transition(SessionState.CLOSING)
        await self._release(session)
        session.transition(SessionState.CLOSED)
        logger.info(f"SSH 连接已断开: {session.username}@{session.host}")

    # ------------------------------------------------------------------
    # Full lifecycle
    # ------------------------------------------------------------------

    async def run_session(
        self,
        profile: Profile,
        terminal: Optional[LocalTerminal] = None,
        events: Optional[asyncio.Queue] = None,
    ) -> int:
        """连接、打开 shell、桥接并关闭

        信号处理器在连接之前安装：建立阶段的中断会取消进行中的步骤
        并关闭已建立的资源。原始模式只在桥接期间生效，任何退出路径都会恢复。

        Returns:
            ExitCode.OK（远端 shell 正常退出）或 ExitCode.INTERRUPTED。
        """
        terminal = terminal or LocalTerminal()
        events = events or asyncio.Queue()
        remove_handlers = install_signal_events(asyncio.get_running_loop(), events, terminal)
        session = None
        try:
            try:
                session = await self._until_interrupted(self.connect(profile), events)
                shell = await self._until_interrupted(
                    self.open_shell(session, terminal.size()), events
                )
            except SessionInterrupted:
                logger.info("会话建立期间被中断")
                return ExitCode.INTERRUPTED

            with terminal.raw_mode():
                await self.interact(shell, terminal, events)
        finally:
            remove_handlers()
            if session is not None:
                await self.close(session)

        if shell.bridge_result == BridgeResult.INTERRUPTED:
            return ExitCode.INTERRUPTED
        return ExitCode.OK

    async def _until_interrupted(self, coro, events: asyncio.Queue):
        """运行建立步骤，收到 InterruptEvent 时取消它

        建立期间的尺寸变化事件被丢弃，PTY 按打开时的尺寸分配。

        Raises:
            SessionInterrupted: 步骤完成前收到中断。
        """
        work = asyncio.ensure_future(coro)
        watcher = asyncio.ensure_future(_next_interrupt(events))
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not work.done():
                work.cancel()
            if not watcher.done():
                watcher.cancel()
            await asyncio.gather(work, watcher, return_exceptions=True)

        if not work.cancelled():
            if not watcher.cancelled():
                # 与步骤同时完成的中断留给后续阶段处理
                events.put_nowait(watcher.result())
            return work.result()
        raise SessionInterrupted("Interrupted while establishing the session")


async def _next_interrupt(events: asyncio.Queue) -> InterruptEvent:
    while True:
        event = await events.get()
        if isinstance(event, InterruptEvent):
            return event