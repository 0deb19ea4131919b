"""
本地终端模块

提供作用域化的原始模式切换、异步的本地输入输出，
以及把 SIGWINCH / SIGTERM / SIGHUP 转换为事件队列中的事件。
"""

import asyncio
import logging
import os
import select
import signal
import sys
import termios
import tty
from dataclasses import dataclass
from typing import Callable, Optional

from .models.connection import TerminalSize

logger = logging.getLogger(__name__)

READ_SIZE = 4096


@dataclass
class ResizeEvent:
    """本地终端尺寸变化"""

    size: TerminalSize


@dataclass
class InterruptEvent:
    """操作者发出的中断信号"""

    signum: int


async def wait_readable(fd: int) -> None:
    """挂起直到 fd 可读，不做轮询"""
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def _ready():
        if not future.done():
            future.set_result(None)

    loop.add_reader(fd, _ready)
    try:
        await future
    finally:
        loop.remove_reader(fd)


class RawTerminalMode:
    """原始模式的作用域获取

    进入时保存 termios 属性并切换为原始模式，
    退出时（包括异常路径）恢复原属性。fd 不是 TTY 时不做任何事。
    """

    def __init__(self, fd: int):
        self.fd = fd
        self._saved = None

    @property
    def active(self) -> bool:
        return self._saved is not None

    def __enter__(self) -> "RawTerminalMode":
        if self._saved is not None:
            raise RuntimeError("raw mode already acquired")
        if not os.isatty(self.fd):
            return self
        self._saved = termios.tcgetattr(self.fd)
        try:
            tty.setraw(self.fd)
        except BaseException:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)
            self._saved = None
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.restore()

    def restore(self) -> None:
        if self._saved is None:
            return
        saved, self._saved = self._saved, None
        termios.tcsetattr(self.fd, termios.TCSADRAIN, saved)


class LocalTerminal:
    """进程的标准输入输出"""

    def __init__(self, stdin_fd: Optional[int] = None, stdout_fd: Optional[int] = None):
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd

    def size(self) -> TerminalSize:
        try:
            columns, rows = os.get_terminal_size(self.stdout_fd)
        except OSError:
            return TerminalSize()
        return TerminalSize(columns=max(columns, 1), rows=max(rows, 1))

    def raw_mode(self) -> RawTerminalMode:
        return RawTerminalMode(self.stdin_fd)

    async def read(self) -> bytes:
        """读取可用的输入字节；返回 b"" 表示 EOF"""
        await wait_readable(self.stdin_fd)
        return os.read(self.stdin_fd, READ_SIZE)

    async def write(self, data: bytes) -> None:
        """在线程池中写入，显示端变慢时不阻塞事件循环"""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_all, bytes(data))

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            try:
                written = os.write(self.stdout_fd, view)
            except BlockingIOError:
                select.select([], [self.stdout_fd], [])
                continue
            view = view[written:]


def install_signal_events(
    loop: asyncio.AbstractEventLoop, queue: asyncio.Queue, terminal: LocalTerminal
) -> Callable[[], None]:
    """注册信号处理器，返回用于移除它们的函数"""
    installed = []

    def _on_resize():
        queue.put_nowait(ResizeEvent(terminal.size()))

    def _on_interrupt(signum):
        queue.put_nowait(InterruptEvent(signum))

    handlers = [(signal.SIGWINCH, _on_resize, ())]
    for signum in (signal.SIGTERM, signal.SIGHUP):
        handlers.append((signum, _on_interrupt, (signum,)))

    for signum, callback, args in handlers:
        try:
            loop.add_signal_handler(signum, callback, *args)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            logger.debug(f"无法注册信号 {signum}: {e}")
            continue
        installed.append(signum)

    def remove():
        for signum in installed:
            loop.remove_signal_handler(signum)
        installed.clear()

    return remove
