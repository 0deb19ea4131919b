import asyncio
import os
import socket
import threading
import time

import paramiko
import pytest

from ssh_utils.errors import AuthExhausted
from ssh_utils.models.connection import SessionState, TerminalSize
from ssh_utils.models.profile import PasswordAuth, Profile
from ssh_utils.session import SessionEngine
from ssh_utils.terminal import LocalTerminal, ResizeEvent


class ShellServer(paramiko.ServerInterface):
    """Minimal in-process SSH server offering one password-protected shell"""

    def __init__(self):
        self.shell_requested = threading.Event()
        self.resized = threading.Event()
        self.pty_size = None
        self.window_sizes = []

    def get_allowed_auths(self, username):
        return "password"

    def check_auth_password(self, username, password):
        if (username, password) == ("deploy", "secret"):
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_pty_request(
        self, channel, term, width, height, pixelwidth, pixelheight, modes
    ):
        self.pty_size = (width, height)
        return True

    def check_channel_shell_request(self, channel):
        self.shell_requested.set()
        return True

    def check_channel_window_change_request(
        self, channel, width, height, pixelwidth, pixelheight
    ):
        self.window_sizes.append((width, height))
        self.resized.set()
        return True


def serve(listener, host_key, server, received):
    """Greets, waits for one resize, echoes input until `exit`, then exits 7"""
    conn, _ = listener.accept()
    transport = paramiko.Transport(conn)
    transport.add_server_key(host_key)
    try:
        transport.start_server(server=server)
        channel = transport.accept(5)
        if channel is None:
            return
        server.shell_requested.wait(5)
        channel.send(b"hello\r\n")
        server.resized.wait(5)
        while b"exit" not in received:
            data = channel.recv(1024)
            if not data:
                break
            received.extend(data)
        channel.send(b"bye\r\n")
        channel.send_exit_status(7)
        channel.close()
    finally:
        deadline = time.monotonic() + 5
        while transport.is_active() and time.monotonic() < deadline:
            time.sleep(0.05)
        transport.close()


@pytest.fixture(scope="module")
def host_key():
    return paramiko.RSAKey.generate(2048)


@pytest.fixture
def ssh_server(host_key):
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    server = ShellServer()
    received = bytearray()
    thread = threading.Thread(
        target=serve, args=(listener, host_key, server, received), daemon=True
    )
    thread.start()
    yield listener.getsockname()[1], server, received
    listener.close()
    thread.join(10)


@pytest.fixture
def pipes():
    """(stdin read end, stdin write end, stdout read end, stdout write end)"""
    in_r, in_w = os.pipe()
    out_r, out_w = os.pipe()
    fds = [in_r, in_w, out_r, out_w]
    yield fds
    for fd in fds:
        if fd is not None:
            os.close(fd)


def make_profile(port, password="secret"):
    return Profile(label="local", host="127.0.0.1", port=port, username="deploy",
                   auth=PasswordAuth(password=password))


class TestLoopbackSession:
    """Drive a real paramiko client against an in-process server"""

    @pytest.mark.asyncio
    async def test_shell_bridge_and_resize(self, app_config, ssh_server, pipes):
        port, server, received = ssh_server
        in_r, in_w, out_r, out_w = pipes
        terminal = LocalTerminal(stdin_fd=in_r, stdout_fd=out_w)
        os.write(in_w, b"exit\n")
        os.close(in_w)
        pipes[1] = None
        events = asyncio.Queue()
        events.put_nowait(ResizeEvent(TerminalSize(columns=132, rows=50)))
        engine = SessionEngine(app_config)

        session = await engine.connect(make_profile(port))
        shell = await engine.open_shell(session, terminal.size())
        status = await asyncio.wait_for(engine.interact(shell, terminal, events), 10)
        await engine.close(session)

        os.set_blocking(out_r, False)
        output = os.read(out_r, 65536)

        assert status == 7
        assert session.exit_status == 7
        assert session.state == SessionState.CLOSED
        # pipes have no window size, so the PTY uses the default geometry
        assert server.pty_size == (80, 24)
        assert server.window_sizes == [(132, 50)]
        assert b"exit\n" in bytes(received)
        assert b"hello" in output
        assert b"bye" in output

    @pytest.mark.asyncio
    async def test_wrong_password_exhausts(self, app_config, ssh_server):
        port, _, _ = ssh_server
        engine = SessionEngine(app_config)

        with pytest.raises(AuthExhausted) as exc_info:
            await engine.connect(make_profile(port, password="wrong"))

        assert exc_info.value.tried == ["password"]
