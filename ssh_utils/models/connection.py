from enum import Enum
from typing import Dict, FrozenSet

from pydantic import BaseModel, Field


class AuthMethod(str, Enum):
    PASSWORD = "password"
    KEY = "key"
    AGENT = "agent"


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SHELL_OPEN = "shell_open"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


SESSION_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset(
        {SessionState.AUTHENTICATING, SessionState.CLOSING, SessionState.FAILED}
    ),
    SessionState.AUTHENTICATING: frozenset(
        {SessionState.AUTHENTICATED, SessionState.CLOSING, SessionState.FAILED}
    ),
    SessionState.AUTHENTICATED: frozenset(
        {SessionState.SHELL_OPEN, SessionState.CLOSING, SessionState.FAILED}
    ),
    SessionState.SHELL_OPEN: frozenset({SessionState.CLOSING, SessionState.FAILED}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED, SessionState.FAILED}),
    SessionState.CLOSED: frozenset(),
    SessionState.FAILED: frozenset(),
}


class TerminalSize(BaseModel):
    columns: int = Field(default=80, ge=1, description="Terminal width in characters")
    rows: int = Field(default=24, ge=1, description="Terminal height in characters")
