from .connection import AuthMethod, SessionState, SESSION_TRANSITIONS, TerminalSize
from .profile import (
    AuthSecret,
    DefaultAuth,
    IdentityAuth,
    PasswordAuth,
    Profile,
    ProfileSummary,
)

__all__ = [
    "AuthMethod",
    "SessionState",
    "SESSION_TRANSITIONS",
    "TerminalSize",
    "AuthSecret",
    "DefaultAuth",
    "IdentityAuth",
    "PasswordAuth",
    "Profile",
    "ProfileSummary",
]
