import uuid
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from ..crypto import SecretBuffer


def _to_secret(value: Any) -> Any:
    if isinstance(value, (str, bytes, bytearray)):
        return SecretBuffer(value)
    return value


class PasswordAuth(BaseModel):
    """Explicit password; no fallback to identities or agent"""

    kind: Literal["password"] = "password"
    password: SecretBuffer = Field(..., description="Remote login password")

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("password", mode="before")
    @classmethod
    def coerce_secret(cls, v: Any) -> Any:
        return _to_secret(v)

    def secrets(self):
        return [self.password]

    def to_record(self) -> Dict[str, Any]:
        return {"kind": self.kind, "password": self.password.reveal()}


class IdentityAuth(BaseModel):
    """Local identity file with an optional passphrase"""

    kind: Literal["identity"] = "identity"
    path: str = Field(..., description="Private key file path")
    passphrase: Optional[SecretBuffer] = Field(
        default=None, description="Private key passphrase"
    )

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("passphrase", mode="before")
    @classmethod
    def coerce_secret(cls, v: Any) -> Any:
        return _to_secret(v)

    def secrets(self):
        return [self.passphrase] if self.passphrase is not None else []

    def to_record(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "path": self.path,
            "passphrase": self.passphrase.reveal() if self.passphrase is not None else None,
        }


class DefaultAuth(BaseModel):
    """No stored credential: default identity discovery, then agent"""

    kind: Literal["default"] = "default"

    def secrets(self):
        return []

    def to_record(self) -> Dict[str, Any]:
        return {"kind": self.kind}


AuthSecret = Annotated[
    Union[PasswordAuth, IdentityAuth, DefaultAuth], Field(discriminator="kind")
]


class ProfileSummary(BaseModel):
    """Metadata-only view of a profile for presentation layers"""

    id: str
    label: str
    host: str
    username: str


class Profile(BaseModel):
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        frozen=True,
        description="Stable profile identifier",
    )
    label: str = Field(..., description="Display name, not unique")
    host: str = Field(..., min_length=1, description="Remote server hostname or IP")
    port: int = Field(default=22, ge=1, le=65535, description="SSH port")
    username: str = Field(..., min_length=1, description="SSH username")
    auth: AuthSecret = Field(default_factory=DefaultAuth, description="Credential")

    model_config = {"validate_assignment": True}

    def summary(self) -> ProfileSummary:
        return ProfileSummary(
            id=self.id, label=self.label, host=self.host, username=self.username
        )

    def wipe_secrets(self) -> None:
        for secret in self.auth.secrets():
            secret.wipe()

    def to_record(self) -> Dict[str, Any]:
        """Plain dict for the encrypted vault document"""
        return {
            "id": self.id,
            "label": self.label,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "auth": self.auth.to_record(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Profile":
        return cls.model_validate(record)
