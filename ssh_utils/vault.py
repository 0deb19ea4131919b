"""
凭据保险库

将配置集合序列化、加密并带完整性保护地持久化到单个文件；
解密后的配置只在内存中的 UnlockedVault 里短暂存在。

文件格式 (version 1, big-endian):
    [format_version 1B][salt 16B][n u32][r u16][p u16][nonce 12B][mac 16B][ciphertext]

安全说明:
    绝不记录明文、密文或密钥，只记录配置 ID 与操作。
"""

import json
import logging
import os
import struct
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from .crypto import (
    MAC_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
    KdfParams,
    SecretBuffer,
    decrypt,
    derive_key,
    encrypt,
    new_nonce,
    new_salt,
    wipe,
)
from .errors import (
    CorruptVault,
    IntegrityError,
    KdfError,
    PersistError,
    ProfileNotFound,
    UnsupportedFormat,
    VaultError,
    VaultNotFound,
    WrongSecret,
)
from .models.profile import Profile, ProfileSummary

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
_PREFIX = struct.Struct(f"!B{SALT_SIZE}sIHH")
_HEADER = struct.Struct(f"!B{SALT_SIZE}sIHH{NONCE_SIZE}s{MAC_SIZE}s")
HEADER_SIZE = _HEADER.size

MasterSecret = Union[str, bytes, SecretBuffer]


def default_vault_path() -> Path:
    """默认保险库位置 ~/.config/ssh-utils/encrypted_data.bin"""
    return Path.home() / ".config" / "ssh-utils" / "encrypted_data.bin"


# ---------------------------------------------------------------------------
# Binary codec
# ---------------------------------------------------------------------------


@dataclass
class VaultFile:
    """持久化容器"""

    salt: bytes
    kdf_params: KdfParams
    nonce: bytes
    mac: bytes
    ciphertext: bytes
    version: int = FORMAT_VERSION

    def associated_data(self) -> bytes:
        """版本、盐和 KDF 参数参与完整性标签"""
        return _PREFIX.pack(
            self.version, self.salt, self.kdf_params.n, self.kdf_params.r, self.kdf_params.p
        )

    def encode(self) -> bytes:
        header = _HEADER.pack(
            self.version,
            self.salt,
            self.kdf_params.n,
            self.kdf_params.r,
            self.kdf_params.p,
            self.nonce,
            self.mac,
        )
        return header + self.ciphertext

    @classmethod
    def decode(cls, data: bytes) -> "VaultFile":
        if not data:
            raise CorruptVault("vault file is empty")
        version = data[0]
        if version != FORMAT_VERSION:
            raise UnsupportedFormat(version)
        if len(data) < HEADER_SIZE:
            raise CorruptVault(
                f"vault header truncated: {len(data)} bytes (minimum {HEADER_SIZE})"
            )
        _, salt, n, r, p, nonce, mac = _HEADER.unpack_from(data)
        return cls(
            salt=salt,
            kdf_params=KdfParams(n=n, r=r, p=p),
            nonce=nonce,
            mac=mac,
            ciphertext=bytes(data[HEADER_SIZE:]),
            version=version,
        )


def encode_vault_file(vault_file: VaultFile) -> bytes:
    return vault_file.encode()


def decode_vault_file(data: bytes) -> VaultFile:
    return VaultFile.decode(data)


def write_atomic(path: Path, data: bytes) -> None:
    """先写临时文件再替换，失败时原文件保持不变

    Raises:
        PersistError: 任何 I/O 失败。
    """
    path = Path(path)
    tmp_path = None
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as e:
        logger.error(f"保险库写入失败: {path}: {e.strerror or e}")
        raise PersistError(f"Unable to write vault file {path}: {e}") from e
    finally:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                logger.warning(f"临时文件清理失败: {tmp_path}")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _serialize_profiles(profiles: List[Profile]) -> bytearray:
    document = {"profiles": [profile.to_record() for profile in profiles]}
    return bytearray(json.dumps(document, ensure_ascii=False).encode("utf-8"))


def _parse_profiles(plaintext: bytearray) -> List[Profile]:
    try:
        document = json.loads(plaintext.decode("utf-8"))
        records = document["profiles"]
        if not isinstance(records, list):
            raise TypeError("profiles must be a list")
        profiles = [Profile.from_record(record) for record in records]
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, ValidationError) as e:
        raise CorruptVault(f"vault document is malformed: {type(e).__name__}") from None

    ids = [profile.id for profile in profiles]
    if len(ids) != len(set(ids)):
        raise CorruptVault("vault document contains duplicate profile ids")
    return profiles


# ---------------------------------------------------------------------------
# Vault state machine
# ---------------------------------------------------------------------------


class VaultState(str, Enum):
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"


class Vault:
    """保险库文件句柄

    状态机: LOCKED → UNLOCKING → UNLOCKED → LOCKED，不允许重入解锁。
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else default_vault_path()
        self.state = VaultState.LOCKED

    def exists(self) -> bool:
        return self.path.exists()

    def _begin_unlock(self) -> None:
        if self.state != VaultState.LOCKED:
            raise VaultError(f"Vault is {self.state.value}; lock it before unlocking again")
        self.state = VaultState.UNLOCKING

    def initialize(
        self, master_secret: MasterSecret, params: Optional[KdfParams] = None
    ) -> "UnlockedVault":
        """首次运行：创建空保险库

        Raises:
            PersistError: 文件已存在或无法写入。
            KdfError: 参数无效。
        """
        if self.exists():
            raise PersistError(f"Vault already exists: {self.path}")
        params = params or KdfParams()
        self._begin_unlock()
        key = None
        try:
            salt = new_salt()
            key = derive_key(master_secret, salt, params)
            unlocked = UnlockedVault(self, key, salt, params, [])
            unlocked._persist([])
        except BaseException:
            if key is not None:
                key.wipe()
            self.state = VaultState.LOCKED
            raise

        self.state = VaultState.UNLOCKED
        logger.info(f"保险库已初始化: {self.path}")
        return unlocked

    def unlock(self, master_secret: MasterSecret) -> "UnlockedVault":
        """读取、派生密钥、校验并解密

        Raises:
            VaultNotFound: 文件不存在。
            UnsupportedFormat: 未知格式版本。
            CorruptVault: 头部截断、KDF 参数无效或解密后内容无法解析。
            WrongSecret: 完整性校验失败。
        """
        self._begin_unlock()
        key = None
        plaintext = None
        try:
            try:
                data = self.path.read_bytes()
            except FileNotFoundError:
                raise VaultNotFound(f"Vault not found: {self.path}") from None
            except OSError as e:
                raise VaultError(f"Unable to read vault file {self.path}: {e}") from e

            vault_file = VaultFile.decode(data)
            try:
                key = derive_key(master_secret, vault_file.salt, vault_file.kdf_params)
            except KdfError:
                raise CorruptVault("vault KDF parameters are invalid") from None
            try:
                plaintext = decrypt(
                    key,
                    vault_file.nonce,
                    vault_file.ciphertext,
                    vault_file.mac,
                    vault_file.associated_data(),
                )
            except IntegrityError:
                raise WrongSecret("vault integrity check failed") from None

            profiles = _parse_profiles(plaintext)
            unlocked = UnlockedVault(
                self, key, vault_file.salt, vault_file.kdf_params, profiles
            )
        except BaseException as e:
            if key is not None:
                key.wipe()
            self.state = VaultState.LOCKED
            logger.warning(f"保险库解锁失败: {type(e).__name__}")
            raise
        finally:
            wipe(plaintext)

        self.state = VaultState.UNLOCKED
        logger.info(f"保险库已解锁: {len(profiles)} 个配置")
        return unlocked


def unlock(vault_path: Union[str, Path], master_secret: MasterSecret) -> "UnlockedVault":
    return Vault(vault_path).unlock(master_secret)


class UnlockedVault:
    """解密后的配置集合和派生密钥，仅存在于内存"""

    def __init__(
        self,
        vault: Vault,
        key: SecretBuffer,
        salt: bytes,
        params: KdfParams,
        profiles: List[Profile],
    ):
        self._vault = vault
        self._key: Optional[SecretBuffer] = key
        self._salt = salt
        self._params = params
        self._profiles = profiles

    @property
    def path(self) -> Path:
        return self._vault.path

    @property
    def is_locked(self) -> bool:
        return self._key is None

    def _require_unlocked(self) -> None:
        if self._key is None:
            raise VaultError("Vault is locked")

    def _index_of(self, profile_id: str) -> int:
        for index, profile in enumerate(self._profiles):
            if profile.id == profile_id:
                return index
        raise ProfileNotFound(profile_id)

    def _persist(
        self,
        profiles: List[Profile],
        key: Optional[SecretBuffer] = None,
        salt: Optional[bytes] = None,
        params: Optional[KdfParams] = None,
    ) -> None:
        """用新的 nonce 重新加密并原子写入"""
        if key is None:
            key = self._key
        vault_file = VaultFile(
            salt=salt or self._salt,
            kdf_params=params or self._params,
            nonce=new_nonce(),
            mac=b"",
            ciphertext=b"",
        )
        plaintext = _serialize_profiles(profiles)
        try:
            vault_file.ciphertext, vault_file.mac = encrypt(
                key, vault_file.nonce, plaintext, vault_file.associated_data()
            )
        finally:
            wipe(plaintext)
        write_atomic(self._vault.path, vault_file.encode())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def list_profiles(self) -> List[ProfileSummary]:
        """按存储顺序返回不含凭据的摘要"""
        self._require_unlocked()
        return [profile.summary() for profile in self._profiles]

    def find(self, profile_id: str) -> Profile:
        """返回含解密凭据的完整配置，仅供会话引擎使用

        返回的是集合内的对象本身，lock() 会清零其凭据。要修改配置，
        先 model_copy() 再 upsert()；直接修改返回对象会绕过持久化。
        """
        self._require_unlocked()
        return self._profiles[self._index_of(profile_id)]

    def upsert(self, profile: Profile) -> "UnlockedVault":
        """按 ID 插入或替换，并重写保险库文件

        Raises:
            PersistError: 写入失败，集合中的对象列表和文件均保持不变。
        """
        self._require_unlocked()
        profiles = list(self._profiles)
        replaced = None
        try:
            index = self._index_of(profile.id)
        except ProfileNotFound:
            profiles.append(profile)
        else:
            replaced = profiles[index]
            profiles[index] = profile

        self._persist(profiles)
        self._profiles = profiles

        if replaced is not None and replaced is not profile:
            keep = {id(secret) for secret in profile.auth.secrets()}
            for secret in replaced.auth.secrets():
                if id(secret) not in keep:
                    secret.wipe()
        logger.info(f"配置已保存: {profile.id}")
        return self

    def remove(self, profile_id: str) -> "UnlockedVault":
        """删除配置并重写保险库文件

        Raises:
            ProfileNotFound: 配置不存在。
            PersistError: 写入失败。
        """
        self._require_unlocked()
        index = self._index_of(profile_id)
        profiles = list(self._profiles)
        removed = profiles.pop(index)

        self._persist(profiles)
        self._profiles = profiles
        removed.wipe_secrets()
        logger.info(f"配置已删除: {profile_id}")
        return self

    def change_master_secret(
        self, new_secret: MasterSecret, params: Optional[KdfParams] = None
    ) -> "UnlockedVault":
        """用新主密钥和新盐重新加密整个集合"""
        self._require_unlocked()
        params = params or self._params
        salt = new_salt()
        new_key = derive_key(new_secret, salt, params)
        try:
            self._persist(self._profiles, key=new_key, salt=salt, params=params)
        except BaseException:
            new_key.wipe()
            raise

        self._key.wipe()
        self._key, self._salt, self._params = new_key, salt, params
        logger.info("主密钥已更换")
        return self

    def lock(self) -> None:
        """清零密钥和所有凭据；重复调用无副作用"""
        if self._key is None:
            return
        for profile in self._profiles:
            profile.wipe_secrets()
        self._profiles = []
        self._key.wipe()
        self._key = None
        self._vault.state = VaultState.LOCKED
        logger.info("保险库已锁定")

    def __enter__(self) -> "UnlockedVault":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.lock()

    def __repr__(self) -> str:
        state = "locked" if self.is_locked else f"{len(self._profiles)} profiles"
        return f"UnlockedVault({self.path}, {state})"
