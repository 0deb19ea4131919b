import os
import sys

import pytest

# Add project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from ssh_utils.config import AppConfig
from ssh_utils.crypto import KdfParams


# Cheap scrypt cost so vault tests stay fast
FAST_KDF = KdfParams(n=1024, r=8, p=1)


@pytest.fixture
def fast_kdf():
    return FAST_KDF


@pytest.fixture
def vault_path(tmp_path):
    return tmp_path / "ssh-utils" / "encrypted_data.bin"


@pytest.fixture
def app_config(tmp_path, vault_path):
    """Configuration isolated from the real home directory"""
    return AppConfig(
        vault_path=str(vault_path),
        kdf_n=FAST_KDF.n,
        kdf_r=FAST_KDF.r,
        kdf_p=FAST_KDF.p,
        identity_files=[],
        use_agent=False,
        known_hosts=str(tmp_path / "known_hosts"),
        connect_timeout=1.0,
        teardown_timeout=0.2,
    )
