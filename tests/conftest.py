import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("CUSTODY_VAULT_ENCRYPTION_KEY", "11" * 32)
os.environ.setdefault("CUSTODY_TOKEN_SIGNING_SECRET", "test-token-signing-secret-0123456789abcdef")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture()
def make_settings(tmp_path):
    from custody.config import load_settings

    def factory(**overrides):
        values = dict(
            store_path=tmp_path / "custody.json",
            revoked_tokens_path=tmp_path / "revoked_tokens.json",
            challenge_nonces_path=tmp_path / "challenge_nonces.json",
            audit_log_path=tmp_path / "audit" / "identities.log",
        )
        values.update(overrides)
        return load_settings(**values)

    return factory


@pytest.fixture()
def settings(make_settings):
    return make_settings()
