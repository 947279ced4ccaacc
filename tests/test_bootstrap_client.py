import argparse
import importlib.util
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_client.py"


@pytest.fixture
def bootstrap_module():
    spec = importlib.util.spec_from_file_location("bootstrap_client", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("TEST_MODE", "true")
    monkeypatch.setenv("REDIS_URL", "")
    return tmp_path


def _args(**overrides):
    values = {
        "client_id": "billing-worker",
        "client_type": "machine",
        "client_secret": None,
        "scope": "billing:read",
        "refresh_ttl_days": None,
        "tenant_id": "public",
        "user_email": None,
        "user_password": None,
        "role": "user",
        "dry_run": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


@pytest.mark.parametrize(
    "candidate,expected",
    [
        ("short1A!", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-42", True),
        ("Str0ng-Passphrase!", True),
    ],
)
def test_validate_password(bootstrap_module, candidate, expected):
    assert bootstrap_module.validate_password(candidate) is expected


async def test_machine_client_gets_generated_secret(bootstrap_module, isolated_env):
    result = await bootstrap_module.bootstrap(_args())
    assert result["client_status"] == "created"
    assert result["client_secret"]


async def test_second_run_reports_existing_client(bootstrap_module, isolated_env):
    await bootstrap_module.bootstrap(_args())
    result = await bootstrap_module.bootstrap(_args())
    assert result["client_status"] == "exists"


async def test_dry_run_creates_nothing(bootstrap_module, isolated_env):
    result = await bootstrap_module.bootstrap(
        _args(dry_run=True, user_email="ops@example.com", user_password="Str0ng-Passphrase!")
    )
    assert result["client_status"] == "dry_run"
    assert result["user_status"] == "dry_run"

    result = await bootstrap_module.bootstrap(_args())
    assert result["client_status"] == "created"


async def test_creates_user_alongside_client(bootstrap_module, isolated_env):
    result = await bootstrap_module.bootstrap(
        _args(
            client_id="web",
            client_type="confidential",
            scope="profile email",
            user_email="Ops@Example.com",
            user_password="Str0ng-Passphrase!",
        )
    )
    assert result["client_status"] == "created"
    assert result["client_secret"] is None
    assert result["user_status"] == "created"

    again = await bootstrap_module.bootstrap(
        _args(client_id="web", user_email="ops@example.com", user_password="ignored")
    )
    assert again["user_status"] == "exists"
    assert again["user_id"] == result["user_id"]
