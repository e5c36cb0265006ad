import os
import sys
from pathlib import Path

import pytest

# Ensure package root is on sys.path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import relaycron as pkg  # noqa: E402

scheduler_module = pkg.scheduler


@pytest.fixture(autouse=True)
def reset_default_service():
    yield
    scheduler_module._default_service = None
    pkg.cli._options["config"] = None


@pytest.fixture(autouse=True)
def reset_registered_groups():
    saved = dict(pkg.plugins.registered_groups)
    yield
    pkg.plugins.registered_groups.clear()
    pkg.plugins.registered_groups.update(saved)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith("RELAYCRON_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RELAYCRON_STATE_DIR", str(tmp_path / "state"))
    yield


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"
