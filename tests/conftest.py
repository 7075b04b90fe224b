from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.delenv("PF_DB_URL", raising=False)
    monkeypatch.delenv("PF_LOG_FILE", raising=False)
    monkeypatch.delenv("PF_LOG_LEVELS", raising=False)
    monkeypatch.setenv("PF_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("PF_CONFIG_PATH", str(tmp_path / "config.yml"))
