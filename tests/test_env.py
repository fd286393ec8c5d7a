from __future__ import annotations

import os
from pathlib import Path

import pytest

import basketbatch.env as env


@pytest.fixture(autouse=True)
def _fresh(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(env, "_loaded_from", None)
    monkeypatch.chdir(tmp_path)
    for k in ("BASKETBATCH_DOTENV_PATH", "BASKETBATCH_CONFIG_PATH", "BASKETBATCH_TEST_VALUE"):
        monkeypatch.delenv(k, raising=False)


def test_missing_file_loads_nothing() -> None:
    assert env.load_dotenv_if_present() is None
    assert "BASKETBATCH_TEST_VALUE" not in os.environ


def test_dotenv_next_to_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    deploy = tmp_path / "deploy"
    deploy.mkdir()
    (deploy / ".env").write_text("BASKETBATCH_TEST_VALUE=from-deploy\n", encoding="utf-8")
    monkeypatch.setenv("BASKETBATCH_CONFIG_PATH", str(deploy / "engine.yaml"))

    assert env.load_dotenv_if_present() == deploy / ".env"
    assert os.environ["BASKETBATCH_TEST_VALUE"] == "from-deploy"
    monkeypatch.delenv("BASKETBATCH_TEST_VALUE")


def test_real_environment_wins(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("BASKETBATCH_TEST_VALUE=from-file\n", encoding="utf-8")
    monkeypatch.setenv("BASKETBATCH_TEST_VALUE", "from-shell")

    assert env.load_dotenv_if_present() == Path(".env")
    assert os.environ["BASKETBATCH_TEST_VALUE"] == "from-shell"
