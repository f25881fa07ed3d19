"""Unit tests for falalo.config."""

import importlib
import json
import os
import tempfile
from pathlib import Path
from unittest import mock

import pytest

from falalo import config

# ---------------------------------------------------------------------------
# Helpers – ``falalo.config`` resolves everything at import time, so each
# test reloads it inside a controlled environment.
# ---------------------------------------------------------------------------

_CONFIG_ENV_VARS = (
    "LLM_BASE_URL",
    "LLM_API_KEY",
    "LLM_INSTRUCTION_MODEL",
    "LLM_REASONING_MODEL",
    "MAX_CONTEXT_FILES",
    "CONTEXT_INCLUSIONS",
    "CONTEXT_EXCLUSIONS",
    "STEP_TIMEOUT",
    "COMMAND_MAX_ATTEMPTS",
    "COMMAND_RETRY_DELAY",
    "COMMAND_TIMEOUT",
    "FILE_SETTLE_DELAY",
    "COMMAND_SETTLE_DELAY",
    "STEP_SETTLE_DELAY",
    "FALALO_DATA_DIR",
)


def _reload_config(env=None, config_data=None, config_raw=None):
    """Reload ``falalo.config`` with a controlled environment.

    Parameters
    ----------
    env : dict | None
        Extra environment variables to set for the duration of the import.
    config_data : dict | None
        Contents to write to ``~/.falalo/config.json`` (serialised as JSON).
    config_raw : str | None
        Raw text to write to ``~/.falalo/config.json`` (takes precedence
        over *config_data* when both are given).
    """
    tmpdir = tempfile.mkdtemp()

    raw = (
        config_raw
        if config_raw is not None
        else (json.dumps(config_data) if config_data is not None else None)
    )
    if raw is not None:
        data_dir = Path(tmpdir) / ".falalo"
        data_dir.mkdir()
        (data_dir / "config.json").write_text(raw)

    patch_env = {"HOME": tmpdir}
    for var in _CONFIG_ENV_VARS:
        patch_env[var] = ""
    if env:
        patch_env.update(env)

    with (
        mock.patch.dict(os.environ, patch_env, clear=False),
        mock.patch("dotenv.load_dotenv"),
    ):
        return importlib.reload(config)


@pytest.fixture(autouse=True)
def restore_config():
    """Put the module back to its defaults for the rest of the suite."""
    yield
    _reload_config()


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


class TestDefaults:

    def test_llm_defaults(self):
        cfg = _reload_config()
        assert cfg.LLM_BASE_URL == "https://api.openai.com/v1"
        assert cfg.LLM_API_KEY == ""
        assert cfg.LLM_INSTRUCTION_MODEL == ""
        assert cfg.LLM_REASONING_MODEL == ""

    def test_context_defaults(self):
        cfg = _reload_config()
        assert cfg.MAX_CONTEXT_FILES == 500
        assert "**/*.py" in cfg.CONTEXT_INCLUSIONS
        assert "**/*.rs" in cfg.CONTEXT_INCLUSIONS
        assert cfg.CONTEXT_EXCLUSIONS == [
            "**/node_modules/**",
            "**/.git/**",
            "**/dist/**",
            "**/build/**",
        ]

    def test_execution_defaults(self):
        cfg = _reload_config()
        assert cfg.STEP_TIMEOUT == 60
        assert cfg.COMMAND_MAX_ATTEMPTS == 4
        assert isinstance(cfg.COMMAND_MAX_ATTEMPTS, int)
        assert cfg.COMMAND_RETRY_DELAY == 2
        assert cfg.COMMAND_TIMEOUT == 600
        assert cfg.FILE_SETTLE_DELAY == 0.5
        assert cfg.COMMAND_SETTLE_DELAY == 1.0
        assert cfg.STEP_SETTLE_DELAY == 1.0


# ---------------------------------------------------------------------------
# Config file
# ---------------------------------------------------------------------------


class TestConfigFile:
    """Values in ~/.falalo/config.json override defaults."""

    def test_overrides_defaults(self):
        cfg = _reload_config(
            config_data={"base_url": "http://localhost:1234/v1", "step_timeout": 90}
        )
        assert cfg.LLM_BASE_URL == "http://localhost:1234/v1"
        assert cfg.STEP_TIMEOUT == 90
        assert cfg.COMMAND_TIMEOUT == 600

    def test_list_values(self):
        cfg = _reload_config(config_data={"context_inclusions": ["**/*.md", "*.txt"]})
        assert cfg.CONTEXT_INCLUSIONS == ["**/*.md", "*.txt"]

    def test_invalid_json_falls_back_to_defaults(self):
        cfg = _reload_config(config_raw="not valid json{{{")
        assert cfg.LLM_BASE_URL == "https://api.openai.com/v1"

    def test_non_object_falls_back_to_defaults(self):
        cfg = _reload_config(config_raw="[1, 2, 3]")
        assert cfg.MAX_CONTEXT_FILES == 500


# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------


class TestEnvOverrides:
    """Environment variables win over the config file."""

    def test_env_beats_config_file(self):
        cfg = _reload_config(
            env={"COMMAND_MAX_ATTEMPTS": "2"},
            config_data={"command_max_attempts": "6"},
        )
        assert cfg.COMMAND_MAX_ATTEMPTS == 2

    def test_comma_separated_lists(self):
        cfg = _reload_config(env={"CONTEXT_EXCLUSIONS": "vendor/**, tmp/** ,"})
        assert cfg.CONTEXT_EXCLUSIONS == ["vendor/**", "tmp/**"]

    def test_empty_env_ignored(self):
        cfg = _reload_config(env={"LLM_BASE_URL": ""})
        assert cfg.LLM_BASE_URL == "https://api.openai.com/v1"

    def test_data_dir_env_var(self, tmp_path):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "config.json").write_text(json.dumps({"max_context_files": 7}))
        cfg = _reload_config(env={"FALALO_DATA_DIR": str(data_dir)})
        assert cfg.MAX_CONTEXT_FILES == 7

    def test_sessions_dir(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FALALO_DATA_DIR", str(tmp_path))
        assert config.config_dir() == tmp_path
        assert config.sessions_dir() == tmp_path / "sessions"


# ---------------------------------------------------------------------------
# Model selection
# ---------------------------------------------------------------------------


class TestGetModelName:

    def test_reasoning_model_preferred(self):
        cfg = _reload_config(
            env={"LLM_INSTRUCTION_MODEL": "small", "LLM_REASONING_MODEL": "big"}
        )
        assert cfg.get_model_name("reasoning") == "big"
        assert cfg.get_model_name("instruction") == "small"

    def test_reasoning_falls_back_to_instruction(self):
        cfg = _reload_config(env={"LLM_INSTRUCTION_MODEL": "small"})
        assert cfg.get_model_name("reasoning") == "small"

    def test_empty_when_unset(self):
        cfg = _reload_config()
        assert cfg.get_model_name("reasoning") == ""
        assert cfg.get_model_name() == ""
