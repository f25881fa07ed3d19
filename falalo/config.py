"""Centralised configuration for Falalo.

Load order (later sources override earlier ones):
  1. Built-in defaults
  2. ~/.falalo/config.json
  3. .env file (via python-dotenv)
  4. Real environment variables
"""

import json
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env first so real env vars still win over it
load_dotenv()

# ── defaults ──────────────────────────────────────────────────────────
_DEFAULTS = {
    "base_url": "https://api.openai.com/v1",
    "api_key": "",
    "instruction_model": "",  # Empty means use the backend's default model
    "reasoning_model": "",  # Empty means use instruction_model
    "max_context_files": "500",
    "context_inclusions": "**/*.js,**/*.ts,**/*.jsx,**/*.tsx,**/*.py,**/*.java,"
    "**/*.cpp,**/*.c,**/*.go,**/*.rs",
    "context_exclusions": "**/node_modules/**,**/.git/**,**/dist/**,**/build/**",
    "step_timeout": "60",
    "command_max_attempts": "4",
    "command_retry_delay": "2",
    "command_timeout": "600",
    "file_settle_delay": "0.5",
    "command_settle_delay": "1.0",
    "step_settle_delay": "1.0",
}

# Map config keys to the corresponding env-var names
_ENV_MAP = {
    "base_url": "LLM_BASE_URL",
    "api_key": "LLM_API_KEY",
    "instruction_model": "LLM_INSTRUCTION_MODEL",
    "reasoning_model": "LLM_REASONING_MODEL",
    "max_context_files": "MAX_CONTEXT_FILES",
    "context_inclusions": "CONTEXT_INCLUSIONS",
    "context_exclusions": "CONTEXT_EXCLUSIONS",
    "step_timeout": "STEP_TIMEOUT",
    "command_max_attempts": "COMMAND_MAX_ATTEMPTS",
    "command_retry_delay": "COMMAND_RETRY_DELAY",
    "command_timeout": "COMMAND_TIMEOUT",
    "file_settle_delay": "FILE_SETTLE_DELAY",
    "command_settle_delay": "COMMAND_SETTLE_DELAY",
    "step_settle_delay": "STEP_SETTLE_DELAY",
}


# ── data directory (configurable via FALALO_DATA_DIR) ─────────────────
def _get_data_dir() -> Path:
    """Return the data directory, respecting FALALO_DATA_DIR env var."""
    env_dir = os.environ.get("FALALO_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".falalo"


_config_path = _get_data_dir() / "config.json"

_file_cfg: dict = {}
if _config_path.is_file():
    try:
        _file_cfg = json.loads(_config_path.read_text(encoding="utf-8"))
        if not isinstance(_file_cfg, dict):
            _file_cfg = {}
    except (json.JSONDecodeError, OSError):
        _file_cfg = {}


def _get(key: str) -> str:
    """Return a config value using the load-order described above."""
    # 4) env var  (highest priority)
    env_name = _ENV_MAP.get(key)
    if env_name:
        env_val = os.getenv(env_name)
        if env_val:  # non-empty string
            return env_val

    # 2) ~/.falalo/config.json
    val = _file_cfg.get(key)
    if isinstance(val, list):
        return ",".join(str(v) for v in val)
    if val is not None and str(val):
        return str(val)

    # 1) built-in default
    return _DEFAULTS[key]


def _get_list(key: str) -> list[str]:
    """Return a comma-separated config value as a list of stripped items."""
    return [item.strip() for item in _get(key).split(",") if item.strip()]


# ── public constants ──────────────────────────────────────────────────
LLM_BASE_URL: str = _get("base_url")
LLM_API_KEY: str = _get("api_key")
LLM_INSTRUCTION_MODEL: str = _get("instruction_model")
LLM_REASONING_MODEL: str = _get("reasoning_model")

MAX_CONTEXT_FILES: int = int(_get("max_context_files"))
CONTEXT_INCLUSIONS: list[str] = _get_list("context_inclusions")
CONTEXT_EXCLUSIONS: list[str] = _get_list("context_exclusions")

STEP_TIMEOUT: float = float(_get("step_timeout"))
COMMAND_MAX_ATTEMPTS: int = int(_get("command_max_attempts"))
COMMAND_RETRY_DELAY: float = float(_get("command_retry_delay"))
COMMAND_TIMEOUT: int = int(_get("command_timeout"))

FILE_SETTLE_DELAY: float = float(_get("file_settle_delay"))
COMMAND_SETTLE_DELAY: float = float(_get("command_settle_delay"))
STEP_SETTLE_DELAY: float = float(_get("step_settle_delay"))


def get_model_name(model_type: str = "instruction") -> str:
    """Return the model name for the given model type.

    Model types:
      - "instruction": For implementing a single step
      - "reasoning": For planning and failure analysis

    Resolution order:
      1. If reasoning_model is requested and set, use it
      2. If instruction_model is set, use it
      3. Empty string (let the backend use its default model)
    """
    if model_type == "reasoning" and LLM_REASONING_MODEL:
        return LLM_REASONING_MODEL
    if LLM_INSTRUCTION_MODEL:
        return LLM_INSTRUCTION_MODEL
    return ""


def config_dir() -> Path:
    """Return the data directory path, respecting FALALO_DATA_DIR env var."""
    return _get_data_dir()


def sessions_dir() -> Path:
    """Return the directory holding output of background command sessions."""
    return config_dir() / "sessions"
