from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml

from repopanel_core.models import MODES

# Registry order matters: within a role the first enabled, credentialed
# entry wins.
DEFAULT_MODELS: list[dict] = [
    {
        "id": "deepseek-r1",
        "label": "DeepSeek R1",
        "role": "lead",
        "provider": "deepseek",
        "model": "deepseek-reasoner",
        "api_key_env": "DEEPSEEK_API_KEY",
        "cost_tier": "medium",
    },
    {
        "id": "claude-sonnet-4",
        "label": "Claude Sonnet 4",
        "role": "lead",
        "provider": "anthropic",
        "model": "claude-sonnet-4-20250514",
        "api_key_env": "ANTHROPIC_API_KEY",
        "cost_tier": "high",
    },
    {
        "id": "deepseek-v3.2",
        "label": "DeepSeek V3.2",
        "role": "reviewer",
        "provider": "deepseek",
        "model": "deepseek-chat",
        "api_key_env": "DEEPSEEK_API_KEY",
        "cost_tier": "low",
    },
    {
        "id": "gpt-4o",
        "label": "GPT-4o",
        "role": "reviewer",
        "provider": "openai",
        "model": "gpt-4o",
        "api_key_env": "OPENAI_API_KEY",
        "cost_tier": "medium",
    },
    {
        "id": "gemini-2.0-flash",
        "label": "Gemini 2.0 Flash",
        "role": "synthesizer",
        "provider": "gemini",
        "model": "gemini-2.0-flash",
        "api_key_env": "GEMINI_API_KEY",
        "cost_tier": "low",
    },
]

DEFAULT_CONFIG: dict = {
    "models": DEFAULT_MODELS,
    "invocation_timeout_seconds": 30,
    "run_timeout_seconds": 300,
    "max_retries": 2,
    "economic_min_question_chars": 500,
    "specialists": True,  # False = skip the Specialist Panel
    "scheduling": "sequential",  # "sequential" | "parallel"
    "structured_output": True,  # False = adaptive free-text synthesis
    "system_prompt": None,  # None = use built-in default; set to a path string to override
    "exclude": [],  # fnmatch patterns or directory names to skip while scanning
    "max_depth": 10,
    "store": "noop",
    "store_path": ".repopanel.db",
}

BUILTIN_PROMPTS_DIR = Path(__file__).parent / "prompts"
_BUILTIN_SYSTEM = BUILTIN_PROMPTS_DIR / "system.md"

# Values shipped in example .env files. Treated the same as an unset variable.
_PLACEHOLDER_KEYS = {"sk-...", "your-api-key", "changeme", "xxx"}


def load_config(
    config_path: str = ".repopanel.yml",
    cli_overrides: Optional[dict] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .repopanel.yml in the current directory
      3. CLI argument overrides

    Credentials for every registry entry are then resolved from ``environ``
    (default: ``os.environ``) into ``config["credentials"]``.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    config["models"] = [_with_model_defaults(m) for m in config["models"]]
    config["credentials"] = resolve_credentials(config["models"], os.environ if environ is None else environ)
    return config


def _with_model_defaults(entry: dict) -> dict:
    return {
        "label": entry.get("id", ""),
        "enabled": True,
        "cost_tier": "medium",
        "modes": list(MODES),
        **entry,
    }


def is_placeholder(value: str | None) -> bool:
    if value is None:
        return True
    stripped = value.strip()
    return not stripped or stripped.lower() in _PLACEHOLDER_KEYS or stripped.endswith("...")


def resolve_credentials(models: list[dict], environ: Mapping[str, str]) -> dict[str, str]:
    """Return ``{model_id: api_key}`` for every model whose credential is present.

    This is the only place the environment is read. The router receives the
    resulting capability map and never looks at the environment itself.
    """
    credentials: dict[str, str] = {}
    for entry in models:
        env_name = entry.get("api_key_env")
        if not env_name:
            continue
        value = environ.get(env_name)
        if not is_placeholder(value):
            credentials[entry["id"]] = value.strip()
    return credentials


def load_prompts(config: dict, mode: str) -> tuple[str, str]:
    """
    Load the system prompt and the per-mode template.

    If ``system_prompt`` is set in config, loads it from that path (relative
    to cwd). Otherwise falls back to the built-in default.
    """
    custom_path = config.get("system_prompt")
    if custom_path:
        p = Path(custom_path)
        if not p.exists():
            raise FileNotFoundError(f"System prompt file not found: {custom_path}")
        system = p.read_text()
    elif _BUILTIN_SYSTEM.exists():
        system = _BUILTIN_SYSTEM.read_text()
    else:
        raise FileNotFoundError("No system prompt configured and built-in default is missing.")

    mode_path = BUILTIN_PROMPTS_DIR / "modes" / f"{mode}.md"
    if not mode_path.exists():
        raise FileNotFoundError(f"No prompt template for mode {mode!r}")
    return system, mode_path.read_text()
