"""Configuration file loading and merging for opencode.

Reads TOML config from ~/.config/opencode/config.toml (global) and the
nearest .opencode.toml found walking up from the working directory
(project). Precedence: CLI > environment > project > global > defaults.
"""

import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

GLOBAL_CONFIG_FILE = "config.toml"
PROJECT_CONFIG_FILE = ".opencode.toml"


# --- Schema ---

SECTION_KEYS: dict[str, dict[str, type | tuple[type, ...]]] = {
    "api": {
        "api_key": str,
        "base_url": str,
        "default_model": str,
        "edit_model": str,
        "big_model": str,
        "max_context_tokens": int,
        "timeout": (int, float),
    },
    "agent": {
        "max_iterations": int,
        "completion_phrases": list,
        "security_policy": str,
    },
}

_LIST_OF_STR_KEYS = {"completion_phrases"}

USERTOOL_FIELDS = ("name", "description", "input_schema", "command_template")

SECURITY_POLICIES = ("allow_all", "confirm_writes")

DEFAULTS: dict[str, dict[str, Any]] = {
    "api": {
        "api_key": None,
        "base_url": "https://openrouter.ai/api/v1",
        "default_model": "google/gemini-2.5-pro-preview-03-25",
        "edit_model": "google/gemini-2.0-flash-001",
        "big_model": None,
        "max_context_tokens": 4000,
        "timeout": 120,
    },
    "agent": {
        "max_iterations": 5,
        "completion_phrases": ["task complete", "task finished"],
        "security_policy": "confirm_writes",
    },
}

# Environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "OPENROUTER_API_KEY": ("api", "api_key"),
    "OPENCODE_MODEL": ("api", "default_model"),
    "OPENCODE_EDIT_MODEL": ("api", "edit_model"),
    "OPENCODE_BIG_MODEL": ("api", "big_model"),
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "opencode"
    return Path.home() / ".config" / "opencode"


def find_project_config(start: Path) -> Path | None:
    """Return the nearest .opencode.toml in start or any of its ancestors."""
    start = Path(start).resolve()
    for directory in (start, *start.parents):
        candidate = directory / PROJECT_CONFIG_FILE
        if candidate.is_file():
            return candidate
    return None


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_section(section: str, values: dict, source: str) -> dict:
    schema = SECTION_KEYS[section]
    known = {}
    for key, value in values.items():
        if key not in schema:
            print(
                f"warning: {source}: unknown config key {section}.{key!r}",
                file=sys.stderr,
            )
            continue
        expected = schema[key]
        # bool is an int subclass; reject it for non-bool fields.
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {section}.{key!r} expected {_type_name(expected)}, "
                f"got {type(value).__name__}"
            )
        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {section}.{key}[{i}]: expected string, "
                        f"got {type(elem).__name__}"
                    )
        known[key] = value

    policy = known.get("security_policy")
    if policy is not None and policy not in SECURITY_POLICIES:
        raise ConfigError(
            f"{source}: agent.security_policy must be one of "
            f"{', '.join(SECURITY_POLICIES)}, got {policy!r}"
        )
    for key in ("max_iterations", "max_context_tokens"):
        if key in known and known[key] < 1:
            raise ConfigError(f"{source}: {section}.{key} must be >= 1")
    return known


def _validate_usertools(entries, source: str) -> list[dict]:
    if not isinstance(entries, list):
        raise ConfigError(f"{source}: 'usertools' must be an array of tables")
    tools = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"{source}: usertools[{i}] must be a table")
        extra = set(entry) - set(USERTOOL_FIELDS)
        if extra:
            raise ConfigError(
                f"{source}: usertools[{i}]: unknown field(s) {', '.join(sorted(extra))}"
            )
        for field in USERTOOL_FIELDS:
            if not isinstance(entry.get(field), str):
                raise ConfigError(
                    f"{source}: usertools[{i}]: {field!r} is required and must be a string"
                )
        tools.append(dict(entry))
    return tools


def _load_single(path: Path | None, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if path is None or not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    config: dict[str, Any] = {}
    for key, value in raw.items():
        if key in SECTION_KEYS:
            if not isinstance(value, dict):
                raise ConfigError(f"{label}: '{key}' must be a table")
            config[key] = _validate_section(key, value, label)
        elif key == "usertools":
            config["usertools"] = _validate_usertools(value, label)
        else:
            print(f"warning: {label}: unknown config key {key!r}", file=sys.stderr)
    return config


# --- Public API ---


def load_config(base_dir: Path | None = None, env: dict | None = None) -> dict:
    """Load and merge defaults, global config, project config and env vars.

    Returns ``{"api": {...}, "agent": {...}, "usertools": [...],
    "sources": [...]}``. Sections merge per key; user tools from both files
    are kept, project entries replacing global ones with the same name.
    """
    env = os.environ if env is None else env
    base_dir = Path(base_dir or os.getcwd())

    global_path = global_config_dir() / GLOBAL_CONFIG_FILE
    project_path = find_project_config(base_dir)
    global_config = _load_single(global_path, str(global_path))
    project_config = _load_single(project_path, str(project_path))

    merged: dict[str, Any] = {
        section: {
            **defaults,
            **global_config.get(section, {}),
            **project_config.get(section, {}),
        }
        for section, defaults in DEFAULTS.items()
    }

    usertools: dict[str, dict] = {}
    for entry in global_config.get("usertools", []) + project_config.get("usertools", []):
        usertools[entry["name"]] = entry
    merged["usertools"] = list(usertools.values())

    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            merged[section][key] = value

    merged["sources"] = [
        str(p) for p in (global_path, project_path) if p is not None and p.is_file()
    ]
    return merged


def require_api_key(config: dict) -> str:
    key = config["api"].get("api_key")
    if not key:
        raise ConfigError(
            "no API key configured: set OPENROUTER_API_KEY or api.api_key in "
            f"{global_config_dir() / GLOBAL_CONFIG_FILE}"
        )
    return key
