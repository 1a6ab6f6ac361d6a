"""Configuration file loading and merging for kestrel.

Reads TOML config from ~/.config/kestrel/config.toml (global) and
<base_dir>/kestrel.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .permission import DEFAULT_AUTO_APPROVE, DEFAULT_DENIED_COMMANDS, MODES
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "context_window": int,
    "max_iterations": int,
    "tool_timeout": (int, float),
    "system_prompt": str,
    "no_instructions": bool,
    "mode": str,
    "auto_approve_tools": list,
    "allowed_commands": list,
    "denied_commands": list,
    "allowed_paths": list,
    "db_path": str,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {
    "auto_approve_tools",
    "allowed_commands",
    "denied_commands",
    "allowed_paths",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "anthropic",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "context_window": None,
    "max_iterations": 50,
    "tool_timeout": 120,
    "system_prompt": None,
    "no_instructions": False,
    "mode": "interactive",
    "auto_approve_tools": list(DEFAULT_AUTO_APPROVE),
    "allowed_commands": [],
    "denied_commands": list(DEFAULT_DENIED_COMMANDS),
    "allowed_paths": [],
    "db_path": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}

API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "kestrel"
    return Path.home() / ".config" / "kestrel"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and enumerated values in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

    if "mode" in config and config["mode"] not in MODES:
        raise ConfigError(
            f"{source}: 'mode' must be one of {', '.join(MODES)}, got {config['mode']!r}"
        )
    for key in ("max_iterations", "context_window", "max_output_tokens"):
        if key in config and config[key] < 0:
            raise ConfigError(f"{source}: {key!r} must not be negative")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "kestrel.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        if "db_path" in project_config:
            db = Path(project_config["db_path"]).expanduser()
            if not db.is_absolute():
                project_config["db_path"] = str(project_path.parent / db)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_api_key(provider: str, explicit: str | None) -> str | None:
    """CLI/config key first, then the provider's environment variable."""
    if explicit:
        return explicit
    env = API_KEY_ENV.get(provider)
    return os.environ.get(env) if env else None


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# kestrel configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/kestrel.toml' if project else '~/.config/kestrel/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "anthropic"           # "anthropic" | "openai"',
        '# model = "claude-sonnet-4-20250514"',
        '# api_key = "sk-..."               # prefer ANTHROPIC_API_KEY / OPENAI_API_KEY',
        '# base_url = "http://127.0.0.1:1234/v1"   # any OpenAI-compatible server',
        "",
        "# --- Budget ---",
        "# max_output_tokens = 8192",
        "# context_window = 200000",
        "# max_iterations = 50              # 0 = unlimited",
        "# tool_timeout = 120",
        "",
        "# --- Prompt ---",
        '# system_prompt = "You are a careful coding agent."',
        "# no_instructions = false",
        "",
        "# --- Permissions ---",
        '# mode = "interactive"             # "interactive" | "auto-approve" | "yolo"',
        '# auto_approve_tools = ["read_file", "list_dir", "glob", "grep"]',
        '# allowed_commands = ["git status", "git diff", "ls", "pytest"]',
        '# denied_commands = ["sudo", "rm -rf /"]',
        '# allowed_paths = ["./src/**", "./tests/**"]',
        "",
        "# --- Storage / UI ---",
        '# db_path = "~/.local/share/kestrel/sessions.db"',
        "# color = true",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
