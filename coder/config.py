"""Configuration file loading and merging for coder.

Reads TOML config from ~/.config/coder/config.toml (global) and
<base_dir>/coder.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_iterations": int,
    "context_limit": int,
    "reasoning": str,
    "timeout": (int, float),
    "state_file": str,
    "no_state": bool,
    "no_optimize": bool,
    "color": bool,
    "quiet": bool,
}

_CHOICES: dict[str, tuple[str, ...]] = {
    "reasoning": ("low", "medium", "high"),
}

_POSITIVE_KEYS = {"max_iterations", "context_limit", "timeout"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": None,
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_iterations": 40,
    "context_limit": None,
    "reasoning": "high",
    "timeout": None,
    "state_file": None,
    "no_state": False,
    "no_optimize": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "coder"
    return Path.home() / ".config" / "coder"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    from .llm import PROVIDERS

    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")
        if key in _CHOICES and value not in _CHOICES[key]:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(_CHOICES[key])}, got {value!r}"
            )
        if key == "provider" and value not in PROVIDERS:
            raise ConfigError(
                f"{source}: unknown provider {value!r}, expected one of: "
                f"{', '.join(PROVIDERS)}"
            )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve a relative state_file against the config file's directory.

    Applies expanduser() before checking is_absolute(), so that ~/... paths
    expand to the user's home directory instead of becoming <config_dir>/~/...
    """
    if "state_file" in config:
        expanded = Path(config["state_file"]).expanduser()
        if expanded.is_absolute():
            config["state_file"] = str(expanded)
        else:
            config["state_file"] = str(config_dir / config["state_file"])


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    # Walk up from config file looking for .git
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
    # Strip unknown keys after warning (keep only known ones for downstream)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "coder.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    # Project overrides global (shallow)
    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, checks if the argparse value is still _UNSET. If so,
    applies the config value. Afterwards, sweeps remaining _UNSET sentinels
    and replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue  # Already handled above
        if _is_unset(key):
            setattr(args, key, value)

    # Sweep: replace remaining sentinels with hardcoded defaults
    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet -> verbose (inverted). Drops keys that aren't Session concerns
    (color).
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# coder configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/coder.toml' if project else '~/.config/coder/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "deepinfra"   # deepinfra | ollama | openrouter | groq | deepseek | cerebras',
        '# model = "openai/gpt-oss-120b"',
        '# api_key = "..."           # prefer env vars; this is a fallback',
        '# base_url = "http://localhost:11434"',
        "# timeout = 120",
        "",
        "# --- Agent behaviour ---",
        "# max_iterations = 40",
        "# context_limit = 131072",
        '# reasoning = "high"        # low | medium | high',
        "# no_optimize = false",
        "",
        "# --- Session state ---",
        '# state_file = ".coder/session.json"',
        "# no_state = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
