"""Configuration file management for Rover.

Per-project settings live in `.rover/config.toml` under a `[rover]` table.
The `.rover` directory is discovered by searching upward from the current
working directory until a `.git` directory (the project boundary) is found.
"""

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional

if sys.version_info < (3, 11):
    raise RuntimeError(
        "Rover requires Python 3.11 or greater for tomllib support. "
        f"Current version: {sys.version_info.major}.{sys.version_info.minor}"
    )

import tomllib

from .agents import AGENT_NAMES
from .errors import RoverError

CONFIG_DIRNAME = ".rover"
CONFIG_FILENAME = "config.toml"
CONFIG_TABLE = "rover"


class ConfigError(RoverError):
    """Raised when configuration file operations fail."""
    pass


class ProjectLocation(NamedTuple):
    """Where a working directory sits inside its project.

    Attributes:
        root: Directory holding ``.git``, or the start directory outside a repository
        rover_dir: Nearest ``.rover`` directory between the start and the root, if any
    """

    root: Path
    rover_dir: Optional[Path]


def locate_project(cwd: Path) -> ProjectLocation:
    """Walk upward from cwd once, noting the nearest .rover and the .git boundary."""
    start = Path(cwd).resolve()
    rover_dir = None
    for directory in (start, *start.parents):
        if rover_dir is None and (directory / CONFIG_DIRNAME).is_dir():
            rover_dir = directory / CONFIG_DIRNAME
        if (directory / ".git").exists():
            return ProjectLocation(directory, rover_dir)
    return ProjectLocation(start, rover_dir)


def find_project_root(cwd: Path) -> Path:
    return locate_project(cwd).root


def find_rover_dir(cwd: Path, create_if_missing: bool = False) -> Optional[Path]:
    """The project's .rover directory.

    Args:
        cwd: Directory to start the search from
        create_if_missing: Create .rover at the project root if none exists

    Returns:
        The .rover directory, or None if not found and not created
    """
    location = locate_project(cwd)
    if location.rover_dir is not None or not create_if_missing:
        return location.rover_dir
    rover_dir = location.root / CONFIG_DIRNAME
    rover_dir.mkdir(parents=True, exist_ok=True)
    return rover_dir


def find_config_file(cwd: Path) -> Optional[Path]:
    rover_dir = find_rover_dir(cwd)
    if rover_dir is None:
        return None
    config_file = rover_dir / CONFIG_FILENAME
    return config_file if config_file.is_file() else None


def _check_type(config: Dict[str, Any], key: str, expected: type, label: str, config_file: Path) -> None:
    value = config[key]
    # bool is a subclass of int; a number field must not accept true/false
    if isinstance(value, bool) and expected is not bool:
        ok = False
    else:
        ok = isinstance(value, expected)
    if not ok:
        raise ConfigError(
            f"Invalid value for '{key}' in {config_file}: "
            f"expected {label}, got {type(value).__name__}"
        )


def validate_config(config: Dict[str, Any], config_file: Path) -> Dict[str, Any]:
    """Validate configuration values and drop unknown keys.

    Raises:
        ConfigError: If a known key has an invalid value
    """
    known_keys = {"agent", "model", "timeout", "verbose", "quiet", "acp"}
    validated = {k: v for k, v in config.items() if k in known_keys}

    if "agent" in validated:
        _check_type(validated, "agent", str, "string", config_file)
        if validated["agent"].lower() not in AGENT_NAMES:
            raise ConfigError(
                f"Invalid value for 'agent' in {config_file}: "
                f"must be one of {', '.join(AGENT_NAMES)}, got '{validated['agent']}'"
            )
        validated["agent"] = validated["agent"].lower()

    if "model" in validated:
        _check_type(validated, "model", str, "string", config_file)

    if "timeout" in validated:
        _check_type(validated, "timeout", (int, float), "number", config_file)
        if validated["timeout"] < 0:
            raise ConfigError(
                f"Invalid value for 'timeout' in {config_file}: "
                f"must be non-negative, got {validated['timeout']}"
            )

    for key in ("verbose", "quiet", "acp"):
        if key in validated:
            _check_type(validated, key, bool, "boolean", config_file)

    return validated


def load_config(cwd: Optional[Path] = None) -> Dict[str, Any]:
    """Load `.rover/config.toml`, returning an empty dict when there is none.

    Raises:
        ConfigError: If the file exists but is not valid TOML, has invalid
            values, or cannot be read
    """
    if cwd is None:
        cwd = Path.cwd()

    config_file = find_config_file(cwd)
    if config_file is None:
        return {}

    try:
        with open(config_file, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse {config_file}: Invalid TOML syntax - {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read {config_file}: {e}") from e

    table = data.get(CONFIG_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigError(f"Invalid [{CONFIG_TABLE}] table in {config_file}")
    return validate_config(table, config_file)


def merge_config_and_args(config: Dict[str, Any], args: argparse.Namespace) -> argparse.Namespace:
    """Fill unset CLI arguments from the config file. CLI values win.

    store_true flags can only be turned on by the config, never off.
    """
    if getattr(args, "agent", None) is None and "agent" in config:
        args.agent = config["agent"]

    if getattr(args, "model", None) is None and "model" in config:
        args.model = config["model"]

    if getattr(args, "timeout", None) is None and "timeout" in config:
        args.timeout = config["timeout"]

    for flag in ("verbose", "quiet"):
        if hasattr(args, flag) and not getattr(args, flag) and config.get(flag, False):
            setattr(args, flag, True)

    # --no-acp disables session mode; the config can only disable it too
    if hasattr(args, "no_acp") and not args.no_acp and config.get("acp") is False:
        args.no_acp = True

    return args


CONFIG_TEMPLATE = """# Rover configuration file
# Command-line arguments override values in this file
# Uncomment and modify values as needed

[rover]
# Default agent tool: claude, codex, copilot, cursor, gemini, opencode or qwen
# agent = "claude"

# Default model passed to the agent (default: the agent's own default)
# model = "sonnet"

# Default timeout per workflow step in seconds, 0 for no limit (default: 1800)
# timeout = 1800

# Run claude, copilot and opencode over a persistent ACP session (default: true)
# acp = true

# Echo resolved prompts and enable debug logging (default: false)
# verbose = false

# Only show warnings, errors and the final summary (default: false)
# quiet = false
"""


def init_config(cwd: Optional[Path] = None) -> int:
    """Write a `.rover/config.toml` with every option commented out.

    Returns:
        0 on success, 1 on error
    """
    if cwd is None:
        cwd = Path.cwd()

    existing = find_config_file(cwd)
    if existing is not None:
        print(f"Error: Configuration file already exists at {existing}", file=sys.stderr)
        print(
            "Refusing to generate a new config file. "
            "Delete or rename the existing file first.",
            file=sys.stderr
        )
        return 1

    rover_dir = find_rover_dir(find_project_root(cwd), create_if_missing=True)
    if rover_dir is None:
        print(f"Error: Failed to create {CONFIG_DIRNAME} directory", file=sys.stderr)
        return 1

    config_file = rover_dir / CONFIG_FILENAME
    try:
        config_file.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    except OSError as e:
        print(f"Error: Failed to write configuration file: {e}", file=sys.stderr)
        return 1

    print(f"Created configuration file at {config_file}")
    return 0
