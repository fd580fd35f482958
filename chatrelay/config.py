"""
Config loader for chatrelay.
Reads config.yaml once at startup. All other modules import from here.
CHATRELAY_CONFIG overrides the default path.

String values may reference the environment as ${NAME}; provider API keys
are normally supplied that way (from the shell or a .env file). A name
that is not set expands to "".
"""

import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"
_ENV_REF = re.compile(r"\$\{(\w+)\}")

_config: dict | None = None


def _expand_env(node):
    """Substitute ${NAME} references in every string of a parsed YAML tree."""
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), node)
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    return node


def _config_path(path: Path | None) -> Path:
    """Explicit path, then $CHATRELAY_CONFIG, then config.yaml at the repo root."""
    chosen = Path(path or os.environ.get("CHATRELAY_CONFIG") or _CONFIG_PATH)
    if not chosen.is_file():
        raise FileNotFoundError(f"Config not found: {chosen}")
    return chosen


def load_config(path: Path | None = None) -> dict:
    """
    Parse the config file and make it the cached config.

    Without a path the cached copy is returned when there is one. Passing a
    path always re-reads.
    """
    global _config
    if path is None and _config is not None:
        return _config

    text = _config_path(path).read_text()
    _config = _expand_env(yaml.safe_load(text) or {})
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    return _config if _config is not None else load_config()


def reset_config() -> None:
    """Drop the cached config so the next get_config() reloads."""
    global _config
    _config = None
