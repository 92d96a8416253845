"""
Helpers for loading configuration files.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from .main import Config

_ENV_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _substitute_env_vars(text: str) -> str:
    """Replace `${VAR}` and `${VAR:-default}` with environment values.

    Unset variables without a default become empty strings.
    """

    def _replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        return os.environ.get(name, default if default is not None else "")

    return _ENV_VAR_RE.sub(_replace, text)


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """
    Read a YAML file, expanding environment variable references.

    Args:
        config_path: Path to the YAML file

    Returns:
        Parsed mapping (empty dict for an empty file)

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the YAML is invalid or not a mapping
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    content = _substitute_env_vars(path.read_text(encoding="utf-8"))

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.error(f"❌ Error parsing YAML file '{path}': {e}")
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


def validate_config(config_data: dict[str, Any]) -> Config:
    """
    Validate configuration data against the Config model.

    Raises:
        ValidationError: If the configuration fails validation
    """
    try:
        return Config.model_validate(config_data)
    except ValidationError as e:
        logger.error(f"❌ Error validating configuration: {e}")
        raise


def load_config(config_path: str | Path) -> Config:
    """Read and validate a YAML configuration file."""
    config = validate_config(read_yaml(config_path))
    logger.info(f"⚙️ Loaded knowledge grounding config from '{config_path}'")
    return config
