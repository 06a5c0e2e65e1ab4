"""
Tidemark Config - Checkpoint settings from YAML or dicts

Example checkpointing.yaml:
    checkpointing:
      storage: file                      # memory | file | sqlite
      checkpoint_dir: ${CHECKPOINT_DIR}  # ${VAR} is read from the environment
      checkpoint_interval: 5
      auto_resume: true
      keep_last: 20

The ``checkpointing:`` wrapper is optional; a file holding the fields at the
top level works the same.
"""

import os
import re
import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .checkpoint.errors import CheckpointConfigError
from .checkpoint.file_storage import FileStorage
from .checkpoint.sqlite_storage import SQLiteStorage
from .checkpoint.storage import CheckpointStorage, MemoryStorage

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


class CheckpointConfig(BaseModel):
    """Configuration for checkpoint storage and the durable wrapper"""

    # Backend
    storage: Literal["memory", "file", "sqlite"] = "memory"
    checkpoint_dir: str = "./checkpoints"
    sqlite_path: str = "checkpoints.db"

    # Wrapper behaviour
    checkpoint_interval: int = Field(default=0, ge=0)
    auto_resume: bool = True
    history_max_depth: int = Field(default=100, ge=1)
    keep_last: Optional[int] = Field(default=None, ge=0)
    agent_name: Optional[str] = None

    model_config = ConfigDict(extra="ignore")  # Ignore unknown fields in YAML

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CheckpointConfig":
        """
        Build config from a dictionary.

        Raises:
            CheckpointConfigError: If a field has an invalid value
        """
        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise CheckpointConfigError(f"Invalid checkpoint config: {e}") from e


def _substitute_env(raw: str, path: Union[str, Path]) -> str:
    """Replace ${VAR} with environment variable values"""
    def _replace_env(match):
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise CheckpointConfigError(
                f"Environment variable '{var_name}' not set "
                f"(referenced in config file '{path}')"
            )
        return value

    return _ENV_PATTERN.sub(_replace_env, raw)


def load_config(path: Union[str, Path]) -> CheckpointConfig:
    """
    Read a YAML config file with ${VAR} environment variable substitution.

    Args:
        path: Path to the YAML file

    Returns:
        Parsed CheckpointConfig

    Raises:
        CheckpointConfigError: If the file is missing, unparsable, references an
            unset variable, or holds invalid values
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise CheckpointConfigError(f"Cannot read config file '{path}': {e}") from e

    resolved = _substitute_env(raw, path)

    try:
        data = yaml.safe_load(resolved)
    except yaml.YAMLError as e:
        raise CheckpointConfigError(f"Invalid YAML in config file '{path}': {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise CheckpointConfigError(f"Config file '{path}' must contain a mapping")

    section = data.get("checkpointing", data)
    if section is not None and not isinstance(section, dict):
        raise CheckpointConfigError(f"'checkpointing' in '{path}' must be a mapping")

    config = CheckpointConfig.from_dict(section)
    logger.debug(f"Loaded checkpoint config from {path}: storage={config.storage}")
    return config


def create_storage(config: CheckpointConfig) -> CheckpointStorage:
    """Build the storage backend a config describes"""
    if config.storage == "file":
        return FileStorage(config.checkpoint_dir)
    if config.storage == "sqlite":
        return SQLiteStorage(config.sqlite_path)
    return MemoryStorage()
