import os
from pathlib import Path
from typing import Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger(__name__)

# --- Centralized Path Constants ---
DBX_HOME = Path(os.getenv("DBX_HOME", Path.home() / ".dbx"))
CONFIG_FILE_NAME = "config.yaml"


class ShellSettings(BaseModel):
    """User-tunable behaviour of both shells, read from `$DBX_HOME/config.yaml`."""

    history_dir: Optional[Path] = None
    default_find_limit: int = Field(default=20, ge=1)
    pretty_by_default: bool = False
    max_column_width: int = Field(default=60, ge=8)
    show_query_time: bool = True

    def history_file(self, backend_kind: str) -> Path:
        base = self.history_dir or DBX_HOME
        return Path(base).expanduser() / f".{backend_kind}_history"


def load_settings(home: Optional[Path] = None) -> ShellSettings:
    """
    Loads settings from the YAML config file. A missing file yields defaults;
    an unreadable or invalid one raises ValueError naming the file.
    """
    config_path = (home or DBX_HOME) / CONFIG_FILE_NAME
    if not config_path.is_file():
        logger.debug("config.load.defaults", path=str(config_path))
        return ShellSettings()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Could not parse config file {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping.")

    try:
        settings = ShellSettings.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid settings in {config_path}:\n{e}") from e

    logger.debug("config.load.success", path=str(config_path))
    return settings
