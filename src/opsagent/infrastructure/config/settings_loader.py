"""
Settings loading.

Resolves the YAML configuration file, parses it with PyYAML and validates
it against ``OpsAgentSettings``. Provides a synchronous loader for the CLI
and an asynchronous one (``aiofiles``) for code already running inside an
event loop.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import aiofiles
import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from opsagent.core.domain.config_schema import OpsAgentSettings
from opsagent.core.domain.errors import ConfigError

logger = structlog.get_logger(__name__)

CONFIG_ENV_VAR = "OPSAGENT_CONFIG"
DEFAULT_CONFIG_PATH = "configs/opsagent.yaml"


def resolve_config_path(config_path: str | None = None) -> Path | None:
    """Pick the config file: explicit path, then ``$OPSAGENT_CONFIG``, then the default.

    Returns None when no file exists and none was requested explicitly.

    Raises:
        ConfigError: If an explicitly requested file does not exist.
    """
    requested = config_path or os.environ.get(CONFIG_ENV_VAR)
    if requested:
        path = Path(requested)
        if not path.exists():
            raise ConfigError(f"Config file not found: {requested}", details={"path": requested})
        return path
    default = Path(DEFAULT_CONFIG_PATH)
    return default if default.exists() else None


def parse_settings(raw_text: str, source: str = "<string>") -> OpsAgentSettings:
    """Validate YAML text into settings.

    Raises:
        ConfigError: On YAML syntax errors or schema violations.
    """
    try:
        data: Any = yaml.safe_load(raw_text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {source}: {exc}", details={"path": source}) from exc
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config root must be a mapping in {source}", details={"path": source}
        )
    try:
        return OpsAgentSettings.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise ConfigError(
            f"Invalid configuration in {source}: {'; '.join(errors)}",
            details={"path": source, "errors": errors},
        ) from exc


def load_settings(config_path: str | None = None) -> OpsAgentSettings:
    """Load settings synchronously; defaults when no file is found."""
    path = resolve_config_path(config_path)
    if path is None:
        logger.info("config.defaults_used")
        return OpsAgentSettings()
    settings = parse_settings(path.read_text(encoding="utf-8"), str(path))
    logger.info("config.loaded", path=str(path))
    return settings


async def load_settings_async(config_path: str | None = None) -> OpsAgentSettings:
    """Load settings without blocking the event loop."""
    path = resolve_config_path(config_path)
    if path is None:
        logger.info("config.defaults_used")
        return OpsAgentSettings()
    async with aiofiles.open(path, encoding="utf-8") as handle:
        raw = await handle.read()
    settings = parse_settings(raw, str(path))
    logger.info("config.loaded", path=str(path))
    return settings
