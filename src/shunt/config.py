"""Configuration loading."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
from ruamel.yaml import YAML

from shunt.models.config import ShuntConfig


logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SHUNT_CONFIG"


class ConfigManager:
    """Loads shunt configuration from a YAML file."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """Initialize configuration manager.

        Falls back to ``$SHUNT_CONFIG``, and to built-in defaults when
        neither is set.
        """
        if config_path is None:
            config_path = os.environ.get(CONFIG_ENV_VAR)
        self.config_path = Path(config_path) if config_path else None
        self.yaml = YAML(typ="safe")
        self.config: Optional[ShuntConfig] = None

    async def load(self) -> ShuntConfig:
        """Load (or reload) the configuration."""
        data: Dict[str, Any] = {}

        if self.config_path is not None:
            if not await asyncio.to_thread(self.config_path.exists):
                raise FileNotFoundError(f"Config not found: {self.config_path}")
            data = await self._read_yaml(self.config_path) or {}
            logger.debug(f"Loaded config: {self.config_path}")

        try:
            self.config = ShuntConfig(**data)
        except ValidationError as e:
            logger.error(f"Invalid config {self.config_path}: {e}")
            raise

        return self.config

    async def _read_yaml(self, file_path: Path) -> Dict[str, Any]:
        """Read and parse YAML file."""
        content = await asyncio.to_thread(file_path.read_text)
        return self.yaml.load(content)
