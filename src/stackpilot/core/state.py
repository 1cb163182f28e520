"""Project state: reads and writes ``.stackpilot/config.yaml``."""

from pathlib import Path

import yaml
from pydantic import ValidationError

from stackpilot.core.config import StackPilotConfig
from stackpilot.core.exceptions import ConfigurationError

STATE_DIR_NAME = ".stackpilot"
CONFIG_FILE_NAME = "config.yaml"


class StateManager:
    """Locates and persists the project configuration under a project root."""

    def __init__(self, project_root: Path):
        self.project_root = project_root
        self.state_dir = project_root / STATE_DIR_NAME

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILE_NAME

    def load_config(self) -> StackPilotConfig | None:
        """Load the project config, or None when the project has none yet."""
        if not self.config_path.exists():
            return None

        try:
            data = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}") from e

        try:
            return StackPilotConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {self.config_path}:\n{e}") from e

    def save_config(self, config: StackPilotConfig) -> Path:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json", exclude_none=True)
        self.config_path.write_text(yaml.safe_dump(data, sort_keys=False))
        return self.config_path
