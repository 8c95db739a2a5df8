"""Engine settings loader.

Reads project-specific settings from .stepform.yaml in the project root.
This lets a host application tune retreat behavior, rendering defaults and
logging without code changes.

Example .stepform.yaml:
    stepform:
      repropagate_on_retreat: true   # Re-run dependencies after moving back
      mask_char: "*"                 # Character used for secret text controls
      empty_placeholder: ""          # Text drawn for controls with no value
      boolean_labels: [Yes, No]      # Labels for true / false
      log_level: INFO
      json_logs: false
      log_file: ./stepform.log
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = ".stepform.yaml"


@dataclass
class FormSettings:
    """Engine configuration settings."""

    # Re-run a full propagation pass whenever the user moves back a step
    repropagate_on_retreat: bool = True

    # Rendering defaults
    mask_char: str = "*"
    empty_placeholder: str = ""
    boolean_labels: tuple[str, str] = ("Yes", "No")

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FormSettings":
        """Build settings from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown settings: %s", ", ".join(unknown))

        values = {k: v for k, v in data.items() if k in known}
        if "boolean_labels" in values:
            labels = values["boolean_labels"]
            if not isinstance(labels, (list, tuple)) or len(labels) != 2:
                raise ValueError("boolean_labels must be a pair of strings")
            values["boolean_labels"] = (str(labels[0]), str(labels[1]))
        if "mask_char" in values and len(str(values["mask_char"])) != 1:
            raise ValueError("mask_char must be a single character")
        return cls(**values)

    @classmethod
    def load(cls, project_root: Path | None = None) -> "FormSettings":
        """Load settings from .stepform.yaml in project root.

        Args:
            project_root: Project root directory. Defaults to cwd.

        Returns:
            FormSettings with values from config file or defaults.
        """
        root = project_root or Path.cwd()
        config_path = root / SETTINGS_FILENAME

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
            section = config.get("stepform", {}) or {}
            if not isinstance(section, dict):
                raise ValueError("'stepform' section must be a mapping")
            return cls.from_dict(section)
        except (OSError, yaml.YAMLError, ValueError, TypeError, AttributeError) as exc:
            # A malformed settings file should not stop a session from starting
            logger.warning("Using default settings; could not read %s: %s", config_path, exc)
            return cls()

    def get_log_file(self, project_root: Path | None = None) -> Path | None:
        """Get absolute path to the log file, if one is configured."""
        if not self.log_file:
            return None
        root = project_root or Path.cwd()
        return (root / self.log_file).resolve()


# Global settings instance (loaded on first access)
_settings: FormSettings | None = None


def get_settings(reload: bool = False) -> FormSettings:
    """Get the global engine settings.

    Args:
        reload: Force reload from config file.

    Returns:
        FormSettings instance.
    """
    global _settings
    if _settings is None or reload:
        _settings = FormSettings.load()
    return _settings
