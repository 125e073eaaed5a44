"""
Parameter persistence for glucocast.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional, Protocol, Union

from pydantic import ValidationError

from glucocast.config import Settings, get_settings
from glucocast.models.schemas import PARAMETERS_SCHEMA_VERSION, DiabetesParameters

logger = logging.getLogger(__name__)


class ParameterStore(Protocol):
    """Loads the committed parameter snapshot at startup and saves it after recalculation."""

    def load(self) -> Optional[DiabetesParameters]:
        ...

    def save(self, params: DiabetesParameters) -> None:
        ...


class JsonParameterStore:
    """Stores DiabetesParameters as a JSON document on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "JsonParameterStore":
        settings = settings or get_settings()
        return cls(settings.parameters_path)

    def load(self) -> Optional[DiabetesParameters]:
        """
        Load stored parameters.

        Returns:
            The stored parameters, or None when the file is missing, unreadable
            or written by an incompatible schema version
        """
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read parameters from {self.path}: {e}")
            return None

        version = data.get("schema_version", 1) if isinstance(data, dict) else None
        if version != PARAMETERS_SCHEMA_VERSION:
            logger.warning(f"Ignoring parameters with schema version {version} in {self.path}")
            return None

        try:
            params = DiabetesParameters.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid parameters in {self.path}: {e}")
            return None

        logger.info(f"Loaded parameters from {self.path} (calculated {params.calculated_at})")
        return params

    def save(self, params: DiabetesParameters) -> None:
        """Write parameters, replacing the previous file atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(params.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
        logger.info(f"Saved parameters to {self.path}")
