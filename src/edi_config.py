import json
import logging
import threading
from pathlib import Path

from pydantic import BaseModel, Field

from edi_errors import ValidationCancelled

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_PATH = Path(__file__).parent / "schemas"


class EngineConfig(BaseModel):
    """Tunables for parsing and validation. Defaults work without a config file."""
    schema_base_path: Path = Field(default=DEFAULT_SCHEMA_PATH)
    # latin-1 maps bytes 1:1 onto characters, so reported offsets are byte offsets.
    encoding: str = "latin-1"
    max_element_length: int = Field(default=1024, gt=0)
    recovery_lookahead: int = Field(default=25, ge=1)
    parallel_validation: bool = False
    max_workers: int = Field(default=7, ge=1)

    @classmethod
    def load(cls, config_path: str) -> "EngineConfig":
        with open(config_path, 'r') as f:
            config_data = json.load(f)
        logger.info(f"Loaded engine configuration from {config_path}")
        return cls.model_validate(config_data)


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running parse/validation."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ValidationCancelled("Operation cancelled by caller.")
