import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from edi_config import DEFAULT_SCHEMA_PATH
from edi_errors import UnknownSchema
from edi_schema_models import ImplementationGuideSchema
from schema_model import SchemaModel

logger = logging.getLogger(__name__)

SchemaKey = Tuple[str, str]


class SchemaRegistry:
    """
    Loads implementation guides from a directory of JSON files and serves them as
    SchemaModels keyed by (transaction type, implementation version).
    Models are built on first use and cached; cached models are immutable and shared.
    """

    def __init__(self, schema_base_path: Union[str, Path, None] = None):
        self.schema_base_path = Path(schema_base_path) if schema_base_path is not None else DEFAULT_SCHEMA_PATH
        self._definitions: Dict[SchemaKey, ImplementationGuideSchema] = self._load_base_schemas()
        self._models: Dict[SchemaKey, SchemaModel] = {}
        self._lock = threading.Lock()

    def _load_base_schemas(self) -> Dict[SchemaKey, ImplementationGuideSchema]:
        """Load every schema in the schema directory. Files that fail to load are logged and skipped."""
        definitions: Dict[SchemaKey, ImplementationGuideSchema] = {}
        if not self.schema_base_path.exists():
            logger.warning(f"Schema base path does not exist: {self.schema_base_path}")
            return definitions

        logger.info(f"Loading EDI schemas from: {self.schema_base_path}")

        for schema_file in sorted(self.schema_base_path.glob("*.json")):
            try:
                with open(schema_file, 'r') as f:
                    schema_data = json.load(f)
                schema = ImplementationGuideSchema.model_validate(schema_data)
            except Exception as e:
                logger.error(f"Failed to load schema {schema_file.name}: {e}")
                continue
            key = schema.get_version_key()
            if key in definitions:
                logger.warning(f"Schema {schema_file.name} replaces an earlier definition for {key[0]}/{key[1]}")
            definitions[key] = schema
            logger.info(f"Loaded schema: {schema_file.name} ({key[0]}/{key[1]})")
        return definitions

    def register(self, definition: ImplementationGuideSchema) -> SchemaModel:
        """Adds (or replaces) a definition and returns its built model."""
        model = SchemaModel.from_definition(definition)
        key = definition.get_version_key()
        with self._lock:
            self._definitions[key] = definition
            self._models[key] = model
        logger.info(f"Registered schema {key[0]}/{key[1]}")
        return model

    def get(self, transaction_type: str, version: str) -> SchemaModel:
        """
        Get the schema model for a transaction type and implementation version.

        Raises:
            UnknownSchema: if no definition is registered for the pair.
        """
        key = (transaction_type, version)
        with self._lock:
            model = self._models.get(key)
            if model is not None:
                return model
            definition = self._definitions.get(key)
            if definition is None:
                logger.error(f"Schema not found: {transaction_type}/{version}")
                raise UnknownSchema(transaction_type, version)
            model = SchemaModel.from_definition(definition)
            self._models[key] = model
            return model

    def get_definition(self, transaction_type: str, version: str) -> Optional[ImplementationGuideSchema]:
        return self._definitions.get((transaction_type, version))

    def __contains__(self, key: object) -> bool:
        return key in self._definitions

    def list_schemas(self) -> List[SchemaKey]:
        """List available (transaction type, version) pairs."""
        return sorted(self._definitions.keys())

    def reload_schemas(self):
        """Reload all schemas from filesystem."""
        definitions = self._load_base_schemas()
        with self._lock:
            self._definitions = definitions
            self._models = {}
