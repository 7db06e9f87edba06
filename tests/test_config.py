import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from edi_config import DEFAULT_SCHEMA_PATH, CancellationToken, EngineConfig
from edi_errors import ValidationCancelled

pytestmark = pytest.mark.unit


def test_defaults():
    config = EngineConfig()
    assert config.schema_base_path == DEFAULT_SCHEMA_PATH
    assert config.encoding == "latin-1"
    assert config.max_element_length == 1024
    assert config.recovery_lookahead == 25
    assert config.parallel_validation is False


def test_load_from_file(tmp_path: Path):
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({"schema_base_path": str(tmp_path), "recovery_lookahead": 5, "parallel_validation": True}))

    config = EngineConfig.load(str(path))
    assert config.schema_base_path == tmp_path
    assert config.recovery_lookahead == 5
    assert config.parallel_validation is True
    assert config.max_workers == 7


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        EngineConfig(recovery_lookahead=0)
    with pytest.raises(ValidationError):
        EngineConfig(max_element_length=-1)


def test_cancellation_token():
    token = CancellationToken()
    token.raise_if_cancelled()
    assert not token.cancelled

    token.cancel()
    assert token.cancelled
    with pytest.raises(ValidationCancelled):
        token.raise_if_cancelled()
