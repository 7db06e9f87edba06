import pytest
import sys
import logging
from typing import Callable, List, Optional

from edi_config import DEFAULT_SCHEMA_PATH
from schema_manager import SchemaRegistry
from schema_model import SchemaModel

# ==============================================================================
# PYTEST CONFIGURATION & HOOKS
# ==============================================================================

def pytest_configure(config):
    """Configure pytest settings and markers."""
    config.addinivalue_line("markers", "unit: Pure unit tests with no external dependencies.")
    config.addinivalue_line("markers", "integration: Tests that run the full parse and validation pipeline.")

@pytest.fixture(scope="session", autouse=True)
def setup_test_environment(pytestconfig):
    """Set up test environment with logging configuration."""
    log_level = pytestconfig.getoption("log_cli_level") or "INFO"
    logging.basicConfig(
        level=log_level.upper(),
        format="[%(asctime)s] [%(levelname)s] [%(name)s:%(lineno)d] - %(message)s",
        stream=sys.stdout,
        force=True,
    )
    logging.info(f"Test logging configured with level: {log_level.upper()}")
    yield

# ==============================================================================
# SCHEMA FIXTURES
# ==============================================================================

@pytest.fixture(scope="session")
def registry() -> SchemaRegistry:
    """The registry over the shipped implementation guides."""
    return SchemaRegistry(DEFAULT_SCHEMA_PATH)

@pytest.fixture(scope="session")
def base_model(registry: SchemaRegistry) -> SchemaModel:
    return registry.get("278", "005010X217")

# ==============================================================================
# EDI DATA FIXTURES
# ==============================================================================

ISA_SEGMENT = "ISA*00*          *00*          *ZZ*SENDERID       *ZZ*RECEIVERID     *240715*1200*^*00501*000000001*0*P*:"

BODY_278 = [
    "BHT*0007*13*REF12345*20240715*1200",
    "HL*1**20*1",
    "NM1*X3*2*ACME HEALTH PLAN*****PI*12345",
    "HL*2*1*21*1",
    "NM1*1P*1*SMITH*JOHN****XX*1234567893",
    "N3*123 MAIN ST",
    "N4*ANYTOWN*CA*90210",
    "HL*3*2*22*1",
    "NM1*IL*1*DOE*JANE****MI*MEM123456",
    "DMG*D8*19800101*F",
    "HL*4*3*EV*0",
    "TRN*1*TRACE001*1512345678",
    "UM*HS*I*3*11:B",
    "DTP*AAH*D8*20240801",
    "HI*ABK:M79606",
]

def _build_278(body: Optional[List[str]] = None, se_count: Optional[int] = None) -> str:
    """
    Wraps transaction body segments (BHT onwards) in a complete ISA/GS/ST envelope.
    SE01 is computed from the body unless given explicitly.
    """
    body = list(BODY_278 if body is None else body)
    count = se_count if se_count is not None else len(body) + 2
    segments = (
        [ISA_SEGMENT, "GS*HI*SENDER*RECEIVER*20240715*1200*1*X*005010X217", "ST*278*0001*005010X217"]
        + body
        + [f"SE*{count}*0001", "GE*1*1", "IEA*1*000000001"]
    )
    return "\n".join(segment + "~" for segment in segments)

@pytest.fixture(scope="session")
def body_278() -> List[str]:
    return list(BODY_278)

@pytest.fixture(scope="session")
def build_278() -> Callable[..., str]:
    return _build_278

@pytest.fixture(scope="session")
def valid_278() -> str:
    """A complete, clean 278 request: one UMO, requester, subscriber and patient event."""
    return _build_278()

@pytest.fixture(scope="session")
def service_level_278() -> str:
    """A 278 request carrying a service level (2000F) under the patient event."""
    body = list(BODY_278)
    body[body.index("HL*4*3*EV*0")] = "HL*4*3*EV*1"
    body += [
        "HL*5*4*SS*0",
        "TRN*1*TRACE002*1512345678",
        "UM*HS*I*3",
        "DTP*472*D8*20240801",
        "SV1*HC:99213*125.00*UN*1",
        "NM1*SJ*1*JONES*ANN****XX*1234567893",
    ]
    return _build_278(body)
