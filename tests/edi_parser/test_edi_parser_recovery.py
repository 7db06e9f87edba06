import pytest

from edi_config import EngineConfig
from edi_errors import MalformedEnvelope, TokenizationError, UnrecoverableStructure
from edi_parser import MAX_USE_EXCEEDED, MISSING_REQUIRED, UNEXPECTED_SEGMENT, parse
from schema_manager import SchemaRegistry

pytestmark = pytest.mark.unit

def _insert_after(body, anchor, *segments):
    index = body.index(anchor) + 1
    return body[:index] + list(segments) + body[index:]

def test_unexpected_segment_is_skipped(body_278, build_278, registry: SchemaRegistry):
    """
    Tests that a segment the schema does not expect is skipped with a level-1 finding
    and assembly resumes with the next segment.
    """
    edi = build_278(_insert_after(body_278, "DMG*D8*19800101*F", "ZZZ*JUNK"))
    tree = parse(edi, "278", "005010X217", registry=registry)

    assert len(tree.assembly_findings) == 1
    finding = tree.assembly_findings[0]
    assert finding.level == 1
    assert finding.code == UNEXPECTED_SEGMENT
    assert finding.segment_ref == "ZZZ*JUNK"
    assert tree.segment_at(finding.segment_position).tag == "ZZZ"
    assert finding.segment_position not in tree.bindings
    assert tree.find_node("4") is not None

def test_misplaced_segment_is_skipped(body_278, build_278, registry: SchemaRegistry):
    """BHT after the hierarchy has started cannot be placed anywhere."""
    edi = build_278(_insert_after(body_278, "N4*ANYTOWN*CA*90210", "BHT*0007*13*AGAIN*20240715*1200"))
    tree = parse(edi, "278", "005010X217", registry=registry)

    assert [f.code for f in tree.assembly_findings] == [UNEXPECTED_SEGMENT]
    assert tree.assembly_findings[0].segment_ref == "BHT*0007"

def test_too_many_unknown_segments_is_unrecoverable(body_278, build_278, registry: SchemaRegistry):
    junk = ["ZZZ*%d" % i for i in range(5)]
    edi = build_278(_insert_after(body_278, "DMG*D8*19800101*F", *junk))
    config = EngineConfig(recovery_lookahead=3)

    with pytest.raises(UnrecoverableStructure) as exc_info:
        parse(edi, "278", "005010X217", registry=registry, config=config)
    assert exc_info.value.position == 14

def test_trailing_garbage_is_skipped_to_end(valid_278: str, registry: SchemaRegistry):
    tree = parse(valid_278 + "\nXYZ*1~\nXYZ*2~", "278", "005010X217", registry=registry)
    assert [f.segment_ref for f in tree.assembly_findings] == ["XYZ*1", "XYZ*2"]
    assert all(f.level == 1 for f in tree.assembly_findings)

def test_missing_required_segment(body_278, build_278, registry: SchemaRegistry):
    body = [segment for segment in body_278 if not segment.startswith("UM*")]
    tree = parse(build_278(body), "278", "005010X217", registry=registry)

    missing = [f for f in tree.occurrence_findings if f.code == MISSING_REQUIRED]
    assert [f.segment_ref for f in missing] == ["UM_2000E"]
    assert missing[0].level == 2

def test_segment_repeated_beyond_max_use(body_278, build_278, registry: SchemaRegistry):
    edi = build_278(_insert_after(body_278, "DMG*D8*19800101*F", "DMG*D8*19800102*M"))
    tree = parse(edi, "278", "005010X217", registry=registry)

    assert tree.assembly_findings == ()
    exceeded = [f for f in tree.occurrence_findings if f.code == MAX_USE_EXCEEDED]
    assert [f.segment_ref for f in exceeded] == ["DMG_2010C"]

def test_malformed_envelope_is_fatal(registry: SchemaRegistry):
    with pytest.raises(MalformedEnvelope):
        parse("ISA*00*~", "278", "005010X217", registry=registry)

def test_oversized_element_is_fatal(body_278, build_278, registry: SchemaRegistry):
    edi = build_278(body_278 + ["MSG*" + "X" * 2000])
    with pytest.raises(TokenizationError):
        parse(edi, "278", "005010X217", registry=registry)
