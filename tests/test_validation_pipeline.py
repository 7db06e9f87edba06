"""
Tests for the seven-level validation pipeline. Each document mutation below is chosen to trip
exactly one check, so the tests pin both the finding and the absence of collateral findings.
"""
import json
from pathlib import Path

import pytest

from cdm import Severity
from edi_config import DEFAULT_SCHEMA_PATH, CancellationToken
from edi_errors import ValidationCancelled
from edi_parser import parse
from schema_manager import SchemaRegistry
from schema_overlay import SchemaOverlay, apply_overlay, compose_overlay
from validation_pipeline import ValidationPipeline, check_syntax, validate

pytestmark = pytest.mark.unit


def _validate(edi: str, registry: SchemaRegistry, overlay: SchemaOverlay = None, **kwargs):
    base = registry.get("278", "005010X217")
    tree = parse(edi, "278", "005010X217", registry=registry)
    return validate(tree, apply_overlay(base, overlay), **kwargs)


def _edit(body, old, new):
    assert old in body
    return [new if segment == old else segment for segment in body]


def _single(findings):
    assert len(findings) == 1, [f.message for f in findings]
    return findings[0]


# --- clean documents ---
def test_clean_document_has_no_findings(valid_278: str, registry: SchemaRegistry):
    assert _validate(valid_278, registry) == []


def test_clean_service_level_document_has_no_findings(service_level_278: str, registry: SchemaRegistry):
    assert _validate(service_level_278, registry) == []


def test_single_level_document_has_no_findings(build_278, tmp_path: Path):
    """A guide cut down to the UMO level alone accepts a one-HL document."""
    guide = json.loads((DEFAULT_SCHEMA_PATH / "278.005010X217.json").read_text())
    transaction = guide["structure"][0]["children"][1]["children"][1]
    umo = next(child for child in transaction["children"] if child.get("xid") == "2000A")
    umo["children"] = [child for child in umo["children"] if child.get("xid") != "2000B"]
    (tmp_path / "278.umo-only.json").write_text(json.dumps(guide))
    registry = SchemaRegistry(tmp_path)

    edi = build_278(["BHT*0007*13*REF12345*20240715*1200", "HL*1**20*0", "NM1*X3*2*ACME HEALTH PLAN*****PI*12345"])
    tree = parse(edi, "278", "005010X217", registry=registry)

    assert tree.root.level_id == "1"
    assert tree.root.children == ()
    assert validate(tree, apply_overlay(registry.get("278", "005010X217"))) == []


# --- level 1 ---
def test_control_number_mismatch(valid_278: str, registry: SchemaRegistry):
    finding = _single(_validate(valid_278.replace("SE*17*0001~", "SE*17*0002~"), registry))
    assert (finding.level, finding.code, finding.element_ref) == (1, "CONTROL_NUMBER_MISMATCH", "SE02")


def test_segment_count_mismatch(build_278, registry: SchemaRegistry):
    finding = _single(_validate(build_278(se_count=99), registry))
    assert (finding.level, finding.code, finding.element_ref) == (1, "COUNT_MISMATCH", "SE01")
    assert finding.segment_ref == "SE"


def test_invalid_date_fails_data_type_and_format(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "BHT*0007*13*REF12345*20240715*1200", "BHT*0007*13*REF12345*20241345*1200")
    findings = _validate(build_278(body), registry)
    assert sorted(f.code for f in findings) == ["INVALID_DATA_TYPE", "INVALID_FORMAT"]
    assert {f.element_ref for f in findings} == {"BHT04"}
    assert all(f.level == 1 for f in findings)


def test_value_shorter_than_min_length(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "TRN*1*TRACE001*1512345678", "TRN*1*TRACE001*123")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (1, "ELEMENT_TOO_SHORT", "TRN03_2000E")


def test_too_many_elements(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "DMG*D8*19800101*F", "DMG*D8*19800101*F*X")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (1, "TOO_MANY_ELEMENTS", "DMG04")


def test_component_separator_in_simple_element(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "N3*123 MAIN ST", "N3*123:MAIN ST")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (1, "UNEXPECTED_COMPOSITE", "N301_2010B")


def test_skipped_segment_surfaces_at_level_one(body_278, build_278, registry: SchemaRegistry):
    body = body_278[:10] + ["ZZZ*JUNK"] + body_278[10:]
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code) == (1, "UNEXPECTED_SEGMENT")


# --- level 2 ---
def test_missing_required_element(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "BHT*0007*13*REF12345*20240715*1200", "BHT*0007*13**20240715*1200")
    finding = _single(_validate(build_278(body), registry))
    assert finding.level == 2
    assert finding.severity == Severity.ERROR
    assert finding.code == "MISSING_REQUIRED_ELEMENT"
    assert finding.element_ref == "BHT03"
    assert finding.segment_ref == "BHT*0007"


def test_not_used_element_present(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "NM1*X3*2*ACME HEALTH PLAN*****PI*12345", "NM1*X3*2*ACME HEALTH PLAN***DR**PI*12345")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (2, "NOT_USED_ELEMENT_PRESENT", "NM106_2010A")


def test_missing_required_segment(body_278, build_278, registry: SchemaRegistry):
    body = [segment for segment in body_278 if not segment.startswith("UM*")]
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.segment_ref) == (2, "MISSING_REQUIRED", "UM_2000E")


def test_child_code_without_children(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "HL*4*3*EV*0", "HL*4*3*EV*1")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (2, "HL_CHILD_CODE", "HL04")


def test_duplicate_level_id_surfaces_at_level_two(body_278, build_278, registry: SchemaRegistry):
    body = body_278 + ["HL*4*3*EV*0", "UM*HS*I*3", "HI*ABK:M79606"]
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code) == (2, "DUPLICATE_LEVEL_ID")


# --- levels 3 to 6 ---
def test_npi_length_rule(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "NM1*1P*1*SMITH*JOHN****XX*1234567893", "NM1*1P*1*SMITH*JOHN****XX*123")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (3, "NM1-NPI-LENGTH", "NM109_2010B")
    assert finding.suggestion


def test_date_format_rule(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "DTP*AAH*D8*20240801", "DTP*AAH*D8*2024-08-01")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (3, "DTP-D8-FORMAT", "DTP03_2000E_AAH")


def test_admission_review_requires_admission_date(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "UM*HS*I*3*11:B", "UM*AR*I*3*11:A")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.severity) == (4, "UM-AR-ADMISSION-DATE", Severity.ERROR)
    assert finding.segment_ref == "UM*AR"

    body.insert(body.index("DTP*AAH*D8*20240801") + 1, "DTP*435*D8*20240801")
    assert _validate(build_278(body), registry) == []


def test_health_services_review_without_diagnosis_warns(body_278, build_278, registry: SchemaRegistry):
    body = [segment for segment in body_278 if not segment.startswith("HI*")]
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.severity) == (4, "UM-HS-DIAGNOSIS", Severity.WARNING)


def test_implementation_reference_mismatch(valid_278: str, registry: SchemaRegistry):
    edi = valid_278.replace("ST*278*0001*005010X217~", "ST*278*0001*005010X999~")
    finding = _single(_validate(edi, registry))
    assert (finding.level, finding.code, finding.element_ref) == (4, "IMPLEMENTATION_REFERENCE_MISMATCH", "ST03")


def test_invalid_code_value(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "DMG*D8*19800101*F", "DMG*D8*19800101*X")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (5, "INVALID_CODE", "DMG03_2010C")


def test_diagnosis_code_format(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "HI*ABK:M79606", "HI*ABK:M79.606")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (5, "HI01-ICD10-FORMAT", "HI01-02_2000E")


def test_state_required_for_domestic_address(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "N4*ANYTOWN*CA*90210", "N4*ANYTOWN**90210")
    finding = _single(_validate(build_278(body), registry))
    assert (finding.level, finding.code, finding.element_ref) == (6, "N4-STATE-DOMESTIC", "N402_2010B")


def test_service_level_requires_service_line(service_level_278: str, registry: SchemaRegistry):
    edi = service_level_278.replace("SV1*HC:99213*125.00*UN*1~\n", "").replace("SE*23*0001~", "SE*22*0001~")
    finding = _single(_validate(edi, registry))
    assert (finding.level, finding.code) == (4, "UM-HS-SERVICE-LINE")


# --- level 7 and overlays ---
def test_overlay_mandatory_element_missing(build_278, body_278, registry: SchemaRegistry):
    body = _edit(body_278, "NM1*X3*2*ACME HEALTH PLAN*****PI*12345", "NM1*X3*2******PI*12345")
    edi = build_278(body)
    assert _validate(edi, registry) == []

    overlay = compose_overlay([("NM103_2010A", "mandatory")])
    finding = _single(_validate(edi, registry, overlay))
    assert (finding.level, finding.severity) == (7, Severity.ERROR)
    assert finding.element_ref == "NM103_2010A"


def test_overlay_mandatory_segment_missing(build_278, body_278, registry: SchemaRegistry):
    body = [segment for segment in body_278 if not segment.startswith("N3*")]
    edi = build_278(body)
    assert _validate(edi, registry) == []

    finding = _single(_validate(edi, registry, compose_overlay([("N3_2010B", "mandatory")])))
    assert (finding.level, finding.code, finding.segment_ref) == (7, "MISSING_REQUIRED", "N3_2010B")


def test_overlay_mandatory_satisfied_adds_nothing(valid_278: str, registry: SchemaRegistry):
    overlay = compose_overlay([("N3_2010B", "mandatory"), ("NM103_2010A", "mandatory")])
    assert _validate(valid_278, registry, overlay) == []


def test_removed_segment_present_is_a_warning(valid_278: str, registry: SchemaRegistry):
    finding = _single(_validate(valid_278, registry, compose_overlay([("N3_2010B", "removed")])))
    assert (finding.level, finding.severity, finding.segment_ref) == (7, Severity.WARNING, "N3_2010B")


def test_removed_element_present_is_a_warning(valid_278: str, registry: SchemaRegistry):
    finding = _single(_validate(valid_278, registry, compose_overlay([("NM104_2010B", "removed")])))
    assert (finding.level, finding.severity, finding.element_ref) == (7, Severity.WARNING, "NM104_2010B")


def test_removed_element_is_not_required_by_rules(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "NM1*1P*1*SMITH*JOHN****XX*1234567893", "NM1*1P*1*SMITH*****XX*1234567893")
    edi = build_278(body)
    assert [f.code for f in _validate(edi, registry)] == ["NM1-PERSON-FIRST-NAME"]
    assert _validate(edi, registry, compose_overlay([("NM104_2010B", "removed")])) == []


def test_optional_override_silences_base_requirement(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "BHT*0007*13*REF12345*20240715*1200", "BHT*0007*13**20240715*1200")
    assert _validate(build_278(body), registry, compose_overlay([("BHT03", "optional")])) == []


def test_overlay_only_adds_findings_for_mandatory_overrides(body_278, build_278, registry: SchemaRegistry):
    body = _edit(body_278, "NM1*X3*2*ACME HEALTH PLAN*****PI*12345", "NM1*X3*2******PI*12345")
    body = _edit(body, "DMG*D8*19800101*F", "DMG*D8*19800101*X")
    edi = build_278(body)
    without = _validate(edi, registry)
    with_overlay = _validate(edi, registry, compose_overlay([("NM103_2010A", "mandatory")]))
    assert set(without) <= set(with_overlay)
    assert len(with_overlay) == len(without) + 1


# --- pipeline behaviour ---
def _messy_278(body_278, build_278):
    body = _edit(body_278, "DMG*D8*19800101*F", "DMG*D8*1980-01-01*X")
    body = _edit(body, "N4*ANYTOWN*CA*90210", "N4*ANYTOWN**90210")
    body = _edit(body, "HI*ABK:M79606", "HI*ABK:M79.606")
    return build_278(body, se_count=3)


def test_findings_are_ordered_by_level(body_278, build_278, registry: SchemaRegistry):
    findings = _validate(_messy_278(body_278, build_278), registry)
    levels = [f.level for f in findings]
    assert levels == sorted(levels)
    assert {1, 3, 5, 6} <= set(levels)


def test_validation_is_idempotent(body_278, build_278, registry: SchemaRegistry):
    edi = _messy_278(body_278, build_278)
    assert _validate(edi, registry) == _validate(edi, registry)


def test_parallel_matches_sequential(body_278, build_278, registry: SchemaRegistry):
    edi = _messy_278(body_278, build_278)
    sequential = _validate(edi, registry)
    assert _validate(edi, registry, parallel=True, max_workers=4) == sequential
    assert _validate(edi, registry, parallel=True, max_workers=1) == sequential


def test_cancellation(valid_278: str, registry: SchemaRegistry):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(ValidationCancelled):
        _validate(valid_278, registry, cancel_token=token)
    with pytest.raises(ValidationCancelled):
        _validate(valid_278, registry, cancel_token=token, parallel=True)


def test_failing_stage_becomes_a_finding(valid_278: str, registry: SchemaRegistry):
    def broken_stage(tree, effective, cancel_token=None):
        raise RuntimeError("boom")

    tree = parse(valid_278, "278", "005010X217", registry=registry)
    effective = apply_overlay(registry.get("278", "005010X217"))
    pipeline = ValidationPipeline(stages=[(3, broken_stage), (1, check_syntax)])

    finding = _single(pipeline.run(tree, effective))
    assert (finding.level, finding.code) == (3, "STAGE_FAILURE")
    assert "boom" in finding.message


def test_tree_is_validated_against_a_different_overlay(valid_278: str, registry: SchemaRegistry):
    """A tree parsed once can be validated against any overlay without re-parsing."""
    base = registry.get("278", "005010X217")
    tree = parse(valid_278, "278", "005010X217", registry=registry)
    assert validate(tree, apply_overlay(base)) == []
    removed = validate(tree, apply_overlay(base, compose_overlay([("2010B", "removed")])))
    assert [f.segment_ref for f in removed] == ["2010B"]
