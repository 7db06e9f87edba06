"""
Data-type, format and declarative-rule evaluation shared by the validation stages.

Rules are SyntaxRule objects attached to segment definitions. Element references inside a rule
use the element's reference designator ("NM109", "HI01-02"); they are resolved against the
segment being validated, so a rule written once for NM1 applies in every loop that uses NM1.
"""
import logging
import re
from datetime import datetime
from typing import List, Optional, Tuple

from cdm import Finding, LoopInstance, Segment, Severity
from edi_schema_models import AssertionClause, ConditionClause, Conditions, SyntaxRule
from schema_model import SchemaNode, Usage
from schema_overlay import EffectiveSchema

logger = logging.getLogger(__name__)

ICD10CM_PATTERN = re.compile(r'^[A-Z][0-9][0-9A-Z][0-9A-Z]{0,4}$')
_TIME_PATTERN = re.compile(r'^\d{4}(\d{2}(\d{1,2})?)?$')
_INTEGER_PATTERN = re.compile(r'^-?\d+$')
_DECIMAL_PATTERN = re.compile(r'^-?(\d+\.?\d*|\.\d+)$')
_REF_PATTERN = re.compile(r'(\d+)(?:-(\d+))?$')


# --- Data type and format helpers ---
def _valid_date(value: str, pattern: str) -> bool:
    try:
        datetime.strptime(value, pattern)
        return True
    except ValueError:
        return False


def _valid_time(value: str) -> bool:
    if not _TIME_PATTERN.match(value):
        return False
    if not (0 <= int(value[:2]) <= 23 and 0 <= int(value[2:4]) <= 59):
        return False
    return len(value) < 6 or int(value[4:6]) <= 59


def validate_data_type(value: str, data_type: Optional[str]) -> bool:
    if not value or data_type in (None, 'Composite', 'AN', 'ID'):
        return True
    if data_type in ('N0', 'N1', 'N2'):
        return bool(_INTEGER_PATTERN.match(value))
    if data_type == 'R':
        return bool(_DECIMAL_PATTERN.match(value))
    if data_type == 'DT':
        if len(value) == 8:
            return value.isdigit() and _valid_date(value, '%Y%m%d')
        if len(value) == 6:
            return value.isdigit() and _valid_date(value, '%y%m%d')
        return False
    if data_type == 'TM':
        return _valid_time(value)
    return False


def validate_format(value: str, data_format: Optional[str]) -> bool:
    if not value or not data_format:
        return True
    if data_format == 'CCYYMMDD':
        return len(value) == 8 and value.isdigit() and _valid_date(value, '%Y%m%d')
    if data_format == 'YYMMDD':
        return len(value) == 6 and value.isdigit() and _valid_date(value, '%y%m%d')
    if data_format == 'HHMM':
        return len(value) == 4 and _valid_time(value)
    if data_format == 'CCYYMMDD-CCYYMMDD':
        start, sep, end = value.partition('-')
        return bool(sep) and validate_format(start, 'CCYYMMDD') and validate_format(end, 'CCYYMMDD') and start <= end
    if data_format == 'ICD10CM':
        return bool(ICD10CM_PATTERN.match(value))
    logger.warning(f"Unknown format '{data_format}'; value accepted.")
    return True


# --- Element references ---
def parse_element_ref(ref: str, tag: str) -> Tuple[int, Optional[int]]:
    """'NM109' -> (9, None); 'HI01-02' -> (1, 2)."""
    body = ref[len(tag):] if ref.startswith(tag) else ref
    match = _REF_PATTERN.search(body)
    if not match:
        raise ValueError(f"Cannot resolve element reference '{ref}' for segment '{tag}'.")
    component = int(match.group(2)) if match.group(2) else None
    return int(match.group(1)), component


def element_value(segment: Segment, ref: str) -> str:
    position, component = parse_element_ref(ref, segment.tag)
    element = segment.element(position)
    if element is None:
        return ""
    if component is None:
        return element.value
    return element.component(component) or ""


def element_present(segment: Segment, ref: str) -> bool:
    position, component = parse_element_ref(ref, segment.tag)
    element = segment.element(position)
    if element is None:
        return False
    if component is None:
        return not element.is_empty
    return (element.component(component) or "").strip() != ""


class RuleEvaluator:
    """Evaluates the declarative rules of one segment occurrence."""

    def __init__(self, effective: EffectiveSchema):
        self.effective = effective

    def evaluate(
        self,
        segment: Segment,
        node: SchemaNode,
        loop: Optional[LoopInstance],
        level: Optional[int] = None,
    ) -> List[Finding]:
        findings: List[Finding] = []
        rules = [rule for rule in node.rules if level is None or rule.snipLevel == level]
        if not rules:
            return findings

        logger.debug(f"        Syntax Rules: Found {len(rules)} rules for segment '{node.id}'.")
        for rule in rules:
            logger.debug(f"          -> Evaluating Rule: {rule.ruleId}")
            if self._evaluate_conditions(segment, rule.conditions):
                logger.debug("             - Conditions MET. Executing assertions.")
                for assertion in rule.then:
                    findings.extend(self._execute_assertion(segment, node, loop, assertion, rule))
            else:
                logger.debug("             - Conditions NOT MET. Skipping assertions.")
        return findings

    def _evaluate_conditions(self, segment: Segment, conditions: Conditions) -> bool:
        if conditions.ALL_OF:
            return all(self._evaluate_condition_clause(segment, clause) for clause in conditions.ALL_OF)
        if conditions.ANY_OF:
            return any(self._evaluate_condition_clause(segment, clause) for clause in conditions.ANY_OF)
        return True

    def _evaluate_condition_clause(self, segment: Segment, clause: ConditionClause) -> bool:
        value = element_value(segment, clause.element)
        op = clause.operator

        result = False
        if op == "IS_PRESENT": result = element_present(segment, clause.element)
        if op == "IS_NOT_PRESENT": result = not element_present(segment, clause.element)
        if op == "IS": result = value == clause.value
        if op == "IS_NOT": result = value != clause.value
        if op == "IS_ONE_OF": result = value in (clause.value or ())

        logger.debug(f"               - Condition: '{clause.element}' ({value}) {op} '{clause.value or ''}' -> {'PASS' if result else 'FAIL'}")
        return result

    def _is_removed(self, node_id: Optional[str]) -> bool:
        return node_id is not None and node_id in self.effective and self.effective.usage(node_id) is Usage.REMOVED

    def _execute_assertion(
        self,
        segment: Segment,
        node: SchemaNode,
        loop: Optional[LoopInstance],
        assertion: AssertionClause,
        rule: SyntaxRule,
    ) -> List[Finding]:
        assertion_type = assertion.assertion
        target = assertion.element
        target_node = node.element_by_xid(target) if target else None
        element_ref = target_node.id if target_node else target
        assertion_failed = False
        log_detail = ""

        if assertion_type == "MUST_BE_PRESENT":
            refs = [target] if target else list(assertion.elements or ())
            missing = [
                ref for ref in refs
                if not element_present(segment, ref) and not self._is_removed(self._node_id(node, ref))
            ]
            if missing:
                assertion_failed = True
                element_ref = self._node_id(node, missing[0])
            log_detail = f"Asserting {', '.join(refs)} MUST BE PRESENT. Missing: {', '.join(missing) or 'none'}"

        elif assertion_type == "MUST_NOT_BE_PRESENT":
            refs = [target] if target else list(assertion.elements or ())
            present = [ref for ref in refs if element_present(segment, ref)]
            if present:
                assertion_failed = True
                element_ref = self._node_id(node, present[0])
            log_detail = f"Asserting {', '.join(refs)} MUST NOT BE PRESENT."

        elif assertion_type == "ANY_OF_MUST_BE_PRESENT":
            refs = [ref for ref in assertion.elements or () if not self._is_removed(self._node_id(node, ref))]
            if refs and not any(element_present(segment, ref) for ref in refs):
                assertion_failed = True
                element_ref = self._node_id(node, refs[0])
            log_detail = f"Asserting ANY OF {', '.join(assertion.elements or ())} MUST BE PRESENT."

        elif assertion_type == "MUST_HAVE_LENGTH":
            value = element_value(segment, target)
            if value and len(value) != assertion.value:
                assertion_failed = True
            log_detail = f"Asserting {target} MUST HAVE LENGTH {assertion.value}. Data='{value}' (length={len(value)})"

        elif assertion_type == "MUST_BE_FORMAT":
            value = element_value(segment, target)
            if value and not validate_format(value, assertion.value):
                assertion_failed = True
            log_detail = f"Asserting {target} MUST BE FORMAT {assertion.value}. Data='{value}'"

        elif assertion_type == "MUST_BE_ONE_OF":
            value = element_value(segment, target)
            if value and value not in (assertion.value or ()):
                assertion_failed = True
            log_detail = f"Asserting {target} MUST BE ONE OF {assertion.value}. Data='{value}'"

        elif assertion_type == "SEGMENT_MUST_BE_PRESENT":
            wanted = [schema_id for schema_id in assertion.segments or () if not self._is_removed(schema_id)]
            counts = loop.child_counts if loop is not None else {}
            if wanted and not any(counts.get(schema_id, 0) > 0 for schema_id in wanted):
                assertion_failed = True
            element_ref = None
            log_detail = f"Asserting ANY OF {', '.join(assertion.segments or ())} MUST BE PRESENT in the same loop."

        if not assertion_failed:
            logger.debug(f"               - Assertion PASSED: {log_detail}")
            return []

        logger.debug(f"               - Assertion FAILED: {log_detail}")
        return [Finding(
            level=rule.snipLevel,
            severity=Severity(rule.severity),
            code=rule.ruleId,
            segment_ref=segment.ref,
            segment_position=segment.position,
            element_ref=element_ref,
            message=f"Syntax Rule Failed ({rule.ruleId}): {rule.description} {log_detail}",
            suggestion=rule.suggestion,
        )]

    @staticmethod
    def _node_id(node: SchemaNode, ref: str) -> str:
        target = node.element_by_xid(ref)
        return target.id if target else ref
