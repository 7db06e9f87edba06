"""
Seven-stage validation of an assembled DocumentTree against an EffectiveSchema.

Each stage is a pure function (tree, effective, cancel_token) -> List[Finding] covering one SNIP
level. Stages never look at each other's output, so they may run in any order or in parallel;
the pipeline always returns their findings concatenated in level order.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from cdm import DocumentTree, Finding, HierarchicalNode, LoopInstance, Segment, Severity
from edi_config import CancellationToken
from edi_errors import ValidationCancelled
from edi_parser import check_loop_instance
from edi_rules import RuleEvaluator, validate_data_type, validate_format
from edi_tokenizer import LITERAL_SEGMENTS
from schema_model import SchemaNode, Usage
from schema_overlay import EffectiveSchema

logger = logging.getLogger(__name__)

Stage = Callable[[DocumentTree, EffectiveSchema, Optional[CancellationToken]], List[Finding]]


class _Walker:
    """Cancellable iteration over the bound segments and loop instances of a tree."""

    def __init__(self, tree: DocumentTree, effective: EffectiveSchema, cancel_token: Optional[CancellationToken]):
        self.tree = tree
        self.effective = effective
        self.cancel_token = cancel_token
        self._loop_by_position: Dict[int, LoopInstance] = {}
        for instance in tree.loops:
            for position in instance.segment_positions:
                self._loop_by_position[position] = instance

    def checkpoint(self):
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def segments(self, include_removed: bool = False) -> Iterator[Tuple[Segment, SchemaNode]]:
        for segment in self.tree.segments:
            self.checkpoint()
            schema_id = self.tree.bindings.get(segment.position)
            if schema_id is None:
                continue
            if not include_removed and self.effective.usage(schema_id) is Usage.REMOVED:
                continue
            yield segment, self.effective.node(schema_id)

    def loops(self) -> Iterator[LoopInstance]:
        for instance in self.tree.loops:
            self.checkpoint()
            yield instance

    def loop_for(self, segment: Segment) -> Optional[LoopInstance]:
        return self._loop_by_position.get(segment.position)


def _finding(level: int, code: str, segment: Optional[Segment], message: str,
             element_ref: Optional[str] = None, severity: Severity = Severity.ERROR,
             suggestion: Optional[str] = None) -> Finding:
    return Finding(
        level=level,
        severity=severity,
        code=code,
        segment_ref=segment.ref if segment is not None else "",
        segment_position=segment.position if segment is not None else None,
        element_ref=element_ref,
        message=message,
        suggestion=suggestion,
    )


def _first(tree: DocumentTree, tag: str) -> Optional[Segment]:
    return next((segment for segment in tree.segments if segment.tag == tag), None)


def _rule_stage(level: int, tree: DocumentTree, effective: EffectiveSchema,
                cancel_token: Optional[CancellationToken]) -> List[Finding]:
    walker = _Walker(tree, effective, cancel_token)
    evaluator = RuleEvaluator(effective)
    findings: List[Finding] = []
    for segment, node in walker.segments():
        findings.extend(evaluator.evaluate(segment, node, walker.loop_for(segment), level=level))
    return findings


# --- Level 1: syntax ---
def _check_value(segment: Segment, node: SchemaNode, value: str) -> List[Finding]:
    findings: List[Finding] = []
    if value == "":
        return findings
    if node.min_length is not None and len(value) < node.min_length:
        findings.append(_finding(1, "ELEMENT_TOO_SHORT", segment,
                                 f"Element '{node.id}': Value is shorter than min length {node.min_length}.", node.id))
    if node.max_length is not None and len(value) > node.max_length:
        findings.append(_finding(1, "ELEMENT_TOO_LONG", segment,
                                 f"Element '{node.id}': Value is longer than max length {node.max_length}.", node.id))
    if not validate_data_type(value, node.data_type):
        findings.append(_finding(1, "INVALID_DATA_TYPE", segment,
                                 f"Element '{node.id}': Value does not match expected data type '{node.data_type}'.", node.id))
    if node.format and not validate_format(value, node.format):
        findings.append(_finding(1, "INVALID_FORMAT", segment,
                                 f"Element '{node.id}': Value does not match expected format '{node.format}'.", node.id))
    return findings


def _check_segment_syntax(segment: Segment, node: SchemaNode) -> List[Finding]:
    findings: List[Finding] = []
    defined = max((element.seq for element in node.children), default=0)
    if len(segment.elements) > defined:
        findings.append(_finding(1, "TOO_MANY_ELEMENTS", segment,
                                 f"Segment '{node.id}' has {len(segment.elements)} elements; the definition allows {defined}.",
                                 f"{segment.tag}{len(segment.elements):02d}"))

    for element_node in node.children:
        element = segment.element(element_node.seq)
        if element is None or element.is_empty:
            continue
        if len(element.repeats) > element_node.repeat:
            findings.append(_finding(1, "TOO_MANY_REPETITIONS", segment,
                                     f"Element '{element_node.id}' repeats {len(element.repeats)} times; maximum is {element_node.repeat}.",
                                     element_node.id))
        for instance in element.repeats:
            if element_node.is_composite:
                if len(instance) > len(element_node.children):
                    findings.append(_finding(1, "TOO_MANY_COMPONENTS", segment,
                                             f"Composite '{element_node.id}' has {len(instance)} components; the definition allows {len(element_node.children)}.",
                                             element_node.id))
                for sub in element_node.children:
                    value = instance[sub.seq - 1] if sub.seq <= len(instance) else ""
                    findings.extend(_check_value(segment, sub, value))
            else:
                if len(instance) > 1 and segment.tag not in LITERAL_SEGMENTS:
                    findings.append(_finding(1, "UNEXPECTED_COMPOSITE", segment,
                                             f"Element '{element_node.id}' is not a composite but contains component separators.",
                                             element_node.id))
                findings.extend(_check_value(segment, element_node, instance[0]))
    return findings


def _check_delimiters(tree: DocumentTree) -> List[Finding]:
    findings: List[Finding] = []
    isa = _first(tree, 'ISA')
    if isa is None:
        return findings
    delimiters = tree.delimiters
    isa11 = isa.get_element(11)
    if delimiters.repetition is not None and isa11 != delimiters.repetition:
        findings.append(_finding(1, "DELIMITER_MISMATCH", isa,
                                 f"ISA11 '{isa11}' does not match the repetition separator '{delimiters.repetition}'.", "ISA11"))
    isa16 = isa.get_element(16)
    if isa16 != delimiters.component:
        findings.append(_finding(1, "DELIMITER_MISMATCH", isa,
                                 f"ISA16 '{isa16}' does not match the component separator '{delimiters.component}'.", "ISA16"))
    return findings


def _count_mismatch(trailer: Segment, element_ref: str, declared: Optional[str], actual: int, what: str) -> List[Finding]:
    if declared is None or not declared.isdigit() or int(declared) == actual:
        return []
    return [_finding(1, "COUNT_MISMATCH", trailer,
                     f"{element_ref} declares {declared} {what} but the document contains {actual}.", element_ref)]


def _check_envelope(tree: DocumentTree) -> List[Finding]:
    findings: List[Finding] = []
    isa, iea = _first(tree, 'ISA'), _first(tree, 'IEA')
    gs, ge = _first(tree, 'GS'), _first(tree, 'GE')
    st, se = _first(tree, 'ST'), _first(tree, 'SE')

    for header, trailer, header_ref, trailer_ref in ((isa, iea, 'ISA13', 'IEA02'), (gs, ge, 'GS06', 'GE02'), (st, se, 'ST02', 'SE02')):
        if header is None or trailer is None:
            continue
        expected = header.get_element(int(header_ref[-2:]))
        actual = trailer.get_element(int(trailer_ref[-2:]))
        if expected != actual:
            findings.append(_finding(1, "CONTROL_NUMBER_MISMATCH", trailer,
                                     f"{trailer_ref} '{actual}' does not match {header_ref} '{expected}'.", trailer_ref))

    if st is not None and se is not None:
        findings.extend(_count_mismatch(se, 'SE01', se.get_element(1), se.position - st.position + 1, "segments"))
    if ge is not None:
        findings.extend(_count_mismatch(ge, 'GE01', ge.get_element(1), sum(1 for s in tree.segments if s.tag == 'ST'), "transaction sets"))
    if iea is not None:
        findings.extend(_count_mismatch(iea, 'IEA01', iea.get_element(1), sum(1 for s in tree.segments if s.tag == 'GS'), "functional groups"))
    return findings


def check_syntax(tree: DocumentTree, effective: EffectiveSchema,
                 cancel_token: Optional[CancellationToken] = None) -> List[Finding]:
    """Level 1: skipped segments, delimiters, element shape, length, data type, format and envelope counts."""
    findings = [finding for finding in tree.assembly_findings if finding.level == 1]
    findings.extend(_check_delimiters(tree))
    walker = _Walker(tree, effective, cancel_token)
    evaluator = RuleEvaluator(effective)
    for segment, node in walker.segments():
        findings.extend(_check_segment_syntax(segment, node))
        findings.extend(evaluator.evaluate(segment, node, walker.loop_for(segment), level=1))
    findings.extend(_check_envelope(tree))
    return findings


# --- Levels 2 and 7: usage ---
def _usage_findings(segment: Segment, node: SchemaNode, present: bool, effective: EffectiveSchema,
                    overridden: bool) -> List[Finding]:
    if effective.is_inherited_removal(node.id):
        return []
    if (effective.override_for(node.id) is not None) != overridden:
        return []
    usage = effective.usage(node.id)
    if not overridden:
        if usage is Usage.MANDATORY and not present:
            return [_finding(2, "MISSING_REQUIRED_ELEMENT", segment, f"Required element '{node.id}' is missing.", node.id)]
        if usage is Usage.NOT_USED and present:
            return [_finding(2, "NOT_USED_ELEMENT_PRESENT", segment,
                             f"Element '{node.id}' is Not Used and should not contain data.", node.id)]
        return []
    if usage is Usage.MANDATORY and not present:
        return [_finding(7, "MISSING_REQUIRED_ELEMENT", segment,
                         f"Element '{node.id}' is required by this implementation but is missing.", node.id)]
    if usage is Usage.REMOVED and present:
        return [_finding(7, "REMOVED_ELEMENT_PRESENT", segment,
                         f"Element '{node.id}' is removed for this implementation but contains data.", node.id,
                         severity=Severity.WARNING)]
    return []


def _check_element_usage(segment: Segment, node: SchemaNode, effective: EffectiveSchema, overridden: bool) -> List[Finding]:
    findings: List[Finding] = []
    for element_node in node.children:
        element = segment.element(element_node.seq)
        present = element is not None and not element.is_empty
        findings.extend(_usage_findings(segment, element_node, present, effective, overridden))
        if present and element_node.is_composite:
            for sub in element_node.children:
                sub_present = (element.component(sub.seq) or "") != ""
                findings.extend(_usage_findings(segment, sub, sub_present, effective, overridden))
    return findings


def _check_hierarchy(tree: DocumentTree, effective: EffectiveSchema, walker: _Walker) -> List[Finding]:
    findings: List[Finding] = []
    top = effective.top_level_loop

    def hl_segment(node: HierarchicalNode) -> Optional[Segment]:
        return node.segments[0] if node.segments else None

    if tree.root is not None and top is not None and tree.root.level_code != top.hl_code:
        findings.append(_finding(2, "HL_ROOT_LEVEL", hl_segment(tree.root),
                                 f"Root hierarchical level has code '{tree.root.level_code}'; expected '{top.hl_code}'.", "HL03"))

    def visit(node: HierarchicalNode, parent: Optional[HierarchicalNode]):
        walker.checkpoint()
        segment = hl_segment(node)
        if node.child_code == "1" and not node.children:
            findings.append(_finding(2, "HL_CHILD_CODE", segment,
                                     f"HL '{node.level_id}' declares subordinate levels (HL04=1) but has none.", "HL04"))
        elif node.child_code == "0" and node.children:
            findings.append(_finding(2, "HL_CHILD_CODE", segment,
                                     f"HL '{node.level_id}' declares no subordinate levels (HL04=0) but has {len(node.children)}.", "HL04"))
        if parent is not None:
            expected = effective.base.nearest_hl_ancestor(node.loop_id)
            if expected is not None and expected.hl_code != parent.level_code:
                findings.append(_finding(2, "HL_PARENT_LEVEL", segment,
                                         f"HL '{node.level_id}' (code {node.level_code}) must be subordinate to level code "
                                         f"'{expected.hl_code}', but its parent '{parent.level_id}' has code '{parent.level_code}'.", "HL02"))
        for child in node.children:
            visit(child, node)

    if tree.root is not None:
        visit(tree.root, None)
    for detached in tree.detached:
        visit(detached, None)
    return findings


def check_structure(tree: DocumentTree, effective: EffectiveSchema,
                    cancel_token: Optional[CancellationToken] = None) -> List[Finding]:
    """Level 2: loop and segment occurrence, element usage and the HL graph, for nodes the overlay leaves alone."""
    findings = [finding for finding in tree.assembly_findings if finding.level == 2]
    walker = _Walker(tree, effective, cancel_token)
    for instance in walker.loops():
        findings.extend(f for f in check_loop_instance(instance, effective) if f.level == 2)
    for segment, node in walker.segments():
        findings.extend(_check_element_usage(segment, node, effective, overridden=False))
    findings.extend(_check_hierarchy(tree, effective, walker))
    return findings


# --- Levels 3, 4 and 6: declarative rules ---
def check_semantics(tree: DocumentTree, effective: EffectiveSchema,
                    cancel_token: Optional[CancellationToken] = None) -> List[Finding]:
    return _rule_stage(3, tree, effective, cancel_token)


def check_business_rules(tree: DocumentTree, effective: EffectiveSchema,
                         cancel_token: Optional[CancellationToken] = None) -> List[Finding]:
    """Level 4: guide identity (ST01, ST03, GS08) and transaction-specific rules."""
    findings: List[Finding] = []
    st = _first(tree, 'ST')
    if st is not None and st.get_element(1) != effective.transaction_type:
        findings.append(_finding(4, "TRANSACTION_TYPE_MISMATCH", st,
                                 f"ST01 '{st.get_element(1)}' does not match transaction type '{effective.transaction_type}'.", "ST01"))
    reference = effective.implementation_reference
    if reference:
        for segment, element_ref, position in ((st, 'ST03', 3), (_first(tree, 'GS'), 'GS08', 8)):
            value = segment.get_element(position) if segment is not None else None
            if value and value != reference:
                findings.append(_finding(4, "IMPLEMENTATION_REFERENCE_MISMATCH", segment,
                                         f"{element_ref} '{value}' does not match implementation guide '{reference}'.", element_ref))
    findings.extend(_rule_stage(4, tree, effective, cancel_token))
    return findings


def check_situational(tree: DocumentTree, effective: EffectiveSchema,
                      cancel_token: Optional[CancellationToken] = None) -> List[Finding]:
    return _rule_stage(6, tree, effective, cancel_token)


# --- Level 5: code sets ---
def _check_code(segment: Segment, node: SchemaNode, value: str) -> List[Finding]:
    if not value or not node.codes or value in node.code_values:
        return []
    allowed = ', '.join(sorted(node.code_values))
    return [_finding(5, "INVALID_CODE", segment, f"Element '{node.id}': Invalid code value '{value}'. Allowed: {allowed}.", node.id)]


def check_code_sets(tree: DocumentTree, effective: EffectiveSchema,
                    cancel_token: Optional[CancellationToken] = None) -> List[Finding]:
    """Level 5: element values against their code lists, plus code-format rules."""
    findings: List[Finding] = []
    walker = _Walker(tree, effective, cancel_token)
    evaluator = RuleEvaluator(effective)
    for segment, node in walker.segments():
        for element_node in node.children:
            element = segment.element(element_node.seq)
            if element is None or element.is_empty or effective.usage(element_node.id) is Usage.REMOVED:
                continue
            for instance in element.repeats:
                if element_node.is_composite:
                    for sub in element_node.children:
                        if sub.seq <= len(instance) and effective.usage(sub.id) is not Usage.REMOVED:
                            findings.extend(_check_code(segment, sub, instance[sub.seq - 1]))
                else:
                    findings.extend(_check_code(segment, element_node, instance[0]))
        findings.extend(evaluator.evaluate(segment, node, walker.loop_for(segment), level=5))
    return findings


# --- Level 7: implementation overlay ---
def check_implementation(tree: DocumentTree, effective: EffectiveSchema,
                         cancel_token: Optional[CancellationToken] = None) -> List[Finding]:
    """Level 7: usages changed by the overlay. Required-but-missing is an error, removed-but-present a warning."""
    findings: List[Finding] = []
    walker = _Walker(tree, effective, cancel_token)
    for instance in walker.loops():
        findings.extend(f for f in check_loop_instance(instance, effective) if f.level == 7)
    evaluator = RuleEvaluator(effective)
    for segment, node in walker.segments():
        findings.extend(_check_element_usage(segment, node, effective, overridden=True))
        findings.extend(evaluator.evaluate(segment, node, walker.loop_for(segment), level=7))
    return findings


STAGES: Tuple[Tuple[int, Stage], ...] = (
    (1, check_syntax),
    (2, check_structure),
    (3, check_semantics),
    (4, check_business_rules),
    (5, check_code_sets),
    (6, check_situational),
    (7, check_implementation),
)


class ValidationPipeline:
    """Runs the stages sequentially or on a thread pool; output is identical either way."""

    def __init__(self, stages: Sequence[Tuple[int, Stage]] = STAGES, parallel: bool = False, max_workers: int = 7):
        self.stages = tuple(sorted(stages, key=lambda item: item[0]))
        self.parallel = parallel
        self.max_workers = max_workers

    def run(self, tree: DocumentTree, effective: EffectiveSchema,
            cancel_token: Optional[CancellationToken] = None) -> List[Finding]:
        logger.info(f"Starting EDI validation of {tree.transaction_type}/{tree.implementation_version} "
                    f"({len(self.stages)} stages, parallel={self.parallel})")
        if self.parallel:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [
                    executor.submit(self._run_stage, level, stage, tree, effective, cancel_token)
                    for level, stage in self.stages
                ]
                results = [future.result() for future in futures]
        else:
            results = [self._run_stage(level, stage, tree, effective, cancel_token) for level, stage in self.stages]

        findings = [finding for stage_findings in results for finding in stage_findings]
        errors = sum(1 for finding in findings if finding.severity == Severity.ERROR)
        logger.info(f"Validation complete: {len(findings)} findings, {errors} errors.")
        return findings

    @staticmethod
    def _run_stage(level: int, stage: Stage, tree: DocumentTree, effective: EffectiveSchema,
                   cancel_token: Optional[CancellationToken]) -> List[Finding]:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            findings = stage(tree, effective, cancel_token)
        except ValidationCancelled:
            raise
        except Exception as e:
            logger.error(f"Validation stage {level} failed unexpectedly: {e}", exc_info=True)
            return [Finding(
                level=level,
                severity=Severity.ERROR,
                code="STAGE_FAILURE",
                segment_ref="",
                message=f"Level {level} validation could not complete: {e}",
            )]
        logger.debug(f"Level {level} produced {len(findings)} findings.")
        return findings


def validate(
    tree: DocumentTree,
    effective: EffectiveSchema,
    cancel_token: Optional[CancellationToken] = None,
    parallel: bool = False,
    max_workers: int = 7,
) -> List[Finding]:
    """Validates a tree at all seven levels. Document problems are returned, never raised."""
    return ValidationPipeline(parallel=parallel, max_workers=max_workers).run(tree, effective, cancel_token)
