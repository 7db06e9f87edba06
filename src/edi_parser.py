import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from cdm import (
    Delimiters,
    DocumentTree,
    EnvelopeInfo,
    Finding,
    HierarchicalNode,
    LoopInstance,
    Segment,
    Severity,
)
from edi_config import CancellationToken, EngineConfig
from edi_delimiters import detect_delimiters
from edi_errors import CyclicHierarchy, OrphanHierarchicalLevel, UnrecoverableStructure
from edi_tokenizer import SegmentTokenizer
from schema_manager import SchemaRegistry
from schema_model import NodeKind, SchemaNode, Usage
from schema_overlay import EffectiveSchema, SchemaOverlay, apply_overlay

logger = logging.getLogger(__name__)

UNEXPECTED_SEGMENT = "UNEXPECTED_SEGMENT"
MISSING_REQUIRED = "MISSING_REQUIRED"
NOT_USED_PRESENT = "NOT_USED_PRESENT"
REMOVED_PRESENT = "REMOVED_PRESENT"
MAX_USE_EXCEEDED = "MAX_USE_EXCEEDED"
DUPLICATE_LEVEL_ID = "DUPLICATE_LEVEL_ID"
MULTIPLE_ROOT_LEVELS = "MULTIPLE_ROOT_LEVELS"


def detect_transaction_key(raw: Union[str, bytes], encoding: str = 'latin-1') -> Optional[Tuple[str, str]]:
    """Reads (ST01, ST03 or GS08) so a host can pick a schema before parsing."""
    delimiters = detect_delimiters(raw, encoding)
    guide_version = None
    for segment in SegmentTokenizer(raw, delimiters, encoding=encoding):
        if segment.tag == 'GS':
            guide_version = segment.get_element(8) or None
        elif segment.tag == 'ST':
            version = segment.get_element(3) or guide_version
            transaction_type = segment.get_element(1)
            if transaction_type and version:
                return transaction_type, version
            return None
    return None


def check_loop_instance(instance: LoopInstance, effective: EffectiveSchema) -> List[Finding]:
    """
    Occurrence checks for one loop instance: required children present, not-used and removed
    children absent, repeat counts within max use. Overlay-driven outcomes are level 7.
    """
    findings: List[Finding] = []
    loop = effective.node(instance.schema_id)

    for child in loop.children:
        if effective.is_inherited_removal(child.id):
            continue
        count = instance.child_counts.get(child.id, 0)
        usage = effective.usage(child.id)
        overridden = effective.override_for(child.id) is not None

        if usage is Usage.MANDATORY and count == 0:
            error_msg = f"Required segment or loop '{child.id}' ({child.name}) is missing from loop '{loop.id}'."
            findings.append(Finding(
                level=7 if overridden else 2,
                severity=Severity.ERROR,
                code=MISSING_REQUIRED,
                segment_ref=child.id,
                message=error_msg,
                segment_position=instance.start_position,
            ))
        elif usage is Usage.REMOVED and count > 0:
            findings.append(Finding(
                level=7,
                severity=Severity.WARNING,
                code=REMOVED_PRESENT,
                segment_ref=child.id,
                message=f"'{child.id}' ({child.name}) is removed for this implementation but occurs {count} time(s) in loop '{loop.id}'.",
                segment_position=instance.start_position,
            ))
        elif usage is Usage.NOT_USED and count > 0 and not overridden:
            findings.append(Finding(
                level=2,
                severity=Severity.ERROR,
                code=NOT_USED_PRESENT,
                segment_ref=child.id,
                message=f"'{child.id}' ({child.name}) is Not Used and should not appear in loop '{loop.id}'.",
                segment_position=instance.start_position,
            ))

        if child.max_use is not None and count > child.max_use:
            findings.append(Finding(
                level=2,
                severity=Severity.ERROR,
                code=MAX_USE_EXCEEDED,
                segment_ref=child.id,
                message=f"'{child.id}' ({child.name}) occurs {count} times in loop '{loop.id}'; maximum is {child.max_use}.",
                segment_position=instance.start_position,
            ))
    return findings


class _LevelBuilder:
    """Mutable HL node used while assembling; frozen into a HierarchicalNode at the end."""

    def __init__(self, level_id: str, parent_id: Optional[str], level_code: str, child_code: Optional[str], loop_id: str):
        self.level_id = level_id
        self.parent_id = parent_id
        self.level_code = level_code
        self.child_code = child_code
        self.loop_id = loop_id
        self.segments: List[Segment] = []
        self.children: List['_LevelBuilder'] = []

    def descendants(self) -> Iterable['_LevelBuilder']:
        for child in self.children:
            yield child
            yield from child.descendants()

    def freeze(self) -> HierarchicalNode:
        return HierarchicalNode(
            level_id=self.level_id,
            parent_level_id=self.parent_id,
            level_code=self.level_code,
            child_code=self.child_code,
            loop_id=self.loop_id,
            segments=tuple(self.segments),
            children=tuple(child.freeze() for child in self.children),
        )


class _Frame:
    """One open loop instance on the assembler's stack."""

    def __init__(self, node: SchemaNode, start_position: Optional[int], level: Optional[_LevelBuilder] = None):
        self.node = node
        self.start_position = start_position
        self.level = level
        self.pointer = 0
        self.counts = [0] * len(node.children)
        self.positions: List[int] = []


class StructuralAssembler:
    """
    Walks the segment list against the effective schema and builds a DocumentTree.

    The walk is a finite-state traversal of the schema tree: each open loop keeps a pointer to
    the last child it matched, and a segment may only match that child or a later one. Segments
    the schema does not expect are skipped with a level-1 finding as long as a recognisable
    segment follows within the lookahead window.
    """

    def __init__(
        self,
        effective: EffectiveSchema,
        config: Optional[EngineConfig] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.effective = effective
        self.config = config or EngineConfig()
        self.cancel_token = cancel_token

    # --- matching ---
    def _segment_matches(self, node: SchemaNode, segment: Segment) -> bool:
        if node.tag != segment.tag:
            return False
        for element in node.children:
            if element.is_identifier and element.codes and segment.get_element(element.seq) not in element.code_values:
                return False
        return True

    def _child_matches(self, node: SchemaNode, segment: Segment) -> bool:
        if node.kind is NodeKind.LOOP:
            if not self._segment_matches(node.start_segment, segment):
                return False
            return node.hl_code is None or segment.get_element(3) == node.hl_code
        return self._segment_matches(node, segment)

    def _find_best_schema_match(self, frame: _Frame, segment: Segment, relaxed: bool) -> Optional[int]:
        """
        Index of the first child at or after the frame's pointer that accepts the segment.
        A strict search honours max use; a relaxed one ignores it, but never re-enters a loop's start segment.
        """
        children = frame.node.children
        for i in range(frame.pointer, len(children)):
            child = children[i]
            if relaxed and i == 0 and frame.node.kind is NodeKind.LOOP:
                continue
            if not relaxed and child.max_use is not None and frame.counts[i] >= child.max_use:
                continue
            if self._child_matches(child, segment):
                return i
        return None

    def _locate(self, segment: Segment) -> Optional[Tuple[int, int]]:
        """(stack depth, child index) for the segment, innermost frame first, strict before relaxed."""
        for relaxed in (False, True):
            for depth in range(len(self._stack) - 1, -1, -1):
                index = self._find_best_schema_match(self._stack[depth], segment, relaxed)
                if index is not None:
                    return depth, index
        return None

    # --- assembly ---
    def assemble(self, segments: Iterable[Segment], delimiters: Delimiters) -> DocumentTree:
        segment_list: List[Segment] = list(segments)
        self._stack: List[_Frame] = [_Frame(self.effective.root, start_position=None)]
        self._levels: Dict[str, _LevelBuilder] = {}
        self._root: Optional[_LevelBuilder] = None
        self._detached: List[_LevelBuilder] = []
        self._header: List[Segment] = []
        self._trailer: List[Segment] = []
        self._bindings: Dict[int, str] = {}
        self._loops: List[LoopInstance] = []
        self._findings: List[Finding] = []
        self._occurrence_findings: List[Finding] = []

        logger.info(f"=== ASSEMBLING {len(segment_list)} SEGMENTS AGAINST {self.effective.transaction_type}/{self.effective.version} ===")

        index = 0
        while index < len(segment_list):
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()
            segment = segment_list[index]
            location = self._locate(segment)
            if location is None:
                resume = self._recover(segment_list, index)
                if resume is None:
                    break
                index = resume
                continue

            depth, child_index = location
            self._close_to(depth)
            self._consume(self._stack[-1], child_index, segment)
            index += 1

        self._close_to(-1)

        tree = DocumentTree(
            transaction_type=self.effective.transaction_type,
            implementation_version=self.effective.version,
            delimiters=delimiters,
            envelope=EnvelopeInfo.from_segments(tuple(segment_list)),
            segments=tuple(segment_list),
            root=self._root.freeze() if self._root else None,
            detached=tuple(builder.freeze() for builder in self._detached),
            header=tuple(self._header),
            trailer=tuple(self._trailer),
            bindings=self._bindings,
            loops=tuple(self._loops),
            assembly_findings=tuple(self._findings),
            occurrence_findings=tuple(self._occurrence_findings),
        )
        findings = tree.findings
        if findings:
            logger.warning(f"Assembly finished with {len(findings)} structural findings.")
        else:
            logger.info("Assembly finished with no structural findings.")
        return tree

    def _consume(self, frame: _Frame, index: int, segment: Segment):
        child = frame.node.children[index]
        frame.pointer = index
        frame.counts[index] += 1

        if child.kind is NodeKind.LOOP:
            logger.debug(f"  -> Entering loop '{child.id}' at segment {segment.position} ({segment.ref})")
            new_frame = _Frame(child, start_position=segment.position)
            self._stack.append(new_frame)
            if child.hl_code is not None:
                new_frame.level = self._open_level(child, segment)
            self._consume(new_frame, 0, segment)
            return

        logger.debug(f"  -> [MATCH] Segment {segment.position} '{segment.ref}' bound to '{child.id}'")
        self._bindings[segment.position] = child.id
        frame.positions.append(segment.position)
        self._assign(segment)

    def _assign(self, segment: Segment):
        for frame in reversed(self._stack):
            if frame.level is not None:
                frame.level.segments.append(segment)
                return
        if self._root is None:
            self._header.append(segment)
        else:
            self._trailer.append(segment)

    def _nearest_level_id(self) -> Optional[str]:
        for frame in reversed(self._stack):
            if frame.level is not None:
                return frame.level.level_id
        return None

    def _close_to(self, depth: int):
        """Closes every frame deeper than `depth`."""
        while len(self._stack) - 1 > depth:
            level_id = self._nearest_level_id()
            frame = self._stack.pop()
            instance = LoopInstance(
                schema_id=frame.node.id,
                level_id=level_id,
                start_position=frame.start_position,
                segment_positions=tuple(frame.positions),
                child_counts={child.id: count for child, count in zip(frame.node.children, frame.counts)},
            )
            self._loops.append(instance)
            findings = check_loop_instance(instance, self.effective)
            for finding in findings:
                logger.warning(f"[STRUCTURAL ERROR] {finding.message}")
            self._occurrence_findings.extend(findings)
            logger.debug(f"  -> Closed loop '{frame.node.id}' ({len(frame.positions)} direct segments)")

    # --- hierarchical levels ---
    def _open_level(self, loop: SchemaNode, segment: Segment) -> _LevelBuilder:
        own_id = segment.get_element(1) or f"@{segment.position}"
        parent_id = segment.get_element(2) or None
        level_code = segment.get_element(3) or ""
        child_code = segment.get_element(4) or None
        builder = _LevelBuilder(own_id, parent_id, level_code, child_code, loop.id)

        if parent_id is not None and parent_id == own_id:
            raise CyclicHierarchy(own_id, parent_id, offset=segment.offset, position=segment.position)

        existing = self._levels.get(own_id)
        if existing is not None:
            if parent_id is not None and (
                parent_id == existing.level_id
                or any(node.level_id == parent_id for node in existing.descendants())
            ):
                raise CyclicHierarchy(own_id, parent_id, offset=segment.offset, position=segment.position)
            self._record(2, Severity.ERROR, DUPLICATE_LEVEL_ID, segment,
                         f"Hierarchical ID '{own_id}' is already used by an earlier HL segment.")
        else:
            self._levels[own_id] = builder

        if parent_id is None:
            if self._root is None:
                self._root = builder
            else:
                self._record(2, Severity.ERROR, MULTIPLE_ROOT_LEVELS, segment,
                             f"HL '{own_id}' has no parent but the document already has root level '{self._root.level_id}'.")
                self._detached.append(builder)
        else:
            parent = self._levels.get(parent_id)
            if parent is None:
                raise OrphanHierarchicalLevel(own_id, parent_id, offset=segment.offset, position=segment.position)
            parent.children.append(builder)

        logger.debug(f"  -> HL {own_id} (parent {parent_id}, code {level_code}) opened for loop '{loop.id}'")
        return builder

    # --- recovery ---
    def _accepts(self, segment: Segment) -> bool:
        return self._locate(segment) is not None

    def _recover(self, segments: Sequence[Segment], index: int) -> Optional[int]:
        """
        Skips forward from an unexpected segment to the next one an open loop accepts.
        Returns the index to resume at, or None when the rest of the document was skipped.
        """
        bound = index + 1 + self.config.recovery_lookahead
        for probe in range(index + 1, min(bound, len(segments))):
            if self._accepts(segments[probe]):
                self._skip(segments[index:probe])
                return probe

        if bound >= len(segments):
            self._skip(segments[index:])
            return None

        segment = segments[index]
        raise UnrecoverableStructure(
            f"No recognisable segment within {self.config.recovery_lookahead} segments after "
            f"unexpected segment '{segment.ref}' at position {segment.position}.",
            offset=segment.offset,
            position=segment.position,
        )

    def _skip(self, skipped: Sequence[Segment]):
        for segment in skipped:
            self._record(1, Severity.ERROR, UNEXPECTED_SEGMENT, segment,
                         f"Segment '{segment.tag}' at position {segment.position} is not expected here and was skipped.")

    def _record(self, level: int, severity: Severity, code: str, segment: Segment, message: str):
        logger.warning(f"[STRUCTURAL ERROR] {message}")
        self._findings.append(Finding(
            level=level,
            severity=severity,
            code=code,
            segment_ref=segment.ref,
            message=message,
            segment_position=segment.position,
        ))


def parse(
    raw: Union[str, bytes],
    transaction_type: str,
    implementation_version: str,
    *,
    overlay: Optional[SchemaOverlay] = None,
    registry: Optional[SchemaRegistry] = None,
    config: Optional[EngineConfig] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> DocumentTree:
    """
    Parses a raw X12 document into a DocumentTree.

    Raises:
        ParseError: MalformedEnvelope, TokenizationError, UnknownSchema, UnrecoverableStructure,
            OrphanHierarchicalLevel or CyclicHierarchy.
    """
    config = config or EngineConfig()
    registry = registry or SchemaRegistry(config.schema_base_path)
    base = registry.get(transaction_type, implementation_version)
    effective = apply_overlay(base, overlay)

    text = raw.decode(config.encoding) if isinstance(raw, bytes) else raw
    delimiters = detect_delimiters(text)
    tokenizer = SegmentTokenizer(text, delimiters, config.max_element_length)
    return StructuralAssembler(effective, config, cancel_token).assemble(tokenizer, delimiters)
