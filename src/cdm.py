from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Canonical Data Model (CDM) for representing a parsed EDI transaction.
# Every model here is frozen: a parse produces a new tree, nothing is edited in place.


class Delimiters(BaseModel):
    """The four structural delimiters discovered from the ISA segment."""
    model_config = ConfigDict(frozen=True)

    element: str
    component: str
    repetition: Optional[str] = None
    segment_terminator: str

    @field_validator('element', 'component', 'segment_terminator', 'repetition')
    @classmethod
    def _single_character(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) != 1:
            raise ValueError(f"Delimiter must be a single character, got {value!r}")
        return value


class Element(BaseModel):
    """
    A single data element within a segment.
    `repeats` holds one tuple of components per repetition; a scalar element is ((value,),).
    """
    model_config = ConfigDict(frozen=True)

    position: int
    repeats: Tuple[Tuple[str, ...], ...]

    @property
    def components(self) -> Tuple[str, ...]:
        return self.repeats[0] if self.repeats else ("",)

    @property
    def value(self) -> str:
        return self.components[0]

    @property
    def is_composite(self) -> bool:
        return any(len(instance) > 1 for instance in self.repeats)

    @property
    def is_repeated(self) -> bool:
        return len(self.repeats) > 1

    @property
    def is_empty(self) -> bool:
        return all(component == "" for instance in self.repeats for component in instance)

    def component(self, position: int) -> Optional[str]:
        """Retrieves a component of the first repetition by its position (1-based index)."""
        if 1 <= position <= len(self.components):
            return self.components[position - 1]
        return None

    def as_data(self) -> Any:
        """JSON-friendly form: a string, a list of components, or a list of repetitions."""
        def instance_data(instance: Tuple[str, ...]) -> Any:
            return instance[0] if len(instance) == 1 else list(instance)
        if len(self.repeats) == 1:
            return instance_data(self.repeats[0])
        return [instance_data(instance) for instance in self.repeats]


class Segment(BaseModel):
    """Represents a single EDI segment."""
    model_config = ConfigDict(frozen=True)

    tag: str
    position: int
    offset: int
    elements: Tuple[Element, ...] = ()

    def element(self, position: int) -> Optional[Element]:
        if 1 <= position <= len(self.elements):
            return self.elements[position - 1]
        return None

    def get_element(self, position: int) -> Optional[str]:
        """Retrieves the value of an element by its position (1-based index)."""
        element = self.element(position)
        return element.value if element is not None else None

    @property
    def ref(self) -> str:
        """Short human reference such as 'NM1*IL' or 'DTP*472'."""
        if self.tag in ('ISA', 'IEA', 'GS', 'GE', 'ST', 'SE'):
            return self.tag
        first = self.get_element(1)
        return f"{self.tag}*{first}" if first else self.tag

    def to_list(self) -> List[Any]:
        return [self.tag] + [element.as_data() for element in self.elements]


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class Finding(BaseModel):
    """One result of the validation pipeline (or of the structural assembler)."""
    model_config = ConfigDict(frozen=True)

    level: int = Field(ge=1, le=7)
    severity: Severity
    code: str
    segment_ref: str
    message: str
    segment_position: Optional[int] = None
    element_ref: Optional[str] = None
    suggestion: Optional[str] = None


class HierarchicalNode(BaseModel):
    """One HL level and the segments that belong to it. A parent exclusively owns its children."""
    model_config = ConfigDict(frozen=True)

    level_id: str
    parent_level_id: Optional[str] = None
    level_code: str
    child_code: Optional[str] = None
    loop_id: str
    segments: Tuple[Segment, ...] = ()
    children: Tuple['HierarchicalNode', ...] = ()

    def get_segment(self, tag: str) -> Optional[Segment]:
        return next((segment for segment in self.segments if segment.tag == tag), None)

    def get_segments(self, tag: str) -> List[Segment]:
        return [segment for segment in self.segments if segment.tag == tag]

    def get_children(self, level_code: str) -> List['HierarchicalNode']:
        return [child for child in self.children if child.level_code == level_code]

    def iter_nodes(self) -> Iterator['HierarchicalNode']:
        """Preorder traversal of this node and all of its descendants."""
        yield self
        for child in self.children:
            yield from child.iter_nodes()

    def to_export_dict(self) -> Dict[str, Any]:
        return {
            "levelId": self.level_id,
            "parentLevelId": self.parent_level_id,
            "levelCode": self.level_code,
            "childCode": self.child_code,
            "loopId": self.loop_id,
            "segments": [segment.to_list() for segment in self.segments],
            "children": [child.to_export_dict() for child in self.children],
        }


class LoopInstance(BaseModel):
    """One occurrence of a schema loop, as recorded by the structural assembler."""
    model_config = ConfigDict(frozen=True)

    schema_id: str
    level_id: Optional[str] = None
    start_position: Optional[int] = None
    segment_positions: Tuple[int, ...] = ()
    child_counts: Dict[str, int] = Field(default_factory=dict)


class EnvelopeInfo(BaseModel):
    """Control numbers and identifiers copied verbatim from the envelope segments."""
    model_config = ConfigDict(frozen=True)

    interchange_control_number: Optional[str] = None
    group_control_number: Optional[str] = None
    transaction_control_number: Optional[str] = None
    sender_id: Optional[str] = None
    receiver_id: Optional[str] = None
    transaction_set_id: Optional[str] = None
    implementation_reference: Optional[str] = None
    interchange_trailer_control_number: Optional[str] = None
    group_trailer_control_number: Optional[str] = None
    transaction_trailer_control_number: Optional[str] = None
    transaction_segment_count: Optional[str] = None
    group_transaction_count: Optional[str] = None
    interchange_group_count: Optional[str] = None

    @classmethod
    def from_segments(cls, segments: Tuple[Segment, ...]) -> 'EnvelopeInfo':
        first: Dict[str, Segment] = {}
        for segment in segments:
            first.setdefault(segment.tag, segment)

        def value(tag: str, position: int) -> Optional[str]:
            segment = first.get(tag)
            return segment.get_element(position) if segment else None

        return cls(
            interchange_control_number=value('ISA', 13),
            group_control_number=value('GS', 6),
            transaction_control_number=value('ST', 2),
            sender_id=value('ISA', 6),
            receiver_id=value('ISA', 8),
            transaction_set_id=value('ST', 1),
            implementation_reference=value('ST', 3) or value('GS', 8),
            interchange_trailer_control_number=value('IEA', 2),
            group_trailer_control_number=value('GE', 2),
            transaction_trailer_control_number=value('SE', 2),
            transaction_segment_count=value('SE', 1),
            group_transaction_count=value('GE', 1),
            interchange_group_count=value('IEA', 1),
        )


class DocumentTree(BaseModel):
    """
    The assembled document: envelope metadata, the HL tree, and the bookkeeping the
    validation pipeline needs (schema bindings and loop occurrences).
    """
    model_config = ConfigDict(frozen=True)

    transaction_type: str
    implementation_version: str
    delimiters: Delimiters
    envelope: EnvelopeInfo
    segments: Tuple[Segment, ...] = ()
    root: Optional[HierarchicalNode] = None
    detached: Tuple[HierarchicalNode, ...] = ()
    header: Tuple[Segment, ...] = ()
    trailer: Tuple[Segment, ...] = ()
    bindings: Dict[int, str] = Field(default_factory=dict)
    loops: Tuple[LoopInstance, ...] = ()
    assembly_findings: Tuple[Finding, ...] = ()
    occurrence_findings: Tuple[Finding, ...] = ()

    @property
    def findings(self) -> List[Finding]:
        """Everything the assembler recorded, in the order it was recorded per kind."""
        return list(self.assembly_findings) + list(self.occurrence_findings)

    def iter_nodes(self) -> Iterator[HierarchicalNode]:
        if self.root is not None:
            yield from self.root.iter_nodes()
        for node in self.detached:
            yield from node.iter_nodes()

    def find_node(self, level_id: str) -> Optional[HierarchicalNode]:
        return next((node for node in self.iter_nodes() if node.level_id == level_id), None)

    def segment_at(self, position: int) -> Optional[Segment]:
        if 1 <= position <= len(self.segments):
            return self.segments[position - 1]
        return None

    def schema_id_for(self, segment: Segment) -> Optional[str]:
        return self.bindings.get(segment.position)

    def to_export_dict(self) -> Dict[str, Any]:
        return {
            "transactionType": self.transaction_type,
            "implementationVersion": self.implementation_version,
            "envelope": self.envelope.model_dump(),
            "header": [segment.to_list() for segment in self.header],
            "hierarchy": self.root.to_export_dict() if self.root else None,
            "trailer": [segment.to_list() for segment in self.trailer],
        }


HierarchicalNode.model_rebuild()
