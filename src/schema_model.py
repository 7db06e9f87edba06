"""
In-memory, immutable view of an implementation guide.

A SchemaModel is materialised once from an ImplementationGuideSchema: structure segments are
resolved against their base segment definitions and contextual overrides, and every loop,
segment, element and sub-element becomes a frozen SchemaNode with a stable, unique id
(for example ``NM109_2010A`` or ``HI01-02_2000E``). Nothing is mutated after construction,
so one model can be shared by any number of concurrent validations.
"""
import copy
import logging
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from edi_errors import SchemaDefinitionError
from edi_schema_models import (
    BaseElement,
    CodeDefinition,
    ImplementationGuideSchema,
    SegmentDefinition,
    StructureLoop,
    StructureSegment,
    SyntaxRule,
)

logger = logging.getLogger(__name__)

ENVELOPE_ID = "ENVELOPE"
HL_TAG = "HL"
UNBOUNDED = ">1"


class Usage(str, Enum):
    MANDATORY = "mandatory"
    OPTIONAL = "optional"
    NOT_USED = "notUsed"
    REMOVED = "removed"


class NodeKind(str, Enum):
    ENVELOPE = "envelope"
    LOOP = "loop"
    SEGMENT = "segment"
    ELEMENT = "element"


USAGE_BY_CODE = {'R': Usage.MANDATORY, 'S': Usage.OPTIONAL, 'N': Usage.NOT_USED}
CODE_BY_USAGE = {usage: code for code, usage in USAGE_BY_CODE.items()}


class SchemaNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    xid: str
    name: str
    kind: NodeKind
    usage: Usage
    min_use: int = 0
    max_use: Optional[int] = 1
    description: Optional[str] = None
    # segments
    tag: Optional[str] = None
    rules: Tuple[SyntaxRule, ...] = ()
    # loops
    hl_code: Optional[str] = None
    # elements and sub-elements
    seq: Optional[int] = None
    data_ele: Optional[str] = None
    data_type: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    repeat: int = 1
    format: Optional[str] = None
    codes: Tuple[CodeDefinition, ...] = ()
    is_identifier: bool = False
    children: Tuple['SchemaNode', ...] = ()

    @property
    def code_values(self) -> FrozenSet[str]:
        return frozenset(code.code for code in self.codes)

    @property
    def is_composite(self) -> bool:
        return self.data_type == 'Composite'

    @property
    def start_segment(self) -> Optional['SchemaNode']:
        """The segment that opens a loop."""
        if self.kind is NodeKind.LOOP and self.children:
            return self.children[0]
        return None

    def element(self, seq: int) -> Optional['SchemaNode']:
        return next((child for child in self.children if child.seq == seq), None)

    def element_by_xid(self, xid: str) -> Optional['SchemaNode']:
        for child in self.children:
            if child.xid == xid:
                return child
            for sub in child.children:
                if sub.xid == xid:
                    return sub
        return None


SchemaNode.model_rebuild()


def _get_effective_definition(base_def: Dict[str, Any], context_def: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Applies a contextual definition's element overrides and extra rules to a base segment definition."""
    if not context_def:
        return base_def

    effective = copy.deepcopy(base_def)
    if context_def.get("rules"):
        effective["rules"] = list(effective.get("rules", [])) + list(context_def["rules"])

    context_elements = copy.deepcopy(context_def.get("elements", {}))
    if not context_elements:
        return effective

    known = {el.get("xid") for el in effective.get("elements", [])}
    unknown = set(context_elements) - known
    if unknown:
        raise SchemaDefinitionError(
            f"Contextual definition '{context_def.get('id')}' overrides unknown elements: {sorted(unknown)}"
        )

    for i, base_el in enumerate(effective.get("elements", [])):
        el_xid = base_el.get("xid")
        if el_xid in context_elements:
            overrides = context_elements[el_xid]

            if 'sub_elements' in overrides and 'sub_elements' in base_el:
                base_sub_elements = base_el['sub_elements']
                override_sub_elements = overrides['sub_elements']

                if isinstance(base_sub_elements, list) and isinstance(override_sub_elements, dict):
                    for j, base_sub_el in enumerate(base_sub_elements):
                        sub_el_xid = base_sub_el.get("xid")
                        if sub_el_xid in override_sub_elements:
                            base_sub_elements[j].update(override_sub_elements[sub_el_xid])

                del overrides['sub_elements']

            for key, value in overrides.items():
                if value is not None:
                    effective["elements"][i][key] = value
    return effective


def _parse_repeat(repeat: Any) -> Optional[int]:
    if isinstance(repeat, int):
        return repeat
    if isinstance(repeat, str) and repeat.strip().isdigit():
        return int(repeat.strip())
    return None


class _SchemaBuilder:
    def __init__(self, definition: ImplementationGuideSchema):
        self.definition = definition
        self._ids: set = set()

    def build(self) -> SchemaNode:
        self._claim(ENVELOPE_ID)
        children = tuple(self._build_loop(loop) for loop in self.definition.structure)
        self._check_hl_codes(children, ENVELOPE_ID)
        return SchemaNode(
            id=ENVELOPE_ID,
            xid=ENVELOPE_ID,
            name=self.definition.description,
            kind=NodeKind.ENVELOPE,
            usage=Usage.MANDATORY,
            min_use=1,
            max_use=1,
            children=children,
        )

    def _claim(self, node_id: str):
        if node_id in self._ids:
            raise SchemaDefinitionError(f"Duplicate schema node id '{node_id}'.")
        self._ids.add(node_id)

    def _check_hl_codes(self, children: Tuple[SchemaNode, ...], parent_id: str):
        codes = [child.hl_code for child in children if child.hl_code is not None]
        if len(codes) != len(set(codes)):
            raise SchemaDefinitionError(f"Sibling loops under '{parent_id}' share a hierarchical level code: {codes}")

    def _build_loop(self, loop: StructureLoop) -> SchemaNode:
        self._claim(loop.xid)
        if not loop.children:
            raise SchemaDefinitionError(f"Loop '{loop.xid}' has no children.")

        children = tuple(
            self._build_loop(child) if isinstance(child, StructureLoop) else self._build_segment(child, loop)
            for child in loop.children
        )
        if children[0].kind is not NodeKind.SEGMENT:
            raise SchemaDefinitionError(f"Loop '{loop.xid}' must begin with a segment.")
        if loop.hlCode is not None and children[0].tag != HL_TAG:
            raise SchemaDefinitionError(f"Hierarchical loop '{loop.xid}' must begin with an HL segment.")
        self._check_hl_codes(children, loop.xid)

        usage = USAGE_BY_CODE[loop.usage]
        return SchemaNode(
            id=loop.xid,
            xid=loop.xid,
            name=loop.name,
            kind=NodeKind.LOOP,
            usage=usage,
            min_use=1 if usage is Usage.MANDATORY else 0,
            max_use=_parse_repeat(loop.repeat),
            hl_code=loop.hlCode,
            children=children,
        )

    def _build_segment(self, segment: StructureSegment, loop: StructureLoop) -> SchemaNode:
        base_id = segment.get_segment_definition_id()
        base = self.definition.segmentDefinitions.get(base_id)
        if base is None:
            raise SchemaDefinitionError(f"Segment '{segment.xid}' in loop '{loop.xid}' references unknown definition '{base_id}'.")

        context = None
        if segment.contextDefinitionId:
            context = self.definition.contextualDefinitions.get(segment.contextDefinitionId)
            if context is None:
                raise SchemaDefinitionError(f"Unknown contextual definition '{segment.contextDefinitionId}'.")

        effective = _get_effective_definition(
            base.model_dump(exclude_none=True),
            context.model_dump(exclude_none=True) if context else None,
        )

        node_id = segment.id or f"{segment.xid}_{loop.xid}"
        if not node_id.startswith(segment.xid):
            raise SchemaDefinitionError(f"Segment id '{node_id}' must start with its tag '{segment.xid}'.")
        self._claim(node_id)
        suffix = node_id[len(segment.xid):]

        elements = [BaseElement.model_validate(el) for el in effective.get("elements", [])]
        element_nodes = tuple(self._build_element(el, suffix) for el in sorted(elements, key=lambda el: el.seq))
        rules = tuple(SyntaxRule.model_validate(rule) for rule in effective.get("rules", []))

        usage = USAGE_BY_CODE[segment.usage]
        return SchemaNode(
            id=node_id,
            xid=segment.xid,
            name=segment.name or (context.name if context else base.name),
            description=base.description,
            kind=NodeKind.SEGMENT,
            usage=usage,
            min_use=1 if usage is Usage.MANDATORY else 0,
            max_use=_parse_repeat(segment.max_use),
            tag=segment.xid,
            rules=rules,
            children=element_nodes,
        )

    def _build_element(self, element: BaseElement, suffix: str) -> SchemaNode:
        node_id = f"{element.xid}{suffix}"
        self._claim(node_id)
        sub_nodes = tuple(
            self._build_element(sub, suffix) for sub in sorted(element.sub_elements or [], key=lambda sub: sub.seq)
        )
        usage = USAGE_BY_CODE[element.usage]
        return SchemaNode(
            id=node_id,
            xid=element.xid,
            name=element.name,
            description=element.description,
            kind=NodeKind.ELEMENT,
            usage=usage,
            min_use=1 if usage is Usage.MANDATORY else 0,
            max_use=element.repeat,
            seq=element.seq,
            data_ele=element.data_ele,
            data_type=element.dataType,
            min_length=element.minLength,
            max_length=element.maxLength,
            repeat=element.repeat,
            format=element.format,
            codes=tuple(element.valid_codes or ()),
            is_identifier=element.is_identifier,
            children=sub_nodes,
        )


class SchemaModel:
    """Read-only implementation guide: lookup by node id and traversal from the envelope down."""

    def __init__(
        self,
        transaction_type: str,
        version: str,
        root: SchemaNode,
        implementation_reference: Optional[str] = None,
    ):
        self._transaction_type = transaction_type
        self._version = version
        self._root = root
        self._implementation_reference = implementation_reference
        index: Dict[str, SchemaNode] = {}
        parents: Dict[str, Optional[str]] = {}
        self._index_nodes(root, None, index, parents)
        self._nodes: Mapping[str, SchemaNode] = MappingProxyType(index)
        self._parents: Mapping[str, Optional[str]] = MappingProxyType(parents)

    @classmethod
    def from_definition(cls, definition: ImplementationGuideSchema) -> 'SchemaModel':
        root = _SchemaBuilder(definition).build()
        model = cls(definition.transactionName, definition.version, root, definition.implementationReference)
        logger.info(f"Built schema model {definition.transactionName}/{definition.version} with {len(model)} nodes.")
        return model

    @staticmethod
    def _index_nodes(node: SchemaNode, parent_id: Optional[str], index: Dict[str, SchemaNode], parents: Dict[str, Optional[str]]):
        index[node.id] = node
        parents[node.id] = parent_id
        for child in node.children:
            SchemaModel._index_nodes(child, node.id, index, parents)

    # --- identity ---
    @property
    def transaction_type(self) -> str:
        return self._transaction_type

    @property
    def version(self) -> str:
        return self._version

    @property
    def key(self) -> Tuple[str, str]:
        return (self._transaction_type, self._version)

    @property
    def implementation_reference(self) -> Optional[str]:
        return self._implementation_reference

    @property
    def root(self) -> SchemaNode:
        return self._root

    @property
    def nodes(self) -> Mapping[str, SchemaNode]:
        return self._nodes

    # --- lookup ---
    def get(self, node_id: str) -> SchemaNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Unknown schema node '{node_id}'") from None

    def find(self, node_id: str) -> Optional[SchemaNode]:
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def parent_of(self, node_id: str) -> Optional[SchemaNode]:
        parent_id = self._parents.get(node_id)
        return self._nodes[parent_id] if parent_id is not None else None

    def ancestors(self, node_id: str) -> List[SchemaNode]:
        """Ancestors of a node, nearest first."""
        result = []
        parent = self.parent_of(node_id)
        while parent is not None:
            result.append(parent)
            parent = self.parent_of(parent.id)
        return result

    def walk(self) -> Iterator[SchemaNode]:
        """Preorder traversal from the envelope root."""
        stack = [self._root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def usages(self) -> Dict[str, Usage]:
        return {node.id: node.usage for node in self.walk()}

    # --- hierarchical levels ---
    def hl_loops(self) -> List[SchemaNode]:
        return [node for node in self.walk() if node.hl_code is not None]

    def hl_loop(self, level_code: str) -> Optional[SchemaNode]:
        return next((node for node in self.walk() if node.hl_code == level_code), None)

    @property
    def top_level_loop(self) -> Optional[SchemaNode]:
        return next(iter(self.hl_loops()), None)

    def nearest_hl_ancestor(self, node_id: str) -> Optional[SchemaNode]:
        return next((node for node in self.ancestors(node_id) if node.hl_code is not None), None)

    # --- serialization ---
    def to_definition(self) -> ImplementationGuideSchema:
        """Emits a self-contained definition (no contextual indirection) that rebuilds an equal model."""
        segment_definitions: Dict[str, SegmentDefinition] = {}

        def element_definition(node: SchemaNode) -> BaseElement:
            return BaseElement(
                xid=node.xid,
                data_ele=node.data_ele,
                name=node.name,
                usage=CODE_BY_USAGE[node.usage],
                seq=node.seq,
                dataType=node.data_type,
                description=node.description,
                minLength=node.min_length,
                maxLength=node.max_length,
                repeat=node.repeat,
                format=node.format,
                valid_codes=list(node.codes) or None,
                sub_elements=[element_definition(sub) for sub in node.children] or None,
                is_identifier=node.is_identifier,
            )

        def structure_child(node: SchemaNode) -> Dict[str, Any]:
            max_use = node.max_use if node.max_use is not None else UNBOUNDED
            if node.kind is NodeKind.LOOP:
                return {
                    "type": "loop",
                    "xid": node.id,
                    "name": node.name,
                    "usage": CODE_BY_USAGE[node.usage],
                    "repeat": max_use,
                    "hlCode": node.hl_code,
                    "children": [structure_child(child) for child in node.children],
                }
            segment_definitions[node.id] = SegmentDefinition(
                id=node.id,
                name=node.name,
                description=node.description,
                usage=CODE_BY_USAGE[node.usage],
                elements=[element_definition(element) for element in node.children],
                rules=list(node.rules) or None,
            )
            return {
                "type": "segment",
                "xid": node.tag,
                "id": node.id,
                "name": node.name,
                "usage": CODE_BY_USAGE[node.usage],
                "max_use": max_use,
                "segmentDefinitionId": node.id,
            }

        structure = [structure_child(loop) for loop in self._root.children]
        return ImplementationGuideSchema.model_validate({
            "transactionName": self._transaction_type,
            "version": self._version,
            "description": self._root.name,
            "implementationReference": self._implementation_reference,
            "segmentDefinitions": segment_definitions,
            "structure": structure,
        })

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SchemaModel):
            return NotImplemented
        return (
            self.key == other.key
            and self._implementation_reference == other._implementation_reference
            and self._root == other._root
        )

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return f"SchemaModel({self._transaction_type!r}, {self._version!r}, nodes={len(self._nodes)})"
