"""
Declarative implementation-guide definitions, as stored in src/schemas/<type>.<version>.json.

A guide has three parts: reusable segmentDefinitions, contextualDefinitions that narrow a
segment for one position in the structure (usage, code lists, extra rules), and the loop
structure itself. SchemaModel.from_definition turns a guide into immutable SchemaNodes.
"""
from pydantic import BaseModel, ConfigDict, Field, AliasChoices
from typing import List, Optional, Union, Dict, Any, Literal, Annotated, Tuple

UsageCode = Literal['R', 'S', 'N']


# --- Rule language ---
class ConditionClause(BaseModel):
    model_config = ConfigDict(frozen=True)

    element: str
    operator: Literal["IS", "IS_NOT", "IS_PRESENT", "IS_NOT_PRESENT", "IS_ONE_OF"]
    value: Optional[Any] = None


class Conditions(BaseModel):
    """No clauses means the rule always applies."""
    model_config = ConfigDict(frozen=True)

    ALL_OF: Optional[Tuple[ConditionClause, ...]] = Field(None, description="Every clause must hold.")
    ANY_OF: Optional[Tuple[ConditionClause, ...]] = Field(None, description="At least one clause must hold.")


class AssertionClause(BaseModel):
    model_config = ConfigDict(frozen=True)

    assertion: Literal[
        "MUST_BE_PRESENT",
        "MUST_NOT_BE_PRESENT",
        "ANY_OF_MUST_BE_PRESENT",
        "MUST_HAVE_LENGTH",
        "MUST_BE_FORMAT",
        "MUST_BE_ONE_OF",
        "SEGMENT_MUST_BE_PRESENT",
    ]
    element: Optional[str] = None
    elements: Optional[Tuple[str, ...]] = None
    segments: Optional[Tuple[str, ...]] = Field(None, description="Schema ids looked up in the enclosing loop occurrence.")
    value: Optional[Any] = None


class SyntaxRule(BaseModel):
    """A conditional check on one segment occurrence, reported at the SNIP level its author chose."""
    model_config = ConfigDict(frozen=True)

    ruleId: str
    description: str
    snipLevel: int = Field(ge=1, le=7)
    severity: Literal["error", "warning", "info"] = "error"
    suggestion: Optional[str] = None
    conditions: Conditions = Field(default_factory=Conditions)
    then: Tuple[AssertionClause, ...]


# --- Elements and segments ---
class CodeDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    description: Optional[str] = None


class BaseElement(BaseModel):
    xid: str
    name: str
    seq: int
    usage: UsageCode
    dataType: Literal['ID', 'AN', 'DT', 'TM', 'N0', 'N1', 'N2', 'R', 'Composite']
    data_ele: Optional[str] = None
    description: Optional[str] = None
    minLength: Optional[int] = None
    maxLength: Optional[int] = None
    repeat: int = 1
    format: Optional[str] = None
    valid_codes: Optional[List[CodeDefinition]] = None
    sub_elements: Optional[List['BaseElement']] = None
    # Identifier elements (NM101, DTP01) pick between sibling segments sharing a tag.
    is_identifier: bool = False


class SegmentDefinition(BaseModel):
    id: str
    name: str
    usage: UsageCode = 'S'
    description: Optional[str] = None
    elements: List[BaseElement]
    rules: Optional[List[SyntaxRule]] = None


class ContextualDefinition(BaseModel):
    """Per-position overrides: `elements` maps an element xid to replacement fields."""
    id: str
    name: str
    description: Optional[str] = None
    elements: Optional[Dict[str, Any]] = None
    rules: Optional[List[SyntaxRule]] = None


# --- Structure ---
class StructureSegment(BaseModel):
    type: Literal['segment']
    xid: str
    usage: UsageCode
    id: Optional[str] = None
    name: Optional[str] = None
    max_use: Union[int, str] = Field(validation_alias=AliasChoices("max_use", "maxUse"), default=1)
    segmentDefinitionId: Optional[str] = None
    contextDefinitionId: Optional[str] = None

    def get_segment_definition_id(self) -> str:
        return self.segmentDefinitionId or self.xid


class StructureLoop(BaseModel):
    type: Literal['loop']
    xid: str
    name: str
    usage: UsageCode
    repeat: Union[str, int]
    hlCode: Optional[str] = Field(None, description="HL03 value that opens this loop, for hierarchical loops.")
    children: List['StructureChild'] = Field(default_factory=list)


StructureChild = Annotated[Union[StructureLoop, StructureSegment], Field(discriminator='type')]


class ImplementationGuideSchema(BaseModel):
    transactionName: str
    version: str
    description: str
    implementationReference: Optional[str] = Field(None, description="Expected ST03/GS08 value.")
    segmentDefinitions: Dict[str, SegmentDefinition] = Field(default_factory=dict)
    contextualDefinitions: Dict[str, ContextualDefinition] = Field(default_factory=dict)
    structure: List[StructureLoop]

    def get_version_key(self) -> Tuple[str, str]:
        return (self.transactionName, self.version)


BaseElement.model_rebuild()
StructureLoop.model_rebuild()
