"""
Usage overlays: sparse, per-customer overrides of an implementation guide.

An overlay maps schema node ids to mandatory / optional / removed. Applying it to a
SchemaModel yields an EffectiveSchema; neither input is ever modified, so a base model
can serve many overlays at once.
"""
import hashlib
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from edi_errors import ConflictingOverlayEntry, UnknownOverlayTarget
from schema_model import NodeKind, SchemaModel, SchemaNode, Usage

logger = logging.getLogger(__name__)


class OverlayUsage(str, Enum):
    MANDATORY = "mandatory"
    OPTIONAL = "optional"
    REMOVED = "removed"

    def as_usage(self) -> Usage:
        return Usage(self.value)


class OverlayEntry(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    node_id: str = Field(validation_alias=AliasChoices("node_id", "nodeId"), serialization_alias="nodeId")
    usage: OverlayUsage


class SchemaOverlay(BaseModel):
    """An immutable, order-independent set of overrides. Entries are kept sorted by node id."""
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    entries: Tuple[OverlayEntry, ...] = ()

    def as_mapping(self) -> Dict[str, Usage]:
        return {entry.node_id: entry.usage.as_usage() for entry in self.entries}

    def __len__(self) -> int:
        return len(self.entries)


def _coerce_entry(entry: Union[OverlayEntry, Mapping, Tuple[str, str]]) -> OverlayEntry:
    if isinstance(entry, OverlayEntry):
        return entry
    if isinstance(entry, tuple):
        node_id, usage = entry
        return OverlayEntry(node_id=node_id, usage=usage)
    return OverlayEntry.model_validate(entry)


def compose_overlay(
    entries: Iterable[Union[OverlayEntry, Mapping, Tuple[str, str]]],
    base: Optional[SchemaModel] = None,
    name: Optional[str] = None,
) -> SchemaOverlay:
    """
    Builds a SchemaOverlay from (node id, usage) entries.

    Raises:
        ConflictingOverlayEntry: two entries name the same node.
        UnknownOverlayTarget: an entry names a node the base schema does not have (only when base is given).
    """
    seen: Dict[str, OverlayEntry] = {}
    for raw_entry in entries:
        entry = _coerce_entry(raw_entry)
        if entry.node_id in seen:
            raise ConflictingOverlayEntry(entry.node_id)
        if base is not None and entry.node_id not in base:
            raise UnknownOverlayTarget(entry.node_id)
        seen[entry.node_id] = entry

    overlay = SchemaOverlay(name=name, entries=tuple(seen[node_id] for node_id in sorted(seen)))
    logger.debug(f"Composed overlay '{name}' with {len(overlay)} entries.")
    return overlay


class EffectiveSchema:
    """A SchemaModel seen through an overlay. Read-only and safe to share between threads."""

    def __init__(self, base: SchemaModel, overlay: SchemaOverlay, usages: Dict[str, Usage], inherited: frozenset):
        self._base = base
        self._overlay = overlay
        self._overrides = overlay.as_mapping()
        self._usages = usages
        self._inherited = inherited

    # --- delegation to the base model ---
    @property
    def base(self) -> SchemaModel:
        return self._base

    @property
    def overlay(self) -> SchemaOverlay:
        return self._overlay

    @property
    def root(self) -> SchemaNode:
        return self._base.root

    @property
    def transaction_type(self) -> str:
        return self._base.transaction_type

    @property
    def version(self) -> str:
        return self._base.version

    @property
    def implementation_reference(self) -> Optional[str]:
        return self._base.implementation_reference

    @property
    def top_level_loop(self) -> Optional[SchemaNode]:
        return self._base.top_level_loop

    def hl_loop(self, level_code: str) -> Optional[SchemaNode]:
        return self._base.hl_loop(level_code)

    def node(self, node_id: str) -> SchemaNode:
        return self._base.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._base

    # --- usage ---
    def usage(self, node_id: str) -> Usage:
        try:
            return self._usages[node_id]
        except KeyError:
            raise KeyError(f"Unknown schema node '{node_id}'") from None

    def base_usage(self, node_id: str) -> Usage:
        return self._base.get(node_id).usage

    def override_for(self, node_id: str) -> Optional[Usage]:
        """The overlay's explicit override for a node, if any."""
        return self._overrides.get(node_id)

    def is_overridden(self, node_id: str) -> bool:
        """True when the node's usage comes from the overlay, directly or through a removed ancestor."""
        return node_id in self._overrides or node_id in self._inherited

    def is_inherited_removal(self, node_id: str) -> bool:
        return node_id in self._inherited

    def usages(self) -> Dict[str, Usage]:
        return dict(self._usages)

    def usage_summary(self) -> Dict[str, int]:
        """Counts of element usages, the figures shown for a customised guide."""
        summary = {usage.value: 0 for usage in Usage}
        for node in self._base.walk():
            if node.kind is NodeKind.ELEMENT:
                summary[self._usages[node.id].value] += 1
        return summary

    # --- identity ---
    def to_json(self) -> str:
        """Deterministic serialization; equal inputs give byte-for-byte equal output."""
        return json.dumps(
            {
                "transactionType": self.transaction_type,
                "version": self.version,
                "usages": {node_id: usage.value for node_id, usage in self._usages.items()},
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    def fingerprint(self) -> str:
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, EffectiveSchema):
            return self._base.key == other._base.key and self._usages == other._usages
        if isinstance(other, SchemaModel):
            return self._base.key == other.key and self._usages == other.usages()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.fingerprint())

    def __repr__(self) -> str:
        return f"EffectiveSchema({self.transaction_type!r}, {self.version!r}, overrides={len(self._overrides)})"


def apply_overlay(base: SchemaModel, overlay: Optional[SchemaOverlay] = None) -> EffectiveSchema:
    """
    Computes effective usages: the override where one exists, otherwise the base usage.
    Every descendant of a removed node is removed as well.

    Raises:
        UnknownOverlayTarget: the overlay names a node the base schema does not have.
    """
    overlay = overlay or SchemaOverlay()
    overrides = overlay.as_mapping()
    for node_id in overrides:
        if node_id not in base:
            raise UnknownOverlayTarget(node_id)

    usages: Dict[str, Usage] = {}
    inherited: List[str] = []

    def visit(node: SchemaNode, removed_above: bool):
        if removed_above:
            usages[node.id] = Usage.REMOVED
            if node.id not in overrides:
                inherited.append(node.id)
        else:
            usages[node.id] = overrides.get(node.id, node.usage)
        for child in node.children:
            visit(child, removed_above or usages[node.id] is Usage.REMOVED)

    visit(base.root, False)
    logger.info(f"Applied overlay '{overlay.name}' ({len(overrides)} overrides) to {base.transaction_type}/{base.version}.")
    return EffectiveSchema(base, overlay, usages, frozenset(inherited))


def load_overlay(path: Union[str, Path], base: Optional[SchemaModel] = None) -> SchemaOverlay:
    """Reads an overlay file: {"name": ..., "entries": [{"nodeId": ..., "usage": ...}, ...]}."""
    with open(path, 'r') as f:
        data = json.load(f)
    overlay = compose_overlay(data.get("entries", []), base=base, name=data.get("name"))
    logger.info(f"Loaded overlay from {path} with {len(overlay)} entries.")
    return overlay


def dump_overlay(overlay: SchemaOverlay, path: Union[str, Path]):
    with open(path, 'w') as f:
        json.dump(overlay.model_dump(mode="json", by_alias=True), f, indent=2)
