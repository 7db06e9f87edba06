"""
Exception taxonomy for the EDI engine.

Fatal-to-parse problems derive from ParseError and abort parsing; overlay
composition problems derive from OverlayError. Everything else discovered once a
DocumentTree exists is reported as a Finding instead of being raised.
"""
from typing import Optional


class EdiEngineError(Exception):
    """Base class for all errors raised by the engine."""


# --- Parse errors ---
class ParseError(EdiEngineError):
    """A document could not be turned into a DocumentTree."""

    def __init__(self, message: str, offset: Optional[int] = None, position: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.offset = offset
        self.position = position


class MalformedEnvelope(ParseError):
    pass


class TokenizationError(ParseError):
    def __init__(self, message: str, offset: int, position: Optional[int] = None):
        super().__init__(message, offset=offset, position=position)


class UnknownSchema(ParseError):
    def __init__(self, transaction_type: str, version: str):
        super().__init__(f"No schema registered for transaction '{transaction_type}' version '{version}'.")
        self.transaction_type = transaction_type
        self.version = version


class UnrecoverableStructure(ParseError):
    pass


class OrphanHierarchicalLevel(ParseError):
    def __init__(self, level_id: str, parent_id: str, offset: Optional[int] = None, position: Optional[int] = None):
        super().__init__(
            f"Hierarchical level '{level_id}' references parent '{parent_id}' which has not been seen.",
            offset=offset,
            position=position,
        )
        self.level_id = level_id
        self.parent_id = parent_id


class CyclicHierarchy(ParseError):
    def __init__(self, level_id: str, parent_id: str, offset: Optional[int] = None, position: Optional[int] = None):
        super().__init__(
            f"Hierarchical level '{level_id}' with parent '{parent_id}' would create a cycle.",
            offset=offset,
            position=position,
        )
        self.level_id = level_id
        self.parent_id = parent_id


# --- Overlay errors ---
class OverlayError(EdiEngineError):
    def __init__(self, message: str, node_id: str):
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class UnknownOverlayTarget(OverlayError):
    def __init__(self, node_id: str):
        super().__init__(f"Overlay references unknown schema node '{node_id}'.", node_id)


class ConflictingOverlayEntry(OverlayError):
    def __init__(self, node_id: str):
        super().__init__(f"Overlay contains more than one entry for schema node '{node_id}'.", node_id)


# --- Schema and runtime errors ---
class SchemaDefinitionError(EdiEngineError):
    """The declarative implementation guide is inconsistent."""


class ValidationCancelled(EdiEngineError):
    """Raised when a caller cancels an in-flight parse or validation."""
