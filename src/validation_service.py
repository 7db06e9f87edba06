from typing import Iterable, List, Optional, Union
import logging

from pydantic import BaseModel, ConfigDict

from cdm import DocumentTree, Finding, Severity
from compliance import ComplianceReport, build_compliance_report
from edi_config import CancellationToken, EngineConfig
from edi_errors import ParseError
from edi_parser import StructuralAssembler, detect_transaction_key
from edi_delimiters import detect_delimiters
from edi_tokenizer import SegmentTokenizer
from schema_manager import SchemaRegistry
from schema_overlay import EffectiveSchema, OverlayEntry, SchemaOverlay, apply_overlay, compose_overlay
from validation_pipeline import validate

logger = logging.getLogger(__name__)


class FatalError(BaseModel):
    """A parse that could not produce a tree. Offsets are character offsets into the raw input."""
    model_config = ConfigDict(frozen=True)

    error_type: str
    message: str
    offset: Optional[int] = None
    position: Optional[int] = None
    level_id: Optional[str] = None


class ValidationResult(BaseModel):
    """Container for validation results."""
    model_config = ConfigDict(frozen=True)

    valid: bool
    findings: List[Finding] = []
    tree: Optional[DocumentTree] = None
    fatal_error: Optional[FatalError] = None
    report: Optional[ComplianceReport] = None


class EDIValidationService:
    """Parse, overlay and validate in one place, sharing a single schema registry."""

    def __init__(self, schema_base_path: Optional[str] = None, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        if schema_base_path is not None:
            self.config = self.config.model_copy(update={"schema_base_path": schema_base_path})
        self.registry = SchemaRegistry(self.config.schema_base_path)

    def effective_schema(self, transaction_type: str, version: str,
                         overlay: Optional[SchemaOverlay] = None) -> EffectiveSchema:
        return apply_overlay(self.registry.get(transaction_type, version), overlay)

    def compose_overlay(self, transaction_type: str, version: str,
                        entries: Iterable[Union[OverlayEntry, dict, tuple]], name: Optional[str] = None) -> SchemaOverlay:
        """Builds an overlay and checks every entry against the named base schema."""
        return compose_overlay(entries, base=self.registry.get(transaction_type, version), name=name)

    def parse(
        self,
        edi_content: Union[str, bytes],
        transaction_type: str,
        version: str,
        overlay: Optional[SchemaOverlay] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DocumentTree:
        effective = self.effective_schema(transaction_type, version, overlay)
        return self._assemble(edi_content, effective, cancel_token)

    def _assemble(self, edi_content: Union[str, bytes], effective: EffectiveSchema,
                  cancel_token: Optional[CancellationToken]) -> DocumentTree:
        text = edi_content.decode(self.config.encoding) if isinstance(edi_content, bytes) else edi_content
        delimiters = detect_delimiters(text)
        tokenizer = SegmentTokenizer(text, delimiters, self.config.max_element_length)
        return StructuralAssembler(effective, self.config, cancel_token).assemble(tokenizer, delimiters)

    def validate(
        self,
        tree: DocumentTree,
        overlay: Optional[SchemaOverlay] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Finding]:
        """Validates an existing tree; the overlay may differ from the one used to parse it."""
        effective = self.effective_schema(tree.transaction_type, tree.implementation_version, overlay)
        return validate(tree, effective, cancel_token,
                        parallel=self.config.parallel_validation, max_workers=self.config.max_workers)

    def validate_edi(
        self,
        edi_content: Union[str, bytes],
        transaction_type: Optional[str] = None,
        version: Optional[str] = None,
        overlay: Optional[SchemaOverlay] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ValidationResult:
        """
        Parse and validate EDI content in one call.

        Args:
            edi_content: The raw EDI document
            transaction_type: ST01 of the schema to use; read from the document when omitted
            version: Implementation guide version; read from ST03/GS08 when omitted
            overlay: Optional usage overlay applied to the base schema

        Returns:
            ValidationResult with findings and a compliance report, or a fatal_error when the
            document could not be parsed at all.
        """
        try:
            if transaction_type is None or version is None:
                detected = detect_transaction_key(edi_content, self.config.encoding)
                if detected is None:
                    raise ParseError("Could not determine the transaction type and version from ST/GS.")
                transaction_type = transaction_type or detected[0]
                version = version or detected[1]

            logger.info(f"Starting EDI validation with schema: {transaction_type}/{version}")
            effective = self.effective_schema(transaction_type, version, overlay)
            tree = self._assemble(edi_content, effective, cancel_token)
        except ParseError as e:
            logger.error(f"EDI parsing failed: {e}")
            return ValidationResult(
                valid=False,
                fatal_error=FatalError(
                    error_type=type(e).__name__,
                    message=e.message,
                    offset=e.offset,
                    position=e.position,
                    level_id=getattr(e, 'level_id', None),
                ),
            )

        findings = validate(tree, effective, cancel_token,
                            parallel=self.config.parallel_validation, max_workers=self.config.max_workers)
        report = build_compliance_report(findings)
        is_valid = not any(finding.severity == Severity.ERROR for finding in findings)
        logger.info(f"Validation completed: valid={is_valid}, findings={len(findings)}, score={report.score}")
        return ValidationResult(valid=is_valid, findings=findings, tree=tree, report=report)
