from typing import Dict, Iterable, List

from pydantic import BaseModel, ConfigDict

from cdm import Finding, Severity

SNIP_LEVELS: Dict[int, Dict[str, str]] = {
    1: {"name": "Syntax", "description": "Basic EDI syntax validation"},
    2: {"name": "Structure", "description": "Segment and loop structure"},
    3: {"name": "Semantics", "description": "Data element relationships"},
    4: {"name": "Business Rules", "description": "Transaction-specific rules"},
    5: {"name": "Code Sets", "description": "Valid code validation"},
    6: {"name": "Situational", "description": "Conditional requirements"},
    7: {"name": "Implementation", "description": "Custom schema rules"},
}

ERROR_PENALTY = 15
WARNING_PENALTY = 5


class LevelSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: int
    name: str
    description: str
    passed: bool
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0


class ComplianceReport(BaseModel):
    """Per-level pass/fail summary and an overall score for one validated document."""
    model_config = ConfigDict(frozen=True)

    levels: List[LevelSummary]
    score: int
    clean: bool
    error_count: int
    warning_count: int
    info_count: int


def compliance_score(error_count: int, warning_count: int) -> int:
    return max(0, 100 - error_count * ERROR_PENALTY - warning_count * WARNING_PENALTY)


def build_compliance_report(findings: Iterable[Finding]) -> ComplianceReport:
    findings = list(findings)
    levels = []
    for level, info in SNIP_LEVELS.items():
        at_level = [f for f in findings if f.level == level]
        errors = sum(1 for f in at_level if f.severity == Severity.ERROR)
        levels.append(LevelSummary(
            level=level,
            name=info["name"],
            description=info["description"],
            passed=errors == 0,
            error_count=errors,
            warning_count=sum(1 for f in at_level if f.severity == Severity.WARNING),
            info_count=sum(1 for f in at_level if f.severity == Severity.INFO),
        ))

    error_count = sum(summary.error_count for summary in levels)
    warning_count = sum(summary.warning_count for summary in levels)
    return ComplianceReport(
        levels=levels,
        score=compliance_score(error_count, warning_count),
        clean=error_count == 0,
        error_count=error_count,
        warning_count=warning_count,
        info_count=sum(summary.info_count for summary in levels),
    )
