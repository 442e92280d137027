"""
Value types passed between the orchestrator, the tools and the validator.

Every type here is immutable once built; the orchestrator's ConversationState
is the only mutable object in a request.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

# Failure codes surfaced to the caller
TIMEOUT = 'TIMEOUT'
VALIDATION_FAILED = 'VALIDATION_FAILED'
NO_FINAL_QUERY = 'NO_FINAL_QUERY'
API_ERROR = 'API_ERROR'

ERROR_MESSAGES = {
    TIMEOUT: 'Query generation timed out. Please simplify your question.',
    VALIDATION_FAILED: 'The generated query did not pass safety validation.',
    NO_FINAL_QUERY: 'Unable to generate query. Please rephrase your question.',
    API_ERROR: 'The reasoning service is unavailable. Please try again later.',
}

CONFIDENCE_LEVELS = ('high', 'medium', 'low')


def to_json(value):
    """JSON encoding used for tool feedback and previews; dates and decimals become strings."""
    return json.dumps(value, default=str, ensure_ascii=False)


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    params: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None
    parse_error: Optional[str] = None


@dataclass(frozen=True)
class ToolOutcome:
    ok: bool
    payload: Any = None
    message: Optional[str] = None

    @classmethod
    def success(cls, payload):
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, message):
        return cls(ok=False, message=message)

    def to_message_content(self):
        if self.ok:
            return to_json(self.payload)
        content = {"error": self.message}
        if isinstance(self.payload, dict):
            content.update(self.payload)
        return to_json(content)


@dataclass(frozen=True)
class CandidateQuery:
    sql: str
    explanation: str = ''
    confidence: str = 'medium'
    call_id: Optional[str] = None

    @classmethod
    def from_params(cls, params, call_id=None):
        confidence = str(params.get('confidence') or 'medium').lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = 'medium'
        return cls(
            sql=params.get('sql') or '',
            explanation=params.get('explanation') or '',
            confidence=confidence,
            call_id=call_id,
        )


@dataclass(frozen=True)
class Violation:
    code: str
    message: str
    detail: Optional[str] = None

    def to_dict(self):
        data = {"code": self.code, "message": self.message}
        if self.detail:
            data["detail"] = self.detail
        return data


@dataclass(frozen=True)
class ValidationOutcome:
    valid: bool
    sql: Optional[str] = None
    violation_code: Optional[str] = None
    message: Optional[str] = None
    violations: Tuple[Violation, ...] = ()

    @classmethod
    def accept(cls, sql):
        return cls(valid=True, sql=sql)

    @classmethod
    def reject(cls, violations):
        violations = tuple(violations)
        first = violations[0]
        return cls(
            valid=False,
            violation_code=first.code,
            message='; '.join(v.message for v in violations),
            violations=violations,
        )

    def violation_dicts(self):
        return [v.to_dict() for v in self.violations]


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    kind: str # "tool" or "validation"
    tool: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    result_preview: Optional[str] = None
    error: Optional[str] = None
    violation_code: Optional[str] = None
    retry_count: int = 0
    forced: bool = False
    duration_ms: Optional[int] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self):
        data = {
            "iteration": self.iteration,
            "kind": self.kind,
            "tool": self.tool,
            "params": dict(self.params),
            "timestamp": self.timestamp,
        }
        for key in ("result_preview", "error", "violation_code", "duration_ms"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.kind == "validation":
            data["retry_count"] = self.retry_count
            data["forced"] = self.forced
        return data


@dataclass(frozen=True)
class FinalDecision:
    ok: bool
    iteration_trace: Tuple[IterationRecord, ...]
    iteration_count: int
    forced_completion: bool = False
    sql: Optional[str] = None
    explanation: Optional[str] = None
    confidence: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    violation_code: Optional[str] = None
    violations: Tuple[Violation, ...] = ()

    def to_response(self) -> Dict[str, Any]:
        """Caller-facing payload. Confidence and the trace stay in the audit log."""
        if self.ok:
            return {
                "ok": True,
                "sql": self.sql,
                "explanation": self.explanation,
                "metadata": {
                    "iteration_count": self.iteration_count,
                    "forced_completion": self.forced_completion,
                },
            }
        return {
            "ok": False,
            "error": {"code": self.error_code, "message": self.error_message},
            "metadata": {"iteration_count": self.iteration_count},
        }

    def trace_dicts(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.iteration_trace]
