from agents.outcomes import (
    ERROR_MESSAGES, FinalDecision, IterationRecord, VALIDATION_FAILED, to_json,
)

RESULT_PREVIEW_CHARS = 500


def preview(value, limit=RESULT_PREVIEW_CHARS):
    text = value if isinstance(value, str) else to_json(value)
    if len(text) <= limit:
        return text
    return text[:limit] + '...'


class IterationRecorder:
    """
    Ordered trace of one request: one record per tool dispatch and one per
    validation attempt. Builds the terminal FinalDecision from it.
    """

    def __init__(self, preview_chars=RESULT_PREVIEW_CHARS):
        self.preview_chars = preview_chars
        self._records = []

    @property
    def records(self):
        return tuple(self._records)

    def record_tool(self, iteration, invocation, outcome, duration_ms=None):
        record = IterationRecord(
            iteration=iteration,
            kind='tool',
            tool=invocation.name,
            params=dict(invocation.params or {}),
            result_preview=preview(outcome.payload, self.preview_chars) if outcome.ok else None,
            error=None if outcome.ok else outcome.message,
            duration_ms=duration_ms,
        )
        self._records.append(record)
        return record

    def record_validation(self, iteration, candidate, outcome, retry_count, forced=False):
        record = IterationRecord(
            iteration=iteration,
            kind='validation',
            tool='finalize_answer',
            params={"sql": candidate.sql, "confidence": candidate.confidence},
            result_preview=preview(outcome.sql, self.preview_chars) if outcome.valid else None,
            error=None if outcome.valid else outcome.message,
            violation_code=outcome.violation_code,
            retry_count=retry_count,
            forced=forced,
        )
        self._records.append(record)
        return record

    def success(self, candidate, sql, iteration_count, forced_completion=False):
        return FinalDecision(
            ok=True,
            iteration_trace=self.records,
            iteration_count=iteration_count,
            forced_completion=forced_completion,
            sql=sql,
            explanation=candidate.explanation,
            confidence=candidate.confidence,
        )

    def failure(self, code, iteration_count, forced_completion=False, validation=None, message=None):
        violation_code = None
        violations = ()
        if validation is not None:
            violation_code = validation.violation_code
            violations = validation.violations
        if message is None:
            message = ERROR_MESSAGES.get(code, code)
            if code == VALIDATION_FAILED and validation is not None:
                message = f"{message} {validation.message}"
        return FinalDecision(
            ok=False,
            iteration_trace=self.records,
            iteration_count=iteration_count,
            forced_completion=forced_completion,
            error_code=code,
            error_message=message,
            violation_code=violation_code,
            violations=violations,
        )
