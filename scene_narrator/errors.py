"""Typed errors raised across the validation and render pipeline.

Every error carries an HTTP-style ``status``, a machine-readable ``reason``
derived from it, and optional ``(field, message)`` detail pairs so a
controller can report what went wrong without parsing message strings.
"""


class ScriptEditorError(Exception):
    """Base class for every error this package raises on purpose."""

    status = 500
    reason = "internal_error"

    def __init__(self, message: str, details: list[tuple[str, str]] | None = None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "status": self.status,
            "reason": self.reason,
            "details": [{"field": f, "message": m} for f, m in self.details],
        }


class InvalidRequest(ScriptEditorError):
    status = 400
    reason = "invalid_request"


class NotFound(ScriptEditorError):
    status = 404
    reason = "not_found"

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class RenderInProgress(ScriptEditorError):
    """A render or preview for this segment is already outstanding."""

    status = 409
    reason = "render_in_progress"

    def __init__(self, segment_id: str):
        super().__init__(f"Segment {segment_id} already has a render in flight")
        self.segment_id = segment_id


class InvalidTransition(ScriptEditorError):
    status = 409
    reason = "invalid_transition"

    def __init__(self, status: str, event: str):
        super().__init__(f"Cannot apply '{event}' to a segment in state '{status}'")
        self.from_status = status
        self.event = event


class ContentValidationFailed(ScriptEditorError):
    """Generated text was rejected before it could be persisted."""

    status = 422
    reason = "content_validation_failed"

    def __init__(self, issues: list[str], content_preview: str = ""):
        super().__init__(
            f"Content validation failed: {'; '.join(issues)}",
            details=[("display_text", issue) for issue in issues],
        )
        self.issues = list(issues)
        self.content_preview = content_preview


class SynthesisFailed(ScriptEditorError):
    """Remote synthesis failed, or the quota gate refused the request."""

    status = 502
    reason = "synthesis_failed"

    def __init__(
        self,
        message: str,
        segment_id: str | None = None,
        quota_exceeded: bool = False,
    ):
        super().__init__(message)
        self.segment_id = segment_id
        self.quota_exceeded = quota_exceeded
        if quota_exceeded:
            self.status = 429
            self.reason = "quota_exceeded"


class TransportAborted(ScriptEditorError):
    """A superseded fetch was cancelled. Never shown to the user."""

    status = 499
    reason = "transport_aborted"


class BulkPartialFailure(ScriptEditorError):
    """Some segments in a render-all batch failed while others succeeded."""

    status = 207
    reason = "bulk_partial_failure"

    def __init__(self, failures: list[dict], rendered_count: int):
        super().__init__(
            f"{len(failures)} segment(s) failed, {rendered_count} rendered",
            details=[(f["segment_id"], f["error"]) for f in failures],
        )
        self.failures = list(failures)
        self.rendered_count = rendered_count
