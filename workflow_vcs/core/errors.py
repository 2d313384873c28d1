"""
Error Taxonomy
Every failure surfaced to callers is one of these, serialized via to_dict().
"""
from typing import Any, Dict


class WorkflowVCSError(Exception):
    """Base error for version-control operations."""
    code: int = 500
    error_type: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str, context: str = ""):
        self.message = message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "status": "error",
            "code": self.code,
            "error_type": self.error_type,
            "message": self.message,
            "context": self.context,
            "retryable": self.retryable
        }


class NotFoundError(WorkflowVCSError):
    """Unknown workflow, branch or version id."""
    code = 404
    error_type = "not_found"


class ValidationError(WorkflowVCSError):
    """Missing operation fields, invalid resolutions or malformed documents."""
    code = 400
    error_type = "validation_error"


class EngineUnavailableError(WorkflowVCSError):
    """Transient failure talking to the n8n engine. Safe to retry with backoff."""
    code = 503
    error_type = "engine_unavailable"
    retryable = True


def require_params(params: Dict[str, Any], required: list, operation: str) -> None:
    """Raise ValidationError naming every missing (None or empty) parameter."""
    missing = [name for name in required if params.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required parameters for {operation}: {', '.join(missing)}"
        )
