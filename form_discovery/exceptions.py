"""Exceptions raised by the form discovery engine."""

from typing import Any, Dict, List, Optional


class FormDiscoveryError(Exception):
    """Base class for all engine errors."""

    code = "form_discovery_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured reason, suitable for SessionState.reason and JSON output."""
        return {"error": self.code, "message": self.message, **self.details}


class ClassificationAmbiguous(FormDiscoveryError):
    """An element has an interactive affordance but cannot be typed confidently."""

    code = "classification_ambiguous"

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot classify element {path}: {reason}", path=path, reason=reason)
        self.path = path


class OptionResolutionFailed(FormDiscoveryError):
    """No resolution strategy produced options for a choice field."""

    code = "option_resolution_failed"

    def __init__(self, field_id: str, reason: str = "no strategy yielded options"):
        super().__init__(f"Could not resolve options for {field_id}: {reason}", field_id=field_id)
        self.field_id = field_id


class StabilityTimeout(FormDiscoveryError):
    """The document did not settle within the bound.

    ``snapshot`` holds the last snapshot observed, which is still useful for
    diagnostics.
    """

    code = "stability_timeout"

    def __init__(self, timeout_ms: float, snapshot=None):
        super().__init__(f"Document did not settle within {timeout_ms:.0f}ms", timeout_ms=timeout_ms)
        self.snapshot = snapshot


class PollingCancelled(FormDiscoveryError):
    """Polling was stopped because the owning session was torn down."""

    code = "polling_cancelled"


class RequiredFieldUnfillable(FormDiscoveryError):
    """The agent supplied no value for one or more required, visible fields."""

    code = "required_field_unfillable"

    def __init__(self, field_ids: List[str]):
        super().__init__(f"No value for required field(s): {', '.join(field_ids)}", field_ids=list(field_ids))
        self.field_ids = list(field_ids)


class SubmissionNotConfirmed(FormDiscoveryError):
    """The confirmation signature never matched after submitting."""

    code = "submission_not_confirmed"

    def __init__(self, attempts: int, location: Optional[str] = None):
        super().__init__(
            f"Submission not confirmed after {attempts} attempt(s)",
            attempts=attempts,
            location=location,
        )


class OverlayStateError(FormDiscoveryError):
    """A second overlay was opened before the first one was closed."""

    code = "overlay_state_error"


class SessionStateError(FormDiscoveryError):
    """An operation was requested in a session phase that does not allow it."""

    code = "session_state_error"
