"""Error classes for resource reconciliation.

Every error is scoped to one resource but fatal for the run: the engine
raises, the orchestrator records a Failed outcome and stops.

- AnchorParseError: malformed anchor marker in a query file
- RenderError / MissingVariable: template could not be rendered
- MissingAnchor: resource lacks the anchors its path needs
- ExecutionError: the query executor reported an error (never retried)
- StateVerificationExhausted: desired state not reached within the retry budget
- RunCancelled: cancellation observed at an anchor boundary

ManifestParseError lives in manifest.py next to ConfigError's other users.
"""

from typing import Any, Optional


class ReconcileError(Exception):
    """Base exception for reconciliation failures.

    Attributes:
        resource: Name of the resource being processed (if known)
        anchor: Anchor kind being executed or rendered (if known)
        observed: Last observed rows/payload for diagnosis
    """

    def __init__(
        self,
        message: str,
        resource: Optional[str] = None,
        anchor: Optional[str] = None,
        observed: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.resource = resource
        self.anchor = anchor
        self.observed = observed


class AnchorParseError(ReconcileError):
    """Malformed anchor marker syntax."""


class RenderError(ReconcileError):
    """Template could not be rendered."""


class MissingVariable(RenderError):
    """Template referenced a name absent from the current scope."""

    def __init__(self, name: str, **kwargs):
        super().__init__(f"Variable '{name}' is not defined", **kwargs)
        self.name = name


class MissingAnchor(ReconcileError):
    """Resource query definition lacks a required anchor."""


class ExecutionError(ReconcileError):
    """Query executor returned an error rather than a result."""


class StateVerificationExhausted(ReconcileError):
    """Desired state predicate never held within the retry budget."""

    def __init__(self, message: str, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class RunCancelled(ReconcileError):
    """Run cancellation was requested."""
