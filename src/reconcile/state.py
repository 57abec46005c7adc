"""Per-resource outcomes and run results.

A ResourceOutcome tracks one resource through the engine's phases and ends
as created, updated, skipped, deleted or failed. A RunResult collects the
outcomes of one run plus the first failure, if any.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Outcomes
CREATED = 'created'
UPDATED = 'updated'
SKIPPED = 'skipped'
DELETED = 'deleted'
FAILED = 'failed'

OUTCOMES = (CREATED, UPDATED, SKIPPED, DELETED, FAILED)

# Engine phases
PHASES = (
    'pending',
    'rendering',
    'fast_path',
    'checking_existence',
    'creating',
    'updating',
    'skipped',
    'verifying_state',
    'exporting',
    'deleting',
    'verifying_absence',
    'succeeded',
    'failed',
)

# Drift reported by test runs
DRIFT_ABSENT = 'absent'
DRIFT_NOT_DESIRED = 'not_desired'


@dataclass
class ResourceOutcome:
    """Outcome of one resource in one run.

    Attributes:
        name: Resource name (matches ResourceDecl.name)
        type: Resource type
        status: pending until finished, then one of OUTCOMES
        phase: Current (or final) engine phase
        attempts: Verification polls used
        drift: Test-mode drift ('absent' or 'not_desired')
        exports: Values exported by the resource
        observed: Last observed rows, on failure
        error: Error message if failed
        error_kind: Error class name if failed
        anchor: Anchor kind being executed when it failed
    """
    name: str
    type: str = 'resource'
    status: str = 'pending'
    phase: str = 'pending'
    attempts: int = 0
    drift: Optional[str] = None
    exports: dict[str, Any] = field(default_factory=dict)
    observed: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    anchor: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.time()

    def enter(self, phase: str) -> None:
        """Move to a new engine phase."""
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")
        logger.debug(f"[{self.name}] {self.phase} -> {phase}")
        self.phase = phase

    def finish(self, status: str) -> None:
        if status not in OUTCOMES or status == FAILED:
            raise ValueError(f"Invalid final status: {status}")
        self.status = status
        self.enter('succeeded')
        self.completed_at = time.time()

    def fail(self, error: Exception) -> None:
        self.status = FAILED
        self.error = str(error)
        self.error_kind = type(error).__name__
        self.anchor = getattr(error, 'anchor', None)
        self.observed = getattr(error, 'observed', None)
        self.attempts = getattr(error, 'attempts', self.attempts) or self.attempts
        self.enter('failed')
        self.completed_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'type': self.type,
            'status': self.status,
            'phase': self.phase,
            'attempts': self.attempts,
        }
        if self.drift is not None:
            d['drift'] = self.drift
        if self.exports:
            d['exports'] = sorted(self.exports)
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
            d['error_kind'] = self.error_kind
        if self.anchor is not None:
            d['anchor'] = self.anchor
        if self.observed is not None:
            d['observed'] = self.observed
        return d


@dataclass
class FailureDetail:
    """The failure that stopped a run."""
    resource: Optional[str]
    anchor: Optional[str]
    error_kind: str
    message: str
    observed: Any = None

    @classmethod
    def from_error(cls, error: Exception, resource: Optional[str] = None) -> 'FailureDetail':
        return cls(
            resource=resource or getattr(error, 'resource', None),
            anchor=getattr(error, 'anchor', None),
            error_kind=type(error).__name__,
            message=str(error),
            observed=getattr(error, 'observed', None),
        )

    def to_dict(self) -> dict:
        return {
            'resource': self.resource,
            'anchor': self.anchor,
            'error_kind': self.error_kind,
            'message': self.message,
            'observed': self.observed,
        }


@dataclass
class RunResult:
    """Result of one build, test or teardown run."""
    stack_name: str
    stack_env: str
    mode: str
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    first_failure: Optional[FailureDetail] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def success(self) -> bool:
        """True if no resource failed (drift is reported separately)."""
        return self.first_failure is None

    @property
    def drifted(self) -> list[str]:
        """Resources whose test run found drift."""
        return [o.name for o in self.outcomes if o.drift is not None]

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return 0.0

    def get(self, name: str) -> ResourceOutcome:
        """Get a resource outcome by name.

        Raises:
            KeyError: If the resource was not processed
        """
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        return {
            'stack_name': self.stack_name,
            'stack_env': self.stack_env,
            'mode': self.mode,
            'success': self.success,
            'drifted': self.drifted,
            'duration_seconds': round(self.duration, 2),
            'resources': [o.to_dict() for o in self.outcomes],
            'first_failure': self.first_failure.to_dict() if self.first_failure else None,
        }
