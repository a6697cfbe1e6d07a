import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Tuple

from .errors import ConfigError, StateTransitionError


class Stage(str, Enum):
    PENDING = "pending"
    RESTARTING = "restarting"
    AWAITING_HEALTH = "awaiting_health"
    HEALTHY = "healthy"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self):
        return self in (Stage.HEALTHY, Stage.FAILED, Stage.ROLLED_BACK)


# Restarting -> Restarting is a retry after a failed restart command
TRANSITIONS = {
    Stage.PENDING: {Stage.RESTARTING},
    Stage.RESTARTING: {Stage.AWAITING_HEALTH, Stage.RESTARTING, Stage.FAILED},
    Stage.AWAITING_HEALTH: {Stage.HEALTHY, Stage.RESTARTING, Stage.FAILED},
    Stage.FAILED: {Stage.ROLLED_BACK},
    Stage.HEALTHY: set(),
    Stage.ROLLED_BACK: set(),
}

UNGROUPED = "ungrouped"


@dataclass(frozen=True)
class Host:
    host_id: str
    groups: Tuple[str, ...] = ()
    connection: Mapping[str, Any] = field(default_factory=dict, compare=False)
    service: Optional[str] = None

    def __post_init__(self):
        # Accept any iterable of tags but keep the order they were given in
        object.__setattr__(self, "groups", tuple(self.groups))

    @property
    def primary_group(self):
        return self.groups[0] if self.groups else UNGROUPED


@dataclass(frozen=True)
class ErrorRecord:
    kind: str
    message: str
    timestamp: float

    @classmethod
    def from_exception(cls, exc):
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        return cls(kind=exc.__class__.__name__, message=message, timestamp=time.time())


@dataclass(frozen=True)
class StageTransition:
    old_stage: Stage
    new_stage: Stage
    timestamp: float
    error: Optional[ErrorRecord] = None


@dataclass(frozen=True)
class HostSnapshot:
    """Immutable copy of a HostState, as reported in a RolloutResult"""
    host_id: str
    stage: Stage
    attempt: int
    last_error: Optional[ErrorRecord]
    history: Tuple[StageTransition, ...]


@dataclass
class HostState:
    """Lifecycle record of one host during a rollout.

    Only the task processing the host mutates it, and only through
    transition(), which enforces the stage machine in TRANSITIONS.
    """
    host_id: str
    stage: Stage = Stage.PENDING
    attempt: int = 0
    last_error: Optional[ErrorRecord] = None
    history: list = field(default_factory=list)
    observer: Optional[Callable] = field(default=None, repr=False, compare=False)

    def transition(self, new_stage, error=None):
        if new_stage not in TRANSITIONS[self.stage]:
            raise StateTransitionError(
                f"{self.host_id}: illegal transition {self.stage.value} -> {new_stage.value}"
            )
        record = ErrorRecord.from_exception(error) if error is not None else None
        if record is not None:
            self.last_error = record
        change = StageTransition(self.stage, new_stage, time.time(), record)
        self.stage = new_stage
        self.history.append(change)
        if self.observer is not None:
            self.observer(self.host_id, change)
        return change

    def record_error(self, error):
        self.last_error = ErrorRecord.from_exception(error)

    @property
    def is_terminal(self):
        return self.stage.is_terminal

    def snapshot(self):
        return HostSnapshot(
            host_id=self.host_id,
            stage=self.stage,
            attempt=self.attempt,
            last_error=self.last_error,
            history=tuple(self.history),
        )


@dataclass(frozen=True)
class RolloutPolicy:
    """Configuration for a rollout, fixed for its whole duration"""
    batch_size: int = 1  # Hosts restarted concurrently
    max_retries: int = 3  # Retries shared by restart and health probing
    retry_delay: float = 5.0  # Seconds before the first retry
    health_check_timeout: float = 5.0  # Seconds per probe
    failure_threshold_per_batch: float = 0.0  # Fraction of a batch allowed to fail
    rollback_on_failure: bool = False
    backoff_factor: float = 1.0  # 1.0 keeps the delay constant
    max_retry_delay: float = 30.0
    restart_timeout: Optional[float] = None  # Seconds per restart command
    restart_on_unhealthy: bool = False  # Re-run the restart after a failed probe
    cancel_grace_period: float = 10.0
    group_order: Optional[Tuple[str, ...]] = None  # Groups to process first

    def __post_init__(self):
        if self.group_order is not None:
            object.__setattr__(self, "group_order", tuple(self.group_order))

    def validate(self):
        """Raise ConfigError on the first invalid setting"""
        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.retry_delay < 0:
            raise ConfigError("retry_delay must be >= 0")
        if self.health_check_timeout <= 0:
            raise ConfigError("health_check_timeout must be > 0")
        if not 0.0 <= self.failure_threshold_per_batch <= 1.0:
            raise ConfigError("failure_threshold_per_batch must be between 0 and 1")
        if self.backoff_factor < 1.0:
            raise ConfigError("backoff_factor must be >= 1")
        if self.max_retry_delay < 0:
            raise ConfigError("max_retry_delay must be >= 0")
        if self.restart_timeout is not None and self.restart_timeout <= 0:
            raise ConfigError("restart_timeout must be > 0")
        if self.cancel_grace_period < 0:
            raise ConfigError("cancel_grace_period must be >= 0")
        return self

    def delay_for(self, attempt):
        """Backoff before retry number `attempt` (1-based)"""
        delay = self.retry_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_retry_delay)


@dataclass(frozen=True)
class BatchReport:
    index: int
    host_ids: Tuple[str, ...]
    healthy: int
    failed: int
    rolled_back: int
    failure_rate: float
    breached: bool


@dataclass(frozen=True)
class RolloutResult:
    """Outcome of a whole rollout. Produced once and never modified."""
    healthy: int
    failed: int
    rolled_back: int
    skipped: int
    duration: float
    started_at: float
    finished_at: float
    hosts: Mapping[str, HostSnapshot]
    skipped_hosts: Tuple[str, ...] = ()
    batches: Tuple[BatchReport, ...] = ()
    aborted: bool = False
    abort_reason: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "hosts", MappingProxyType(dict(self.hosts)))

    @property
    def success(self):
        return self.failed == 0 and self.rolled_back == 0 and not self.aborted

    def to_dict(self):
        return {
            "success": self.success,
            "healthy": self.healthy,
            "failed": self.failed,
            "rolled_back": self.rolled_back,
            "skipped": self.skipped,
            "duration": self.duration,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "skipped_hosts": list(self.skipped_hosts),
            "batches": [asdict(b) for b in self.batches],
            "hosts": {host_id: _snapshot_to_dict(s) for host_id, s in self.hosts.items()},
        }


def _snapshot_to_dict(snapshot):
    data = asdict(snapshot)
    data["stage"] = snapshot.stage.value
    for change in data["history"]:
        change["old_stage"] = change["old_stage"].value
        change["new_stage"] = change["new_stage"].value
    return data
