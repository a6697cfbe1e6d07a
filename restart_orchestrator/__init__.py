from .models import (
    Stage, Host, HostState, HostSnapshot, ErrorRecord, StageTransition,
    RolloutPolicy, BatchReport, RolloutResult
)
from .errors import (
    OrchestratorError, ConfigError, StateTransitionError, ExecutionError,
    HealthCheckError, RollbackError, RolloutInterrupted
)
from .interfaces import RemoteExecutor, HealthChecker
from .events import TransitionEvent, EventStream, QueueSink, LoggingSink
from .planner import BatchPlanner
from .coordinator import RestartCoordinator
from .controller import RolloutController
from .failure import FailureInjector, SimulatedExecutor, SimulatedHealthChecker

__all__ = [
    "Stage", "Host", "HostState", "HostSnapshot", "ErrorRecord", "StageTransition",
    "RolloutPolicy", "BatchReport", "RolloutResult",
    "OrchestratorError", "ConfigError", "StateTransitionError", "ExecutionError",
    "HealthCheckError", "RollbackError", "RolloutInterrupted",
    "RemoteExecutor", "HealthChecker",
    "TransitionEvent", "EventStream", "QueueSink", "LoggingSink",
    "BatchPlanner", "RestartCoordinator", "RolloutController",
    "FailureInjector", "SimulatedExecutor", "SimulatedHealthChecker",
]
