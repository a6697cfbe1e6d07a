class OrchestratorError(Exception):
    """Base class for all restart orchestrator errors"""


class ConfigError(OrchestratorError, ValueError):
    """Invalid policy, inventory or input - raised before any host is touched"""


class StateTransitionError(OrchestratorError):
    pass


class HostError(OrchestratorError):
    """An error tied to a single host; captured on its HostState"""

    def __init__(self, host_id, message):
        super().__init__(message)
        self.host_id = host_id
        self.message = message


class ExecutionError(HostError):
    pass


class HealthCheckError(HostError):
    pass


class RollbackError(HostError):
    pass


class RolloutInterrupted(HostError):
    pass
