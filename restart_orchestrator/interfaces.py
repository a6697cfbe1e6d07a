"""Capabilities the orchestrator consumes.

The orchestrator never talks to hosts directly. It restarts services and
probes them through these two contracts, so transports (SSH, agents, cloud
APIs) and probe protocols (HTTP, TCP, database pings) stay pluggable.
"""
from typing import Protocol, runtime_checkable


@runtime_checkable
class RemoteExecutor(Protocol):
    """Runs restart and rollback commands on one host.

    Implementations raise ExecutionError / RollbackError on failure; any other
    exception is wrapped by the coordinator. An executor backed by a bounded
    connection pool advertises its ceiling through ``max_connections`` so the
    controller never runs more hosts of a batch at once than it can serve.
    """

    async def restart(self, host):
        ...

    async def rollback(self, host):
        ...


@runtime_checkable
class HealthChecker(Protocol):
    """Reports whether a host's service responds after a restart.

    Returns True when healthy and False when reachable but unhealthy. Raises
    HealthCheckError when the probe itself cannot be completed.
    """

    async def check(self, host, timeout):
        ...


def connection_ceiling(executor):
    """The executor's advertised concurrent connection limit, if any"""
    ceiling = getattr(executor, "max_connections", None)
    if ceiling is None:
        return None
    if ceiling < 1:
        return 1
    return int(ceiling)


def supports_rollback(executor):
    return callable(getattr(executor, "rollback", None))
