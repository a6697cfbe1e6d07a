import asyncio

from .errors import ExecutionError, HealthCheckError, RollbackError


class FailureInjector:
    """Scripts how many times each host fails before it starts succeeding.

    `fail_attempts` maps host id -> number of leading failures; a negative
    count means the host never succeeds.
    """

    def __init__(self, fail_attempts=None, delay=0):
        self.fail_map = fail_attempts or {}
        self.delay = delay
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def should_fail(self, host):
        id = host.host_id
        self.attempts[id] = self.attempts.get(id, 0) + 1
        limit = self.fail_map.get(id, 0)
        return limit < 0 or self.attempts[id] <= limit

    def calls(self, host_id):
        return self.attempts.get(host_id, 0)


class SimulatedExecutor:
    """In-process RemoteExecutor for dry runs and tests"""

    def __init__(self, failures=None, rollback_failures=None, max_connections=None):
        self.failures = failures if failures is not None else FailureInjector()
        self.rollback_failures = rollback_failures if rollback_failures is not None else FailureInjector()
        self.max_connections = max_connections
        self.restarted = []
        self.rolled_back = []
        self.active = 0
        self.peak_active = 0

    async def restart(self, host):
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            delay = self.failures.delay_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            if self.failures.should_fail(host):
                raise ExecutionError(host.host_id, "Simulated restart failure")
            self.restarted.append(host.host_id)
        finally:
            self.active -= 1

    async def rollback(self, host):
        if self.rollback_failures.should_fail(host):
            raise RollbackError(host.host_id, "Simulated rollback failure")
        self.rolled_back.append(host.host_id)


class SimulatedHealthChecker:
    """In-process HealthChecker: a host is unhealthy for its scripted failures"""

    def __init__(self, failures=None, raise_errors=False):
        self.failures = failures if failures is not None else FailureInjector()
        self.raise_errors = raise_errors
        self.probes = []

    async def check(self, host, timeout):
        self.probes.append(host.host_id)
        delay = self.failures.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        if self.failures.should_fail(host):
            if self.raise_errors:
                raise HealthCheckError(host.host_id, "Simulated probe failure")
            return False
        return True
