import asyncio

from .errors import (
    ExecutionError, HealthCheckError, OrchestratorError, RollbackError, RolloutInterrupted
)
from .interfaces import supports_rollback
from .logger import get_logger
from .models import HostState, Stage


class RestartCoordinator:
    """Drives one host through restart, health gating, retries and rollback.

    Restart failures and failed probes draw on one shared retry budget
    (policy.max_retries). HostState.attempt counts the retries consumed, so a
    host that never recovers makes max_retries + 1 tries and ends with
    attempt == max_retries.
    """

    def __init__(self, executor, health_checker, events=None):
        self.executor = executor
        self.health_checker = health_checker
        self.events = events
        self.logger = get_logger("coordinator")

    async def process(self, host, policy, state=None):
        """Restart `host` and return its HostState once it is terminal"""
        if state is None:
            state = HostState(host.host_id)
        if state.is_terminal:
            self.logger.debug(f"{host.host_id} already {state.stage.value}, nothing to do")
            return state
        if state.observer is None and self.events is not None:
            state.observer = self.events.observer

        state.transition(Stage.RESTARTING)
        try:
            await self._drive(host, policy, state)
        except asyncio.CancelledError:
            if not state.is_terminal:
                self.logger.error(f"Restart of {host.host_id} interrupted in stage {state.stage.value}")
                state.transition(Stage.FAILED, RolloutInterrupted(host.host_id, "rollout cancelled"))
            raise
        return state

    async def _drive(self, host, policy, state):
        while True:
            error = await self._restart(host, policy)
            if error is not None:
                if await self._backoff(host, policy, state, error):
                    state.transition(Stage.RESTARTING, error)
                    continue
                await self._fail(host, policy, state, error)
                return

            state.transition(Stage.AWAITING_HEALTH)
            error = await self._wait_healthy(host, policy, state)
            if error is None:
                state.transition(Stage.HEALTHY)
                self.logger.info(f"{host.host_id} is healthy after {state.attempt} retries")
                return
            if state.attempt >= policy.max_retries:
                await self._fail(host, policy, state, error)
                return
            # only reached with restart_on_unhealthy
            await self._sleep(host, policy, state, error)
            state.transition(Stage.RESTARTING, error)

    async def _wait_healthy(self, host, policy, state):
        """Probe until healthy; return None, or the last probe error.

        With restart_on_unhealthy the first failed probe is handed back to
        _drive (which restarts the service again) instead of being re-probed.
        """
        while True:
            error = await self._probe(host, policy)
            if error is None:
                return None
            state.record_error(error)
            if policy.restart_on_unhealthy or state.attempt >= policy.max_retries:
                return error
            await self._sleep(host, policy, state, error)

    async def _backoff(self, host, policy, state, error):
        state.record_error(error)
        if state.attempt >= policy.max_retries:
            return False
        await self._sleep(host, policy, state, error)
        return True

    async def _sleep(self, host, policy, state, error):
        state.attempt += 1
        delay = policy.delay_for(state.attempt)
        self.logger.warning(
            f"{host.host_id}: {error.message}; retry {state.attempt}/{policy.max_retries} in {delay}s"
        )
        if delay > 0:
            await asyncio.sleep(delay)

    async def _restart(self, host, policy):
        try:
            await self._call(self.executor.restart(host), policy.restart_timeout)
        except ExecutionError as e:
            return e
        except asyncio.TimeoutError:
            return ExecutionError(host.host_id, f"restart timed out after {policy.restart_timeout}s")
        except OrchestratorError as e:
            return ExecutionError(host.host_id, str(e))
        except Exception as e:
            return ExecutionError(host.host_id, f"{type(e).__name__}: {e}")
        return None

    async def _probe(self, host, policy):
        timeout = policy.health_check_timeout
        try:
            healthy = await self._call(self.health_checker.check(host, timeout), timeout)
        except HealthCheckError as e:
            return e
        except asyncio.TimeoutError:
            return HealthCheckError(host.host_id, f"health check timed out after {timeout}s")
        except Exception as e:
            return HealthCheckError(host.host_id, f"{type(e).__name__}: {e}")
        if not healthy:
            return HealthCheckError(host.host_id, "service reported unhealthy")
        return None

    async def _fail(self, host, policy, state, error):
        state.transition(Stage.FAILED, error)
        self.logger.error(f"{host.host_id} failed after {state.attempt} retries: {error.message}")
        if not policy.rollback_on_failure:
            return
        if not supports_rollback(self.executor):
            self.logger.warning(f"No rollback capability for {host.host_id}, leaving it failed")
            return

        try:
            await self._call(self.executor.rollback(host), policy.restart_timeout)
        except RollbackError as e:
            rollback_error = e
        except asyncio.TimeoutError:
            rollback_error = RollbackError(
                host.host_id, f"rollback timed out after {policy.restart_timeout}s"
            )
        except Exception as e:
            rollback_error = RollbackError(host.host_id, f"{type(e).__name__}: {e}")
        else:
            state.transition(Stage.ROLLED_BACK)
            self.logger.info(f"Rolled back {host.host_id}")
            return

        state.record_error(rollback_error)
        self.logger.warning(f"Rollback failed for {host.host_id}: {rollback_error.message}")

    @staticmethod
    async def _call(awaitable, timeout):
        if timeout and timeout > 0:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        return await awaitable
