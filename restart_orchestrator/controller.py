import asyncio
import time

from .coordinator import RestartCoordinator
from .errors import ConfigError
from .events import EventStream
from .interfaces import connection_ceiling
from .logger import get_logger
from .models import BatchReport, HostState, RolloutResult, Stage
from .planner import BatchPlanner


class RolloutController:
    """Sequences a rollout batch by batch and decides whether to go on.

    Every host of a batch is processed concurrently, and the next batch only
    starts once all of them are terminal. A batch whose failure rate exceeds
    policy.failure_threshold_per_batch pauses the rollout on breach_handler
    (when one is given) or aborts it, skipping every later batch.
    """

    def __init__(self, executor, health_checker, events=None, planner=None, breach_handler=None):
        self.executor = executor
        self.health_checker = health_checker
        self.events = events if events is not None else EventStream()
        self.planner = planner if planner is not None else BatchPlanner()
        self.coordinator = RestartCoordinator(executor, health_checker, self.events)
        self.breach_handler = breach_handler
        self.logger = get_logger("controller")
        self._running = False
        self._loop = None
        self._cancel_event = None
        self._cancel_requested = False

    def cancel(self):
        """Ask a running rollout to stop. Safe to call from any thread."""
        self._cancel_requested = True
        if self._loop is None or self._cancel_event is None:
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self._loop:
            self._cancel_event.set()
        else:
            self._loop.call_soon_threadsafe(self._cancel_event.set)

    @property
    def running(self):
        return self._running

    async def run(self, hosts, policy, states=None):
        """Restart every host and return the RolloutResult.

        `states` may carry HostState records from an earlier rollout; hosts
        already healthy there are left alone.
        """
        if self._running:
            raise RuntimeError("rollout already in progress")

        hosts = list(hosts)
        policy.validate()
        batches = self.planner.plan(hosts, policy)
        states = self._initial_states(hosts, states)

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._cancel_event = asyncio.Event()
        if self._cancel_requested:
            self._cancel_event.set()

        started_at = time.time()
        clock = time.perf_counter()
        reports = []
        skipped = []
        abort_reason = None
        self.logger.info(f"Starting rollout of {len(hosts)} hosts in {len(batches)} batches")

        try:
            for index, batch in enumerate(batches, start=1):
                if self._cancel_event.is_set():
                    abort_reason = "cancelled"
                    skipped.extend(self._host_ids(batches[index - 1:]))
                    break

                self.logger.info(
                    f"Starting batch {index}/{len(batches)}: {', '.join(h.host_id for h in batch)}"
                )
                interrupted = await self._run_batch(batch, policy, states)
                report = self._evaluate(index, batch, states, policy)
                reports.append(report)

                if interrupted:
                    abort_reason = "cancelled"
                    skipped.extend(h.host_id for h in batch if states[h.host_id].stage is Stage.PENDING)
                    skipped.extend(self._host_ids(batches[index:]))
                    self.logger.error(f"ROLLOUT CANCELLED during batch {index}")
                    break

                if report.breached and not await self._continue_after_breach(report, policy):
                    abort_reason = f"failure threshold exceeded in batch {index}"
                    skipped.extend(self._host_ids(batches[index:]))
                    self.logger.error(
                        f"ROLLOUT ABORTED: batch {index} failure rate {report.failure_rate:.0%} > "
                        f"{policy.failure_threshold_per_batch:.0%}, skipping {len(skipped)} hosts"
                    )
                    break
        finally:
            self._running = False
            self._cancel_requested = False
            self._cancel_event = None
            self._loop = None

        result = self._result(states, skipped, reports, abort_reason, started_at, clock)
        self._log_summary(result)
        return result

    async def _run_batch(self, batch, policy, states):
        """Run one batch to completion; return True if it was cancelled"""
        ceiling = connection_ceiling(self.executor)
        gate = asyncio.Semaphore(ceiling) if ceiling else None
        tasks = [
            asyncio.ensure_future(self._process(host, policy, states[host.host_id], gate))
            for host in batch
        ]
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            while not all(t.done() for t in tasks) and not cancelled.done():
                await asyncio.wait(
                    [t for t in tasks if not t.done()] + [cancelled],
                    return_when=asyncio.FIRST_COMPLETED,
                )
            interrupted = not all(t.done() for t in tasks)
            if interrupted:
                await self._drain(tasks, policy.cancel_grace_period)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            cancelled.cancel()

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return interrupted

    async def _drain(self, tasks, grace_period):
        pending = [t for t in tasks if not t.done()]
        self.logger.warning(
            f"Cancellation requested, giving {len(pending)} hosts {grace_period}s to finish"
        )
        if grace_period > 0:
            _, pending = await asyncio.wait(pending, timeout=grace_period)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _process(self, host, policy, state, gate):
        if gate is None:
            return await self.coordinator.process(host, policy, state)
        async with gate:
            # a host that got its connection only after cancel() never starts
            if self._cancel_event is not None and self._cancel_event.is_set():
                return state
            return await self.coordinator.process(host, policy, state)

    async def _continue_after_breach(self, report, policy):
        if self.breach_handler is None:
            return False
        self.logger.warning(
            f"Batch {report.index} failure rate {report.failure_rate:.0%} exceeds "
            f"{policy.failure_threshold_per_batch:.0%}, pausing for a decision"
        )
        proceed = bool(await self.breach_handler(report))
        self.logger.info(f"Rollout {'resumed' if proceed else 'stopped'} after batch {report.index}")
        return proceed

    def _initial_states(self, hosts, states):
        previous = states or {}
        states = {}
        for host in hosts:
            state = previous.get(host.host_id) or HostState(host.host_id)
            if not (state.is_terminal or state.stage is Stage.PENDING):
                raise ConfigError(f"{host.host_id} is mid-restart ({state.stage.value}), cannot resume it")
            states[host.host_id] = state
        return states

    @staticmethod
    def _evaluate(index, batch, states, policy):
        stages = [states[h.host_id].stage for h in batch]
        failed = stages.count(Stage.FAILED)
        rolled_back = stages.count(Stage.ROLLED_BACK)
        failure_rate = (failed + rolled_back) / policy.batch_size
        return BatchReport(
            index=index,
            host_ids=tuple(h.host_id for h in batch),
            healthy=stages.count(Stage.HEALTHY),
            failed=failed,
            rolled_back=rolled_back,
            failure_rate=failure_rate,
            breached=failure_rate > policy.failure_threshold_per_batch,
        )

    @staticmethod
    def _host_ids(batches):
        return [host.host_id for batch in batches for host in batch]

    @staticmethod
    def _result(states, skipped, reports, abort_reason, started_at, clock):
        stages = [s.stage for s in states.values()]
        return RolloutResult(
            healthy=stages.count(Stage.HEALTHY),
            failed=stages.count(Stage.FAILED),
            rolled_back=stages.count(Stage.ROLLED_BACK),
            skipped=len(skipped),
            duration=time.perf_counter() - clock,
            started_at=started_at,
            finished_at=time.time(),
            hosts={host_id: state.snapshot() for host_id, state in states.items()},
            skipped_hosts=tuple(skipped),
            batches=tuple(reports),
            aborted=abort_reason is not None,
            abort_reason=abort_reason,
        )

    def _log_summary(self, result):
        if result.success:
            self.logger.info(f"SUCCESS: {result.healthy} hosts healthy in {result.duration:.2f}s")
        else:
            self.logger.warning(
                f"ROLLOUT FINISHED WITH ERRORS: {result.healthy} healthy, {result.failed} failed, "
                f"{result.rolled_back} rolled back, {result.skipped} skipped"
            )
