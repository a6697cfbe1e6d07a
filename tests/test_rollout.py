import asyncio
import json
import pytest
from restart_orchestrator.models import Host, HostState, RolloutPolicy, Stage
from restart_orchestrator.controller import RolloutController
from restart_orchestrator.errors import ConfigError
from restart_orchestrator.failure import FailureInjector, SimulatedExecutor, SimulatedHealthChecker


def fleet():
    return [
        Host("h1", ("nginx",)), Host("h2", ("nginx",)), Host("h3", ("nginx",)),
        Host("h4", ("tomcat",)), Host("h5", ("tomcat",)), Host("h6", ("tomcat",)),
    ]


def controller(restart_failures=None, probe_failures=None, **kwargs):
    executor = SimulatedExecutor(FailureInjector(fail_attempts=restart_failures or {}))
    checker = SimulatedHealthChecker(FailureInjector(fail_attempts=probe_failures or {}))
    return RolloutController(executor, checker, **kwargs), executor, checker


class TestRollout:
    """End-to-end rollouts through RolloutController."""

    @pytest.mark.asyncio
    async def test_two_group_scenario(self):
        ctrl, executor, _ = controller(restart_failures={"h1": 2})
        policy = RolloutPolicy(batch_size=2, max_retries=2, retry_delay=0.01,
                               failure_threshold_per_batch=0.5)

        res = await ctrl.run(fleet(), policy)
        assert res.healthy == 6
        assert res.failed == 0
        assert res.rolled_back == 0
        assert res.skipped == 0
        assert res.duration > 0
        assert res.success is True
        assert res.aborted is False
        assert [b.host_ids for b in res.batches] == [("h1", "h2"), ("h3",), ("h4", "h5"), ("h6",)]
        assert all(b.failure_rate == 0 for b in res.batches)
        assert res.hosts["h1"].attempt == 2
        assert res.hosts["h2"].attempt == 0
        assert sorted(executor.restarted) == ["h1", "h2", "h3", "h4", "h5", "h6"]

    @pytest.mark.asyncio
    async def test_abort_skips_remaining_batches(self):
        ctrl, executor, checker = controller(restart_failures={"h1": -1, "h2": -1})
        policy = RolloutPolicy(batch_size=2, max_retries=1, retry_delay=0,
                               failure_threshold_per_batch=0.5)

        res = await ctrl.run(fleet(), policy)
        assert res.aborted is True
        assert "batch 1" in res.abort_reason
        assert res.failed == 2
        assert res.skipped == 4
        assert res.skipped_hosts == ("h3", "h4", "h5", "h6")
        for host_id in res.skipped_hosts:
            assert res.hosts[host_id].stage == Stage.PENDING
            assert executor.failures.calls(host_id) == 0
        assert set(checker.probes) == set()
        assert res.success is False

    @pytest.mark.asyncio
    async def test_failure_rate_equal_to_threshold_continues(self):
        ctrl, _, _ = controller(restart_failures={"h1": -1})
        policy = RolloutPolicy(batch_size=2, max_retries=0, retry_delay=0,
                               failure_threshold_per_batch=0.5)

        res = await ctrl.run(fleet(), policy)
        assert res.aborted is False
        assert res.batches[0].failure_rate == 0.5
        assert res.batches[0].breached is False
        assert res.failed == 1
        assert res.healthy == 5

    @pytest.mark.asyncio
    async def test_short_trailing_batch_rate_uses_configured_batch_size(self):
        hosts = [
            Host("h1", ("nginx",)), Host("h2", ("nginx",)), Host("h3", ("nginx",)),
            Host("h4", ("tomcat",)), Host("h5", ("tomcat",)),
        ]
        ctrl, executor, _ = controller(restart_failures={"h3": -1})
        policy = RolloutPolicy(batch_size=2, max_retries=0, retry_delay=0,
                               failure_threshold_per_batch=0.5)

        res = await ctrl.run(hosts, policy)
        assert res.batches[1].host_ids == ("h3",)
        assert res.batches[1].failure_rate == 0.5
        assert res.batches[1].breached is False
        assert res.aborted is False
        assert res.skipped == 0
        assert res.healthy == 4
        assert executor.failures.calls("h4") == 1

    @pytest.mark.asyncio
    async def test_rolled_back_hosts_count_as_failures(self):
        ctrl, executor, _ = controller(restart_failures={"h1": -1})
        policy = RolloutPolicy(batch_size=2, max_retries=0, retry_delay=0,
                               failure_threshold_per_batch=0.0, rollback_on_failure=True)

        res = await ctrl.run(fleet(), policy)
        assert res.rolled_back == 1
        assert res.hosts["h1"].stage == Stage.ROLLED_BACK
        assert res.batches[0].rolled_back == 1
        assert res.aborted is True
        assert executor.rolled_back == ["h1"]

    @pytest.mark.asyncio
    async def test_breach_in_last_batch_skips_nothing(self):
        ctrl, _, _ = controller(restart_failures={"h6": -1})
        policy = RolloutPolicy(batch_size=2, max_retries=0, retry_delay=0)

        res = await ctrl.run(fleet(), policy)
        assert res.aborted is True
        assert res.skipped == 0
        assert res.healthy == 5
        assert res.failed == 1

    @pytest.mark.asyncio
    async def test_every_host_failing_still_returns_result(self):
        fail_all = {h.host_id: -1 for h in fleet()}
        ctrl, _, _ = controller(restart_failures=fail_all)
        policy = RolloutPolicy(batch_size=3, max_retries=0, retry_delay=0,
                               failure_threshold_per_batch=1.0)

        res = await ctrl.run(fleet(), policy)
        assert res.failed == 6
        assert res.aborted is False
        assert res.success is False

    @pytest.mark.asyncio
    async def test_breach_handler_can_continue(self):
        decisions = []

        async def keep_going(report):
            decisions.append(report.index)
            return True

        ctrl, _, _ = controller(restart_failures={"h1": -1}, breach_handler=keep_going)
        policy = RolloutPolicy(batch_size=2, max_retries=0, retry_delay=0)

        res = await ctrl.run(fleet(), policy)
        assert decisions == [1]
        assert res.aborted is False
        assert res.healthy == 5

    @pytest.mark.asyncio
    async def test_breach_handler_can_stop(self):
        async def stop(report):
            return False

        ctrl, _, _ = controller(restart_failures={"h1": -1}, breach_handler=stop)
        policy = RolloutPolicy(batch_size=2, max_retries=0, retry_delay=0)

        res = await ctrl.run(fleet(), policy)
        assert res.aborted is True
        assert res.skipped == 4

    @pytest.mark.asyncio
    async def test_config_error_before_any_host_is_touched(self):
        ctrl, executor, _ = controller()
        with pytest.raises(ConfigError):
            await ctrl.run(fleet(), RolloutPolicy(batch_size=0))
        with pytest.raises(ConfigError):
            await ctrl.run(fleet(), RolloutPolicy(failure_threshold_per_batch=2))
        with pytest.raises(ConfigError):
            await ctrl.run([], RolloutPolicy())
        assert executor.restarted == []
        assert ctrl.running is False

    @pytest.mark.asyncio
    async def test_healthy_states_are_not_restarted_again(self):
        ctrl, executor, checker = controller()
        policy = RolloutPolicy(batch_size=3, retry_delay=0)
        states = {host.host_id: HostState(host.host_id) for host in fleet()[:2]}
        first = await ctrl.run(fleet()[:2], policy, states)
        assert first.healthy == 2
        assert states["h1"].stage == Stage.HEALTHY
        restarted_before = list(executor.restarted)
        probes_before = list(checker.probes)

        res = await ctrl.run(fleet()[:2], policy, states)
        assert res.healthy == 2
        assert executor.restarted == restarted_before
        assert checker.probes == probes_before

    @pytest.mark.asyncio
    async def test_resume_rejects_host_mid_restart(self):
        ctrl, _, _ = controller()
        stuck = HostState("h1")
        stuck.transition(Stage.RESTARTING)
        with pytest.raises(ConfigError, match="mid-restart"):
            await ctrl.run(fleet(), RolloutPolicy(), {"h1": stuck})

    @pytest.mark.asyncio
    async def test_result_is_json_serializable(self):
        ctrl, _, _ = controller(restart_failures={"h1": 1})
        policy = RolloutPolicy(batch_size=2, max_retries=1, retry_delay=0)
        res = await ctrl.run(fleet(), policy)

        data = json.loads(json.dumps(res.to_dict()))
        assert data["success"] is True
        assert data["healthy"] == 6
        assert data["hosts"]["h1"]["stage"] == "healthy"
        assert data["hosts"]["h1"]["attempt"] == 1
        assert data["hosts"]["h1"]["history"][0]["old_stage"] == "pending"
        assert data["batches"][0]["host_ids"] == ["h1", "h2"]

    @pytest.mark.asyncio
    async def test_result_is_immutable(self):
        ctrl, _, _ = controller()
        res = await ctrl.run(fleet(), RolloutPolicy(batch_size=6, retry_delay=0))
        with pytest.raises(AttributeError):
            res.healthy = 0
        with pytest.raises(TypeError):
            res.hosts["h1"] = None

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self):
        executor = SimulatedExecutor(FailureInjector(delay=0.2))
        ctrl = RolloutController(executor, SimulatedHealthChecker())
        first = asyncio.ensure_future(ctrl.run(fleet(), RolloutPolicy(batch_size=6)))
        await asyncio.sleep(0.05)
        with pytest.raises(RuntimeError, match="rollout already in progress"):
            await ctrl.run(fleet(), RolloutPolicy(batch_size=6))
        res = await first
        assert res.healthy == 6
