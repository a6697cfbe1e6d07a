import pytest
from restart_orchestrator.models import Host, RolloutPolicy
from restart_orchestrator.planner import BatchPlanner
from restart_orchestrator.errors import ConfigError


def make_hosts(pairs):
    """pairs: list of (host_id, group)"""
    return [Host(host_id, (group,) if group else ()) for host_id, group in pairs]


def test_plan_respects_batch_size():
    hosts = make_hosts([(f"n{i}", "web") for i in range(10)])
    batches = BatchPlanner().plan(hosts, RolloutPolicy(batch_size=3))
    lengths = [len(b) for b in batches]
    assert lengths == [3, 3, 3, 1]


class TestBatchPlanner:
    """Grouping, ordering and validation of planned batches."""

    def test_groups_are_contiguous_and_never_share_a_batch(self):
        hosts = make_hosts([
            ("h1", "nginx"), ("h4", "tomcat"), ("h2", "nginx"),
            ("h5", "tomcat"), ("h3", "nginx"), ("h6", "tomcat"),
        ])
        batches = BatchPlanner().plan(hosts, RolloutPolicy(batch_size=2))
        assert [[h.host_id for h in b] for b in batches] == [
            ["h1", "h2"], ["h3"], ["h4", "h5"], ["h6"],
        ]
        for batch in batches:
            assert len({h.primary_group for h in batch}) == 1

    def test_concatenation_is_a_permutation_of_the_input(self):
        pairs = [(f"h{i}", ["a", "b", "c"][i % 3]) for i in range(17)]
        hosts = make_hosts(pairs)
        for batch_size in range(1, 8):
            batches = BatchPlanner().plan(hosts, RolloutPolicy(batch_size=batch_size))
            flat = [h for b in batches for h in b]
            assert sorted(h.host_id for h in flat) == sorted(h.host_id for h in hosts)
            assert all(len(b) <= batch_size for b in batches)
            # once a group is left it never comes back
            groups = [h.primary_group for h in flat]
            seen = []
            for g in groups:
                if not seen or seen[-1] != g:
                    assert g not in seen
                    seen.append(g)

    def test_input_order_kept_within_group(self):
        hosts = make_hosts([("c", "x"), ("a", "x"), ("b", "x")])
        batches = BatchPlanner().plan(hosts, RolloutPolicy(batch_size=5))
        assert [h.host_id for h in batches[0]] == ["c", "a", "b"]

    def test_group_order_runs_named_groups_first(self):
        hosts = make_hosts([("w1", "web"), ("d1", "db"), ("c1", "cache")])
        policy = RolloutPolicy(batch_size=1, group_order=["cache", "db"])
        batches = BatchPlanner().plan(hosts, policy)
        assert [b[0].host_id for b in batches] == ["c1", "d1", "w1"]

    def test_hosts_without_groups_form_one_group(self):
        hosts = make_hosts([("a", None), ("b", "web"), ("c", None)])
        batches = BatchPlanner().plan(hosts, RolloutPolicy(batch_size=2))
        assert [[h.host_id for h in b] for b in batches] == [["a", "c"], ["b"]]

    def test_primary_group_is_first_tag(self):
        hosts = [Host("a", ("tomcat", "java")), Host("b", ("nginx",)), Host("c", ("tomcat",))]
        batches = BatchPlanner().plan(hosts, RolloutPolicy(batch_size=3))
        assert [[h.host_id for h in b] for b in batches] == [["a", "c"], ["b"]]

    def test_plan_is_deterministic(self):
        hosts = make_hosts([(f"h{i}", f"g{i % 2}") for i in range(9)])
        policy = RolloutPolicy(batch_size=2)
        assert BatchPlanner().plan(hosts, policy) == BatchPlanner().plan(hosts, policy)

    def test_empty_hosts_rejected(self):
        with pytest.raises(ConfigError, match="no hosts"):
            BatchPlanner().plan([], RolloutPolicy(batch_size=1))

    def test_invalid_batch_size(self):
        hosts = make_hosts([("h1", "web")])
        with pytest.raises(ConfigError, match="batch_size must be >= 1"):
            BatchPlanner().plan(hosts, RolloutPolicy(batch_size=0))
        with pytest.raises(ConfigError, match="batch_size must be >= 1"):
            BatchPlanner().plan(hosts, RolloutPolicy(batch_size=-1))

    def test_duplicate_host_ids_rejected(self):
        hosts = make_hosts([("h1", "web"), ("h1", "db")])
        with pytest.raises(ConfigError, match="duplicate host id"):
            BatchPlanner().plan(hosts, RolloutPolicy(batch_size=1))
