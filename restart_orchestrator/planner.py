from .errors import ConfigError
from .logger import get_logger


class BatchPlanner:
    """Splits a host set into the ordered batches of a rollout.

    Hosts are partitioned by primary group, keeping input order inside each
    group, and each group is chunked into batches of at most batch_size so a
    whole service group is validated before the rollout crosses into the next.
    Groups run in order of first appearance, except that groups named in
    policy.group_order go first, in that order.

    Interleaving batches of different groups is not supported; a planner that
    wants it can subclass and override order_groups/chunk.
    """

    def __init__(self):
        self.logger = get_logger("planner")

    def plan(self, hosts, policy):
        """Return a tuple of batches, each a tuple of Host"""
        hosts = list(hosts)
        if not hosts:
            raise ConfigError("no hosts to restart")
        if not isinstance(policy.batch_size, int) or policy.batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        self._check_unique(hosts)

        by_group = self.partition(hosts)
        batches = []
        for group in self.order_groups(by_group, policy):
            batches.extend(self.chunk(by_group[group], policy.batch_size))

        self.logger.debug(
            f"Planned {len(batches)} batches for {len(hosts)} hosts in {len(by_group)} groups"
        )
        return tuple(batches)

    @staticmethod
    def partition(hosts):
        by_group = {}
        for host in hosts:
            by_group.setdefault(host.primary_group, []).append(host)
        return by_group

    @staticmethod
    def order_groups(by_group, policy):
        preferred = [g for g in dict.fromkeys(policy.group_order or ()) if g in by_group]
        rest = [g for g in by_group if g not in preferred]
        return preferred + rest

    @staticmethod
    def chunk(hosts, batch_size):
        return [tuple(hosts[i:i + batch_size]) for i in range(0, len(hosts), batch_size)]

    @staticmethod
    def _check_unique(hosts):
        seen = set()
        for host in hosts:
            if host.host_id in seen:
                raise ConfigError(f"duplicate host id: {host.host_id}")
            seen.add(host.host_id)
