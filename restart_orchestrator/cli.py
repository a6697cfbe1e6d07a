import argparse
import asyncio
import json
import signal
import sys

from .config import load_policy
from .controller import RolloutController
from .errors import ConfigError
from .events import EventStream, LoggingSink
from .executors import DEFAULT_ROLLBACK_COMMAND, HttpHealthChecker, SSHExecutor, TcpHealthChecker
from .failure import FailureInjector, SimulatedExecutor, SimulatedHealthChecker
from .inventory import load_inventory
from .logger import setup_logging, get_logger
from .planner import BatchPlanner

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def parse_fail_map(entries):
    """Turn ["web1=2", "web2=-1"] into {"web1": 2, "web2": -1}"""
    fail_map = {}
    for entry in entries or []:
        host_id, sep, count = entry.partition("=")
        if not sep or not host_id:
            raise ConfigError(f"expected HOST=COUNT, got {entry!r}")
        try:
            fail_map[host_id] = int(count)
        except ValueError:
            raise ConfigError(f"failure count for {host_id} must be an integer") from None
    return fail_map


def policy_overrides(args):
    overrides = {"batch_size": args.batch_size}
    if args.cmd == "run":
        overrides.update({
            "max_retries": args.max_retries,
            "retry_delay": args.retry_delay,
            "health_check_timeout": args.health_timeout,
            "failure_threshold_per_batch": args.failure_threshold,
            "restart_timeout": args.restart_timeout,
            "rollback_on_failure": True if args.rollback_on_failure else None,
        })
    return overrides


def resume_hosts(hosts, result_path):
    """Restrict `hosts` to those a previous rollout skipped"""
    previous = json.load(open(result_path))
    skipped = set(previous.get("skipped_hosts") or [])
    if not skipped:
        raise ConfigError(f"{result_path} has no skipped hosts to resume")
    return [h for h in hosts if h.host_id in skipped]


def build_capabilities(args):
    if args.simulate:
        executor = SimulatedExecutor(
            FailureInjector(parse_fail_map(args.fail), delay=args.simulate_delay),
            max_connections=args.max_connections,
        )
        checker = SimulatedHealthChecker(FailureInjector(parse_fail_map(args.fail_probe)))
        return executor, checker

    executor = SSHExecutor(
        service=args.service,
        ssh_options=args.ssh_option or (),
        max_connections=args.max_connections,
        use_sudo=not args.no_sudo,
        rollback_command=args.rollback_command,
    )
    if args.health_port:
        checker = TcpHealthChecker(args.health_port)
    else:
        checker = HttpHealthChecker(args.health_url)
    return executor, checker


async def confirm_breach(report):
    prompt = (
        f"Batch {report.index} failure rate {report.failure_rate:.0%} "
        f"({report.failed} failed, {report.rolled_back} rolled back). Continue? [y/N] "
    )
    answer = await asyncio.get_running_loop().run_in_executor(None, input, prompt)
    return answer.strip().lower() in ("y", "yes")


async def execute(controller, hosts, policy):
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel)
    except (NotImplementedError, RuntimeError):
        pass  # no signal handlers outside the main thread / on Windows
    try:
        return await controller.run(hosts, policy)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def plan_command(args):
    hosts = load_inventory(args.inventory, args.limit)
    policy = load_policy(args.policy, policy_overrides(args))
    batches = BatchPlanner().plan(hosts, policy)
    plan = [
        {"batch": index, "group": batch[0].primary_group, "hosts": [h.host_id for h in batch]}
        for index, batch in enumerate(batches, start=1)
    ]
    print(json.dumps(plan, indent=2))
    return 0


def run_command(args):
    logger = get_logger("cli")
    hosts = load_inventory(args.inventory, args.limit)
    policy = load_policy(args.policy, policy_overrides(args))
    if args.resume:
        hosts = resume_hosts(hosts, args.resume)
    executor, checker = build_capabilities(args)
    if isinstance(checker, HttpHealthChecker):
        for host in hosts:
            checker.url_for(host)

    events = EventStream([LoggingSink()])
    breach_handler = confirm_breach if args.confirm_on_breach else None
    controller = RolloutController(executor, checker, events=events, breach_handler=breach_handler)
    result = asyncio.run(execute(controller, hosts, policy))

    output = json.dumps(result.to_dict(), indent=2)
    print(output)
    if args.output:
        with open(args.output, "w") as f:
            f.write(output)
        logger.info(f"Wrote rollout result to {args.output}")
    return 0 if result.success else 2


def build_parser():
    parser = argparse.ArgumentParser(
        prog="restart-orchestrator",
        description="Restart services across a fleet in health-gated batches",
    )
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LOG_LEVELS)
    sub = parser.add_subparsers(dest="cmd", required=True)

    plan = sub.add_parser("plan", help="print the batches a rollout would use")
    run = sub.add_parser("run", help="restart hosts batch by batch")
    for p in (plan, run):
        p.add_argument("--inventory", required=True)
        p.add_argument("--policy", help="YAML/JSON vars file with rollout settings")
        p.add_argument("--batch-size", type=int)
        p.add_argument("--limit", nargs="+", help="group names or host ids to include")

    run.add_argument("--max-retries", type=int)
    run.add_argument("--retry-delay", type=float)
    run.add_argument("--health-timeout", type=float)
    run.add_argument("--restart-timeout", type=float)
    run.add_argument("--failure-threshold", type=float, help="fraction of a batch allowed to fail")
    run.add_argument("--rollback-on-failure", action="store_true")
    run.add_argument("--confirm-on-breach", action="store_true",
                     help="ask before continuing past a failed batch instead of aborting")
    run.add_argument("--service", help="service name, defaults to the host's group")
    run.add_argument("--rollback-command", default=DEFAULT_ROLLBACK_COMMAND)
    run.add_argument("--ssh-option", action="append")
    run.add_argument("--no-sudo", action="store_true")
    run.add_argument("--max-connections", type=int)
    probe = run.add_mutually_exclusive_group()
    probe.add_argument("--health-url", help="URL template, e.g. http://{address}:8080/health")
    probe.add_argument("--health-port", type=int)
    run.add_argument("--simulate", action="store_true", help="use in-process fakes instead of ssh")
    run.add_argument("--simulate-delay", type=float, default=0.0)
    run.add_argument("--fail", action="append", metavar="HOST=N",
                     help="with --simulate, fail HOST's first N restarts (-1: always)")
    run.add_argument("--fail-probe", action="append", metavar="HOST=N",
                     help="with --simulate, fail HOST's first N health probes")
    run.add_argument("--resume", metavar="RESULT_JSON", help="only restart hosts skipped by a previous run")
    run.add_argument("--output", help="also write the result JSON here")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.cmd == "plan":
            return plan_command(args)
        return run_command(args)
    except Exception as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
