import json
from pathlib import Path

import yaml

from .errors import ConfigError
from .logger import get_logger
from .models import Host

# Ansible connection variables and the connection keys they map to
CONNECTION_VARS = {
    "ansible_host": "address",
    "ansible_user": "user",
    "ansible_port": "port",
}
META_GROUPS = {"all", "ungrouped"}


def read_document(path):
    """Parse a YAML or JSON file; JSON is picked by the .json suffix"""
    path = Path(path)
    with open(path) as f:
        if path.suffix == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if data is None:
        raise ConfigError(f"{path} is empty")
    return data


def load_inventory(path, limit=None):
    logger = get_logger("inventory")
    try:
        hosts = parse_inventory(read_document(path))
    except Exception as e:
        logger.error(f"Error loading inventory {path}: {e}")
        raise
    if limit:
        hosts = select_hosts(hosts, limit)
    logger.info(f"Loaded {len(hosts)} hosts from {path}")
    return hosts


def parse_inventory(data):
    if isinstance(data, list):
        return [_host_from_record(record) for record in data]
    if not isinstance(data, dict):
        raise ConfigError("inventory must be a mapping of groups or a list of hosts")

    found = {}
    if "all" in data:
        _walk("all", data["all"], {}, found)
    else:
        for group, node in data.items():
            _walk(group, node, {}, found)
    return [_host_from_vars(host_id, entry["groups"], entry["vars"]) for host_id, entry in found.items()]


def _walk(group, node, inherited, found):
    node = node or {}
    if not isinstance(node, dict):
        raise ConfigError(f"group {group!r} must be a mapping")
    group_vars = {**inherited, **(node.get("vars") or {})}

    hosts = node.get("hosts") or {}
    if isinstance(hosts, list):
        hosts = {name: None for name in hosts}
    for host_id, host_vars in hosts.items():
        entry = found.setdefault(str(host_id), {"groups": [], "vars": {}})
        if group not in META_GROUPS and group not in entry["groups"]:
            entry["groups"].append(group)
        # First group that defines a variable wins, host vars beat group vars
        for key, value in {**group_vars, **(host_vars or {})}.items():
            entry["vars"].setdefault(key, value)

    for child, child_node in (node.get("children") or {}).items():
        _walk(child, child_node, group_vars, found)


def _host_from_vars(host_id, groups, host_vars):
    connection = {}
    service = None
    for key, value in host_vars.items():
        if key == "service":
            service = value
        else:
            connection[CONNECTION_VARS.get(key, key)] = value
    return Host(host_id=host_id, groups=tuple(groups), connection=connection, service=service)


def _host_from_record(record):
    if not isinstance(record, dict) or not record.get("host_id"):
        raise ConfigError(f"host record needs a host_id: {record!r}")
    groups = record.get("groups") or ()
    if isinstance(groups, str):
        groups = (groups,)
    return Host(
        host_id=str(record["host_id"]),
        groups=tuple(groups),
        connection=dict(record.get("connection") or {}),
        service=record.get("service"),
    )


def select_hosts(hosts, limit):
    """Keep hosts whose id or any group is named in `limit`"""
    wanted = set(limit)
    selected = [h for h in hosts if h.host_id in wanted or wanted.intersection(h.groups)]
    if not selected:
        raise ConfigError(f"limit {sorted(wanted)} matched no hosts")
    return selected
