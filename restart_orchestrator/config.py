from dataclasses import fields

from .errors import ConfigError
from .inventory import read_document
from .logger import get_logger
from .models import RolloutPolicy

# Variable names used by the restart playbooks' vars files
ALIASES = {
    "service_restart_retries": "max_retries",
    "service_restart_delay": "retry_delay",
    "serial": "batch_size",
    "health_timeout": "health_check_timeout",
}


def policy_fields():
    return {f.name for f in fields(RolloutPolicy)}


def policy_from_mapping(data):
    if not isinstance(data, dict):
        raise ConfigError("policy must be a mapping")
    known = policy_fields()
    kwargs = {}
    for key, value in data.items():
        if key == "max_fail_percentage":
            # Ansible style percentage, 0-100
            try:
                kwargs["failure_threshold_per_batch"] = float(value) / 100.0
            except (TypeError, ValueError) as e:
                raise ConfigError(f"invalid max_fail_percentage: {value!r}") from e
            continue
        name = ALIASES.get(key, key)
        if name not in known:
            raise ConfigError(f"unknown policy setting: {key}")
        kwargs[name] = value
    try:
        return RolloutPolicy(**kwargs).validate()
    except TypeError as e:
        raise ConfigError(f"invalid policy: {e}") from e


def load_policy(path=None, overrides=None):
    """Build the RolloutPolicy from a vars file plus explicit overrides.

    Overrides set to None are ignored so CLI flags only replace what the
    user actually passed.
    """
    logger = get_logger("config")
    data = {}
    if path:
        data = read_document(path)
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: policy file must be a mapping")
        logger.debug(f"Loaded policy settings from {path}")
    data = dict(data)
    for key, value in (overrides or {}).items():
        if value is not None:
            data.pop(_alias_of(data, key), None)
            data[key] = value
    return policy_from_mapping(data)


def _alias_of(data, name):
    """The key in `data` that sets `name`, if spelled with an alias"""
    for alias, target in ALIASES.items():
        if target == name and alias in data:
            return alias
    if name == "failure_threshold_per_batch" and "max_fail_percentage" in data:
        return "max_fail_percentage"
    return name
