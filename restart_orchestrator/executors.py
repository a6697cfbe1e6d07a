"""Concrete capabilities: systemd restarts over ssh, HTTP and TCP probes."""
import asyncio
import shlex

import httpx

from .errors import ConfigError, ExecutionError, HealthCheckError, RollbackError
from .logger import get_logger

DEFAULT_RESTART_COMMAND = "systemctl restart {service}"
DEFAULT_ROLLBACK_COMMAND = "systemctl restart {service}@previous"


def _template_fields(host, service=None):
    conn = dict(host.connection)
    fields = {
        "host_id": host.host_id,
        "address": conn.get("address", host.host_id),
        "group": host.primary_group,
        "service": host.service or service or host.primary_group,
    }
    fields.update({k: v for k, v in conn.items() if k not in fields})
    return fields


class SSHExecutor:
    """Restarts services with the local `ssh` client.

    Each call opens one ssh session, so `max_connections` caps how many hosts
    of a batch are restarted at the same time.
    """

    def __init__(self, service=None, ssh_options=(), max_connections=None, use_sudo=True,
                 restart_command=DEFAULT_RESTART_COMMAND, rollback_command=DEFAULT_ROLLBACK_COMMAND,
                 ssh_binary="ssh"):
        self.service = service
        self.ssh_options = list(ssh_options)
        self.max_connections = max_connections
        self.use_sudo = use_sudo
        self.restart_command = restart_command
        self.rollback_command = rollback_command
        self.ssh_binary = ssh_binary
        self.logger = get_logger("ssh")

    def build_command(self, host, template):
        fields = _template_fields(host, self.service)
        try:
            remote = template.format(**fields)
        except KeyError as e:
            raise ConfigError(f"{host.host_id}: command template needs {e}") from e
        if self.use_sudo:
            remote = f"sudo {remote}"

        conn = host.connection
        target = fields["address"]
        if conn.get("user"):
            target = f"{conn['user']}@{target}"
        cmd = [self.ssh_binary, "-o", "BatchMode=yes", *self.ssh_options]
        if conn.get("port"):
            cmd += ["-p", str(conn["port"])]
        cmd += [target, remote]
        return cmd

    async def _run(self, host, template):
        cmd = self.build_command(host, template)
        self.logger.debug(f"{host.host_id}: {shlex.join(cmd)}")
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            finally:
                await proc.wait()
            raise
        return proc.returncode, stderr.decode(errors="replace").strip()

    async def restart(self, host):
        try:
            code, stderr = await self._run(host, self.restart_command)
        except OSError as e:
            raise ExecutionError(host.host_id, f"could not run ssh: {e}") from e
        if code != 0:
            raise ExecutionError(host.host_id, f"restart exited with {code}: {stderr[:500]}")

    async def rollback(self, host):
        if not self.rollback_command:
            raise RollbackError(host.host_id, "no rollback command configured")
        try:
            code, stderr = await self._run(host, self.rollback_command)
        except OSError as e:
            raise RollbackError(host.host_id, f"could not run ssh: {e}") from e
        if code != 0:
            raise RollbackError(host.host_id, f"rollback exited with {code}: {stderr[:500]}")


class HttpHealthChecker:
    """GETs the service's health URL; healthy on an expected status code.

    The URL comes from the host's `health_url` connection entry, else from
    `url_template` formatted with the host's fields.
    """

    def __init__(self, url_template=None, expected_status=range(200, 400), verify=True, transport=None):
        self.url_template = url_template
        self.expected_status = expected_status
        self.verify = verify
        self.transport = transport
        self.logger = get_logger("http")

    def url_for(self, host):
        url = host.connection.get("health_url") or self.url_template
        if not url:
            raise ConfigError(f"{host.host_id}: no health URL configured")
        try:
            return url.format(**_template_fields(host))
        except KeyError as e:
            raise ConfigError(f"{host.host_id}: health URL template needs {e}") from e

    async def check(self, host, timeout):
        url = self.url_for(host)
        try:
            async with httpx.AsyncClient(timeout=timeout, verify=self.verify, transport=self.transport) as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            raise HealthCheckError(host.host_id, f"GET {url} failed: {e}") from e
        if resp.status_code not in self.expected_status:
            self.logger.debug(f"{host.host_id}: GET {url} returned {resp.status_code}")
            return False
        return True


class TcpHealthChecker:
    """Healthy when the service port accepts a TCP connection"""

    def __init__(self, port=None):
        self.port = port

    async def check(self, host, timeout):
        address = host.connection.get("address", host.host_id)
        port = host.connection.get("health_port") or self.port
        if not port:
            raise ConfigError(f"{host.host_id}: no health port configured")
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(address, int(port)), timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise HealthCheckError(host.host_id, f"connect to {address}:{port} failed: {e!r}") from e
        writer.close()
        await writer.wait_closed()
        return True
