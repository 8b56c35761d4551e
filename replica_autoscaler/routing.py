"""
Load balancer integration.

Regenerates the nginx upstream block for a service from its live, healthy
instances and reloads nginx. Instances that fail their health check are
left out of the upstream; if fewer than the target replica count are
healthy the update fails so the caller can flag the mismatch.
"""

import logging
import os
import tempfile
import time
import urllib.error
import urllib.request
from typing import Dict, List, Optional

from replica_autoscaler.errors import RoutingError, RuntimeControlError
from replica_autoscaler.models import ServiceIdentity
from replica_autoscaler.runtime import run_command

logger = logging.getLogger()

INSPECT_FORMAT = "{{range .NetworkSettings.Networks}}{{.IPAddress}} {{end}}"


def http_ok(url: str, timeout: float) -> bool:
    try:
        with urllib.request.urlopen(urllib.request.Request(url, method="GET"), timeout=timeout) as response:
            return 200 <= response.status < 300
    except (urllib.error.URLError, OSError):
        return False


class ComposeInstanceResolver:
    """Resolves "ip:port" addresses of a compose service's containers."""

    def __init__(self, runtime, ports: Optional[Dict[ServiceIdentity, int]] = None, default_port: int = 80,
                 runner=run_command, command_timeout: float = 30.0):
        self.runtime = runtime
        self.ports = ports or {}
        self.default_port = default_port
        self.runner = runner
        self.command_timeout = command_timeout

    def resolve(self, service: ServiceIdentity) -> List[str]:
        port = self.ports.get(service, self.default_port)
        addresses = []
        for container_id in self.runtime.container_ids(service):
            output = self.runner(["docker", "inspect", "--format", INSPECT_FORMAT, container_id], self.command_timeout)
            ips = output.split()
            if not ips:
                logger.warning(f"Container {container_id} of {service} has no network address")
                continue
            addresses.append(f"{ips[0]}:{port}")
        return addresses


class NginxRoutingController:
    """
    Writes nginx upstream configs and reloads nginx.

    operation_timeout, when set, bounds a whole update_routing call: the
    time left after resolving instances is split evenly between the health
    checks and the reload.
    """

    def __init__(
        self,
        resolver,
        config_dir: str = "nginx",
        reload_command: Optional[List[str]] = None,
        health_check_path: str = "/health",
        health_check_timeout: float = 30.0,
        health_check_interval: float = 2.0,
        operation_timeout: Optional[float] = None,
        runner=run_command,
        probe=http_ok,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.resolver = resolver
        self.config_dir = config_dir
        self.reload_command = reload_command or ["docker-compose", "exec", "-T", "nginx", "nginx", "-s", "reload"]
        self.health_check_path = health_check_path
        self.health_check_timeout = health_check_timeout
        self.health_check_interval = health_check_interval
        self.runner = runner
        self.probe = probe
        self.sleep = sleep
        self.clock = clock
        self.operation_timeout = operation_timeout

    def upstream_path(self, service: ServiceIdentity) -> str:
        return os.path.join(self.config_dir, "upstreams", f"{service}_upstream.conf")

    def health_check_instance(self, address: str, timeout: Optional[float] = None) -> bool:
        """Poll the instance's health endpoint until it answers or the timeout passes."""
        url = f"http://{address}{self.health_check_path}"
        timeout = timeout or self.health_check_timeout
        deadline = self.clock() + timeout
        while True:
            if self.probe(url, self.health_check_interval):
                logger.info(f"Health check passed for {address}")
                return True
            if self.clock() >= deadline:
                logger.warning(f"Health check failed for {address} after {timeout} seconds")
                return False
            self.sleep(self.health_check_interval)

    def render_upstream(self, service: ServiceIdentity, addresses: List[str]) -> str:
        lines = [f"upstream {service}_upstream {{"]
        lines.extend(f"    server {address};" for address in addresses)
        lines.append("}")
        return "\n".join(lines) + "\n"

    def write_upstream(self, service: ServiceIdentity, addresses: List[str]) -> str:
        path = self.upstream_path(service)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".upstream-")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(self.render_upstream(service, addresses))
        os.replace(tmp_path, path)
        return path

    def reload_nginx(self, timeout: Optional[float] = None) -> None:
        logger.info("Reloading Nginx configuration")
        try:
            self.runner(self.reload_command, timeout or self.health_check_timeout)
        except RuntimeControlError as e:
            raise RoutingError(f"Nginx reload failed: {e}") from e

    def update_routing(self, service: ServiceIdentity, target: int) -> None:
        logger.info(f"Updating Nginx upstream for {service} ({target} replicas)")
        deadline = self.clock() + self.operation_timeout if self.operation_timeout else None
        try:
            instances = self.resolver.resolve(service)
        except RuntimeControlError as e:
            raise RoutingError(f"Could not resolve instances of {service}: {e}") from e

        step_timeout = self.health_check_timeout
        if deadline is not None:
            left = deadline - self.clock()
            if left <= 0:
                raise RoutingError(f"Routing update for {service} ran out of its {self.operation_timeout}s budget")
            # one share per instance plus one for the reload
            step_timeout = min(step_timeout, left / (len(instances) + 1))

        healthy = []
        for address in instances:
            if self.health_check_instance(address, step_timeout):
                healthy.append(address)
            else:
                logger.warning(f"Skipping unhealthy instance: {address}")

        if len(healthy) < target:
            raise RoutingError(f"Only {len(healthy)} of {target} {service} instances are healthy")

        try:
            path = self.write_upstream(service, healthy)
        except OSError as e:
            raise RoutingError(f"Failed to write upstream config for {service}: {e}") from e
        self.reload_nginx(step_timeout)
        logger.info(f"Updated upstream config for {service} with {len(healthy)} servers ({path})")


class ExternalRoutingController:
    """For runtimes whose traffic routing is managed elsewhere (e.g. cluster service discovery)."""

    def update_routing(self, service: ServiceIdentity, target: int) -> None:
        logger.info(f"Routing for {service} is managed externally; nothing to update for {target} replicas")
