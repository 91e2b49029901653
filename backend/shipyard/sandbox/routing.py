"""Routing strategies for exposing a sandbox's preview app.

The strategy is chosen once from SANDBOX_ROUTING_MODE, never per sandbox:
- ProxyRoutingStrategy: reverse-proxy virtual hosts driven by labels, no host port
- LocalPortRoutingStrategy: binds a random host port from a configured range
"""

import random
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field

from shipyard.db.enums import ServicesMode
from shipyard.sandbox.configs import SANDBOX_APP_PORT
from shipyard.sandbox.configs import SANDBOX_BASE_DOMAIN
from shipyard.sandbox.configs import SANDBOX_PORT_RANGE_END
from shipyard.sandbox.configs import SANDBOX_PORT_RANGE_START
from shipyard.sandbox.configs import SANDBOX_ROUTING_MODE
from shipyard.sandbox.configs import RoutingMode
from shipyard.sandbox.naming import preview_hostname
from shipyard.sandbox.naming import sandbox_router_name


@dataclass
class RouteInfo:
    """Result of preparing routing for a sandbox.

    url is None when the sandbox gets no public route.
    """

    url: str | None = None
    host_port: int | None = None
    labels: dict[str, str] = field(default_factory=dict)
    # docker-py `ports` argument, e.g. {"3000/tcp": 4123}
    port_bindings: dict[str, int] = field(default_factory=dict)


class RoutingStrategy(ABC):
    def __init__(self, app_port: int = SANDBOX_APP_PORT) -> None:
        self._app_port = app_port

    def prepare(self, session_id: str, services_mode: ServicesMode) -> RouteInfo:
        """Compute the route for a sandbox.

        Only FULL sandboxes run the preview app, so agent-only and command
        sandboxes get an empty route.
        """
        if services_mode != ServicesMode.FULL:
            return RouteInfo()
        return self._prepare(session_id)

    @abstractmethod
    def _prepare(self, session_id: str) -> RouteInfo: ...


class ProxyRoutingStrategy(RoutingStrategy):
    def __init__(
        self,
        base_domain: str = SANDBOX_BASE_DOMAIN,
        app_port: int = SANDBOX_APP_PORT,
        entrypoint: str = "websecure",
        cert_resolver: str = "letsencrypt",
    ) -> None:
        super().__init__(app_port)
        self._base_domain = base_domain
        self._entrypoint = entrypoint
        self._cert_resolver = cert_resolver

    def _prepare(self, session_id: str) -> RouteInfo:
        host = preview_hostname(session_id, self._base_domain)
        router = sandbox_router_name(session_id)
        labels = {
            "traefik.enable": "true",
            f"traefik.http.routers.{router}.rule": f"Host(`{host}`)",
            f"traefik.http.routers.{router}.entrypoints": self._entrypoint,
            f"traefik.http.routers.{router}.tls.certresolver": self._cert_resolver,
            f"traefik.http.services.{router}.loadbalancer.server.port": str(
                self._app_port
            ),
        }
        return RouteInfo(url=f"https://{host}", labels=labels)


class LocalPortRoutingStrategy(RoutingStrategy):
    """Binds a pseudo-random host port.

    Ports are not de-duplicated across sandboxes; a collision surfaces as the
    container runtime's port-already-allocated error on create.
    """

    def __init__(
        self,
        port_range_start: int = SANDBOX_PORT_RANGE_START,
        port_range_end: int = SANDBOX_PORT_RANGE_END,
        app_port: int = SANDBOX_APP_PORT,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(app_port)
        if port_range_start > port_range_end:
            raise ValueError(
                f"Invalid port range {port_range_start}-{port_range_end}"
            )
        self._port_range_start = port_range_start
        self._port_range_end = port_range_end
        self._rng = rng or random.Random()

    def _prepare(self, session_id: str) -> RouteInfo:
        host_port = self._rng.randint(self._port_range_start, self._port_range_end)
        return RouteInfo(
            url=f"http://localhost:{host_port}",
            host_port=host_port,
            port_bindings={f"{self._app_port}/tcp": host_port},
        )


def get_routing_strategy(mode: RoutingMode = SANDBOX_ROUTING_MODE) -> RoutingStrategy:
    if mode == RoutingMode.PROXY:
        return ProxyRoutingStrategy()
    if mode == RoutingMode.LOCAL_PORT:
        return LocalPortRoutingStrategy()
    raise ValueError(f"Unknown routing mode: {mode}")
