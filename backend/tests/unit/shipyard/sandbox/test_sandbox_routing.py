"""Unit tests for sandbox routing strategies."""

import random

import pytest

from shipyard.db.enums import ServicesMode
from shipyard.sandbox.configs import RoutingMode
from shipyard.sandbox.routing import get_routing_strategy
from shipyard.sandbox.routing import LocalPortRoutingStrategy
from shipyard.sandbox.routing import ProxyRoutingStrategy


class TestProxyRoutingStrategy:
    """Tests for reverse-proxy routing."""

    def test_full_sandbox_gets_host_rule_labels(self) -> None:
        strategy = ProxyRoutingStrategy(base_domain="example.com", app_port=3000)

        route = strategy.prepare("s1", ServicesMode.FULL)

        router = "shipyard-sandbox-s1"
        assert route.url == "https://preview-s1.example.com"
        assert route.labels["traefik.enable"] == "true"
        assert (
            route.labels[f"traefik.http.routers.{router}.rule"]
            == "Host(`preview-s1.example.com`)"
        )
        assert route.labels[f"traefik.http.routers.{router}.entrypoints"] == "websecure"
        assert (
            route.labels[f"traefik.http.routers.{router}.tls.certresolver"]
            == "letsencrypt"
        )
        assert (
            route.labels[f"traefik.http.services.{router}.loadbalancer.server.port"]
            == "3000"
        )

    def test_no_host_port_is_opened(self) -> None:
        route = ProxyRoutingStrategy(base_domain="example.com").prepare(
            "s1", ServicesMode.FULL
        )
        assert route.host_port is None
        assert route.port_bindings == {}

    @pytest.mark.parametrize(
        "services_mode", [ServicesMode.AGENT_ONLY, ServicesMode.COMMAND]
    )
    def test_non_full_sandboxes_get_no_route(
        self, services_mode: ServicesMode
    ) -> None:
        route = ProxyRoutingStrategy(base_domain="example.com").prepare(
            "s1", services_mode
        )
        assert route.url is None
        assert route.labels == {}


class TestLocalPortRoutingStrategy:
    """Tests for local port routing."""

    def test_binds_port_from_range(self) -> None:
        strategy = LocalPortRoutingStrategy(
            port_range_start=4000,
            port_range_end=4010,
            app_port=3000,
            rng=random.Random(42),
        )

        route = strategy.prepare("s1", ServicesMode.FULL)

        assert route.host_port is not None
        assert 4000 <= route.host_port <= 4010
        assert route.url == f"http://localhost:{route.host_port}"
        assert route.port_bindings == {"3000/tcp": route.host_port}
        assert route.labels == {}

    def test_single_port_range(self) -> None:
        strategy = LocalPortRoutingStrategy(port_range_start=4321, port_range_end=4321)
        assert strategy.prepare("s1", ServicesMode.FULL).host_port == 4321

    def test_agent_only_gets_no_port(self) -> None:
        strategy = LocalPortRoutingStrategy(port_range_start=4000, port_range_end=4010)
        route = strategy.prepare("s1", ServicesMode.AGENT_ONLY)
        assert route.url is None
        assert route.port_bindings == {}

    def test_rejects_inverted_range(self) -> None:
        with pytest.raises(ValueError):
            LocalPortRoutingStrategy(port_range_start=5000, port_range_end=4000)


class TestGetRoutingStrategy:
    def test_selects_by_mode(self) -> None:
        assert isinstance(get_routing_strategy(RoutingMode.PROXY), ProxyRoutingStrategy)
        assert isinstance(
            get_routing_strategy(RoutingMode.LOCAL_PORT), LocalPortRoutingStrategy
        )
