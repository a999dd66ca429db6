from __future__ import annotations

import httpx
import pytest

from lemmyfed_harness.config import ConvergencePolicy, HarnessConfig
from lemmyfed_harness.registry import InstanceRegistry
from lemmyfed_harness.scenario import ScenarioContext
from lemmyfed_instance_sim.main import create_apps
from lemmyfed_instance_sim.network import FederationNetwork

FAST_POLICY = ConvergencePolicy(timeout_seconds=3.0, poll_interval_seconds=0.02)
FAST_RELAY_POLICY = ConvergencePolicy(timeout_seconds=0.5, poll_interval_seconds=0.02)


def build_network(config: HarnessConfig, **kwargs) -> FederationNetwork:
    kwargs.setdefault("delivery_delay", 0.01)
    hosts = {endpoint.name: endpoint.federation_host for endpoint in config.instances}
    return FederationNetwork(hosts, password=config.password, **kwargs)


def build_registry(config: HarnessConfig, network: FederationNetwork) -> InstanceRegistry:
    transports = {name: httpx.ASGITransport(app=app) for name, app in create_apps(network).items()}
    return InstanceRegistry(config, transports=transports)


@pytest.fixture
def harness_config() -> HarnessConfig:
    return HarnessConfig(federation=FAST_POLICY, relay=FAST_RELAY_POLICY)


@pytest.fixture
def network(harness_config: HarnessConfig) -> FederationNetwork:
    return build_network(harness_config)


@pytest.fixture
async def registry(harness_config: HarnessConfig, network: FederationNetwork):
    registry = build_registry(harness_config, network)
    await registry.login_all()
    yield registry
    await registry.aclose()


@pytest.fixture
def context(registry: InstanceRegistry) -> ScenarioContext:
    return ScenarioContext(registry)


@pytest.fixture
def make_network(harness_config: HarnessConfig):
    def factory(**kwargs) -> FederationNetwork:
        return build_network(harness_config, **kwargs)

    return factory


@pytest.fixture
def make_registry(harness_config: HarnessConfig):
    def factory(network: FederationNetwork, config: HarnessConfig | None = None) -> InstanceRegistry:
        return build_registry(config or harness_config, network)

    return factory
