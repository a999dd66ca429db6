from __future__ import annotations

import os
from dataclasses import dataclass, field

INSTANCE_NAMES = ("alpha", "beta", "gamma", "delta", "epsilon")
DEFAULT_PASSWORD = "lemmylemmy"
DEFAULT_API_PREFIX = "/api/v3"
_FIRST_PORT = 8541
_PORT_STEP = 10


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _env_float(name: str, default: float) -> float:
    raw = _env_or_default(name, "")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class ConvergencePolicy:
    timeout_seconds: float = 10.0
    poll_interval_seconds: float = 0.5

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.poll_interval_seconds > self.timeout_seconds:
            raise ValueError("poll_interval_seconds must not exceed timeout_seconds")


FEDERATION_POLICY = ConvergencePolicy(timeout_seconds=10.0, poll_interval_seconds=0.5)
RELAY_POLICY = ConvergencePolicy(timeout_seconds=60.0, poll_interval_seconds=0.5)


@dataclass(frozen=True)
class InstanceEndpoint:
    name: str
    base_url: str
    federation_host: str
    seed_username: str


def default_endpoint(name: str, index: int) -> InstanceEndpoint:
    port = _FIRST_PORT + index * _PORT_STEP
    return InstanceEndpoint(
        name=name,
        base_url=f"http://127.0.0.1:{port}",
        federation_host=f"lemmy-{name}:{port}",
        seed_username=f"lemmy_{name}",
    )


@dataclass(frozen=True)
class HarnessConfig:
    instances: tuple[InstanceEndpoint, ...] = field(
        default_factory=lambda: tuple(default_endpoint(name, index) for index, name in enumerate(INSTANCE_NAMES))
    )
    password: str = DEFAULT_PASSWORD
    api_prefix: str = DEFAULT_API_PREFIX
    request_timeout_seconds: float = 10.0
    federation: ConvergencePolicy = FEDERATION_POLICY
    relay: ConvergencePolicy = RELAY_POLICY

    def endpoint(self, name: str) -> InstanceEndpoint:
        for endpoint in self.instances:
            if endpoint.name == name:
                return endpoint
        raise KeyError(f"unknown instance: {name}")

    @classmethod
    def from_env(cls) -> "HarnessConfig":
        instances: list[InstanceEndpoint] = []
        for index, name in enumerate(INSTANCE_NAMES):
            default = default_endpoint(name, index)
            prefix = f"LEMMYFED_{name.upper()}"
            instances.append(
                InstanceEndpoint(
                    name=name,
                    base_url=_env_or_default(f"{prefix}_URL", default.base_url).rstrip("/"),
                    federation_host=_env_or_default(f"{prefix}_HOST", default.federation_host),
                    seed_username=_env_or_default(f"{prefix}_USERNAME", default.seed_username),
                )
            )

        poll_interval = _env_float("LEMMYFED_POLL_INTERVAL_SECONDS", FEDERATION_POLICY.poll_interval_seconds)
        return cls(
            instances=tuple(instances),
            password=_env_or_default("LEMMYFED_PASSWORD", DEFAULT_PASSWORD),
            api_prefix="/" + _env_or_default("LEMMYFED_API_PREFIX", DEFAULT_API_PREFIX).strip("/"),
            request_timeout_seconds=_env_float("LEMMYFED_REQUEST_TIMEOUT_SECONDS", 10.0),
            federation=ConvergencePolicy(
                timeout_seconds=_env_float(
                    "LEMMYFED_CONVERGENCE_TIMEOUT_SECONDS", FEDERATION_POLICY.timeout_seconds
                ),
                poll_interval_seconds=poll_interval,
            ),
            relay=ConvergencePolicy(
                timeout_seconds=_env_float("LEMMYFED_RELAY_TIMEOUT_SECONDS", RELAY_POLICY.timeout_seconds),
                poll_interval_seconds=poll_interval,
            ),
        )
