from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

import httpx

from lemmyfed_harness.client import ApiClient
from lemmyfed_harness.config import HarnessConfig
from lemmyfed_harness.errors import AuthError
from lemmyfed_harness.schemas import LoginForm

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Instance:
    name: str
    base_url: str
    federation_host: str
    seed_username: str
    http: httpx.AsyncClient = field(repr=False)
    credential: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class Session:
    instance: Instance
    credential: str = field(repr=False)
    username: str
    api_prefix: str

    @property
    def api(self) -> ApiClient:
        return ApiClient.for_session(self)


class InstanceRegistry:
    """Named server endpoints plus the seed credentials obtained for them.

    One registry is built per suite run and handed to every scenario.
    """

    def __init__(
        self,
        config: HarnessConfig | None = None,
        *,
        transports: Mapping[str, httpx.AsyncBaseTransport] | None = None,
    ) -> None:
        self.config = config or HarnessConfig()
        self._transports = dict(transports or {})
        self._instances: dict[str, Instance] = {}
        self._seed_sessions: dict[str, Session] = {}
        for endpoint in self.config.instances:
            self.register(
                endpoint.name,
                endpoint.base_url,
                federation_host=endpoint.federation_host,
                seed_username=endpoint.seed_username,
            )

    async def __aenter__(self) -> "InstanceRegistry":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def names(self) -> list[str]:
        return list(self._instances)

    def register(
        self,
        name: str,
        base_url: str,
        *,
        federation_host: str | None = None,
        seed_username: str | None = None,
    ) -> Instance:
        if name in self._instances:
            raise ValueError(f"instance already registered: {name}")
        base_url = base_url.rstrip("/")
        http = httpx.AsyncClient(
            base_url=base_url,
            timeout=self.config.request_timeout_seconds,
            transport=self._transports.get(name),
        )
        instance = Instance(
            name=name,
            base_url=base_url,
            federation_host=federation_host or httpx.URL(base_url).netloc.decode("ascii"),
            seed_username=seed_username or f"lemmy_{name}",
            http=http,
        )
        self._instances[name] = instance
        return instance

    def get(self, name: str) -> Instance:
        try:
            return self._instances[name]
        except KeyError as exc:
            raise KeyError(f"unknown instance: {name}") from exc

    def __getitem__(self, name: str) -> Instance:
        return self.get(name)

    def anonymous(self, name: str) -> ApiClient:
        return ApiClient(self.get(name), api_prefix=self.config.api_prefix)

    async def login(self, instance: Instance, username: str, password: str) -> Session:
        form = LoginForm(username_or_email=username, password=password)
        response = await ApiClient(instance, api_prefix=self.config.api_prefix).post(
            "/user/login", form.payload()
        )
        jwt = response.get("jwt")
        if not isinstance(jwt, str) or not jwt:
            raise AuthError(
                f"login to {instance.name} as {username} returned no credential",
                operation=f"login {instance.name}",
            )
        if username == instance.seed_username:
            instance.credential = jwt
        logger.info("logged in to %s as %s", instance.name, username)
        return Session(instance=instance, credential=jwt, username=username, api_prefix=self.config.api_prefix)

    async def login_all(self) -> dict[str, Session]:
        """Log every seed account in concurrently and keep the sessions."""

        instances = list(self._instances.values())
        sessions = await asyncio.gather(
            *(self.login(instance, instance.seed_username, self.config.password) for instance in instances)
        )
        for instance, session in zip(instances, sessions):
            self._seed_sessions[instance.name] = session
        return dict(self._seed_sessions)

    def seed_session(self, name: str) -> Session:
        session = self._seed_sessions.get(name)
        if session is None:
            instance = self.get(name)
            if instance.credential is None:
                raise AuthError(f"instance {name} has no seed credential; log in first", operation=f"seed {name}")
            session = Session(
                instance=instance,
                credential=instance.credential,
                username=instance.seed_username,
                api_prefix=self.config.api_prefix,
            )
            self._seed_sessions[name] = session
        return session

    async def aclose(self) -> None:
        await asyncio.gather(*(instance.http.aclose() for instance in self._instances.values()))
