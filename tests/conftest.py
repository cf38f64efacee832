from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from nolto_federation.core.settings import FederationSettings
from nolto_federation.db import DatabaseSessionManager
from nolto_federation.db.repository import FederationRepository
from nolto_federation.services.federation import FederationService


START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced Unix clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RemoteServer:
    """Scripted remote instances served through httpx.MockTransport."""

    def __init__(self):
        self.handlers: Dict[Tuple[str, str], Callable] = {}
        self.requests: List[httpx.Request] = []
        self.webfinger_accounts: Dict[str, Dict[str, dict]] = {}

    def route(
        self,
        method: str,
        url: str,
        status_code: int = 200,
        json: Optional[object] = None,
        text: Optional[str] = None,
        handler: Optional[Callable] = None,
    ) -> None:
        if handler is None:

            def handler(request: httpx.Request) -> httpx.Response:
                if text is not None:
                    return httpx.Response(status_code, text=text)
                return httpx.Response(status_code, json=json)

        self.handlers[(method.upper(), url)] = handler

    def count(self, url: str, method: str = "GET") -> int:
        return sum(
            1
            for request in self.requests
            if request.method == method and _without_query(request.url) == url
        )

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        handler = self.handlers.get((request.method, _without_query(request.url)))
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        return handler(request)


def _without_query(url: httpx.URL) -> str:
    return f"{url.scheme}://{url.host}{url.path}"


def add_remote_actor(
    remote: RemoteServer,
    username: str = "alice",
    domain: str = "example.social",
    *,
    link_type: str = "application/activity+json",
    with_inbox: bool = True,
) -> str:
    """Publishes a WebFinger JRD and actor document; returns the actor URL.

    Several accounts may share a domain; the WebFinger route answers by the
    ``resource`` query parameter and 404s for unknown accounts.
    """
    actor_url = f"https://{domain}/users/{username}"
    accounts = remote.webfinger_accounts.setdefault(domain, {})
    accounts[f"acct:{username}@{domain}"] = {
        "subject": f"acct:{username}@{domain}",
        "links": [
            {
                "rel": "http://webfinger.net/rel/profile-page",
                "type": "text/html",
                "href": f"https://{domain}/@{username}",
            },
            {"rel": "self", "type": link_type, "href": actor_url},
        ],
    }

    def webfinger(request: httpx.Request) -> httpx.Response:
        jrd = accounts.get(request.url.params.get("resource"))
        if jrd is None:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=jrd)

    remote.route("GET", f"https://{domain}/.well-known/webfinger", handler=webfinger)
    document = {"id": actor_url, "type": "Person", "preferredUsername": username}
    if with_inbox:
        document["inbox"] = f"{actor_url}/inbox"
    remote.route("GET", actor_url, json=document)
    return actor_url


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> FederationSettings:
    return FederationSettings(
        database_url=f"sqlite+pysqlite:///{tmp_path / 'federation.db'}",
        local_domain="nolto.social",
        local_accounts=("alice", "bob"),
        prometheus_port=0,
        background_workers_enabled=False,
        message_encryption_key="correct horse battery staple",
    )


@pytest.fixture
def db_manager(settings: FederationSettings) -> DatabaseSessionManager:
    manager = DatabaseSessionManager(settings.database_url)
    manager.create_all()
    yield manager
    manager.dispose()


@pytest.fixture
def repository(db_manager: DatabaseSessionManager, clock: FakeClock) -> FederationRepository:
    return FederationRepository(db_manager, clock=clock)


@pytest.fixture
def remote() -> RemoteServer:
    return RemoteServer()


@pytest.fixture
def http_client(remote: RemoteServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(remote))


@pytest.fixture
def service(
    settings: FederationSettings,
    repository: FederationRepository,
    http_client: httpx.AsyncClient,
    clock: FakeClock,
) -> FederationService:
    return FederationService.build(settings, repository, http_client, clock=clock)
