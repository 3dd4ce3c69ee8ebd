"""
Fixtures compartilhadas entre todos os testes.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


LOCAL_BASE = "https://cal.test"
REMOTE_ACTOR = "https://remote.test/users/alice"


# ---------------------------------------------------------------------------
# Chaves RSA geradas em memória: uma para contas locais, outra para o
# actor remoto simulado
# ---------------------------------------------------------------------------


def _key_pair() -> tuple[str, str]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture(scope="session")
def local_keys() -> tuple[str, str]:
    """(private_pem, public_pem) das contas locais criadas pelos testes."""
    return _key_pair()


@pytest.fixture(scope="session")
def remote_keys() -> tuple[str, str]:
    """(private_pem, public_pem) do actor remoto simulado."""
    return _key_pair()


# ---------------------------------------------------------------------------
# Configuração Dynaconf isolada para testes
# Usa monkeypatch para sobrescrever os atributos sem tocar em arquivos .toml
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def patch_settings(monkeypatch):
    from app import config

    monkeypatch.setattr(config.settings, "base_url", LOCAL_BASE)
    monkeypatch.setattr(config.settings, "production", False)
    monkeypatch.setattr(config.settings, "skip_signature_verify", False)
    monkeypatch.setattr(config.settings, "federation_timeout", 5.0)
    monkeypatch.setattr(config.settings, "outbox_page_size", 20)
    monkeypatch.setattr(config.settings, "remote_outbox_max_pages", 10)
    monkeypatch.setattr(config.settings, "signature_max_age", 43200)
    monkeypatch.setattr(config.settings, "discovery_concurrency", 5)
    monkeypatch.setattr(config.settings, "refresh_concurrency", 3)


@pytest.fixture(autouse=True)
def public_dns(monkeypatch):
    """
    Toda resolução DNS devolve um IP público: nenhum teste toca a rede e o
    guard de SSRF continua ativo. Testes de DNS rebinding sobrescrevem.
    """
    from app.activitypub import security

    resolver = AsyncMock(return_value=["93.184.216.34"])
    monkeypatch.setattr(security, "resolve_host", resolver)
    return resolver


@pytest.fixture(autouse=True)
def clean_hooks():
    from app.services import notifications

    notifications.clear_hooks()
    yield
    notifications.clear_hooks()


# ---------------------------------------------------------------------------
# Banco SQLite temporário por teste
# Arquivo (não :memory:) porque cada sessão abre sua própria conexão
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path, monkeypatch):
    from app import database
    from app.database import Base
    from app.models import account, actor, event, follow  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    monkeypatch.setattr(database, "async_session_factory", factory)
    yield factory

    from app.services import tasks

    await tasks.drain(timeout=5)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


# ---------------------------------------------------------------------------
# Factories de linhas
# ---------------------------------------------------------------------------


@pytest.fixture
def make_account(session_factory, local_keys):
    from app.models.account import Account

    async def _make(username: str = "cal", **fields) -> Account:
        private_pem, public_pem = local_keys
        fields.setdefault("public_key_pem", public_pem)
        fields.setdefault("private_key_pem", private_pem)
        async with session_factory() as s:
            async with s.begin():
                account = Account(username=username, **fields)
                s.add(account)
        return account

    return _make


@pytest.fixture
def make_event(session_factory):
    from app.models.account import Event, EventTag

    async def _make(account, start: datetime | None = None, tags=(), **fields) -> Event:
        fields.setdefault("title", "Encontro")
        event = Event(
            account_id=account.id,
            start_date=start or datetime(2026, 5, 1, 18, 0, tzinfo=timezone.utc),
            **fields,
        )
        event.tags = [EventTag(tag=t) for t in tags]
        async with session_factory() as s:
            async with s.begin():
                s.add(event)
        return event

    return _make


# ---------------------------------------------------------------------------
# Fediverso simulado: httpx.MockTransport no lugar dos servidores remotos
# ---------------------------------------------------------------------------


class FakeFediverse:
    """
    Rotas por (método, URL). Cada rota é `(status, json)` ou um callable que
    recebe o `httpx.Request`. Toda requisição fica registrada em `requests`.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def add(self, url: str, body=None, status: int = 200, method: str = "GET") -> None:
        self.routes[(method, str(httpx.URL(url)))] = (status, body)

    def on(self, url: str, handler, method: str = "GET") -> None:
        self.routes[(method, str(httpx.URL(url)))] = handler

    def inbox(self, url: str, status: int = 202) -> None:
        self.add(url, {}, status=status, method="POST")

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(route):
            return route(request)
        status, body = route
        return httpx.Response(status, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handle),
            follow_redirects=False,
        )

    def posted(self, url: str) -> list[dict]:
        target = str(httpx.URL(url))
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == "POST" and str(r.url) == target
        ]

    def fetched(self, url: str) -> int:
        target = str(httpx.URL(url))
        return sum(1 for r in self.requests if r.method == "GET" and str(r.url) == target)


@pytest.fixture
def fediverse(monkeypatch) -> FakeFediverse:
    from app.activitypub import fetcher

    fake = FakeFediverse()
    monkeypatch.setattr(fetcher, "http_client", fake.client)
    return fake


@pytest.fixture
def actor_document(remote_keys):
    """Factory de documentos de actor remoto no formato do Mastodon."""

    def _make(uri: str = REMOTE_ACTOR, shared_inbox: str | None = None, **extra) -> dict:
        base = uri.rsplit("/users/", 1)[0]
        document = {
            "@context": ["https://www.w3.org/ns/activitystreams", "https://w3id.org/security/v1"],
            "id": uri,
            "type": "Person",
            "preferredUsername": uri.rstrip("/").rsplit("/", 1)[-1],
            "name": "Alice",
            "summary": "<p>Olá</p>",
            "inbox": f"{uri}/inbox",
            "outbox": f"{uri}/outbox",
            "followers": f"{uri}/followers",
            "following": f"{uri}/following",
            "publicKey": {
                "id": f"{uri}#main-key",
                "owner": uri,
                "publicKeyPem": remote_keys[1],
            },
        }
        if shared_inbox:
            document["endpoints"] = {"sharedInbox": shared_inbox}
        elif shared_inbox is None:
            document["endpoints"] = {"sharedInbox": f"{base}/inbox"}
        document.update(extra)
        return document

    return _make


@pytest.fixture
def remote_actor(fediverse, actor_document):
    """Registra o actor remoto padrão e o inbox dele no fediverso simulado."""
    document = actor_document()
    fediverse.add(REMOTE_ACTOR, document)
    fediverse.inbox(document["inbox"])
    fediverse.inbox(document["endpoints"]["sharedInbox"])
    return document


@pytest.fixture
def signed_request(remote_keys):
    """
    Monta (corpo, headers) assinados pelo actor remoto para um POST em
    `path` deste servidor.
    """
    from app.activitypub.signatures import sign_request

    def _make(activity: dict, path: str, key_id: str = f"{REMOTE_ACTOR}#main-key"):
        body = json.dumps(activity).encode()
        headers = sign_request("POST", f"{LOCAL_BASE}{path}", body, remote_keys[0], key_id)
        return body, headers

    return _make
