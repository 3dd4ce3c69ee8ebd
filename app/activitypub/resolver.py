"""
app/activitypub/resolver.py

Resolução e cache de actors remotos.

- `resolve_remote_actor()` — devolve o cache sem checar idade; busca e faz
  upsert quando não há cache ou quando `force_refresh=True`
- `webfinger_lookup()`     — `user@domain` → IRI do actor
- `is_stale()`             — idade do snapshot, usada no refresh explícito

Falhas de rede ou de formato nunca propagam: o resultado é `None` e quem
chama (inbox, follow, descoberta) degrada sem erro.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any
from urllib.parse import quote, urlsplit

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.activitypub.fetcher import FetchError, fetch_ap, fetch_json
from app.activitypub.security import UnsafeURLError
from app.database import as_utc, utcnow
from app.models.actor import RemoteActor
from app.services.sanitize import sanitize_html, strip_html

log = logging.getLogger(__name__)


def as_uri(value: Any) -> str | None:
    """IRI de uma referência AS2: string, objeto com `id` ou lista (primeiro item)."""
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def _link_url(value: Any) -> str | None:
    """URL de `icon`/`image`: string, objeto Image/Link ou lista deles."""
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        url = value.get("url") or value.get("href")
        return _link_url(url) if not isinstance(url, str) else url
    return None


def _public_key(data: dict) -> dict:
    key = data.get("publicKey")
    if isinstance(key, list):
        key = next((k for k in key if isinstance(k, dict)), None)
    return key if isinstance(key, dict) else {}


def _total_items(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value >= 0 else None


async def fetch_collection_count(ref: Any) -> int | None:
    """`totalItems` de uma coleção inline ou de uma busca extra; None se desconhecido."""
    if ref is None:
        return None
    if isinstance(ref, dict) and "totalItems" in ref:
        return _total_items(ref["totalItems"])

    url = as_uri(ref)
    if not url:
        return None
    try:
        collection = await fetch_ap(url)
    except (FetchError, UnsafeURLError) as e:
        log.debug(f"Contagem indisponível para {url}: {e}")
        return None
    if not isinstance(collection, dict):
        return None
    return _total_items(collection.get("totalItems"))


def normalize_actor(data: dict) -> dict:
    """Converte o documento remoto nas colunas de `RemoteActor`."""
    endpoints = data.get("endpoints") if isinstance(data.get("endpoints"), dict) else {}
    key = _public_key(data)
    username = data.get("preferredUsername") if isinstance(data.get("preferredUsername"), str) else ""
    name = data.get("name") if isinstance(data.get("name"), str) else ""
    summary = data.get("summary")
    outbox = as_uri(data.get("outbox"))
    shared_inbox = endpoints.get("sharedInbox")

    return {
        "uri": data["id"],
        "type": data.get("type") if isinstance(data.get("type"), str) else "Person",
        "preferred_username": strip_html(username),
        "display_name": strip_html(name or username),
        "summary": sanitize_html(summary) if isinstance(summary, str) else None,
        "inbox": as_uri(data["inbox"]),
        "outbox": outbox,
        "shared_inbox": shared_inbox if isinstance(shared_inbox, str) else None,
        "followers_url": as_uri(data.get("followers")),
        "following_url": as_uri(data.get("following")),
        "icon_url": _link_url(data.get("icon")),
        "image_url": _link_url(data.get("image")),
        "public_key_id": key.get("id"),
        "public_key_pem": key.get("publicKeyPem"),
        "domain": urlsplit(data["id"]).hostname or "",
    }


async def resolve_remote_actor(
    session: AsyncSession,
    actor_uri: str,
    force_refresh: bool = False,
) -> RemoteActor | None:
    if not force_refresh:
        cached = await session.get(RemoteActor, actor_uri)
        if cached is not None:
            return cached

    try:
        data = await fetch_ap(actor_uri)
    except (FetchError, UnsafeURLError) as e:
        log.warning(f"Falha ao resolver actor {actor_uri}: {e}")
        return None

    if not isinstance(data, dict) or not as_uri(data.get("id")) or not as_uri(data.get("inbox")):
        log.warning(f"Documento de actor inválido em {actor_uri}: faltam id/inbox")
        return None
    data["id"] = as_uri(data["id"])

    problem = _identity_problem(data, actor_uri)
    if problem is not None:
        log.warning(f"Documento de actor recusado em {actor_uri}: {problem}")
        return None

    followers_count, following_count = await asyncio.gather(
        fetch_collection_count(data.get("followers")),
        fetch_collection_count(data.get("following")),
    )

    values = {
        **normalize_actor(data),
        "followers_count": followers_count,
        "following_count": following_count,
        "last_fetched_at": utcnow(),
    }
    actor = await _upsert_actor(session, values)
    log.info(f"Actor resolvido: {actor.uri}")
    return actor


def _identity_problem(data: dict, actor_uri: str) -> str | None:
    """O documento só vale para o IRI pedido, com `id` igual a ele e chave pública do próprio actor."""
    actor_id = data["id"]
    if actor_id != actor_uri:
        return f"id {actor_id} difere do IRI pedido"

    key = _public_key(data)
    owner = as_uri(key.get("owner"))
    if owner is not None and owner != actor_id:
        return f"chave pertence a {owner}"
    key_id = key.get("id")
    if isinstance(key_id, str) and urlsplit(key_id).hostname != urlsplit(actor_id).hostname:
        return f"keyId {key_id} é de outro domínio"
    return None


_UPSERT_INSERTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


async def _upsert_actor(session: AsyncSession, values: dict) -> RemoteActor:
    """
    INSERT ... ON CONFLICT(uri) DO UPDATE: resoluções concorrentes do mesmo
    actor em sessões diferentes convergem para uma linha (last-writer-wins).
    """
    insert = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
    if insert is None:
        actor = await session.merge(RemoteActor(**values))
        await session.flush()
        return actor

    statement = insert(RemoteActor).values(**values)
    statement = statement.on_conflict_do_update(
        index_elements=[RemoteActor.uri],
        set_={name: statement.excluded[name] for name in values if name != "uri"},
    )
    await session.execute(statement)
    return await session.get(RemoteActor, values["uri"], populate_existing=True)


def is_stale(actor: RemoteActor, max_age_hours: float = 24) -> bool:
    fetched = as_utc(actor.last_fetched_at)
    return fetched is None or fetched < utcnow() - timedelta(hours=max_age_hours)


async def webfinger_lookup(username: str, host: str) -> str | None:
    """Resolve `acct:user@host` e devolve o `href` do link `self` ActivityPub."""
    resource = quote(f"acct:{username}@{host}", safe=":@")
    url = f"https://{host}/.well-known/webfinger?resource={resource}"
    try:
        document = await fetch_json(url, accept="application/jrd+json, application/json")
    except (FetchError, UnsafeURLError) as e:
        log.info(f"WebFinger falhou para {username}@{host}: {e}")
        return None

    links = document.get("links") if isinstance(document, dict) else None
    for link in links or []:
        if not isinstance(link, dict) or link.get("rel") != "self":
            continue
        link_type = link.get("type", "")
        if link_type.startswith("application/activity+json") or "activitystreams" in link_type:
            href = link.get("href")
            if isinstance(href, str) and href:
                return href
    return None
