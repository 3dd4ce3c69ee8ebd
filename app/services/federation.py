"""
app/services/federation.py

Operações de federação iniciadas por uma conta local.

- `follow_remote_actor()`   — envia Follow; a aresta só é gravada com 2xx
- `unfollow_remote_actor()` — envia Undo(Follow) e remove a aresta
- `search_remote_actor()`   — `user@domain`, `@user@domain` ou URL → actor
- `import_remote_events()`  — percorre o outbox do actor e grava os Events
"""

import logging
import re
from typing import Any
from urllib.parse import urlsplit
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.activitypub.actor import AS_CONTEXT, actor_url, key_id_for
from app.activitypub.delivery import deliver_activity
from app.activitypub.discovery import discover_domain_actors
from app.activitypub.events import attributed_to, store_remote_event
from app.activitypub.fetcher import FetchError, fetch_ap
from app.activitypub.keys import ensure_key_pair
from app.activitypub.outbox import fetch_remote_outbox
from app.activitypub.resolver import as_uri, resolve_remote_actor, webfinger_lookup
from app.activitypub.security import UnsafeURLError, is_private_ip
from app.models.account import Account
from app.models.actor import RemoteActor
from app.models.follow import RemoteFollowing
from app.services.tasks import spawn

log = logging.getLogger(__name__)

_HANDLE = re.compile(r"@?([^@\s]+)@([^@\s]+)")


class InvalidHandleError(ValueError):
    """Consulta que não é `user@domain`, `@user@domain` nem URL http(s)."""


# ---------------------------------------------------------------------------
# Follow / Unfollow
# ---------------------------------------------------------------------------

async def follow_remote_actor(
    session: AsyncSession,
    account: Account,
    actor_uri: str,
) -> bool:
    """Retorna True quando o servidor remoto aceitou (2xx) o Follow."""
    actor = await resolve_remote_actor(session, actor_uri)
    if actor is None:
        return False

    keys = await ensure_key_pair(session, account)
    local_actor = actor_url(account.username)
    follow = {
        "@context": AS_CONTEXT,
        "id": f"{local_actor}#follow-{uuid4()}",
        "type": "Follow",
        "actor": local_actor,
        "object": actor.uri,
    }

    delivered = await deliver_activity(
        actor.inbox, follow, keys.private_key_pem, key_id_for(account.username)
    )
    if delivered:
        await session.merge(
            RemoteFollowing(account_id=account.id, actor_uri=actor.uri, actor_inbox=actor.inbox)
        )
        await session.flush()
        log.info(f"{account.username} agora segue {actor.uri}")
    return delivered


async def unfollow_remote_actor(
    session: AsyncSession,
    account: Account,
    actor_uri: str,
) -> bool:
    """Envia Undo(Follow) e remove a aresta mesmo que a entrega falhe."""
    actor = await resolve_remote_actor(session, actor_uri)
    delivered = False

    if actor is not None:
        keys = await ensure_key_pair(session, account)
        local_actor = actor_url(account.username)
        undo = {
            "@context": AS_CONTEXT,
            "id": f"{local_actor}#undo-follow-{uuid4()}",
            "type": "Undo",
            "actor": local_actor,
            "object": {
                "type": "Follow",
                "actor": local_actor,
                "object": actor.uri,
            },
        }
        delivered = await deliver_activity(
            actor.inbox, undo, keys.private_key_pem, key_id_for(account.username)
        )

    await session.execute(
        delete(RemoteFollowing).where(
            RemoteFollowing.account_id == account.id,
            RemoteFollowing.actor_uri == actor_uri,
        )
    )
    log.info(f"{account.username} deixou de seguir {actor_uri}")
    return delivered


# ---------------------------------------------------------------------------
# Busca
# ---------------------------------------------------------------------------

async def search_remote_actor(session: AsyncSession, query: str) -> RemoteActor | None:
    """
    Resolve um actor remoto a partir de handle ou URL e dispara, em
    background, a descoberta dos demais perfis do mesmo domínio.
    """
    query = query.strip()
    if query.startswith(("https://", "http://")):
        actor_uri = query
    else:
        match = _HANDLE.fullmatch(query)
        if match is None:
            raise InvalidHandleError(query)
        username, domain = match.groups()
        if is_private_ip(domain):
            log.warning(f"Busca recusada para domínio interno: {domain}")
            return None
        actor_uri = await webfinger_lookup(username, domain)
        if actor_uri is None:
            return None

    actor = await resolve_remote_actor(session, actor_uri, force_refresh=True)
    if actor is None:
        return None

    if actor.domain:
        spawn(discover_domain_actors(actor.domain))
    return actor


# ---------------------------------------------------------------------------
# Importação de eventos
# ---------------------------------------------------------------------------

async def _dereference(value: Any) -> dict | None:
    if isinstance(value, dict):
        return value
    if not isinstance(value, str):
        return None
    try:
        data = await fetch_ap(value)
    except (FetchError, UnsafeURLError) as e:
        log.info(f"Item de outbox indisponível {value}: {e}")
        return None
    return data if isinstance(data, dict) else None


def _is_reference(obj: dict) -> bool:
    """Objeto mínimo `{id, type}` sem título nem início."""
    return bool(obj.get("id")) and not any(
        obj.get(key) for key in ("name", "title", "startTime", "startDate")
    )


async def import_remote_events(session: AsyncSession, actor_uri: str) -> tuple[int, int]:
    """
    Grava como `RemoteEvent` os Events de Create/Announce no outbox do actor.
    Retorna `(importados, itens no outbox)`.
    """
    actor = await resolve_remote_actor(session, actor_uri, force_refresh=True)
    if actor is None or not actor.outbox:
        log.info(f"Importação de {actor_uri} sem actor ou outbox")
        return 0, 0

    items = await fetch_remote_outbox(actor.outbox)
    imported = 0

    for item in items:
        activity = await _dereference(item)
        if activity is None or activity.get("type") not in ("Create", "Announce"):
            continue

        obj = await _dereference(activity.get("object"))
        if obj is None or obj.get("type") != "Event":
            continue
        if _is_reference(obj):
            obj = await _dereference(as_uri(obj))
            if obj is None or obj.get("type") != "Event":
                continue

        title = obj.get("name") or obj.get("title")
        start = obj.get("startTime") or obj.get("startDate")
        if not title or not start:
            continue

        owner = attributed_to(obj) or actor.uri
        if urlsplit(owner).hostname is None:
            continue

        if await store_remote_event(session, obj, owner) is not None:
            imported += 1

    log.info(f"{imported} evento(s) importados de {actor.uri} ({len(items)} itens)")
    return imported, len(items)
