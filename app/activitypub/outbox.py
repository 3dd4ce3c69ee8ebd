"""
app/activitypub/outbox.py

Outbox em duas direções.

- `build_outbox()`       — serve o outbox de uma conta local: sem página,
  só o OrderedCollection com `totalItems` e `first`; com `?page=N`,
  Create (eventos próprios) + Announce (reposts e auto-reposts) ordenados
  pela data de início do evento, da mais recente para a mais antiga.
- `fetch_remote_outbox()` — percorre o outbox de um actor remoto.
"""

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.activitypub.actor import (
    AS_CONTEXT,
    AS_PUBLIC,
    actor_url,
    base_url,
    event_url,
    to_iso8601,
)
from app.activitypub.events import event_to_ap
from app.activitypub.fetcher import FetchError, fetch_ap
from app.activitypub.resolver import as_uri
from app.activitypub.security import UnsafeURLError
from app.config import settings
from app.database import as_utc
from app.models.account import Account, AutoRepost, Event, Repost

log = logging.getLogger(__name__)

REPOSTABLE_VISIBILITY = ("public", "unlisted")


# ---------------------------------------------------------------------------
# Consultas
# ---------------------------------------------------------------------------

def _reposted_ids(account_id: str):
    return select(Repost.event_id).where(Repost.account_id == account_id)


def _owned_query(account_id: str):
    return (
        select(Event)
        .where(Event.account_id == account_id, Event.visibility == "public")
        .order_by(Event.id)
    )


def _repost_query(account_id: str):
    return (
        select(Event, Repost.created_at)
        .join(Repost, Repost.event_id == Event.id)
        .where(Repost.account_id == account_id, Event.visibility.in_(REPOSTABLE_VISIBILITY))
        .order_by(Event.id)
    )


def _auto_repost_query(account_id: str):
    # Eventos de contas seguidas em modo auto-repost, menos os já
    # repostados explicitamente (dedup por id do evento)
    return (
        select(Event, AutoRepost.created_at)
        .join(AutoRepost, AutoRepost.source_account_id == Event.account_id)
        .where(
            AutoRepost.account_id == account_id,
            Event.visibility == "public",
            Event.id.not_in(_reposted_ids(account_id)),
        )
        .order_by(Event.id)
    )


async def _count(session: AsyncSession, query) -> int:
    result = await session.execute(select(func.count()).select_from(query.subquery()))
    return result.scalar_one()


async def count_outbox_items(session: AsyncSession, account: Account) -> int:
    return (
        await _count(session, _owned_query(account.id))
        + await _count(session, _repost_query(account.id))
        + await _count(session, _auto_repost_query(account.id))
    )


# ---------------------------------------------------------------------------
# Outbox local
# ---------------------------------------------------------------------------

def _page_number(page: Any) -> int:
    try:
        number = int(page)
    except (TypeError, ValueError):
        return 1
    return number if number >= 1 else 1


def _announce(event: Event, owner_url: str, reposted_at) -> dict:
    return {
        "id": f"{owner_url}/announce/{event.id}",
        "type": "Announce",
        "actor": owner_url,
        "published": to_iso8601(reposted_at),
        "to": [AS_PUBLIC],
        "cc": [f"{owner_url}/followers"],
        "object": event_url(event.id),
    }


async def build_outbox(session: AsyncSession, account: Account, page: Any = None) -> dict:
    owner_url = actor_url(account.username)
    outbox_url = f"{owner_url}/outbox"

    if page is None:
        return {
            "@context": AS_CONTEXT,
            "id": outbox_url,
            "type": "OrderedCollection",
            "totalItems": await count_outbox_items(session, account),
            "first": f"{outbox_url}?page=1",
        }

    items: list[tuple[Any, dict]] = []

    owned = await session.execute(_owned_query(account.id))
    for event in owned.scalars():
        activity = {
            "id": f"{base_url()}/events/{event.id}/activity",
            "type": "Create",
            "actor": owner_url,
            "published": to_iso8601(event.created_at),
            "to": [AS_PUBLIC],
            "cc": [f"{owner_url}/followers"],
            "object": event_to_ap(event, owner_url),
        }
        items.append((as_utc(event.start_date), activity))

    for query in (_repost_query(account.id), _auto_repost_query(account.id)):
        rows = await session.execute(query)
        for event, reposted_at in rows.all():
            items.append((as_utc(event.start_date), _announce(event, owner_url, reposted_at)))

    # Ordena pela data do evento referenciado, não pela data do repost
    items.sort(key=lambda item: item[0], reverse=True)

    number = _page_number(page)
    limit = int(settings.outbox_page_size)
    offset = (number - 1) * limit
    page_items = [activity for _, activity in items[offset:offset + limit]]

    collection_page = {
        "@context": AS_CONTEXT,
        "id": f"{outbox_url}?page={number}",
        "type": "OrderedCollectionPage",
        "partOf": outbox_url,
        "orderedItems": page_items,
    }
    if len(page_items) == limit:
        collection_page["next"] = f"{outbox_url}?page={number + 1}"
    return collection_page


# ---------------------------------------------------------------------------
# Outbox remoto
# ---------------------------------------------------------------------------

def _page_items(page: dict) -> list:
    items = page.get("orderedItems")
    if items is None:
        items = page.get("items")
    return list(items) if isinstance(items, list) else []


async def fetch_remote_outbox(outbox_url: str, max_pages: int | None = None) -> list:
    """
    Coleta os itens de um outbox remoto seguindo `next` até `max_pages`.

    Aceita `first` inline, `first` como URL ou `orderedItems` direto na
    coleção. Falha numa página trunca a coleta e devolve o que já veio.
    """
    if max_pages is None:
        max_pages = int(settings.remote_outbox_max_pages)

    try:
        outbox = await fetch_ap(outbox_url)
    except (FetchError, UnsafeURLError) as e:
        log.warning(f"Outbox indisponível em {outbox_url}: {e}")
        return []
    if not isinstance(outbox, dict):
        return []

    items: list = []
    next_url: str | None = None
    first = outbox.get("first")

    if isinstance(first, dict):
        items = _page_items(first)
        next_url = as_uri(first.get("next"))
    elif isinstance(first, str):
        try:
            page = await fetch_ap(first)
        except (FetchError, UnsafeURLError) as e:
            log.warning(f"Primeira página do outbox indisponível em {first}: {e}")
            return []
        if isinstance(page, dict):
            items = _page_items(page)
            next_url = as_uri(page.get("next"))
    else:
        items = _page_items(outbox)

    pages_fetched = 1
    while next_url and pages_fetched < max_pages:
        try:
            page = await fetch_ap(next_url)
        except (FetchError, UnsafeURLError) as e:
            log.info(f"Coleta do outbox interrompida em {next_url}: {e}")
            break
        if not isinstance(page, dict):
            break
        page_items = _page_items(page)
        if not page_items:
            break
        items.extend(page_items)
        next_url = as_uri(page.get("next"))
        pages_fetched += 1

    log.info(f"{len(items)} item(ns) coletados de {outbox_url} em {pages_fetched} página(s)")
    return items
