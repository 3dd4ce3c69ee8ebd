"""
app/activitypub/discovery.py

Descoberta de perfis de um domínio remoto via API de diretório.

Fluxo de `discover_domain_actors()`:
    rate limit (domain_discovery) → NodeInfo → software suportado?
    → /api/v1/directory paginado → WebFinger para entradas sem `uri`
    → resolução forçada de cada actor com concorrência limitada

A tentativa é sempre registrada em `domain_discovery`, com ou sem sucesso,
para que o rate limit valha independente do resultado.
"""

import asyncio
import logging
from datetime import timedelta
from typing import NamedTuple

from app import database
from app.activitypub.fetcher import FetchError, fetch_json
from app.activitypub.resolver import resolve_remote_actor, webfinger_lookup
from app.activitypub.security import UnsafeURLError, is_private_ip
from app.config import settings
from app.database import as_utc, utcnow
from app.models.actor import DomainDiscovery

log = logging.getLogger(__name__)

# Servidores da família Mastodon que expõem /api/v1/directory
DIRECTORY_SUPPORTED = {"mastodon", "pleroma", "glitch", "hometown"}

NODEINFO_RELS = (
    "http://nodeinfo.diaspora.software/ns/schema/2.1",
    "http://nodeinfo.diaspora.software/ns/schema/2.0",
)

DIRECTORY_PAGE_LIMIT = 80


class DiscoveryResult(NamedTuple):
    discovered: int
    software: str | None


async def fetch_nodeinfo(domain: str) -> str | None:
    """Nome do software (minúsculo) declarado no NodeInfo do domínio."""
    try:
        index = await fetch_json(f"https://{domain}/.well-known/nodeinfo")
        links = index.get("links") if isinstance(index, dict) else None
        href = next(
            (
                link.get("href")
                for link in links or []
                if isinstance(link, dict) and link.get("rel") in NODEINFO_RELS
            ),
            None,
        )
        if not isinstance(href, str):
            return None
        node = await fetch_json(href)
    except (FetchError, UnsafeURLError) as e:
        log.info(f"NodeInfo indisponível para {domain}: {e}")
        return None

    software = node.get("software") if isinstance(node, dict) else None
    name = software.get("name") if isinstance(software, dict) else None
    return name.lower() if isinstance(name, str) and name else None


async def fetch_mastodon_directory(domain: str, max_accounts: int) -> list[str]:
    """IRIs dos perfis locais listados no diretório; falhas truncam a lista."""
    uris: list[str] = []
    offset = 0

    while len(uris) < max_accounts:
        url = (
            f"https://{domain}/api/v1/directory"
            f"?limit={DIRECTORY_PAGE_LIMIT}&offset={offset}&order=active&local=true"
        )
        try:
            accounts = await fetch_json(url)
        except (FetchError, UnsafeURLError) as e:
            log.info(f"Diretório de {domain} interrompido no offset {offset}: {e}")
            break
        if not isinstance(accounts, list) or not accounts:
            break

        for entry in accounts:
            if not isinstance(entry, dict):
                continue
            uri = entry.get("uri")
            if isinstance(uri, str) and uri:
                uris.append(uri)
                continue

            acct = entry.get("acct") or entry.get("username")
            if not isinstance(acct, str) or not acct:
                continue
            user, _, host = acct.partition("@")
            actor_uri = await webfinger_lookup(user, host or domain)
            if actor_uri:
                uris.append(actor_uri)

        offset += len(accounts)
        if len(accounts) < DIRECTORY_PAGE_LIMIT:
            break

    return uris[:max_accounts]


async def _recently_discovered(domain: str, min_age_hours: float) -> bool:
    async with database.async_session_factory() as session:
        record = await session.get(DomainDiscovery, domain)
    if record is None:
        return False
    cutoff = utcnow() - timedelta(hours=min_age_hours)
    return as_utc(record.last_discovered_at) >= cutoff


async def _record_discovery(domain: str, software: str | None) -> None:
    async with database.async_session_factory() as session:
        async with session.begin():
            await session.merge(
                DomainDiscovery(
                    domain=domain,
                    last_discovered_at=utcnow(),
                    software_type=software,
                )
            )


async def _resolve_fresh(uri: str, limiter: asyncio.Semaphore) -> bool:
    async with limiter:
        async with database.async_session_factory() as session:
            async with session.begin():
                actor = await resolve_remote_actor(session, uri, force_refresh=True)
    return actor is not None


async def discover_domain_actors(
    domain: str,
    max_accounts: int | None = None,
    min_age_hours: float | None = None,
) -> DiscoveryResult:
    domain = domain.lower().strip()
    if not domain or is_private_ip(domain):
        return DiscoveryResult(0, None)

    if max_accounts is None:
        max_accounts = int(settings.discovery_max_accounts)
    if min_age_hours is None:
        min_age_hours = float(settings.discovery_min_age_hours)

    if await _recently_discovered(domain, min_age_hours):
        log.debug(f"Descoberta de {domain} ignorada: feita há menos de {min_age_hours}h")
        return DiscoveryResult(0, None)

    software: str | None = None
    discovered = 0
    try:
        software = await fetch_nodeinfo(domain)
        if software not in DIRECTORY_SUPPORTED:
            log.info(f"{domain} ({software or 'desconhecido'}) não expõe diretório")
            return DiscoveryResult(0, software)

        uris = await fetch_mastodon_directory(domain, max_accounts)
        limiter = asyncio.Semaphore(int(settings.discovery_concurrency))
        results = await asyncio.gather(
            *(_resolve_fresh(uri, limiter) for uri in uris),
            return_exceptions=True,
        )
        for uri, result in zip(uris, results):
            if isinstance(result, Exception):
                log.error(f"Erro ao resolver {uri} na descoberta de {domain}: {result}")
        discovered = sum(1 for result in results if result is True)
        log.info(f"Descoberta de {domain}: {discovered}/{len(uris)} perfis resolvidos")
        return DiscoveryResult(discovered, software)
    finally:
        await _record_discovery(domain, software)
