"""
workers/refresh_worker.py

Worker assíncrono que mantém o cache de actors remotos atualizado.

A cada ciclo:
1. Re-resolve os actors mais antigos do cache (last_fetched_at além do limite)
2. Roda a descoberta de diretório para até 5 domínios conhecidos que não
   foram descobertos recentemente
"""

import asyncio
import logging
from datetime import timedelta
from typing import NamedTuple

from sqlalchemy import select

from app import database
from app.activitypub.discovery import discover_domain_actors
from app.activitypub.resolver import resolve_remote_actor
from app.config import settings
from app.database import utcnow
from app.models.actor import DomainDiscovery, RemoteActor

log = logging.getLogger(__name__)

DISCOVERY_DOMAINS_PER_RUN = 5
DISCOVERY_MAX_ACCOUNTS = 200


class RefreshResult(NamedTuple):
    refreshed: int
    discovered: int


async def _refresh_one(uri: str, limiter: asyncio.Semaphore) -> bool:
    async with limiter:
        async with database.async_session_factory() as session:
            async with session.begin():
                actor = await resolve_remote_actor(session, uri, force_refresh=True)
    return actor is not None


async def refresh_stale_actors(
    limit: int | None = None,
    max_age_hours: float | None = None,
) -> RefreshResult:
    limit = int(settings.refresh_batch_size if limit is None else limit)
    if max_age_hours is None:
        max_age_hours = float(settings.refresh_max_age_hours)
    cutoff = utcnow() - timedelta(hours=max_age_hours)

    async with database.async_session_factory() as session:
        stale = (
            await session.execute(
                select(RemoteActor.uri)
                .where(RemoteActor.last_fetched_at < cutoff)
                .order_by(RemoteActor.last_fetched_at)
                .limit(limit)
            )
        ).scalars().all()

        recently_discovered = select(DomainDiscovery.domain).where(
            DomainDiscovery.last_discovered_at > cutoff
        )
        domains = (
            await session.execute(
                select(RemoteActor.domain)
                .distinct()
                .where(RemoteActor.domain != "", RemoteActor.domain.not_in(recently_discovered))
                .limit(DISCOVERY_DOMAINS_PER_RUN)
            )
        ).scalars().all()

    limiter = asyncio.Semaphore(int(settings.refresh_concurrency))
    results = await asyncio.gather(
        *(_refresh_one(uri, limiter) for uri in stale),
        return_exceptions=True,
    )
    for uri, result in zip(stale, results):
        if isinstance(result, Exception):
            log.error(f"Erro ao atualizar {uri}: {result}")
    refreshed = sum(1 for result in results if result is True)

    discovered = 0
    for domain in domains:
        try:
            result = await discover_domain_actors(
                domain,
                max_accounts=DISCOVERY_MAX_ACCOUNTS,
                min_age_hours=float(settings.discovery_min_age_hours),
            )
        except Exception as e:
            log.error(f"Erro na descoberta de {domain}: {e}", exc_info=True)
            continue
        discovered += result.discovered

    log.info(f"Refresh: {refreshed}/{len(stale)} actors atualizados, {discovered} descobertos")
    return RefreshResult(refreshed, discovered)


async def run_worker() -> None:
    log.info("Worker de refresh iniciado")
    while True:
        try:
            await asyncio.sleep(float(settings.refresh_interval_seconds))
            await refresh_stale_actors()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Erro no worker: {e}", exc_info=True)
