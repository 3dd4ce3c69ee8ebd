"""
app/activitypub/fetcher.py

Cliente HTTP de saída para federação.

Toda chamada passa antes por `validate_federation_url()`, nunca segue
redirects (evita SSRF via redirect e confusão de identidade) e carrega
timeout. Falhas viram `FetchError`; quem chama decide como degradar.
"""

import logging
from typing import Any

import httpx

from app.activitypub.security import validate_federation_url
from app.config import settings

log = logging.getLogger(__name__)

AP_ACCEPT = (
    'application/activity+json, '
    'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
)


class FetchError(Exception):
    """Resposta não-2xx, redirect recusado ou corpo que não é JSON."""


def http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=float(settings.federation_timeout),
        follow_redirects=False,
        headers={"User-Agent": settings.user_agent},
    )


async def fetch_json(url: str, accept: str = "application/json") -> Any:
    await validate_federation_url(url)

    try:
        async with http_client() as client:
            response = await client.get(url, headers={"Accept": accept})
    except httpx.HTTPError as e:
        raise FetchError(f"Falha ao buscar {url}: {e!r}") from e

    if response.is_redirect:
        raise FetchError(f"Redirect não seguido para {url} -> {response.headers.get('location')}")
    if not response.is_success:
        raise FetchError(f"Falha ao buscar {url}: {response.status_code}")

    try:
        return response.json()
    except ValueError as e:
        raise FetchError(f"Resposta de {url} não é JSON") from e


async def fetch_ap(url: str) -> Any:
    """Busca um objeto ActivityPub (actor, coleção, atividade)."""
    return await fetch_json(url, accept=AP_ACCEPT)
