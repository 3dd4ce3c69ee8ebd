"""
app/activitypub/delivery.py

Entrega de atividades assinadas em inboxes remotos.

- `deliver_activity()`    — um POST assinado; True só com resposta 2xx
- `deliver_to_followers()` — fan-out para todos os seguidores remotos de uma
  conta local, um POST por inbox (shared inbox preferido), sem esperar
  a conclusão

Não existe fila de retry: uma entrega perdida não é reenviada.
"""

import asyncio
import json
import logging

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.activitypub import fetcher
from app.activitypub.actor import key_id_for
from app.activitypub.keys import ensure_key_pair
from app.activitypub.security import UnsafeURLError, validate_federation_url
from app.activitypub.signatures import sign_request
from app.models.account import Account
from app.models.follow import RemoteFollower
from app.services.tasks import spawn

log = logging.getLogger(__name__)


async def deliver_activity(
    inbox: str,
    activity: dict,
    private_key_pem: str,
    key_id: str,
) -> bool:
    try:
        await validate_federation_url(inbox)
    except UnsafeURLError as e:
        log.warning(f"Entrega recusada para {inbox}: {e}")
        return False

    body = json.dumps(activity).encode()
    headers = sign_request("POST", inbox, body, private_key_pem, key_id)

    try:
        async with fetcher.http_client() as client:
            response = await client.post(inbox, content=body, headers=headers)
    except httpx.HTTPError as e:
        log.error(f"Entrega para {inbox} falhou: {e!r}")
        return False

    if not response.is_success:
        log.error(f"Entrega para {inbox} falhou: {response.status_code} {response.text[:200]}")
        return False

    log.info(f"{activity.get('type')} entregue em {inbox}")
    return True


async def deliver_to_followers(
    session: AsyncSession,
    account_id: str,
    activity: dict,
) -> list[asyncio.Task]:
    """
    Dispara as entregas em background e retorna imediatamente.
    As tasks são devolvidas apenas para quem quiser acompanhar (ex.: testes).
    """
    account = await session.get(Account, account_id)
    if account is None:
        return []

    result = await session.execute(
        select(RemoteFollower).where(RemoteFollower.account_id == account_id)
    )
    inboxes = sorted({follower.delivery_inbox for follower in result.scalars()})
    if not inboxes:
        return []

    keys = await ensure_key_pair(session, account)
    key_id = key_id_for(account.username)

    log.info(f"Fan-out de {activity.get('type')} de {account.username} para {len(inboxes)} inbox(es)")
    return [
        spawn(deliver_activity(inbox, activity, keys.private_key_pem, key_id))
        for inbox in inboxes
    ]
