"""
app/activitypub/inbox.py

Processamento de atividades recebidas (inbox por conta e shared inbox).

Sequência por POST, sempre nesta ordem:
    JSON → conta local → Digest → Date → actor/chave → Signature → dispatch

Respostas:
- 400 corpo que não é JSON (objeto)
- 401 falha de Digest, Date ou Signature (rejeição visível ao remetente)
- 404 conta local inexistente (apenas inbox por conta)
- 503 erro de banco durante o processamento (transação desfeita)
- 202 em todos os outros casos, inclusive quando a atividade é descartada
  por política (impersonação, dono diferente, actor irresolvível), para não
  expor detalhes internos aos pares.

Cada atividade roda numa única transação. Efeitos externos (Accept,
notificações) só acontecem depois do commit.
"""

import inspect
import json
import logging
from datetime import timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app import database
from app.activitypub.actor import AS_CONTEXT, actor_url, key_id_for, local_username_for
from app.activitypub.delivery import deliver_activity
from app.activitypub.events import attributed_to, store_remote_event
from app.activitypub.keys import ensure_key_pair
from app.activitypub.resolver import as_uri, resolve_remote_actor
from app.activitypub.signatures import parse_signature_header, verify_digest, verify_signature
from app.config import is_production, settings
from app.database import as_utc, utcnow
from app.models.account import Account
from app.models.actor import RemoteActor
from app.models.event import RemoteEvent
from app.models.follow import RemoteFollower
from app.services.notifications import notify_event_cancelled, notify_event_updated

log = logging.getLogger(__name__)

AfterCommit = Callable[[], Awaitable[Any] | None]

# Headers que a assinatura precisa cobrir para Digest e Date valerem algo
REQUIRED_SIGNED_HEADERS = {"(request-target)", "date", "digest"}

ACCEPTED = (202, {"ok": True})


# ---------------------------------------------------------------------------
# Entrada
# ---------------------------------------------------------------------------

async def receive_activity(
    raw_body: bytes,
    headers: Mapping[str, str],
    method: str,
    path: str,
    username: str | None = None,
) -> tuple[int, dict]:
    """
    Ponto de entrada dos dois inboxes.

    `path` é o caminho exatamente como recebido (com query string, se houver),
    usado para reconstruir o `(request-target)` da assinatura.
    `username=None` indica o shared inbox.
    """
    try:
        activity = json.loads(raw_body)
    except ValueError:
        return 400, {"error": "Invalid JSON"}
    if not isinstance(activity, dict):
        return 400, {"error": "Invalid JSON"}

    after_commit: list[AfterCommit] = []

    try:
        async with database.async_session_factory() as session:
            async with session.begin():
                account = None
                if username is not None:
                    account = await _account_by_username(session, username)
                    if account is None:
                        return 404, {"error": "Not found"}

                actor_uri = as_uri(activity.get("actor"))
                if not actor_uri:
                    log.info(f"Atividade {activity.get('type')} sem actor ignorada")
                    return ACCEPTED

                error = await _authenticate(session, raw_body, headers, method, path, actor_uri)
                if error is not None:
                    log.warning(f"Atividade de {actor_uri} rejeitada: {error}")
                    return 401, {"error": "Signature verification failed"}

                await _dispatch(session, activity, actor_uri, account, after_commit)
    except SQLAlchemyError as e:
        # Transação desfeita; 503 para o remetente tentar de novo
        log.error(f"Erro de banco ao processar {activity.get('type')}: {e}", exc_info=True)
        return 503, {"error": "Temporarily unavailable"}

    for action in after_commit:
        result = action()
        if inspect.isawaitable(result):
            await result

    return ACCEPTED


async def _account_by_username(session: AsyncSession, username: str) -> Account | None:
    result = await session.execute(select(Account).where(Account.username == username))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Autenticação
# ---------------------------------------------------------------------------

def _date_within_window(value: str | None) -> bool:
    if not value:
        return False
    try:
        signed_at = as_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return False
    window = timedelta(seconds=int(settings.signature_max_age))
    return abs(utcnow() - signed_at) <= window


async def _authenticate(
    session: AsyncSession,
    raw_body: bytes,
    headers: Mapping[str, str],
    method: str,
    path: str,
    actor_uri: str,
) -> str | None:
    """Retorna o motivo da falha, ou None quando a requisição é autêntica."""
    if settings.skip_signature_verify and not is_production():
        log.warning(f"Verificação de assinatura desativada; aceitando {actor_uri} sem checar")
        return None

    lookup = {k.lower(): v for k, v in headers.items()}

    if not verify_digest(raw_body, lookup.get("digest")):
        return "digest ausente ou divergente"
    if not _date_within_window(lookup.get("date")):
        return "Date ausente ou fora da janela"

    signature_header = lookup.get("signature")
    if not signature_header:
        return "sem header Signature"
    params = parse_signature_header(signature_header)
    signed = set(params.get("headers", "").lower().split())
    if not REQUIRED_SIGNED_HEADERS <= signed:
        return f"assinatura não cobre {sorted(REQUIRED_SIGNED_HEADERS - signed)}"
    key_id = params.get("keyId", "")

    was_cached = await session.get(RemoteActor, actor_uri) is not None
    actor = await resolve_remote_actor(session, actor_uri)
    problem = _key_problem(actor, actor_uri, key_id)
    if problem is None and verify_signature(method, path, headers, actor.public_key_pem):
        return None

    # Chave em cache pode ter sido rotacionada: uma nova busca antes de desistir
    if was_cached and actor is not None:
        old_key = (actor.public_key_id, actor.public_key_pem)
        actor = await resolve_remote_actor(session, actor_uri, force_refresh=True)
        if actor is not None and (actor.public_key_id, actor.public_key_pem) != old_key:
            problem = _key_problem(actor, actor_uri, key_id)
            if problem is None and verify_signature(method, path, headers, actor.public_key_pem):
                return None

    return problem or "assinatura inválida"


def _key_problem(actor: RemoteActor | None, actor_uri: str, key_id: str) -> str | None:
    """A chave que assinou precisa ser a chave publicada pelo próprio `actor` da atividade."""
    if actor is None or not actor.public_key_pem:
        return "chave pública do actor indisponível"
    if actor.uri != actor_uri:
        return f"actor resolvido como {actor.uri}"
    if actor.public_key_id:
        if key_id != actor.public_key_id:
            return f"keyId {key_id or '-'} não é a chave de {actor_uri}"
    elif key_id.split("#", 1)[0] != actor_uri:
        return f"keyId {key_id or '-'} não pertence a {actor_uri}"
    return None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def _dispatch(
    session: AsyncSession,
    activity: dict,
    actor_uri: str,
    account: Account | None,
    after_commit: list[AfterCommit],
) -> None:
    activity_type = activity.get("type")

    if activity_type == "Follow":
        await _on_follow(session, activity, actor_uri, account, after_commit)
    elif activity_type == "Undo":
        await _on_undo(session, activity, actor_uri, account)
    elif activity_type in ("Create", "Update"):
        await _on_create_or_update(session, activity, actor_uri, after_commit)
    elif activity_type == "Delete":
        await _on_delete(session, activity, actor_uri, after_commit)
    else:
        log.info(f"Atividade {activity_type} de {actor_uri} ignorada")


async def _target_account(
    session: AsyncSession,
    account: Account | None,
    object_ref: Any,
) -> Account | None:
    """Conta alvo de Follow/Undo: a do inbox, ou resolvida pelo IRI no shared inbox."""
    if account is not None:
        return account
    username = local_username_for(as_uri(object_ref))
    if username is None:
        return None
    return await _account_by_username(session, username)


async def _on_follow(
    session: AsyncSession,
    activity: dict,
    actor_uri: str,
    account: Account | None,
    after_commit: list[AfterCommit],
) -> None:
    target = await _target_account(session, account, activity.get("object"))
    if target is None:
        log.info(f"Follow de {actor_uri} para alvo desconhecido ignorado")
        return

    follower = await resolve_remote_actor(session, actor_uri)
    if follower is None:
        log.info(f"Follow de {actor_uri} descartado: actor irresolvível")
        return

    await session.merge(
        RemoteFollower(
            account_id=target.id,
            follower_actor_uri=follower.uri,
            follower_inbox=follower.inbox,
            follower_shared_inbox=follower.shared_inbox,
        )
    )
    keys = await ensure_key_pair(session, target)
    log.info(f"{follower.uri} agora segue {target.username}")

    local_actor = actor_url(target.username)
    accept = {
        "@context": AS_CONTEXT,
        "id": f"{local_actor}#accept-{uuid4()}",
        "type": "Accept",
        "actor": local_actor,
        "object": activity,
    }
    inbox = follower.inbox
    key_id = key_id_for(target.username)
    after_commit.append(
        lambda: deliver_activity(inbox, accept, keys.private_key_pem, key_id)
    )


async def _on_undo(
    session: AsyncSession,
    activity: dict,
    actor_uri: str,
    account: Account | None,
) -> None:
    inner = activity.get("object")
    if not isinstance(inner, dict) or inner.get("type") != "Follow":
        log.info(f"Undo de {actor_uri} sem Follow embutido ignorado")
        return
    inner_actor = as_uri(inner.get("actor"))
    if inner_actor is not None and inner_actor != actor_uri:
        log.warning(f"Undo de {actor_uri} para Follow de {inner_actor} descartado")
        return

    target = await _target_account(session, account, inner.get("object"))
    if target is None:
        log.info(f"Undo(Follow) de {actor_uri} para alvo desconhecido ignorado")
        return

    result = await session.execute(
        delete(RemoteFollower).where(
            RemoteFollower.account_id == target.id,
            RemoteFollower.follower_actor_uri == actor_uri,
        )
    )
    if result.rowcount:
        log.info(f"{actor_uri} deixou de seguir {target.username}")


async def _on_create_or_update(
    session: AsyncSession,
    activity: dict,
    actor_uri: str,
    after_commit: list[AfterCommit],
) -> None:
    obj = activity.get("object")
    if not isinstance(obj, dict) or obj.get("type") != "Event":
        log.info(f"{activity.get('type')} de {actor_uri} sem Event embutido ignorado")
        return

    owner = attributed_to(obj)
    if owner is not None and owner != actor_uri:
        log.warning(f"Impersonação: {actor_uri} enviou Event atribuído a {owner}")
        return

    stored = await store_remote_event(session, obj, actor_uri)
    if stored is None:
        return

    log.info(f"Evento remoto {'criado' if stored.created else 'atualizado'}: {stored.event.uri}")
    if activity.get("type") == "Update" and not stored.created and stored.changes:
        uri, snapshot, changes = stored.event.uri, stored.event.snapshot(), stored.changes
        after_commit.append(lambda: notify_event_updated(uri, snapshot, changes))


async def _on_delete(
    session: AsyncSession,
    activity: dict,
    actor_uri: str,
    after_commit: list[AfterCommit],
) -> None:
    object_uri = as_uri(activity.get("object"))
    if not object_uri:
        return
    if object_uri == actor_uri:
        log.info(f"Delete de actor ignorado: {actor_uri}")
        return

    event = await session.get(RemoteEvent, object_uri)
    if event is None:
        log.info(f"Delete de objeto desconhecido ignorado: {object_uri}")
        return
    if event.actor_uri != actor_uri:
        log.warning(f"Delete de {object_uri} por {actor_uri} recusado: dono é {event.actor_uri}")
        return
    if event.canceled:
        return

    event.canceled = True
    await session.flush()
    snapshot = event.snapshot()
    after_commit.append(lambda: notify_event_cancelled(object_uri, snapshot))
