import asyncio
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlsplit

from fastapi import Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apkit.server.app import ActivityPubServer
from apkit.server.responses import ActivityResponse
from apkit.models import (
    Nodeinfo, NodeinfoSoftware,
    NodeinfoServices, NodeinfoUsage, NodeinfoUsageUsers,
)
from apkit.client import WebfingerResource, WebfingerResult, WebfingerLink

from app import database
from app.config import settings
from app.database import get_session
from app.activitypub.actor import AS_CONTEXT, actor_url, build_actor
from app.activitypub.events import event_to_ap
from app.activitypub.inbox import receive_activity
from app.activitypub.keys import ensure_key_pair
from app.activitypub.outbox import build_outbox
from app.activitypub.signatures import AP_CONTENT_TYPE
from app.models.account import Account, Event
from app.models.follow import RemoteFollower, RemoteFollowing

logging.basicConfig(level=logging.INFO)

log = logging.getLogger(__name__)

AP_ACCEPT_TYPES = ("application/activity+json", "application/ld+json")


@asynccontextmanager
async def lifespan(app):
    import app.database
    import app.services.tasks
    import workers.refresh_worker
    await app.database.init_db()
    worker_task = asyncio.create_task(workers.refresh_worker.run_worker())
    yield
    worker_task.cancel()
    await app.services.tasks.drain(timeout=float(settings.federation_timeout))


api = ActivityPubServer(lifespan=lifespan)


def is_ap_request(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return any(t in accept for t in AP_ACCEPT_TYPES)


def activity_json(data: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse(data, status_code=status_code, media_type=AP_CONTENT_TYPE)


def not_found() -> JSONResponse:
    return JSONResponse({"error": "Not found"}, status_code=404)


def not_acceptable() -> JSONResponse:
    return JSONResponse(
        {"error": "Use Accept: application/activity+json"}, status_code=406
    )


async def get_account(session: AsyncSession, username: str) -> Account | None:
    result = await session.execute(select(Account).where(Account.username == username))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Actor e coleções
# ---------------------------------------------------------------------------

@api.get("/users/{username}")
async def get_actor(
    username: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    if not is_ap_request(request):
        return not_acceptable()
    account = await get_account(session, username)
    if account is None:
        return not_found()
    keys = await ensure_key_pair(session, account)
    return activity_json(build_actor(account, keys.public_key_pem))


@api.get("/users/{username}/outbox")
async def get_outbox(
    username: str,
    page: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    account = await get_account(session, username)
    if account is None:
        return not_found()
    return activity_json(await build_outbox(session, account, page))


async def _collection(session: AsyncSession, username: str, model, name: str):
    account = await get_account(session, username)
    if account is None:
        return not_found()
    result = await session.execute(
        select(func.count()).select_from(model).where(model.account_id == account.id)
    )
    return activity_json({
        "@context": AS_CONTEXT,
        "id": f"{actor_url(username)}/{name}",
        "type": "OrderedCollection",
        "totalItems": result.scalar_one(),
    })


@api.get("/users/{username}/followers")
async def get_followers(username: str, session: AsyncSession = Depends(get_session)):
    return await _collection(session, username, RemoteFollower, "followers")


@api.get("/users/{username}/following")
async def get_following(username: str, session: AsyncSession = Depends(get_session)):
    return await _collection(session, username, RemoteFollowing, "following")


# ---------------------------------------------------------------------------
# Inboxes
# ---------------------------------------------------------------------------

def _received_path(request: Request) -> str:
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return path


@api.post("/users/{username}/inbox")
async def post_inbox(username: str, request: Request):
    status, body = await receive_activity(
        await request.body(),
        request.headers,
        request.method,
        _received_path(request),
        username=username,
    )
    return JSONResponse(body, status_code=status)


@api.post("/inbox")
async def post_shared_inbox(request: Request):
    status, body = await receive_activity(
        await request.body(),
        request.headers,
        request.method,
        _received_path(request),
    )
    return JSONResponse(body, status_code=status)


# ---------------------------------------------------------------------------
# Eventos
# ---------------------------------------------------------------------------

@api.get("/events/{event_id}")
async def get_event(
    event_id: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    if not is_ap_request(request):
        return not_acceptable()
    event = await session.get(Event, event_id)
    if event is None or event.visibility != "public":
        return not_found()
    return activity_json(event_to_ap(event, actor_url(event.account.username)))


# ---------------------------------------------------------------------------
# Descoberta
# ---------------------------------------------------------------------------

def local_host() -> str:
    return urlsplit(str(settings.base_url)).netloc


@api.webfinger()
async def webfinger(request: Request, acct: WebfingerResource) -> Response:
    if acct.host == local_host():
        async with database.async_session_factory() as session:
            account = await get_account(session, acct.username)
        if account is not None:
            link   = WebfingerLink(
                rel="self",
                type="application/activity+json",
                href=actor_url(account.username),
            )
            result = WebfingerResult(subject=acct, links=[link])
            return JSONResponse(result.to_json(), media_type="application/jrd+json")
    return not_found()


@api.nodeinfo("/nodeinfo/2.1", "2.1")
async def nodeinfo():
    async with database.async_session_factory() as session:
        total = (await session.execute(select(func.count()).select_from(Account))).scalar_one()
    return ActivityResponse(
        Nodeinfo(
            version="2.1",
            software=NodeinfoSoftware(
                name=settings.software_name, version=settings.software_version
            ),
            protocols=["activitypub"],
            services=NodeinfoServices(inbound=[], outbound=[]),
            openRegistrations=False,
            usage=NodeinfoUsage(users=NodeinfoUsageUsers(total=total)),
            metadata={},
        )
    )


@api.get("/health")
async def health():
    return {"status": "ok"}
