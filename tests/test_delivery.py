"""
Testes para app/activitypub/delivery.py

Cobre:
- deliver_activity(): POST assinado verificável com a chave pública local
- deliver_activity(): True só com 2xx; False para não-2xx e erro de rede
- deliver_activity(): inbox privado recusado antes de qualquer requisição
- deliver_to_followers(): uma entrega por inbox, shared inbox preferido
- deliver_to_followers(): retorna sem esperar as entregas
"""

import asyncio
import json

import httpx
import pytest

from app.activitypub import delivery
from app.activitypub.delivery import deliver_activity, deliver_to_followers
from app.activitypub.signatures import verify_digest, verify_signature
from app.models.follow import RemoteFollower
from app.services import tasks

KEY_ID = "https://cal.test/users/cal#main-key"
INBOX = "https://remote.test/users/alice/inbox"
ACTIVITY = {"type": "Create", "id": "https://cal.test/events/1/activity"}


# ---------------------------------------------------------------------------
# deliver_activity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_deliver_activity_posts_signed_request(fediverse, local_keys):
    fediverse.inbox(INBOX)

    assert await deliver_activity(INBOX, ACTIVITY, local_keys[0], KEY_ID) is True

    request = fediverse.requests[0]
    assert request.method == "POST"
    assert request.headers["content-type"] == "application/activity+json"
    assert json.loads(request.content) == ACTIVITY
    assert verify_digest(request.content, request.headers["digest"])
    assert verify_signature("POST", "/users/alice/inbox", request.headers, local_keys[1])


@pytest.mark.asyncio
async def test_deliver_activity_non_success_returns_false(fediverse, local_keys):
    fediverse.inbox(INBOX, status=401)

    assert await deliver_activity(INBOX, ACTIVITY, local_keys[0], KEY_ID) is False


@pytest.mark.asyncio
async def test_deliver_activity_network_error_returns_false(fediverse, local_keys):
    def _refuse(request):
        raise httpx.ConnectError("refused", request=request)

    fediverse.on(INBOX, _refuse, method="POST")

    assert await deliver_activity(INBOX, ACTIVITY, local_keys[0], KEY_ID) is False


@pytest.mark.asyncio
async def test_deliver_activity_private_inbox_is_refused(fediverse, local_keys):
    assert await deliver_activity("http://10.0.0.2/inbox", ACTIVITY, local_keys[0], KEY_ID) is False
    assert fediverse.requests == []


# ---------------------------------------------------------------------------
# deliver_to_followers
# ---------------------------------------------------------------------------


async def _add_follower(session_factory, account, uri, inbox, shared=None):
    async with session_factory() as s:
        async with s.begin():
            s.add(RemoteFollower(
                account_id=account.id,
                follower_actor_uri=uri,
                follower_inbox=inbox,
                follower_shared_inbox=shared,
            ))


@pytest.mark.asyncio
async def test_fan_out_deduplicates_by_shared_inbox(
    session_factory, session, make_account, fediverse
):
    account = await make_account()
    await _add_follower(session_factory, account, "https://a.test/users/1",
                        "https://a.test/users/1/inbox", "https://a.test/inbox")
    await _add_follower(session_factory, account, "https://a.test/users/2",
                        "https://a.test/users/2/inbox", "https://a.test/inbox")
    await _add_follower(session_factory, account, "https://b.test/users/3",
                        "https://b.test/users/3/inbox")
    fediverse.inbox("https://a.test/inbox")
    fediverse.inbox("https://b.test/users/3/inbox")

    spawned = await deliver_to_followers(session, account.id, ACTIVITY)
    await tasks.drain()

    assert len(spawned) == 2
    assert len(fediverse.posted("https://a.test/inbox")) == 1
    assert len(fediverse.posted("https://b.test/users/3/inbox")) == 1
    assert fediverse.posted("https://a.test/users/1/inbox") == []


@pytest.mark.asyncio
async def test_fan_out_does_not_wait_for_deliveries(
    session_factory, session, make_account, monkeypatch
):
    account = await make_account()
    await _add_follower(session_factory, account, "https://a.test/users/1",
                        "https://a.test/users/1/inbox")

    release = asyncio.Event()

    async def _slow_delivery(*args):
        await release.wait()
        return True

    monkeypatch.setattr(delivery, "deliver_activity", _slow_delivery)

    spawned = await deliver_to_followers(session, account.id, ACTIVITY)

    assert len(spawned) == 1
    assert not spawned[0].done()
    release.set()
    await tasks.drain()
    assert spawned[0].result() is True


@pytest.mark.asyncio
async def test_fan_out_partial_failure_keeps_other_deliveries(
    session_factory, session, make_account, fediverse
):
    account = await make_account()
    await _add_follower(session_factory, account, "https://a.test/users/1",
                        "https://a.test/users/1/inbox")
    await _add_follower(session_factory, account, "https://b.test/users/2",
                        "https://b.test/users/2/inbox")
    fediverse.inbox("https://a.test/users/1/inbox", status=500)
    fediverse.inbox("https://b.test/users/2/inbox")

    spawned = await deliver_to_followers(session, account.id, ACTIVITY)
    await tasks.drain()

    assert sorted(task.result() for task in spawned) == [False, True]


@pytest.mark.asyncio
async def test_fan_out_without_followers(session, make_account, fediverse):
    account = await make_account()

    assert await deliver_to_followers(session, account.id, ACTIVITY) == []
    assert fediverse.requests == []


@pytest.mark.asyncio
async def test_fan_out_unknown_account(session, fediverse):
    assert await deliver_to_followers(session, "nao-existe", ACTIVITY) == []
