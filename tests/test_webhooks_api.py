import hashlib
import hmac
import json

import pytest
from redis.exceptions import ResponseError
from starlette.testclient import TestClient

from conftest import KeywordEmbedder, PAGE_ID, VERIFY_TOKEN, drain
from pagebot.llm.gateway import LLMGateway
from pagebot.llm.types import Provider
from pagebot.main import create_app
from pagebot.pipeline.startup import build_pipeline
from pagebot.queue.backends import RedisJobQueue
from pagebot.queue.jobs import Stage
from pagebot.retrieval.vector_store import VectorRetrievalService
from pagebot.routers.webhooks import token_matches

URL = "/api/webhooks/messenger"


def _client(ctx):
    return TestClient(create_app(lambda: ctx.handles))


def _payload(*events, page_id=PAGE_ID):
    return {"object": "page", "entry": [{"id": page_id, "time": 1, "messaging": list(events)}]}


def _message(text="hello", sender="psid123", ts=1000, mid="m_1"):
    return {
        "sender": {"id": sender},
        "recipient": {"id": PAGE_ID},
        "timestamp": ts,
        "message": {"mid": mid, "text": text},
    }


def _sign(body: bytes, secret: str, algorithm=hashlib.sha256, prefix="sha256="):
    return prefix + hmac.new(secret.encode(), body, algorithm).hexdigest()


@pytest.mark.parametrize("token", ["global-verify-token", VERIFY_TOKEN])
def test_verification_echoes_challenge(pipeline_context, token):
    with _client(pipeline_context) as client:
        resp = client.get(
            URL,
            params={"hub.mode": "subscribe", "hub.verify_token": token, "hub.challenge": "12345"},
        )
    assert resp.status_code == 200
    assert resp.text == "12345"


@pytest.mark.parametrize(
    "params,status",
    [
        ({"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "1"}, 403),
        ({"hub.mode": "unsubscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1"}, 403),
        ({"hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1"}, 400),
        ({"hub.mode": "subscribe", "hub.challenge": "1"}, 400),
        ({"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN}, 400),
    ],
)
def test_verification_rejections(pipeline_context, params, status):
    with _client(pipeline_context) as client:
        resp = client.get(URL, params=params)
    assert resp.status_code == status


def test_token_matches_checks_every_candidate():
    assert token_matches("b", ["a", "b", "c"])
    assert not token_matches("d", ["a", "b"])
    assert not token_matches("a", [])


def test_message_event_is_queued(pipeline_context):
    ctx = pipeline_context
    with _client(ctx) as client:
        resp = client.post(URL, json=_payload(_message()))
    assert resp.status_code == 200
    assert resp.json() == {"status": "EVENT_RECEIVED", "processed": 1, "failed": 0}
    assert ctx.queue.pending(Stage.INGEST) == 1

    drain(ctx)
    assert len(ctx.messenger.sent) == 1


def test_duplicate_posts_produce_single_reply(pipeline_context):
    ctx = pipeline_context
    body = _payload(_message())
    with _client(ctx) as client:
        client.post(URL, json=body)
        client.post(URL, json=body)
    drain(ctx)

    conversation = ctx.repo.get_conversation_by_thread(PAGE_ID, "psid123")
    texts = [m.text for m in ctx.repo.list_recent_messages(conversation.id, 100)]
    assert texts.count("hello") == 1
    assert len(texts) == 2
    assert len(ctx.messenger.sent) == 1


def test_signed_webhook_accepted_and_bad_signature_rejected(make_context):
    ctx = make_context(app_secret="app-secret")
    body = json.dumps(_payload(_message())).encode()
    with _client(ctx) as client:
        ok = client.post(
            URL,
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": _sign(body, "app-secret")},
        )
        legacy = client.post(
            URL,
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Hub-Signature": _sign(body, "app-secret", hashlib.sha1, "sha1="),
            },
        )
        bad = client.post(
            URL,
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": _sign(body, "other")},
        )
        missing = client.post(URL, content=body, headers={"Content-Type": "application/json"})
    assert ok.status_code == 200
    assert legacy.status_code == 200
    assert bad.status_code == 403
    assert missing.status_code == 403


def test_unsigned_webhook_rejected_in_production(make_context):
    ctx = make_context(app_env="production")
    with _client(ctx) as client:
        resp = client.post(URL, json=_payload(_message()))
    assert resp.status_code == 403
    assert ctx.queue.pending(Stage.INGEST) == 0


@pytest.mark.parametrize(
    "body",
    [
        b"{not json",
        json.dumps({"object": "instagram", "entry": []}).encode(),
        json.dumps({"object": "page", "entry": {"id": "x"}}).encode(),
        json.dumps(["page"]).encode(),
    ],
)
def test_invalid_payloads_rejected(pipeline_context, body):
    with _client(pipeline_context) as client:
        resp = client.post(URL, content=body, headers={"Content-Type": "application/json"})
    assert resp.status_code == 400


def test_malformed_event_does_not_abort_batch(pipeline_context):
    ctx = pipeline_context
    broken = {"recipient": {"id": PAGE_ID}, "message": {"text": "no sender"}}
    payload = _payload(broken, _message(text="second", ts=2000))
    payload["entry"].append("not-an-entry")
    with _client(ctx) as client:
        resp = client.post(URL, json=payload)
    assert resp.status_code == 200
    assert resp.json() == {"status": "EVENT_RECEIVED", "processed": 1, "failed": 2}
    assert ctx.queue.pending(Stage.INGEST) == 1


def test_echoes_and_unknown_events_are_ignored(pipeline_context):
    ctx = pipeline_context
    echo = _message(text="from page")
    echo["message"]["is_echo"] = True
    unknown = {"sender": {"id": "psid123"}, "optin": {"ref": "x"}}
    with _client(ctx) as client:
        resp = client.post(URL, json=_payload(echo, unknown))
    assert resp.json()["processed"] == 0
    assert ctx.queue.pending(Stage.INGEST) == 0


def test_queue_outage_processes_inline(pipeline_context):
    ctx = pipeline_context
    ctx.queue.available = False
    with _client(ctx) as client:
        resp = client.post(URL, json=_payload(_message()))
    assert resp.status_code == 200
    assert resp.json()["processed"] == 1
    assert len(ctx.messenger.sent) == 1


class _WriteRefusingRedis:
    """A reachable Redis that rejects every command, as at maxmemory."""

    def close(self):
        pass

    def __getattr__(self, name):
        def _refuse(*args, **kwargs):
            raise ResponseError("OOM command not allowed when used memory > 'maxmemory'")

        return _refuse


def test_redis_refusing_writes_processes_inline(pipeline_context):
    ctx = pipeline_context
    handles = build_pipeline(
        ctx.settings,
        unit_of_work=ctx.handles.unit_of_work,
        queue=RedisJobQueue(_WriteRefusingRedis()),
        vault=ctx.vault,
        gateway=LLMGateway(factories={Provider.OPENAI: lambda: ctx.adapter}),
        messenger=ctx.messenger,
        retrieval=VectorRetrievalService(ctx.store, ctx.store, KeywordEmbedder()),
        local_broadcaster=ctx.handles.local_broadcaster,
        broadcaster=ctx.broadcaster,
    )
    with TestClient(create_app(lambda: handles)) as client:
        resp = client.post(URL, json=_payload(_message()))
    assert resp.json() == {"status": "EVENT_RECEIVED", "processed": 1, "failed": 0}

    conversation = ctx.repo.get_conversation_by_thread(PAGE_ID, "psid123")
    assert conversation is not None
    assert [m.text for m in ctx.repo.list_recent_messages(conversation.id, 10)][0] == "hello"
    assert len(ctx.messenger.sent) == 1


def test_events_without_timestamp_dedupe_on_message_id(pipeline_context):
    ctx = pipeline_context
    event = _message(mid="m_stable")
    del event["timestamp"]
    with _client(ctx) as client:
        client.post(URL, json=_payload(event))
        client.post(URL, json=_payload(event))
    drain(ctx)

    conversation = ctx.repo.get_conversation_by_thread(PAGE_ID, "psid123")
    users = [m for m in ctx.repo.list_recent_messages(conversation.id, 100) if m.role.value == "USER"]
    assert len(users) == 1
    assert users[0].meta["sourceMessageId"] == "m_stable"
    assert len(ctx.messenger.sent) == 1


def test_postback_title_becomes_message(pipeline_context):
    ctx = pipeline_context
    postback = {
        "sender": {"id": "psid9"},
        "timestamp": 5,
        "postback": {"title": "Get Started", "payload": "GET_STARTED"},
    }
    with _client(ctx) as client:
        client.post(URL, json=_payload(postback))
    drain(ctx)
    conversation = ctx.repo.get_conversation_by_thread(PAGE_ID, "psid9")
    assert ctx.repo.list_recent_messages(conversation.id, 1)[0].role.value == "BOT"
    first = ctx.repo.list_recent_messages(conversation.id, 2)[0]
    assert first.text == "Get Started"


def test_delivery_and_read_receipts(pipeline_context):
    ctx = pipeline_context
    with _client(ctx) as client:
        client.post(URL, json=_payload(_message()))
        drain(ctx)
        receipts = _payload(
            {"sender": {"id": "psid123"}, "delivery": {"mids": ["mid.1"], "watermark": 10}},
            {"sender": {"id": "psid123"}, "read": {"watermark": 11}},
        )
        resp = client.post(URL, json=receipts)
    assert resp.json()["processed"] == 2

    conversation = ctx.repo.get_conversation_by_thread(PAGE_ID, "psid123")
    assert conversation.meta["readWatermark"] == 11
    bot = ctx.repo.list_recent_messages(conversation.id, 1)[0]
    assert bot.meta["delivered"] is True


def test_health_and_version(pipeline_context):
    with _client(pipeline_context) as client:
        health = client.get("/api/health")
        version = client.get("/api/version")
    assert health.json() == {"status": "ok", "queue": "up", "workers": False}
    assert "version" in version.json()


def test_failed_jobs_listing_and_retry(pipeline_context):
    ctx = pipeline_context
    with _client(ctx) as client:
        client.post(URL, json=_payload(_message(), page_id="unknown-page"))
        drain(ctx)

        listing = client.get("/api/jobs/failed", params={"stage": Stage.INGEST.value})
        assert listing.status_code == 200
        data = listing.json()
        assert data["total"] == 1
        job = data["items"][0]
        assert job["payload"]["channelId"] == "unknown-page"
        assert job["attempts"] == 1

        missing = client.post("/api/jobs/failed/nope/retry", params={"stage": Stage.INGEST.value})
        assert missing.status_code == 404

        retried = client.post(
            f"/api/jobs/failed/{job['id']}/retry", params={"stage": Stage.INGEST.value}
        )
        assert retried.status_code == 200
        assert retried.json()["status"] == "requeued"
    assert ctx.queue.pending(Stage.INGEST) == 1


def test_failed_jobs_unavailable_queue(pipeline_context):
    ctx = pipeline_context
    with _client(ctx) as client:
        ctx.queue.available = False
        resp = client.get("/api/jobs/failed")
    assert resp.status_code == 503
