import hashlib
import hmac

import pytest
import requests

from pagebot.channels.messenger import (
    EVENT_DELIVERY,
    EVENT_MESSAGE,
    EVENT_POSTBACK,
    EVENT_READ,
    MessengerAPIError,
    MessengerClient,
    classify_event,
    iter_events,
    verify_signature,
)


class _Response:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append(("POST", url, json))
        if self.error:
            raise self.error
        return self.response

    def get(self, url, params=None, timeout=None):
        self.calls.append(("GET", url, params))
        if self.error:
            raise self.error
        return self.response


def test_send_message_posts_to_graph_api():
    session = _Session(_Response(200, {"recipient_id": "psid", "message_id": "mid.42"}))
    client = MessengerClient("v18.0", session=session)

    assert client.send_message("pg1", "psid", "Hi!", "token") == "mid.42"
    method, url, body = session.calls[0]
    assert url == "https://graph.facebook.com/v18.0/pg1/messages"
    assert body == {
        "recipient": {"id": "psid"},
        "message": {"text": "Hi!"},
        "access_token": "token",
    }


def test_graph_error_carries_code_and_retryability():
    session = _Session(
        _Response(400, {"error": {"message": "Too many calls", "code": 613}})
    )
    with pytest.raises(MessengerAPIError) as excinfo:
        MessengerClient(session=session).send_message("pg1", "psid", "Hi", "token")
    assert excinfo.value.status_code == 400
    assert excinfo.value.error_code == 613
    assert excinfo.value.retryable
    assert "Too many calls" in str(excinfo.value)


def test_network_error_is_retryable():
    session = _Session(error=requests.ConnectionError("reset"))
    with pytest.raises(MessengerAPIError) as excinfo:
        MessengerClient(session=session).send_message("pg1", "psid", "Hi", "token")
    assert excinfo.value.retryable


@pytest.mark.parametrize(
    "status,code,retryable",
    [(500, None, True), (503, 2, True), (429, None, True), (400, 100, False), (403, 10, False)],
)
def test_retryable_classification(status, code, retryable):
    assert MessengerAPIError("x", status_code=status, error_code=code).retryable is retryable


def test_missing_message_id_is_an_error():
    session = _Session(_Response(200, {"recipient_id": "psid"}))
    with pytest.raises(MessengerAPIError):
        MessengerClient(session=session).send_message("pg1", "psid", "Hi", "token")


def test_get_user_profile():
    session = _Session(
        _Response(200, {"first_name": "Grace", "last_name": "Hopper", "profile_pic": "https://x/p.jpg"})
    )
    profile = MessengerClient(session=session).get_user_profile("psid", "token")
    assert profile.full_name == "Grace Hopper"
    assert profile.profile_picture == "https://x/p.jpg"
    assert profile.locale == "en_US"
    assert session.calls[0][2]["fields"] == "first_name,last_name,profile_pic,locale"


def test_verify_signature_sha256_and_sha1():
    body = b'{"object":"page"}'
    sha256 = "sha256=" + hmac.new(b"secret", body, hashlib.sha256).hexdigest()
    sha1 = "sha1=" + hmac.new(b"secret", body, hashlib.sha1).hexdigest()

    assert verify_signature(body, {"x-hub-signature-256": sha256}, "secret")
    assert verify_signature(body, {"x-hub-signature": sha1}, "secret")
    assert not verify_signature(body, {"x-hub-signature-256": sha256}, "other")
    assert not verify_signature(body + b" ", {"x-hub-signature-256": sha256}, "secret")
    assert not verify_signature(body, {}, "secret")


def test_classify_event():
    assert classify_event({"message": {"text": "hi"}}) == EVENT_MESSAGE
    assert classify_event({"message": {"text": "hi", "is_echo": True}}) is None
    assert classify_event({"message": {"attachments": []}}) is None
    assert classify_event({"delivery": {"mids": ["m"]}}) == EVENT_DELIVERY
    assert classify_event({"read": {"watermark": 1}}) == EVENT_READ
    assert classify_event({"postback": {"payload": "GO"}}) == EVENT_POSTBACK


def test_iter_events_preserves_order_and_reports_malformed():
    payload = {
        "object": "page",
        "entry": [
            {
                "id": "pg1",
                "messaging": [
                    {"sender": {"id": "a"}, "timestamp": 1, "message": {"text": "one"}},
                    {"message": {"text": "no sender"}},
                    {"sender": {"id": "b"}, "timestamp": 2, "message": {"text": "two"}},
                ],
            },
            {"messaging": []},
        ],
    }
    items = list(iter_events(payload))
    assert [type(i).__name__ for i in items] == ["InboundEvent", "ValueError", "InboundEvent", "ValueError"]
    assert items[0].sender_id == "a" and items[0].timestamp == 1
    assert items[2].payload["message"]["text"] == "two"
