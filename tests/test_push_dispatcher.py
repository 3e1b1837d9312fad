import pytest

from conftest import FakeTransport, error_ticket
from config import config
from errors import DeliveryError
from push import NotificationDispatcher
from retry_queue import PushRetryQueue


async def _setup_subscribers(db):
    """Channel C1 with three subscribers: user 1 (two devices), user 2 (one device), user 3 (none)."""
    await db.execute('register_channel', channel_id="C1", title="Chan")
    for user_id in (1, 2, 3):
        await db.execute('upsert_user', user_id=user_id)
        await db.execute('add_subscription', user_id=user_id, channel_id="C1")
    await db.execute('register_token', user_id=1, device_id="phone", token="tok-1a")
    await db.execute('register_token', user_id=1, device_id="tablet", token="tok-1b")
    await db.execute('register_token', user_id=2, device_id="phone", token="tok-2")


def _payload():
    return NotificationDispatcher.build_payload("C1", "Chan", "V1", "Hello &amp; welcome")


def test_build_payload_shape():
    payload = NotificationDispatcher.build_payload("C1", "Chan", "V1", "Hello")
    assert payload["title"] == "📺 Chan"
    assert payload["body"] == "New video: Hello"
    assert payload["data"] == {"type": "new_video_summary", "videoId": "V1", "channelId": "C1", "channelName": "Chan"}
    assert payload["sound"] == "default"
    assert payload["badge"] == 1


@pytest.mark.asyncio
async def test_notify_counts_users_reached(db, clock):
    await _setup_subscribers(db)
    transport = FakeTransport()
    dispatcher = NotificationDispatcher(db, transport, PushRetryQueue(db, transport, clock=clock))

    reached = await dispatcher.notify("C1", _payload())

    assert reached == 2
    assert sorted(m["to"] for m in transport.sent[0]) == ["tok-1a", "tok-1b", "tok-2"]


@pytest.mark.asyncio
async def test_user_reached_when_any_token_succeeds(db, clock):
    await _setup_subscribers(db)
    transport = FakeTransport({
        "tok-1a": error_ticket("MessageRateExceeded"),
        "tok-2": error_ticket("MessageRateExceeded"),
    })
    retry_queue = PushRetryQueue(db, transport, clock=clock)
    dispatcher = NotificationDispatcher(db, transport, retry_queue)

    assert await dispatcher.notify("C1", _payload()) == 1
    assert retry_queue.get(1, "phone") is not None
    assert retry_queue.get(2, "phone") is not None
    assert retry_queue.get(1, "tablet") is None


@pytest.mark.asyncio
async def test_device_not_registered_deletes_token(db, clock):
    await _setup_subscribers(db)
    transport = FakeTransport({"tok-2": error_ticket("DeviceNotRegistered", token="tok-2")})
    retry_queue = PushRetryQueue(db, transport, clock=clock)
    dispatcher = NotificationDispatcher(db, transport, retry_queue)

    assert await dispatcher.notify("C1", _payload()) == 1
    assert await db.execute('get_active_tokens_for_user', user_id=2) == []
    assert len(retry_queue) == 0

    # Re-registering creates a fresh token row
    await db.execute('register_token', user_id=2, device_id="phone", token="tok-2")
    assert len(await db.execute('get_active_tokens_for_user', user_id=2)) == 1


@pytest.mark.asyncio
async def test_removed_token_leaves_retry_queue(db, clock):
    await _setup_subscribers(db)
    transport = FakeTransport({"tok-2": error_ticket("MessageRateExceeded")})
    retry_queue = PushRetryQueue(db, transport, clock=clock)
    dispatcher = NotificationDispatcher(db, transport, retry_queue)

    await dispatcher.notify("C1", _payload())
    assert retry_queue.get(2, "phone") is not None

    transport.tickets_by_token = {"tok-2": error_ticket("DeviceNotRegistered")}
    await dispatcher.notify("C1", _payload())

    assert await db.execute('get_active_tokens_for_user', user_id=2) == []
    assert retry_queue.get(2, "phone") is None


@pytest.mark.asyncio
async def test_invalid_credentials_deactivates_token(db, clock):
    await _setup_subscribers(db)
    transport = FakeTransport({"tok-1b": error_ticket("InvalidCredentials")})
    dispatcher = NotificationDispatcher(db, transport, PushRetryQueue(db, transport, clock=clock))

    await dispatcher.notify("C1", _payload())
    tokens = await db.execute('get_active_tokens_for_user', user_id=1)
    assert [t.device_id for t in tokens] == ["phone"]

    # Successful re-registration reinstates the device
    await db.execute('register_token', user_id=1, device_id="tablet", token="tok-1b")
    tokens = await db.execute('get_active_tokens_for_user', user_id=1)
    assert sorted(t.device_id for t in tokens) == ["phone", "tablet"]


@pytest.mark.asyncio
async def test_message_too_big_is_not_retried(db, clock):
    await _setup_subscribers(db)
    transport = FakeTransport({"tok-2": error_ticket("MessageTooBig")})
    retry_queue = PushRetryQueue(db, transport, clock=clock)
    dispatcher = NotificationDispatcher(db, transport, retry_queue)

    await dispatcher.notify("C1", _payload())
    assert len(retry_queue) == 0
    assert len(await db.execute('get_active_tokens_for_user', user_id=2)) == 1


@pytest.mark.asyncio
async def test_sends_in_provider_sized_batches(db, clock, monkeypatch):
    await _setup_subscribers(db)
    monkeypatch.setattr(config, 'PUSH_BATCH_SIZE', 2)
    transport = FakeTransport()
    dispatcher = NotificationDispatcher(db, transport, PushRetryQueue(db, transport, clock=clock))

    assert await dispatcher.notify("C1", _payload()) == 2
    assert [len(batch) for batch in transport.sent] == [2, 1]


@pytest.mark.asyncio
async def test_ticket_count_mismatch_credits_nobody(db, clock):
    await _setup_subscribers(db)

    class ShortTransport(FakeTransport):
        async def send(self, messages):
            self.sent.append(list(messages))
            return [{"status": "ok"}]

    transport = ShortTransport()
    dispatcher = NotificationDispatcher(db, transport, PushRetryQueue(db, transport, clock=clock))
    assert await dispatcher.notify("C1", _payload()) == 0


@pytest.mark.asyncio
async def test_failed_batch_goes_to_retry_queue(db, clock):
    await _setup_subscribers(db)
    transport = FakeTransport(error=DeliveryError("connection reset"))
    retry_queue = PushRetryQueue(db, transport, clock=clock)
    dispatcher = NotificationDispatcher(db, transport, retry_queue)

    assert await dispatcher.notify("C1", _payload()) == 0
    assert retry_queue.status()["by_error_type"] == {"NetworkError": 3}


@pytest.mark.asyncio
async def test_channel_without_subscribers(db, clock):
    await db.execute('register_channel', channel_id="C2", title="Empty")
    transport = FakeTransport()
    dispatcher = NotificationDispatcher(db, transport, PushRetryQueue(db, transport, clock=clock))
    assert await dispatcher.notify("C2", _payload()) == 0
    assert transport.sent == []


@pytest.mark.asyncio
async def test_send_to_user(db, clock):
    await _setup_subscribers(db)
    transport = FakeTransport()
    dispatcher = NotificationDispatcher(db, transport, PushRetryQueue(db, transport, clock=clock))
    assert await dispatcher.send_to_user(1, _payload())
    assert len(transport.sent[0]) == 2
    assert not await dispatcher.send_to_user(3, _payload())
