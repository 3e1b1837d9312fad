import asyncio

import pytest

from config import config
from errors import ExtractionError, NoCaptionsError, SummaryGenerationError
from models import Item, ItemKind, ProcessingStatus
from summarizer import SummarizationWorker, SummaryService, TranscriptClient


class FakeService:
    def __init__(self, outcome=None, delay=0.0):
        self.outcome = outcome
        self.delay = delay
        self.calls = []

    async def process(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome or {"transcript": "full transcript", "summary": "short summary"}


class FakeDispatcher:
    def __init__(self):
        self.notified = []

    @staticmethod
    def build_payload(channel_id, channel_title, item_id, item_title):
        return {"channel": channel_title, "item": item_id}

    async def notify(self, channel_id, message):
        self.notified.append((channel_id, message))
        return 1


async def _make_item(db, item_id="V1", retry_count=0, kind=ItemKind.NONE):
    await db.execute('register_channel', channel_id="C1", title="Chan")
    item = Item(item_id=item_id, channel_id="C1", title="Hello", kind=kind, retry_count=retry_count)
    await db.execute('create_item', item=item)
    return item


@pytest.mark.asyncio
async def test_success_completes_item_and_notifies(db, clock):
    item = await _make_item(db)
    dispatcher = FakeDispatcher()
    worker = SummarizationWorker(db, FakeService(), dispatcher=dispatcher, clock=clock)

    assert await worker.process_item(item) == ProcessingStatus.COMPLETED

    stored = await db.execute('get_item', item_id="V1")
    assert stored.processing_status == ProcessingStatus.COMPLETED
    assert stored.processed is True
    assert stored.summary == "short summary"
    assert stored.transcript == "full transcript"
    assert stored.processing_started_at == int(clock())
    assert stored.processing_completed_at == int(clock())
    assert dispatcher.notified == [("C1", {"channel": "Chan", "item": "V1"})]


@pytest.mark.asyncio
async def test_failure_with_budget_returns_to_pending(db, clock):
    item = await _make_item(db)
    worker = SummarizationWorker(db, FakeService(ExtractionError("api down")), clock=clock)

    assert await worker.process_item(item) == ProcessingStatus.PENDING

    stored = await db.execute('get_item', item_id="V1")
    assert stored.processing_status == ProcessingStatus.PENDING
    assert stored.processed is False
    assert stored.retry_count == 1
    assert stored.error_message == "api down"
    eligible = await db.execute('list_retry_eligible_items', max_retries=3)
    assert [i.item_id for i in eligible] == ["V1"]


@pytest.mark.asyncio
async def test_timeout_on_third_attempt_is_terminal(db, clock):
    item = await _make_item(db, retry_count=2)
    dispatcher = FakeDispatcher()
    worker = SummarizationWorker(db, FakeService(delay=1.0), dispatcher=dispatcher, timeout=0.01, clock=clock)

    assert await worker.process_item(item) == ProcessingStatus.FAILED

    stored = await db.execute('get_item', item_id="V1")
    assert stored.processing_status == ProcessingStatus.FAILED
    assert stored.processed is True
    assert stored.retry_count == 3
    assert "timed out" in stored.error_message
    assert dispatcher.notified == []
    assert await db.execute('list_retry_eligible_items', max_retries=3) == []


@pytest.mark.asyncio
async def test_no_captions_consumes_retry_by_default(db, clock, monkeypatch):
    monkeypatch.setattr(config, 'NO_CAPTIONS_CONSUMES_RETRY', True)
    item = await _make_item(db)
    worker = SummarizationWorker(db, FakeService(NoCaptionsError("no captions")), clock=clock)

    assert await worker.process_item(item) == ProcessingStatus.PENDING
    stored = await db.execute('get_item', item_id="V1")
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_no_captions_terminal_when_configured(db, clock, monkeypatch):
    monkeypatch.setattr(config, 'NO_CAPTIONS_CONSUMES_RETRY', False)
    item = await _make_item(db)
    worker = SummarizationWorker(db, FakeService(NoCaptionsError("no captions")), clock=clock)

    assert await worker.process_item(item) == ProcessingStatus.FAILED
    stored = await db.execute('get_item', item_id="V1")
    assert stored.processing_status == ProcessingStatus.FAILED
    assert stored.processed is True
    assert stored.retry_count == 0


@pytest.mark.asyncio
async def test_live_item_is_never_summarized(db, clock):
    item = await _make_item(db, kind=ItemKind.LIVE)
    service = FakeService()
    worker = SummarizationWorker(db, service, clock=clock)

    assert await worker.process_item(item) == ProcessingStatus.PENDING
    assert service.calls == []


@pytest.mark.asyncio
async def test_completed_item_is_not_reprocessed(db, clock):
    item = await _make_item(db)
    service = FakeService()
    worker = SummarizationWorker(db, service, clock=clock)
    await worker.process_item(item)
    await worker.process_item(item)
    assert len(service.calls) == 1


@pytest.mark.asyncio
async def test_dispatch_failure_does_not_change_item_state(db, clock):
    item = await _make_item(db)

    class BrokenDispatcher(FakeDispatcher):
        async def notify(self, channel_id, message):
            raise RuntimeError("database is locked")

    worker = SummarizationWorker(db, FakeService(), dispatcher=BrokenDispatcher(), clock=clock)
    assert await worker.process_item(item) == ProcessingStatus.COMPLETED
    stored = await db.execute('get_item', item_id="V1")
    assert stored.processing_status == ProcessingStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancelled_item_returns_to_pending(db, clock):
    item = await _make_item(db)
    service = FakeService(delay=30)
    worker = SummarizationWorker(db, service, timeout=60, clock=clock)

    task = asyncio.create_task(worker.process_item(item))
    while not service.calls:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    stored = await db.execute('get_item', item_id="V1")
    assert stored.processing_status == ProcessingStatus.PENDING
    assert stored.processing_started_at is None
    assert stored.retry_count == 0


def test_transcript_text_extraction():
    assert TranscriptClient.extract_text({"text": "  hello world "}) == "hello world"
    assert TranscriptClient.extract_text({"content": [{"text": "hello"}, {"text": " world"}, {}]}) == "hello world"
    assert TranscriptClient.extract_text({"content": []}) == ""
    assert TranscriptClient.extract_text({"text": ""}) == ""
    assert TranscriptClient.extract_text(None) == ""


class FakeTranscripts:
    def __init__(self, text):
        self.text = text

    async def fetch(self, url):
        return self.text


@pytest.mark.asyncio
async def test_summary_service_returns_transcript_and_summary():
    captured = {}

    async def completion(messages, **kwargs):
        captured["messages"] = messages
        return "the summary"

    service = SummaryService(FakeTranscripts("spoken words"), completion=completion)
    result = await service.process("https://www.youtube.com/watch?v=V1")

    assert result == {"transcript": "spoken words", "summary": "the summary"}
    assert captured["messages"][0]["role"] == "system"
    assert config.SUMMARY_LANGUAGE in captured["messages"][0]["content"]
    assert captured["messages"][1]["content"] == "spoken words"


@pytest.mark.asyncio
async def test_summary_service_raises_when_model_returns_nothing():
    async def completion(messages, **kwargs):
        return None

    service = SummaryService(FakeTranscripts("spoken words"), completion=completion)
    with pytest.raises(SummaryGenerationError):
        await service.process("https://www.youtube.com/watch?v=V1")


@pytest.mark.asyncio
async def test_transcript_client_requires_api_key():
    with pytest.raises(ExtractionError):
        await TranscriptClient(api_key="").fetch("https://www.youtube.com/watch?v=V1")
