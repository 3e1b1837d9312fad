#!/usr/bin/env python3
"""
Transcript extraction, summarization and the per-item processing state machine.

SummaryService turns an item URL into ``{"transcript", "summary"}`` using the
SupaData transcript API and an OpenAI chat completion. SummarizationWorker
drives one item through pending -> processing -> completed/failed, racing the
service against a wall-clock timeout, and announces completed summaries.
"""

from asyncio import wait_for, CancelledError, TimeoutError
from time import time
from typing import Any, Callable, Dict, Optional
import traceback

import yaml
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import DeliveryError, ExtractionError, NoCaptionsError, SummaryGenerationError
from llm_client import chat_completion as ai_chat_completion
from models import DatabaseQueue, Item, ItemKind, ProcessingStatus
from telemetry import trace_span
from utils import truncate_string

logger = get_logger("summarizer")

SUPADATA_TRANSCRIPT_URL = "https://api.supadata.ai/v1/transcript"

# Longest transcript excerpt sent to the model
MAX_TRANSCRIPT_CHARS = 60000

DEFAULT_PROMPT = (
    "Summarize the following video transcript in {language}. Start with one sentence "
    "describing the video, then list its key points as short bullet points."
)


def load_prompts() -> Dict[str, str]:
    """Load prompts from prompt.yaml configuration file."""
    try:
        with open(config.PROMPT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts or {}
    except FileNotFoundError:
        logger.warning(f"Prompt configuration file not found at {config.PROMPT_CONFIG_PATH}; using built-in prompt")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}
    except OSError as e:
        logger.error(f"OS error reading prompt configuration file: {e}")
        return {}


class TranscriptClient:
    """Fetches video transcripts from SupaData."""

    def __init__(self, api_key: Optional[str] = None, session: Optional[ClientSession] = None):
        self.api_key = api_key if api_key is not None else config.SUPADATA_API_KEY
        self.session = session

    @staticmethod
    def extract_text(data: Any) -> str:
        """Pull transcript text out of a SupaData response (``text`` or ``content[].text``)."""
        if not isinstance(data, dict):
            return ""
        text = data.get("text")
        if isinstance(text, str) and text.strip():
            return text.strip()
        content = data.get("content")
        if isinstance(content, list):
            parts = [str(part.get("text") or "") for part in content if isinstance(part, dict)]
            return " ".join(p.strip() for p in parts if p.strip())
        return ""

    async def fetch(self, url: str) -> str:
        """Return the transcript for ``url``.

        Raises:
            NoCaptionsError: the video has no usable transcript.
            ExtractionError: the API could not be reached or rejected the request.
        """
        if not self.api_key:
            raise ExtractionError("SUPADATA_API_KEY is not configured")

        headers = {"x-api-key": self.api_key, "User-Agent": config.USER_AGENT}
        params = {"url": url, "text": "true"}
        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)

        async def _execute(client: ClientSession) -> Any:
            async with client.get(SUPADATA_TRANSCRIPT_URL, params=params, headers=headers, timeout=timeout) as resp:
                if resp.status == 404:
                    raise NoCaptionsError(f"No transcript available for {url}")
                if resp.status >= 400:
                    body = await resp.text()
                    raise ExtractionError(f"Transcript request failed: HTTP {resp.status} - {truncate_string(body, 200)}")
                return await resp.json(content_type=None)

        try:
            if self.session is None:
                async with ClientSession(timeout=timeout) as owned_session:
                    data = await _execute(owned_session)
            else:
                data = await _execute(self.session)
        except ClientError as e:
            raise ExtractionError(f"Transcript request failed: {e}") from e
        except ValueError as e:
            raise ExtractionError(f"Invalid transcript response: {e}") from e

        if isinstance(data, dict) and data.get("error"):
            raise ExtractionError(f"Transcript API error: {data['error']}")
        text = self.extract_text(data)
        if not text:
            raise NoCaptionsError(f"Transcript for {url} is empty")
        return text


class SummaryService:
    """Extraction and summarization of one item. Performs no retries of its own."""

    def __init__(self, transcripts: Optional[TranscriptClient] = None, completion: Optional[Callable] = None):
        self.transcripts = transcripts or TranscriptClient()
        self.completion = completion or ai_chat_completion
        self.prompts: Dict[str, str] = load_prompts()

    def _system_prompt(self) -> str:
        template = self.prompts.get('video_summary') or DEFAULT_PROMPT
        return template.replace("{language}", config.SUMMARY_LANGUAGE)

    async def process(self, url: str) -> Dict[str, str]:
        transcript = await self.transcripts.fetch(url)
        messages = [
            {"role": "system", "content": self._system_prompt()},
            {"role": "user", "content": truncate_string(transcript, MAX_TRANSCRIPT_CHARS)},
        ]
        summary = await self.completion(messages, purpose="video_summary", retries=0)
        if not summary:
            raise SummaryGenerationError(f"No summary generated for {url}")
        return {"transcript": transcript, "summary": summary}


class SummarizationWorker:
    """Runs one item through the processing state machine."""

    def __init__(
        self,
        db: DatabaseQueue,
        service: SummaryService,
        dispatcher=None,
        slack=None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        clock: Callable[[], float] = time,
    ):
        self.db = db
        self.service = service
        self.dispatcher = dispatcher
        self.slack = slack
        self.timeout = timeout if timeout is not None else config.SUMMARY_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else config.MAX_PROCESSING_RETRIES
        self.clock = clock

    @trace_span(
        "summarizer.process_item",
        tracer_name="summarizer",
        attr_from_args=lambda self, item: {"item.id": item.item_id, "channel.id": item.channel_id},
    )
    async def process_item(self, item: Item) -> Optional[ProcessingStatus]:
        """Summarize one item and record the outcome. Returns the resulting status."""
        current: Optional[Item] = await self.db.execute('get_item', item_id=item.item_id)
        if current is None:
            logger.warning(f"Item {item.item_id} no longer exists, skipping")
            return None
        if current.kind == ItemKind.LIVE:
            logger.info(f"📡 Item {current.item_id} is still live, not summarizing")
            return current.processing_status
        if current.processing_status != ProcessingStatus.PENDING:
            logger.debug(f"Item {current.item_id} is {current.processing_status.value}, skipping")
            return current.processing_status

        await self.db.execute('mark_item_processing', item_id=current.item_id, started_at=int(self.clock()))
        url = config.item_url(current.item_id)
        logger.info(f"📝 Summarizing {current.item_id} ({current.title}), attempt {current.retry_count + 1}/{self.max_retries}")

        try:
            result = await wait_for(self.service.process(url), timeout=self.timeout)
        except CancelledError:
            await self._release(current)
            raise
        except TimeoutError:
            return await self._record_failure(current, f"Summarization timed out after {self.timeout:.0f}s")
        except NoCaptionsError as e:
            return await self._record_failure(current, str(e), consumes_retry=config.NO_CAPTIONS_CONSUMES_RETRY)
        except ExtractionError as e:
            return await self._record_failure(current, str(e))
        except Exception as e:
            logger.error(f"Unexpected error summarizing {current.item_id}: {e}")
            logger.error(traceback.format_exc())
            return await self._record_failure(current, f"Unexpected error: {e}")

        await self.db.execute(
            'mark_item_completed',
            item_id=current.item_id,
            summary=result["summary"],
            transcript=result["transcript"],
            completed_at=int(self.clock()),
        )
        logger.info(f"✅ Summarized {current.item_id}")
        await self._announce(current, result["summary"], url)
        return ProcessingStatus.COMPLETED

    async def _release(self, item: Item) -> None:
        logger.warning(f"⏹️ Summarizing {item.item_id} was interrupted; returning it to pending")
        try:
            await self.db.execute('release_item', item_id=item.item_id)
        except RuntimeError as e:
            logger.error(f"Could not release {item.item_id}: {e}")

    async def _record_failure(self, item: Item, error_message: str, consumes_retry: bool = True) -> ProcessingStatus:
        if consumes_retry:
            retry_count = item.retry_count + 1
            terminal = retry_count >= self.max_retries
        else:
            retry_count = item.retry_count
            terminal = True
        await self.db.execute(
            'mark_item_failed',
            item_id=item.item_id,
            retry_count=retry_count,
            error_message=error_message,
            terminal=terminal,
            completed_at=int(self.clock()),
        )
        if terminal:
            logger.error(f"❌ Item {item.item_id} failed permanently after {retry_count} attempts: {error_message}")
            return ProcessingStatus.FAILED
        logger.warning(f"⚠️ Item {item.item_id} failed (attempt {retry_count}/{self.max_retries}), will retry: {error_message}")
        return ProcessingStatus.PENDING

    async def _announce(self, item: Item, summary: str, url: str) -> None:
        channel = await self.db.execute('get_channel', channel_id=item.channel_id)
        channel_title = channel.title if channel and channel.title else item.channel_id

        if self.dispatcher is not None:
            payload = self.dispatcher.build_payload(item.channel_id, channel_title, item.item_id, item.title)
            try:
                reached = await self.dispatcher.notify(item.channel_id, payload)
                logger.info(f"🔔 Summary of {item.item_id} pushed to {reached} users")
            except (DeliveryError, RuntimeError) as e:
                logger.error(f"Push notification for {item.item_id} failed: {e}")

        if self.slack is not None:
            try:
                await self.slack.notify_subscribers(item.channel_id, channel_title, item.title, summary, url)
            except (DeliveryError, RuntimeError) as e:
                logger.error(f"Slack delivery for {item.item_id} failed: {e}")
