"""
Knowledge extraction from finished conversations.

A run moves through TRIGGERED -> SUMMARIZED -> PARSED -> EMBEDDED -> PERSISTED.
Every step may end the run; nothing is retried synchronously and a failed fact
never leaves partial state behind.
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from ..config_manager.knowledge_base import ExtractionConfig
from .embeddings import EmbeddingService
from .errors import (
    DimensionMismatch,
    MalformedExtraction,
    OwnerMismatch,
    ProviderUnavailable,
    StoreUnavailable,
)
from .llm import CompletionClient, ConversationStore
from .models import (
    MAX_CONTENT_CHARS,
    MAX_TITLE_CHARS,
    ExtractedFact,
    KnowledgeItem,
    KnowledgeType,
    TranscriptMessage,
)
from .store import KnowledgeStore
from .text_utils import truncate_text

EXTRACTION_SYSTEM_PROMPT = "You extract structured knowledge from conversations."

EXTRACTION_PROMPT = """Extract key facts, concepts, and entities from this conversation.
Return a JSON array of objects with: title, content, tags.
Respond with the JSON array only.

Conversation:
{transcript}"""

_CODE_FENCE_RE = re.compile(r"^```[A-Za-z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


class ExtractionStage(str, Enum):
    TRIGGERED = "triggered"
    SUMMARIZED = "summarized"
    PARSED = "parsed"
    EMBEDDED = "embedded"
    PERSISTED = "persisted"


@dataclass
class ExtractionResult:
    """Outcome of one extraction run."""

    owner_id: str
    conversation_id: Optional[str] = None
    stage: ExtractionStage = ExtractionStage.TRIGGERED
    items: List[KnowledgeItem] = field(default_factory=list)
    discarded: int = 0
    failed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "conversation_id": self.conversation_id,
            "stage": self.stage.value,
            "persisted": [item.id for item in self.items],
            "discarded": self.discarded,
            "failed": self.failed,
            "error": self.error,
        }


def strip_code_fences(text: str) -> str:
    """Remove a Markdown code fence wrapped around the whole text."""
    text = text.strip()
    match = _CODE_FENCE_RE.match(text)
    return match.group(1).strip() if match else text


def parse_extraction(text: str, max_facts: int = 20) -> Tuple[List[ExtractedFact], int]:
    """
    Parse language-model output into extracted facts.

    The output must be a JSON array; an object wrapping the array under
    `items` or `facts` is accepted too. Entries that are not objects or lack a
    title or content are dropped individually.

    Returns:
        (facts, discarded) where `discarded` counts the dropped entries

    Raises:
        MalformedExtraction: If the output as a whole is not a usable JSON array
    """
    try:
        payload = json.loads(strip_code_fences(text))
    except ValueError as e:
        raise MalformedExtraction(f"Extraction output is not valid JSON: {e}") from e

    if isinstance(payload, dict):
        for key in ("items", "facts"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break

    if not isinstance(payload, list):
        raise MalformedExtraction(
            f"Extraction output must be a JSON array, got {type(payload).__name__}"
        )

    facts: List[ExtractedFact] = []
    discarded = 0
    for entry in payload:
        if len(facts) >= max_facts:
            break
        if not isinstance(entry, dict):
            discarded += 1
            continue
        try:
            facts.append(ExtractedFact.model_validate(entry))
        except ValidationError:
            discarded += 1

    return facts, discarded


class KnowledgeExtractionPipeline:
    """
    Distills a conversation transcript into `extracted-fact` knowledge items.

    Runs are best-effort. `schedule` starts a detached task that the response
    path never awaits; a newer run for the same conversation replaces an older
    one still in flight.
    """

    def __init__(
        self,
        completion: CompletionClient,
        embeddings: EmbeddingService,
        store: KnowledgeStore,
        config: Optional[ExtractionConfig] = None,
        conversations: Optional[ConversationStore] = None,
    ):
        self.completion = completion
        self.embeddings = embeddings
        self.store = store
        self.config = config or ExtractionConfig()
        self.conversations = conversations
        self._tasks: dict[str, asyncio.Task] = {}  # Track background runs

    @property
    def pending_runs(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def format_transcript(self, messages: Iterable[TranscriptMessage]) -> str:
        text = "\n\n".join(
            f"{message.role}: {message.content.strip()}"
            for message in messages
            if message.content.strip()
        )
        # Keep the end of long conversations, where conclusions usually are.
        limit = self.config.max_transcript_chars
        return text[-limit:] if len(text) > limit else text

    async def _promote(
        self, owner_id: str, fact: ExtractedFact, collection: Optional[str]
    ) -> Tuple[Optional[KnowledgeItem], bool]:
        """Embed and persist one fact. Returns (stored item, embedded)."""
        try:
            item = KnowledgeItem(
                owner_id=owner_id,
                title=truncate_text(fact.title, MAX_TITLE_CHARS),
                content=truncate_text(fact.content, MAX_CONTENT_CHARS),
                type=KnowledgeType.EXTRACTED_FACT,
                tags=fact.tags,
                collection=collection,
            )
        except ValidationError as e:
            logger.warning(f"⚠️ Discarding extracted fact '{fact.title[:50]}': {e}")
            return None, False

        try:
            embedding = await self.embeddings.embed(item.embedding_text())
        except (ProviderUnavailable, DimensionMismatch, ValueError) as e:
            logger.warning(f"⚠️ Failed to embed extracted fact '{item.title[:50]}': {e}")
            return None, False

        try:
            stored = await self.store.upsert(
                item.model_copy(
                    update={"embedding": embedding.vector, "embedding_source": embedding.source}
                )
            )
        except (DimensionMismatch, OwnerMismatch, StoreUnavailable) as e:
            logger.error(f"❌ Failed to persist extracted fact '{item.title[:50]}': {e}")
            return None, True

        return stored, True

    async def run(
        self,
        owner_id: str,
        transcript: List[TranscriptMessage] | List[dict],
        conversation_id: Optional[str] = None,
        collection: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Extract knowledge from a transcript and persist it.

        Args:
            owner_id: Owner of the conversation and of the new items
            transcript: Messages in order, as models or {"role", "content"} dicts
            conversation_id: Conversation the transcript belongs to (for logging)
            collection: Collection assigned to the new items

        Returns:
            ExtractionResult with the stage reached and the persisted items
        """
        result = ExtractionResult(owner_id=owner_id, conversation_id=conversation_id)
        label = conversation_id or "ad-hoc transcript"

        messages = [
            m if isinstance(m, TranscriptMessage) else TranscriptMessage.model_validate(m)
            for m in transcript
        ]
        text = self.format_transcript(messages)
        if not text:
            result.error = "empty transcript"
            logger.info(f"No transcript to extract knowledge from for {label}")
            return result

        try:
            raw = await self.completion.complete(
                EXTRACTION_PROMPT.format(transcript=text),
                system=EXTRACTION_SYSTEM_PROMPT,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except ProviderUnavailable as e:
            result.error = f"completion failed: {e}"
            logger.warning(f"⚠️ Knowledge extraction for {label} skipped: {e}")
            return result

        if not raw or not raw.strip():
            result.error = "empty extraction output"
            logger.warning(f"No knowledge extracted from {label}")
            return result
        result.stage = ExtractionStage.SUMMARIZED

        try:
            facts, result.discarded = parse_extraction(raw, self.config.max_facts)
        except MalformedExtraction as e:
            result.error = str(e)
            logger.error(f"❌ Failed to parse extracted knowledge for {label}: {e}")
            return result
        result.stage = ExtractionStage.PARSED

        if result.discarded:
            logger.warning(f"⚠️ Discarded {result.discarded} malformed extraction entries for {label}")

        for fact in facts:
            stored, embedded = await self._promote(owner_id, fact, collection)
            if embedded and result.stage == ExtractionStage.PARSED:
                result.stage = ExtractionStage.EMBEDDED
            if stored is None:
                result.failed += 1
                continue
            result.items.append(stored)
            result.stage = ExtractionStage.PERSISTED

        logger.success(
            f"✅ Extracted {len(result.items)} knowledge items from {label} "
            f"({result.discarded} discarded, {result.failed} failed)"
        )
        return result

    async def extract_conversation(
        self, owner_id: str, conversation_id: str, collection: Optional[str] = None
    ) -> ExtractionResult:
        """
        Load a conversation's transcript and run extraction on it.

        Raises:
            OwnerMismatch: If the conversation belongs to another owner
        """
        if self.conversations is None:
            raise RuntimeError("No conversation store configured for extraction")

        try:
            transcript = await self.conversations.get_transcript(conversation_id, owner_id)
        except KeyError:
            logger.warning(f"Conversation '{conversation_id}' not found, nothing to extract")
            return ExtractionResult(
                owner_id=owner_id,
                conversation_id=conversation_id,
                error="conversation not found",
            )

        return await self.run(owner_id, transcript, conversation_id, collection)

    async def _run_detached(
        self,
        owner_id: str,
        conversation_id: Optional[str],
        transcript: Optional[List[TranscriptMessage] | List[dict]],
        collection: Optional[str],
    ) -> ExtractionResult:
        try:
            if transcript is not None:
                return await self.run(owner_id, transcript, conversation_id, collection)
            return await self.extract_conversation(owner_id, conversation_id, collection)
        except asyncio.CancelledError:
            logger.info(f"Knowledge extraction for '{conversation_id}' cancelled")
            raise
        except Exception as e:
            logger.error(f"❌ Knowledge extraction for '{conversation_id}' failed: {e}")
            return ExtractionResult(
                owner_id=owner_id, conversation_id=conversation_id, error=str(e)
            )

    def schedule(
        self,
        owner_id: str,
        conversation_id: Optional[str] = None,
        transcript: Optional[List[TranscriptMessage] | List[dict]] = None,
        collection: Optional[str] = None,
    ) -> asyncio.Task:
        """
        Start extraction as a background task.

        Args:
            owner_id: Owner of the conversation
            conversation_id: Conversation to load (when no transcript is given)
            transcript: Transcript to extract from directly
            collection: Collection assigned to the new items

        Returns:
            asyncio.Task resolving to an ExtractionResult; it never raises
            except when cancelled
        """
        if conversation_id is None and transcript is None:
            raise ValueError("Either conversation_id or transcript is required")

        task_key = f"{owner_id}:{conversation_id or uuid.uuid4().hex}"

        # Cancel existing run if still in flight
        if task_key in self._tasks and not self._tasks[task_key].done():
            self._tasks[task_key].cancel()

        task = asyncio.create_task(
            self._run_detached(owner_id, conversation_id, transcript, collection)
        )
        self._tasks[task_key] = task
        task.add_done_callback(lambda t, key=task_key: self._forget(key, t))

        logger.info(f"🚀 Started background knowledge extraction for '{conversation_id}'")
        return task

    def _forget(self, task_key: str, task: asyncio.Task) -> None:
        if self._tasks.get(task_key) is task:
            del self._tasks[task_key]

    async def shutdown(self) -> None:
        """Cancel all in-flight extraction runs and wait for them to finish."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} pending knowledge extraction runs")
        self._tasks.clear()
