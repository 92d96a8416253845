"""
Collaborators used by knowledge extraction: a chat-completion client and a
read-only source of conversation transcripts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import httpx
from loguru import logger

from ..config_manager.providers import CompletionConfig
from .errors import OwnerMismatch, ProviderUnavailable
from .models import TranscriptMessage


class CompletionClient(ABC):
    """Single-shot text completion. Raises `ProviderUnavailable` on failure."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> str:
        """Return the model's text response for `prompt`."""

    async def aclose(self) -> None:
        """Release any network resources held by the client."""


class OpenAICompletionClient(CompletionClient):
    """Completion client for OpenAI-compatible `/chat/completions` APIs."""

    def __init__(
        self,
        config: CompletionConfig,
        client: httpx.AsyncClient | None = None,
        model: str | None = None,
    ):
        """
        Initialize the client.

        Args:
            config: Endpoint, credentials and timeout
            client: Optional shared httpx client; one is created if omitted
            model: Overrides `config.model`
        """
        self.config = config
        self.model = model or config.model
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/chat/completions"

    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        headers = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            response = await self._client.post(
                self.endpoint,
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Completion request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderUnavailable(
                f"Completion provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderUnavailable(f"Malformed completion response: {e}") from e

        return content or ""

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ConversationStore(ABC):
    """Read-only access to finished conversation transcripts."""

    @abstractmethod
    async def get_transcript(
        self, conversation_id: str, owner_id: str
    ) -> List[TranscriptMessage]:
        """
        Return the conversation's messages in order.

        Raises:
            KeyError: If the conversation does not exist
            OwnerMismatch: If it belongs to another owner
        """


class InMemoryConversationStore(ConversationStore):
    """Conversation store kept in a dict, for embedding and tests."""

    def __init__(self):
        self._conversations: Dict[str, Tuple[str, List[TranscriptMessage]]] = {}

    def add_message(self, conversation_id: str, owner_id: str, role: str, content: str) -> None:
        owner, messages = self._conversations.setdefault(conversation_id, (owner_id, []))
        if owner != owner_id:
            raise OwnerMismatch(conversation_id)
        messages.append(TranscriptMessage(role=role, content=content))

    async def get_transcript(
        self, conversation_id: str, owner_id: str
    ) -> List[TranscriptMessage]:
        if conversation_id not in self._conversations:
            logger.warning(f"Conversation '{conversation_id}' not found")
            raise KeyError(conversation_id)
        owner, messages = self._conversations[conversation_id]
        if owner != owner_id:
            raise OwnerMismatch(conversation_id)
        return list(messages)
