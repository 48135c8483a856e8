import logging
from typing import Any, AsyncIterator, Dict

import openai
from openai import AsyncOpenAI

from ..exceptions import BackendError, RenewalError
from ..settings import Settings
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class CompletionFeed:
    """Single-use async iterator over the text fragments of one answer.

    When the backend reports the answer complete, the new response id is
    installed as the conversation's continuation token.
    """

    def __init__(
        self,
        stream: AsyncIterator[Any],
        conversation_id: int,
        store: SessionStore,
    ) -> None:
        self._stream = stream
        self._conversation_id = conversation_id
        self._store = store
        self._consumed = False
        self.continuation_token: str | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("completion feed can only be consumed once")
        self._consumed = True
        return self._fragments()

    async def _fragments(self) -> AsyncIterator[str]:
        try:
            async for event in self._stream:
                event_type = getattr(event, "type", "")
                if event_type == "response.output_text.delta":
                    if event.delta:
                        yield event.delta
                elif event_type == "response.completed":
                    self.continuation_token = event.response.id
                elif event_type == "response.failed":
                    error = getattr(event.response, "error", None)
                    raise BackendError(getattr(error, "message", None) or "response failed")
                elif event_type == "error":
                    raise BackendError(getattr(event, "message", None) or "stream error")
        except openai.APIError as e:
            logger.warning("Completion stream for %s failed: %s", self._conversation_id, e)
            raise BackendError(str(e)) from e

        if self.continuation_token:
            await self._store.set(self._conversation_id, self.continuation_token)


class OpenAICompletionSource:
    """Streams answers from the OpenAI Responses API, chained per conversation."""

    def __init__(self, client: AsyncOpenAI, store: SessionStore, settings: Settings) -> None:
        self._client = client
        self._store = store
        self._model = settings.model
        self._instructions = settings.system_prompt

    async def send(self, text: str, conversation_id: int) -> CompletionFeed:
        """Start an answer to text and return its fragment feed.

        Raises:
            BackendError: the request could not be started.
        """
        token = await self._store.get(conversation_id)
        request: Dict[str, Any] = {
            "model": self._model,
            "input": text,
            "instructions": self._instructions,
            "stream": True,
        }
        if token:
            request["previous_response_id"] = token
        logger.info("Completion request conversation=%s continued=%s", conversation_id, bool(token))
        try:
            stream = await self._client.responses.create(**request)
        except openai.APIError as e:
            logger.warning("Completion request for %s failed: %s", conversation_id, e)
            raise BackendError(str(e)) from e
        return CompletionFeed(stream, conversation_id, self._store)

    async def validate(self, token: str) -> None:
        """Check that token names a response the backend still knows.

        Raises:
            RenewalError: the backend rejected the token.
        """
        try:
            await self._client.responses.retrieve(token)
        except openai.NotFoundError as e:
            raise RenewalError(f"unknown continuation token {token!r}") from e
        except openai.APIError as e:
            raise RenewalError(f"could not validate token: {e}") from e

    async def close(self) -> None:
        await self._client.close()


def build_openai_client(settings: Settings) -> AsyncOpenAI:
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )
