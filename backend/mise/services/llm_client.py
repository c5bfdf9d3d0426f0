"""
Chat completion client used by the extraction and annotation stages.

The pipeline only needs "system + user in, text out" either as one message
or as a line-by-line stream, so any provider can sit behind ChatClient.
"""

import logging
from contextlib import aclosing
from typing import AsyncGenerator, AsyncIterator, Optional, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from ..core.config import Settings, get_settings
from ..core.errors import CredentialMissing, LLMFailure, LLMTimeout

log = logging.getLogger(__name__)


class ChatClient(Protocol):
    def check_credentials(self) -> None: ...

    async def complete(self, system: str, user: str) -> str: ...

    def stream_lines(self, system: str, user: str) -> AsyncGenerator[str, None]: ...


async def split_lines(deltas: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Re-chunk arbitrary text deltas into lines.

    Every yielded line keeps its trailing newline, except possibly the last,
    so joining the output reproduces the input exactly.
    """
    buffer = ""
    async for delta in deltas:
        buffer += delta
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            yield line + "\n"
    if buffer:
        yield buffer


class OpenAIChatClient:
    def __init__(
        self,
        model: str,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.model = model
        self.http_client = http_client
        self._client: AsyncOpenAI | None = None

    def check_credentials(self) -> None:
        key = self.settings.openai_api_key
        if not key or key == "your_openai_api_key_here":
            raise CredentialMissing("openai")

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self.check_credentials()
            self._client = AsyncOpenAI(
                api_key=self.settings.openai_api_key,
                base_url=self.settings.openai_base_url,
                timeout=self.settings.llm_timeout,
                max_retries=0,
                http_client=self.http_client,
            )
        return self._client

    def _messages(self, system: str, user: str) -> list:
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

    async def complete(self, system: str, user: str) -> str:
        log.debug(f"📤 Completion request to {self.model}: {len(system) + len(user)} characters")
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self._messages(system, user),
                temperature=self.settings.llm_temperature,
            )
        except openai.APIError as e:
            raise self._translate(e) from e
        return response.choices[0].message.content or ""

    async def stream_lines(self, system: str, user: str) -> AsyncGenerator[str, None]:
        """Stream the completion line by line; closing the generator closes the HTTP stream."""
        deltas = self._stream_deltas(system, user)
        try:
            async with aclosing(split_lines(deltas)) as lines:
                async for line in lines:
                    yield line
        finally:
            await deltas.aclose()

    async def _stream_deltas(self, system: str, user: str) -> AsyncGenerator[str, None]:
        log.debug(f"📤 Streaming request to {self.model}: {len(system) + len(user)} characters")
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=self._messages(system, user),
                temperature=self.settings.llm_temperature,
                stream=True,
            )
        except openai.APIError as e:
            raise self._translate(e) from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                if delta := chunk.choices[0].delta.content:
                    yield delta
        except openai.APIError as e:
            raise self._translate(e) from e
        finally:
            await stream.close()
            log.debug(f"🔌 Closed stream from {self.model}")

    def _translate(self, error: openai.APIError) -> LLMFailure:
        if isinstance(error, openai.APITimeoutError):
            return LLMTimeout(self.settings.llm_timeout)
        if isinstance(error, openai.AuthenticationError):
            return LLMFailure("the API key was rejected")
        retryable = isinstance(
            error,
            (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError),
        )
        return LLMFailure(str(error), retryable=retryable)
