"""Chat-completion client that answers questions from retrieved context."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from thesisrag.embedding.encoder import DEFAULT_BASE_URL, provider_error_message
from thesisrag.errors import ProviderFailure

if TYPE_CHECKING:
    from thesisrag.index.indexer import RAGService

LOGGER = logging.getLogger(__name__)

Message = Dict[str, str]

SYSTEM_PROMPT = """You are an assistant specialised in the academic theses of the alumni network.

You help users to:
- find information inside the theses
- compare methodological approaches
- identify research trends and gaps
- synthesise knowledge across several documents

Rules:
1. Rely ONLY on the provided context (thesis excerpts).
2. If the information is not in the context, say so clearly.
3. Always cite your sources (thesis title and author).
4. Structure answers clearly and in an academic register.

Answer format:
**Summary**: main answer
**Sources**: theses used
**Insights**: noteworthy observations
**Further reading**: suggestions"""


class ChatClient:
    """Async client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4-turbo-preview",
        temperature: float = 0.7,
        max_tokens: int = 2000,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("An API key is required for the chat client")
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _payload(self, messages: Sequence[Message], stream: bool) -> dict:
        payload = {
            "model": self.model,
            "messages": list(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if stream:
            payload["stream"] = True
        return payload

    def _http(self) -> httpx.AsyncClient:
        return self._client or httpx.AsyncClient(timeout=self.timeout)

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def generate_response(self, messages: Sequence[Message]) -> str:
        """Return the full completion text."""
        client = self._http()
        try:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json=self._payload(messages, stream=False),
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise ProviderFailure(f"Chat API error: {exc}") from exc
        finally:
            if client is not self._client:
                await client.aclose()

        if not response.is_success:
            raise ProviderFailure(
                f"Chat API error: {provider_error_message(response)}", status_code=response.status_code
            )
        choices = response.json().get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""

    async def generate_response_stream(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        """Yield content deltas from a server-sent-events stream."""
        client = self._http()
        try:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=self._payload(messages, stream=True),
                headers=self._headers,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise ProviderFailure(
                        f"Chat API error: {provider_error_message(response)}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[len("data: ") :]
                    if data == "[DONE]":
                        return
                    try:
                        parsed = json.loads(data)
                    except json.JSONDecodeError:
                        LOGGER.debug("Skipping partial stream line: %r", data[:80])
                        continue
                    delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                    if delta.get("content"):
                        yield delta["content"]
        except httpx.HTTPError as exc:
            raise ProviderFailure(f"Chat API error: {exc}") from exc
        finally:
            if client is not self._client:
                await client.aclose()

    @staticmethod
    def create_system_prompt() -> str:
        return SYSTEM_PROMPT


def build_messages(
    question: str, context: str, history: Optional[Sequence[Message]] = None
) -> List[Message]:
    """System prompt, prior turns, then the question with its context."""
    messages: List[Message] = [{"role": "system", "content": ChatClient.create_system_prompt()}]
    messages.extend(history or [])
    messages.append(
        {"role": "user", "content": f"Context:\n{context}\n\nQuestion: {question}"}
    )
    return messages


async def answer_question(
    service: "RAGService",
    client: ChatClient,
    question: str,
    *,
    history: Optional[Sequence[Message]] = None,
    max_chunks: Optional[int] = None,
) -> str:
    """Retrieve context for ``question`` and ask the chat model."""
    context = await service.search_and_generate_context(question, max_chunks=max_chunks)
    return await client.generate_response(build_messages(question, context, history))
