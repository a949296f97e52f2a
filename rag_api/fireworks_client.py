#!/usr/bin/env python3
"""
Fireworks.ai client for embeddings and chat completions.

This module provides a thin client over the OpenAI-compatible Fireworks
inference API: query embeddings, buffered chat completions and streamed
chat completions.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from rag_api.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.fireworks.ai/inference/v1"
STREAM_DONE = "[DONE]"


class FireworksAPIError(Exception):
    """Raised when the Fireworks API cannot serve a request."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


@dataclass
class ChatCompletionResponse:
    """Represents a buffered chat completion."""
    content: str
    usage: Dict[str, Any]
    model: str
    finish_reason: str


def create_session(api_key: str) -> requests.Session:
    """Create an authenticated HTTP session with a connection retry strategy."""
    session = requests.Session()

    retry_strategy = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    session.headers.update({
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    })

    return session


class FireworksClient:
    """Client for the Fireworks.ai inference API."""

    def __init__(self,
                 api_key: str,
                 base_url: str = DEFAULT_BASE_URL,
                 embedding_model: str = "nomic-ai/nomic-embed-text-v1.5",
                 chat_model: str = "accounts/fireworks/models/llama-v3p3-70b-instruct",
                 timeout: float = 60.0,
                 session: Optional[requests.Session] = None):
        """
        Initialize the Fireworks client.

        Args:
            api_key: Fireworks API key
            base_url: Base URL of the inference API
            embedding_model: Default model for embeddings
            chat_model: Default model for chat completions
            timeout: Request timeout in seconds
            session: Pre-built HTTP session (a new one is created if None)
        """
        if not api_key:
            raise ValueError("Fireworks API key is required. Set FIREWORKS_API_KEY environment variable.")

        self.base_url = base_url.rstrip("/")
        self.embedding_model = embedding_model
        self.chat_model = chat_model
        self.timeout = timeout
        self.session = session or create_session(api_key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FireworksClient":
        """Build a client from application settings."""
        return cls(
            api_key=settings.fireworks_api_key,
            base_url=settings.fireworks_base_url,
            embedding_model=settings.embedding_model,
            chat_model=settings.chat_model,
            timeout=settings.request_timeout,
        )

    def _post(self, path: str, payload: Dict[str, Any], stream: bool = False) -> requests.Response:
        url = f"{self.base_url}/{path}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout, stream=stream)
        except requests.RequestException as e:
            raise FireworksAPIError(f"Request to {path} failed: {e}") from e

        if not response.ok:
            body = response.text
            response.close()
            raise FireworksAPIError(
                f"{path} returned {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )
        return response

    def create_embeddings(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """
        Generate embeddings for a batch of texts.

        Args:
            texts: Texts to embed
            model: Embedding model (defaults to the client's embedding model)

        Returns:
            One embedding vector per input text, in input order
        """
        if not texts:
            return []

        model = model or self.embedding_model
        response = self._post("embeddings", {"model": model, "input": texts})

        try:
            data = response.json()["data"]
            ordered = sorted(data, key=lambda item: item.get("index", 0))
            embeddings = [item["embedding"] for item in ordered]
        except (ValueError, KeyError, TypeError) as e:
            raise FireworksAPIError(f"Malformed embeddings response: {e}") from e

        if len(embeddings) != len(texts):
            raise FireworksAPIError(
                f"Expected {len(texts)} embeddings, received {len(embeddings)}"
            )
        return embeddings

    def create_embedding(self, text: str, model: Optional[str] = None) -> List[float]:
        """Generate the embedding of a single text."""
        model = model or self.embedding_model
        response = self._post("embeddings", {"model": model, "input": text})

        try:
            return response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise FireworksAPIError(f"Malformed embeddings response: {e}") from e

    def generate_response(self,
                          messages: List[Dict[str, str]],
                          max_tokens: int = 1024,
                          temperature: float = 0.7,
                          model: Optional[str] = None) -> ChatCompletionResponse:
        """
        Generate a buffered chat completion.

        Args:
            messages: List of message dictionaries with 'role' and 'content'
            max_tokens: Maximum number of tokens to generate
            temperature: Sampling temperature
            model: Chat model (defaults to the client's chat model)

        Returns:
            ChatCompletionResponse with the generated content
        """
        model = model or self.chat_model
        logger.info(f"Sending request to chat model: {model}")
        logger.debug(f"Messages: {messages}")

        response = self._post("chat/completions", {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })

        try:
            data = response.json()
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise FireworksAPIError(f"Malformed chat completion response: {e}") from e

        usage = data.get("usage") or {}
        return ChatCompletionResponse(
            content=content,
            usage={
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
            },
            model=data.get("model", model),
            finish_reason=choice.get("finish_reason") or "unknown",
        )

    def stream_chat_completion(self, payload: Dict[str, Any]) -> Iterator[str]:
        """
        Stream a chat completion, yielding one upstream event payload at a time.

        The payload is forwarded as-is apart from defaulting ``stream`` to true
        and ``model`` to the client's chat model. Event framing (``data:``) and
        the ``[DONE]`` sentinel are stripped from what is yielded.

        Raises:
            FireworksAPIError: On non-2xx responses or transport failures
        """
        body = dict(payload)
        body.setdefault("stream", True)
        body.setdefault("model", self.chat_model)

        response = self._post("chat/completions", body, stream=True)
        # SSE bodies are UTF-8 but rarely declare a charset
        response.encoding = "utf-8"
        try:
            for line in response.iter_lines(decode_unicode=True):
                # comments, event/id/retry fields and blank separators carry no payload
                if not line or not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == STREAM_DONE:
                    break
                yield data
        except requests.RequestException as e:
            raise FireworksAPIError(f"Stream interrupted: {e}") from e
        finally:
            response.close()

