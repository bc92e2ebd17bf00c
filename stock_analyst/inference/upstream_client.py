"""Streaming client for OpenAI-compatible chat-completions endpoints."""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

import httpx

from stock_analyst.streaming.errors import UpstreamHTTPError, UpstreamTransportError

logger = logging.getLogger(__name__)


@dataclass
class ChatStreamRequest:
    """One upstream turn: where to send it, with which credential, and the message log."""

    api_url: str
    api_key: str
    model: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: int = 2048

    def payload(self) -> Dict[str, object]:
        return {
            "model": self.model,
            "messages": self.messages,
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }


class UpstreamStreamClient:
    """Opens streamed POSTs and hands the raw body bytes to the caller."""

    def __init__(
        self,
        connect_timeout: float = 10.0,
        read_timeout: Optional[float] = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = httpx.Timeout(connect_timeout, read=read_timeout)
        self.client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    @asynccontextmanager
    async def open_stream(self, request: ChatStreamRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        Issue the request and yield the response byte iterator.

        Raises:
            UpstreamHTTPError: status >= 400; the full error body is read first.
            UpstreamTransportError: connection, DNS, timeout or protocol failure,
                including failures while the caller is reading the body.
        """
        try:
            async with self.client.stream(
                "POST",
                request.api_url,
                json=request.payload(),
                headers=request.headers(),
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.warning("Upstream %s answered %s", request.api_url, response.status_code)
                    raise UpstreamHTTPError(response.status_code, body)
                yield response.aiter_bytes()
        except (httpx.RequestError, httpx.InvalidURL) as e:
            detail = str(e) or type(e).__name__
            logger.error(f"Upstream request to {request.api_url} failed: {detail}")
            raise UpstreamTransportError(detail) from e

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
