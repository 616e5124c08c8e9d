"""
HTTP capability used by the channels, with an aiohttp implementation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

import aiohttp

from .errors import ProbeChannelError

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """A fully read HTTP response."""
    status: int
    headers: Dict[str, str]
    body: bytes
    url: str
    history: list = field(default_factory=list)

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value.lower()
        return ""

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class HttpClient(ABC):
    """Issue one request and return the whole response."""

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 15.0,
    ) -> HttpResponse:
        """Raises ProbeChannelError on transport failure or timeout."""

    async def get(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: float = 15.0) -> HttpResponse:
        return await self.request("GET", url, headers=headers, timeout=timeout)

    async def close(self):
        pass


class AiohttpClient(HttpClient):
    """
    aiohttp-backed client.

    One ClientSession is shared by every channel of a run; it is created
    lazily and closed with close().
    """

    def __init__(self, user_agent: str = "paywall-probe/1.0", max_body_bytes: int = 20 * 1024 * 1024):
        self.user_agent = user_agent
        self.max_body_bytes = max_body_bytes
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        if not self.session:
            self.session = aiohttp.ClientSession(headers={"User-Agent": self.user_agent})

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 15.0,
    ) -> HttpResponse:
        await self._ensure_session()

        try:
            async with self.session.request(
                method,
                url,
                headers=headers or {},
                timeout=aiohttp.ClientTimeout(total=timeout),
                allow_redirects=True,
            ) as response:
                body = await response.content.read(self.max_body_bytes)
                return HttpResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    body=body,
                    url=str(response.url),
                    history=[str(r.url) for r in response.history],
                )

        except asyncio.TimeoutError:
            raise ProbeChannelError("http", f"timeout after {timeout}s: {url[:120]}")
        except aiohttp.ClientError as e:
            raise ProbeChannelError("http", f"{type(e).__name__}: {str(e)[:200]}")

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None
