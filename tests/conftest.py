"""
Shared fixtures: in-memory HTTP and browser fakes, article builders.

Nothing here touches the network or launches a browser.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from paywall_probe.browser import BrowserSession, InterceptedResponse
from paywall_probe.config import ProbeConfig
from paywall_probe.errors import NavigationError
from paywall_probe.fetcher import HttpClient, HttpResponse

# No paywall/subscription prompt can be built from these words
VOCABULARY = (
    "river", "valley", "carried", "warm", "evening", "light", "across",
    "quiet", "fields", "while", "farmers", "gathered", "grain", "near",
    "stone", "walls", "and", "children", "watched", "herons",
)


# =============================================================================
# CONTENT BUILDERS
# =============================================================================

def words(count: int) -> List[str]:
    return [VOCABULARY[i % len(VOCABULARY)] for i in range(count)]


def article_html(
    word_count: int = 1500,
    paragraphs: int = 20,
    headings: int = 4,
    container: Optional[str] = "article",
    extra: str = "",
) -> str:
    """Full article page with exactly `word_count` words of text."""
    tokens = words(word_count)
    size = -(-len(tokens) // paragraphs)
    chunks = [tokens[i:i + size] for i in range(0, len(tokens), size)]

    parts = []
    for index, chunk in enumerate(chunks):
        if index < headings:
            parts.append(f"<h2>{' '.join(chunk[:3])}</h2>")
            chunk = chunk[3:]
        parts.append(f"<p>{' '.join(chunk)}</p>")
    if extra:
        parts.append(f"<p>{extra}</p>")

    body = "\n".join(parts)
    if container:
        body = f"<{container}>\n{body}\n</{container}>"
    return f"<html><body>\n{body}\n</body></html>"


def teaser_html(word_count: int = 150, prompt: str = "Subscribe now to continue reading.") -> str:
    return (
        "<html><head><title>Story</title></head><body><main>"
        f"<p>{' '.join(words(word_count))}</p>"
        f"<div class='paywall'>{prompt}</div>"
        "</main></body></html>"
    )


def plain_body(word_count: int = 1500) -> str:
    return " ".join(words(word_count))


# =============================================================================
# HTTP FAKE
# =============================================================================

def make_response(
    status: int = 200,
    body: Any = b"",
    content_type: str = "text/html; charset=utf-8",
    url: str = "",
    headers: Optional[Dict[str, str]] = None,
) -> HttpResponse:
    if isinstance(body, (dict, list)):
        body = json.dumps(body)
    if isinstance(body, str):
        body = body.encode("utf-8")
    all_headers = {"Content-Type": content_type}
    all_headers.update(headers or {})
    return HttpResponse(status=status, headers=all_headers, body=body, url=url)


class FakeHttpClient(HttpClient):
    """
    Routes requests by exact URL, or through `handler(method, url, headers)`.

    Unknown URLs get a 404. A route (or handler result) that is an exception
    is raised instead of returned.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None, handler: Optional[Callable] = None):
        self.routes = dict(routes or {})
        self.handler = handler
        self.calls: List[tuple] = []
        self.closed = False

    async def request(self, method, url, headers=None, timeout=15.0) -> HttpResponse:
        headers = dict(headers or {})
        self.calls.append((method, url, headers))

        if self.handler is not None:
            result = self.handler(method, url, headers)
        else:
            result = self.routes.get(url)

        if result is None:
            return make_response(404, "not found", "text/html", url=url)
        if isinstance(result, Exception):
            raise result
        if result.url == "":
            result.url = url
        return result

    @property
    def urls(self) -> List[str]:
        return [url for _, url, _ in self.calls]

    async def close(self):
        self.closed = True


# =============================================================================
# BROWSER FAKE
# =============================================================================

class FakeInterceptedResponse(InterceptedResponse):

    def __init__(self, url, content_type="application/json", status=200, method="GET", body=b"{}", post_data=None):
        self.url = url
        self.method = method
        self.status = status
        self.content_type = content_type
        self.post_data = post_data
        self._body = body

    async def body(self) -> bytes:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession(BrowserSession):
    """
    Scripted page.

    `scripts` maps a snippet of a JS expression to the value evaluate()
    returns for it (or a callable taking the evaluate arg).
    """

    def __init__(
        self,
        markup: str = "",
        responses=(),
        scripts: Optional[Dict[str, Any]] = None,
        navigation_error: Optional[str] = None,
        navigation_delay: float = 0.0,
        clickable=(),
    ):
        self.markup = markup
        self.responses = list(responses)
        self.scripts = dict(scripts or {})
        self.navigation_error = navigation_error
        self.navigation_delay = navigation_delay
        self.callbacks = []
        self.calls: List[tuple] = []
        self.styles: List[str] = []
        self.clickable = set(clickable)
        self.clicked: List[str] = []

    async def navigate(self, url, timeout):
        self.calls.append(("navigate", url))
        if self.navigation_delay:
            await asyncio.sleep(self.navigation_delay)
        if self.navigation_error:
            raise NavigationError(url, self.navigation_error)
        for response in self.responses:
            for callback in self.callbacks:
                callback(response)

    async def evaluate(self, expression, arg=None):
        self.calls.append(("evaluate", expression.strip()[:30]))
        for snippet, value in self.scripts.items():
            if snippet in expression:
                return value(arg) if callable(value) else value
        return None

    async def add_style(self, css):
        self.calls.append(("add_style",))
        self.styles.append(css)

    async def content(self):
        self.calls.append(("content",))
        return self.markup

    def on_response(self, callback):
        self.callbacks.append(callback)

    async def press_key(self, key):
        self.calls.append(("press_key", key))

    async def click_first_visible(self, selector, timeout=1.2):
        if selector in self.clickable:
            self.clicked.append(selector)
            return True
        return False

    @property
    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


# =============================================================================
# FIXTURES
# =============================================================================

TARGET = "https://news.example.com/pages/harvest-story"


@pytest.fixture
def target_url():
    return TARGET


@pytest.fixture
def config(tmp_path):
    """Fast config: no poll delays, artifacts under tmp_path."""
    return ProbeConfig(
        archive_poll_interval=0.0,
        settle_delay=0.0,
        artifacts_dir=str(tmp_path / "artifacts"),
    )


@pytest.fixture
def run():
    """Drive a coroutine to completion."""
    return asyncio.run
