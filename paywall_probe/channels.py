"""
Probe channels - every way of trying to reach the full article.
"""

import asyncio
import hashlib
import itertools
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .browser import BrowserSession, InterceptedResponse
from .classifier import STRUCTURED_TEXT, ArticleClassifier, ClassificationSignal
from .config import ProbeConfig
from .errors import ProbeChannelError
from .fetcher import HttpClient, HttpResponse
from .jsontree import find_text, parse_json
from .models import Observation, RawCandidate, Severity, TargetContext

logger = logging.getLogger(__name__)

HTML_ACCEPT = "text/html,application/xhtml+xml"
JSON_ACCEPT = "application/json"


def with_query(url: str, param: str) -> str:
    """Append a query parameter, keeping any existing query string."""
    base, _, fragment = url.partition("#")
    joined = base + ("&" if "?" in base else "?") + param
    return f"{joined}#{fragment}" if fragment else joined


def short(text: Optional[str], n: int = 240) -> str:
    return (text or "")[:n]


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


async def first_match(attempts: AsyncIterator, predicate: Callable[[Any], bool]):
    """
    Consume `attempts` until one satisfies `predicate`.

    The iterator is closed right after the hit, so attempts that were never
    requested never run.
    """
    try:
        async for attempt in attempts:
            if predicate(attempt):
                return attempt
        return None
    finally:
        await attempts.aclose()


class ChannelLog:
    """Probe records and observations gathered during one channel run."""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []
        self.observations: List[Observation] = []
        self.attempts = 0
        self.failures = 0

    def record(self, **fields):
        self.records.append(fields)

    def observe(self, id: str, title: str, **evidence):
        self.observations.append(Observation(id=id, title=title, evidence=evidence))

    def attempted(self):
        self.attempts += 1

    def failed(self):
        self.failures += 1

    @property
    def all_failed(self) -> bool:
        return self.attempts > 0 and self.failures == self.attempts


class ProbeChannel(ABC):
    """
    Base class for probe channels.

    A channel returns the raw candidates it found; an empty list means it
    looked and found nothing. When it could not look at all (every request
    failed, no snapshot, ...) it raises ProbeChannelError instead.
    """

    name: str = "base"
    finding_id: str = "base"
    title: str = "Base channel"
    severity: Severity = Severity.MEDIUM
    requires_session: bool = False
    mutates_session: bool = False
    timeout: Optional[float] = None

    def __init__(
        self,
        config: Optional[ProbeConfig] = None,
        http: Optional[HttpClient] = None,
        session: Optional[BrowserSession] = None,
        classifier: Optional[ArticleClassifier] = None,
    ):
        self.config = config or ProbeConfig()
        self.http = http
        self.session = session
        self.classifier = classifier

    @property
    def lexicon(self):
        return self.config.lexicon

    @abstractmethod
    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        """Run the channel against the target."""

    def attach(self, session: BrowserSession):
        """Hook called before navigation."""

    async def drain(self, timeout: float):
        """Hook called after navigation, before probe()."""

    def _user_agent(self, ctx: TargetContext) -> str:
        return ctx.user_agent or self.config.default_user_agent

    def _require_session(self) -> BrowserSession:
        if self.session is None:
            raise ProbeChannelError(self.name, "no browser session")
        return self.session

    def _require_http(self) -> HttpClient:
        if self.http is None:
            raise ProbeChannelError(self.name, "no HTTP client")
        return self.http

    async def _fetch(self, log: ChannelLog, url: str, headers: Dict[str, str], timeout: float) -> Optional[HttpResponse]:
        """GET one URL; a failure is logged and counted, not raised."""
        log.attempted()
        try:
            return await self._require_http().get(url, headers=headers, timeout=timeout)
        except ProbeChannelError as e:
            log.failed()
            log.record(url=url, error=e.reason)
            logger.debug(f"[{self.name}] {url}: {e.reason}")
            return None

    def _check_reachable(self, log: ChannelLog):
        if log.all_failed:
            raise ProbeChannelError(self.name, f"all {log.attempts} requests failed")

    def _body_candidate(self, body: str, url: str, ctx_url: str, **metadata) -> RawCandidate:
        """Candidate for an article body recovered from structured data."""
        looks_html = re.search(self.lexicon.html_like, body, re.IGNORECASE)
        return RawCandidate(
            content=body,
            content_type="text/html" if looks_html else STRUCTURED_TEXT,
            url=url,
            channel=self.name,
            metadata=metadata,
            key=metadata.get("key") or url or ctx_url,
        )


# =============================================================================
# SESSION CHANNELS
# =============================================================================

SCROLL_SCRIPT = """
async () => {
    const s = (ms) => new Promise(r => setTimeout(r, ms));
    for (let i = 0; i < 6; i++) { window.scrollBy(0, window.innerHeight); await s(180); }
    window.scrollTo(0, 0);
}
"""

BEST_SELECTOR_SCRIPT = """
(sels) => {
    let best = { sel: null, len: 0, content: null };
    for (const s of sels) {
        try {
            const el = document.querySelector(s);
            if (!el) continue;
            const t = (el.innerText || '').trim();
            if (t.length > best.len) best = { sel: s, len: t.length, content: el.outerHTML };
        } catch (e) {}
    }
    return best;
}
"""


class OverlayCleanupChannel(ProbeChannel):
    """Dismiss consent dialogs, load lazy content and hide gate overlays."""

    name = "overlay_cleanup"
    finding_id = "overlay_cleanup"
    title = "Overlay cleanup"
    severity = Severity.INFO
    requires_session = True
    mutates_session = True

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        session = self._require_session()

        for selector in self.lexicon.consent_selectors:
            if await session.click_first_visible(selector):
                log.record(step="consent", selector=selector)
                break

        steps = (
            ("escape", lambda: session.press_key("Escape")),
            ("scroll", lambda: session.evaluate(SCROLL_SCRIPT)),
            ("css_hide", lambda: session.add_style(self._overlay_css())),
        )
        for step, action in steps:
            try:
                await action()
                log.record(step=step, ok=True)
            except Exception as e:
                log.record(step=step, ok=False, error=short(str(e), 200))
                logger.debug(f"[{self.name}] {step} failed: {e}")

        await session.wait(0.35)
        return []

    def _overlay_css(self) -> str:
        return (
            f"{', '.join(self.lexicon.overlay_selectors)} "
            "{ display:none !important; visibility:hidden !important } "
            "html,body{overflow:auto!important;height:auto!important}"
        )


class DomChannel(ProbeChannel):
    """Article present in the rendered DOM behind a client-side overlay."""

    name = "dom"
    finding_id = "client_overlay"
    title = "Client-side overlay (article present in DOM, full content saved)"
    severity = Severity.HIGH
    requires_session = True

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        session = self._require_session()

        best = await session.evaluate(BEST_SELECTOR_SCRIPT, list(self.lexicon.content_selectors))
        best = best or {}
        log.record(selector=best.get("sel"), textLength=best.get("len", 0))

        if not best.get("content"):
            return []

        return [RawCandidate(
            content=best["content"],
            content_type="text/html",
            url=ctx.url,
            channel=self.name,
            metadata={"selector": best["sel"], "textLength": best["len"]},
        )]


class HydrationChannel(ProbeChannel):
    """Article body embedded in hydration state or JSON-LD."""

    name = "hydration"
    finding_id = "hydration_article"
    title = "Embedded state carries the article body (full content saved)"
    severity = Severity.HIGH
    requires_session = True

    ASSIGNMENT_RX = re.compile(r"window\.(__[A-Za-z0-9_]+__)\s*=\s*")

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        markup = await self._require_session().content()

        candidates = []
        seen: Set[str] = set()
        for source, payload in self.extract_blocks(markup):
            try:
                tree = parse_json(payload)
            except ValueError as e:
                log.record(source=source, error=f"unparseable: {short(str(e), 120)}")
                continue

            body = find_text(tree, self.lexicon.body_key)
            log.record(source=source, topKeys=list(tree.keys()[:30]), bodyFound=bool(body))
            if not body or body in seen:
                continue
            seen.add(body)
            candidates.append(self._body_candidate(
                body, ctx.url, ctx.url, source=source, key=f"{ctx.url}#{source}",
            ))

        return candidates

    def extract_blocks(self, markup: str):
        """Yield (source, json_text) for each embedded-state script."""
        soup = BeautifulSoup(markup, "html.parser")
        hydration_ids = set(self.lexicon.hydration_ids)
        decoder = json.JSONDecoder()

        for index, script in enumerate(soup.find_all("script")):
            text = script.string or script.get_text() or ""
            if not text.strip():
                continue
            script_type = (script.get("type") or "").lower()
            script_id = script.get("id") or ""

            if script_type == "application/ld+json":
                yield f"json-ld[{index}]", text
            elif script_id in hydration_ids:
                yield script_id, text
            elif script_type == "application/json":
                yield f"json[{script_id or index}]", text
            elif not script_type or "javascript" in script_type:
                for match in self.ASSIGNMENT_RX.finditer(text):
                    try:
                        obj, _ = decoder.raw_decode(text, match.end())
                    except ValueError:
                        continue
                    yield match.group(1), json.dumps(obj)


class PageDiagnosticsChannel(ProbeChannel):
    """Informational page facts: JSON-LD, print CSS, paywall globals, service worker."""

    name = "page_diagnostics"
    finding_id = "page_diagnostics"
    title = "Page diagnostics"
    severity = Severity.INFO
    requires_session = True

    PRINT_CSS_SCRIPT = """
    () => {
        try {
            return !!Array.from(document.styleSheets || []).find(ss => {
                try {
                    if (ss.media && ss.media.mediaText && /print/i.test(ss.media.mediaText)) return true;
                    return Array.from(ss.cssRules || []).some(r => r.media && /print/i.test(r.media.mediaText || ''));
                } catch (e) { return false; }
            });
        } catch (e) { return false; }
    }
    """

    GLOBALS_SCRIPT = """
    (rx) => Object.getOwnPropertyNames(window).filter(k => new RegExp(rx, 'i').test(k)).slice(0, 100)
    """

    SERVICE_WORKER_SCRIPT = """
    async () => {
        try {
            if (!('serviceWorker' in navigator)) return { supported: false };
            const regs = await navigator.serviceWorker.getRegistrations();
            return { supported: true, registrations: regs.map(r => ({ scope: r.scope })) };
        } catch (e) { return { supported: true, error: String(e) }; }
    }
    """

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        session = self._require_session()

        markup = await session.content()
        self._json_ld(markup, log)
        log.record(scripts=self._script_inventory(markup, ctx.url))

        checks = (
            ("print_css", self._print_css),
            ("global_flags", self._globals),
            ("service_worker", self._service_worker),
        )
        for check, run in checks:
            try:
                await run(session, log)
            except Exception as e:
                log.record(check=check, error=short(str(e), 200))
                logger.debug(f"[{self.name}] {check} failed: {e}")

        return []

    def _json_ld(self, markup: str, log: ChannelLog):
        soup = BeautifulSoup(markup, "html.parser")
        count = with_body = 0
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = json.loads(script.string or script.get_text() or "{}")
            except ValueError:
                continue
            items = data if isinstance(data, list) else [data]
            for item in items:
                if isinstance(item, dict) and "article" in str(item.get("@type", "")).lower():
                    count += 1
                    if item.get("articleBody"):
                        with_body += 1

        if count:
            if with_body:
                log.observe("jsonld_article", "JSON-LD Article present", count=count, withBody=with_body)
            else:
                log.observe("jsonld_present", "JSON-LD present (non-articleBody)", count=count, withBody=0)

    def _script_inventory(self, markup: str, base_url: str) -> List[str]:
        soup = BeautifulSoup(markup, "html.parser")
        return [urljoin(base_url, s["src"]) for s in soup.find_all("script", src=True)]

    async def _print_css(self, session: BrowserSession, log: ChannelLog):
        if await session.evaluate(self.PRINT_CSS_SCRIPT):
            log.observe("print_css", "Print stylesheet detected")

    async def _globals(self, session: BrowserSession, log: ChannelLog):
        keys = await session.evaluate(self.GLOBALS_SCRIPT, self.lexicon.global_flags)
        if keys:
            log.observe("global_flags", "Potential metering/paywall globals on window", keys=list(keys))

    async def _service_worker(self, session: BrowserSession, log: ChannelLog):
        info = await session.evaluate(self.SERVICE_WORKER_SCRIPT)
        if info and info.get("supported") and info.get("registrations"):
            log.observe("service_worker", "Service Worker present", **info)


# =============================================================================
# NETWORK INTERCEPTION
# =============================================================================

class NetworkInterceptChannel(ProbeChannel):
    """
    Watch XHR/fetch/GraphQL traffic while the page loads, then re-request the
    responses that look like rendered fragments.

    Only response metadata is kept during navigation; bodies are fetched
    again afterwards.
    """

    name = "network_intercept"
    finding_id = "xhr_fragment_article_like"
    title = "XHR/Fragment carries article HTML (full content saved)"
    severity = Severity.HIGH
    requires_session = True

    CAPTURE_RX = re.compile(r"json|graphql|html")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.captured: List[Dict[str, Any]] = []
        self._pending: Set[asyncio.Future] = set()
        self._listening_on: Optional[BrowserSession] = None

    def attach(self, session: BrowserSession):
        # Every run starts from an empty capture list
        self.captured = []
        self._pending = set()
        if self._listening_on is not session:
            session.on_response(self._on_response)
            self._listening_on = session

    def _on_response(self, response: InterceptedResponse):
        if not self.CAPTURE_RX.search(response.content_type or ""):
            return
        task = asyncio.ensure_future(self._capture(response))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _capture(self, response: InterceptedResponse):
        record = {
            "url": response.url,
            "method": response.method,
            "status": response.status,
            "ct": response.content_type,
            "operationName": self._operation_name(response),
            "size": None,
            "sha256": None,
            "topKeys": [],
        }
        try:
            body = await response.body()
        except Exception as e:
            record["bodyError"] = short(str(e), 200)
            body = None

        if body is not None:
            record["size"] = len(body)
            record["sha256"] = sha256(body)
            if re.search(r"json|graphql", response.content_type):
                try:
                    tree = parse_json(body)
                    record["topKeys"] = list(tree.keys()[:30])
                except ValueError:
                    pass

        self.captured.append(record)

    def _operation_name(self, response: InterceptedResponse) -> Optional[str]:
        if response.method != "POST" or not response.post_data or len(response.post_data) >= 200000:
            return None
        try:
            parsed = json.loads(response.post_data)
        except ValueError:
            return None
        return parsed.get("operationName") if isinstance(parsed, dict) else None

    async def drain(self, timeout: float):
        """Wait for in-flight captures; anything still pending after `timeout` is cancelled."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                for task in list(self._pending):
                    task.cancel()
                logger.warning(f"[{self.name}] {len(self._pending)} captures still pending, cancelled")
                break
            await asyncio.wait(set(self._pending), timeout=remaining)

    def is_fragment_candidate(self, record: Dict[str, Any]) -> bool:
        url = record.get("url") or ""
        return "html" in (record.get("ct") or "") or any(s in url for s in self.lexicon.fragment_candidates)

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        candidates = []
        refetched: Set[str] = set()

        for record in self.captured:
            log.record(**record)
            url = record["url"]
            if url in refetched or not self.is_fragment_candidate(record):
                continue
            refetched.add(url)

            headers = {"Accept": record.get("ct") or "text/html", "User-Agent": self._user_agent(ctx)}
            response = await self._fetch(log, url, headers, ctx.request_timeout)
            if response is None:
                continue

            record["refetch"] = {
                "status": response.status,
                "ct": response.content_type,
                "sha256": sha256(response.body),
            }
            candidates.append(RawCandidate(
                content=response.body,
                content_type=response.content_type,
                url=url,
                channel=self.name,
                metadata={"interceptedStatus": record["status"], "interceptedCt": record["ct"]},
            ))

        self._check_reachable(log)
        return candidates


# =============================================================================
# HTTP CHANNELS
# =============================================================================

class JsonEndpointChannel(ProbeChannel):
    """Guess JSON API endpoints for the article."""

    name = "json_endpoint"
    finding_id = "public_json"
    title = "Public JSON endpoint exposing article content (full content saved)"
    severity = Severity.CRITICAL

    @staticmethod
    def variants(url: str) -> List[str]:
        base = url.split("#")[0]
        path_only = base.split("?")[0].rstrip("/")
        parsed = urlparse(path_only)
        slug = parsed.path.rstrip("/").rsplit("/", 1)[-1]

        candidates = [
            path_only + ".json",
            path_only.replace("/pages/", "/articles/") + ".json",
            path_only.replace("/pages/", "/api/pages/"),
            with_query(base, "view=json"),
            with_query(base, "format=json"),
        ]
        if slug:
            root = f"{parsed.scheme}://{parsed.netloc}"
            candidates.append(f"{root}/wp-json/wp/v2/posts?slug={slug}")
            candidates.append(f"{root}/api/articles/{slug}")

        seen = {url, path_only}
        variants = []
        for candidate in candidates:
            if candidate not in seen:
                seen.add(candidate)
                variants.append(candidate)
        return variants

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        headers = {"Accept": JSON_ACCEPT, "User-Agent": self._user_agent(ctx)}
        candidates = []

        for variant in self.variants(ctx.url):
            response = await self._fetch(log, variant, headers, ctx.request_timeout)
            if response is None:
                continue

            ct = response.content_type
            log.record(path=variant, status=response.status, contentType=ct, snippet=short(response.text))
            if response.status != 200:
                continue

            if "application/json" in ct or "+json" in ct:
                try:
                    tree = parse_json(response.body)
                except ValueError:
                    continue
                body = find_text(tree, self.lexicon.body_key)
                if body:
                    candidates.append(self._body_candidate(
                        body, variant, ctx.url, topKeys=list(tree.keys()[:30]),
                    ))
            else:
                log.observe(
                    f"json_probe_html:{sha256(variant.encode())[:12]}",
                    "Endpoint returned HTML (not JSON)",
                    path=variant,
                    contentType=ct,
                )

        self._check_reachable(log)
        return candidates


class AltViewChannel(ProbeChannel):
    """Print/share/AMP renditions of the article."""

    name = "alt_view"
    finding_id = "alt_view"
    title = "Alternative view serves the full article (print/share/amp)"
    severity = Severity.MEDIUM

    @staticmethod
    def variants(url: str) -> List[str]:
        makers = (
            lambda u: u.split("?")[0].rstrip("/") + "/amp",
            lambda u: with_query(u, "print=1"),
            lambda u: with_query(u, "share=1"),
            lambda u: with_query(u, "outputType=amp"),
        )
        return [v for v in (make(url) for make in makers) if v and v != url]

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        headers = {"Accept": "text/html", "User-Agent": self._user_agent(ctx)}
        candidates = []

        for variant in self.variants(ctx.url):
            response = await self._fetch(log, variant, headers, ctx.request_timeout)
            if response is None:
                continue

            ct = response.content_type
            qualifies = response.status == 200 and "text/html" in ct and "<html" in response.text.lower()
            log.record(url=variant, status=response.status, contentType=ct, qualifies=qualifies)
            if qualifies:
                candidates.append(RawCandidate(
                    content=response.body,
                    content_type=ct,
                    url=variant,
                    channel=self.name,
                ))

        self._check_reachable(log)
        return candidates


@dataclass
class MatrixAttempt:
    user_agent: str
    referer: str
    response: Optional[HttpResponse] = None
    signal: Optional[ClassificationSignal] = None

    @property
    def positive(self) -> bool:
        return self.signal is not None and self.signal.verdict


class UaRefererMatrixChannel(ProbeChannel):
    """
    Request the page under every user-agent/referer pair until one of them
    gets the full article. User agents are the outer loop.
    """

    name = "ua_referer_matrix"
    finding_id = "ua_referer_bypass"
    title = "Full article served to a specific user-agent/referer"
    severity = Severity.HIGH

    def combinations(self):
        return itertools.product(self.config.user_agents, self.config.referers)

    async def attempts(self, ctx: TargetContext, log: ChannelLog) -> AsyncIterator[MatrixAttempt]:
        classifier = self.classifier or ArticleClassifier(self.lexicon, self.config.thresholds)

        for user_agent, referer in self.combinations():
            headers = {"User-Agent": user_agent, "Referer": referer, "Accept": HTML_ACCEPT}
            response = await self._fetch(log, ctx.url, headers, self.config.matrix_request_timeout)
            attempt = MatrixAttempt(user_agent, referer, response)

            if response is not None:
                if response.status == 200:
                    attempt.signal = classifier.classify(response.body, response.content_type, ctx.baseline_bytes)
                log.record(
                    userAgent=user_agent,
                    referer=referer,
                    status=response.status,
                    verdict=attempt.positive,
                )
            yield attempt

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        hit = await first_match(self.attempts(ctx, log), lambda attempt: attempt.positive)

        if hit is None:
            self._check_reachable(log)
            return []

        return [RawCandidate(
            content=hit.response.body,
            content_type=hit.response.content_type,
            url=ctx.url,
            channel=self.name,
            metadata={"userAgent": hit.user_agent, "referer": hit.referer},
            key=f"{ctx.url}#{hit.user_agent}|{hit.referer}",
        )]
