"""
Probe orchestrator - runs every channel against one target and turns
positively classified content into findings.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from .aggregator import FindingAggregator
from .archives import ArchiveChannel
from .browser import BrowserSession, open_browser_session
from .channels import (
    AltViewChannel,
    ChannelLog,
    DomChannel,
    HydrationChannel,
    JsonEndpointChannel,
    NetworkInterceptChannel,
    OverlayCleanupChannel,
    PageDiagnosticsChannel,
    ProbeChannel,
    UaRefererMatrixChannel,
)
from .classifier import ArticleClassifier
from .config import ProbeConfig
from .errors import NavigationError, ProbeChannelError
from .fetcher import AiohttpClient, HttpClient
from .models import (
    ChannelOutcome,
    ChannelReport,
    ChannelResult,
    ChannelStatus,
    RunReport,
    TargetContext,
)
from .store import FingerprintStore

logger = logging.getLogger(__name__)

# What a gated reader sees before any overlay is removed
VISIBLE_TEXT_SCRIPT = "() => (document.body && document.body.innerText) || ''"


def default_channels(
    config: ProbeConfig,
    http: Optional[HttpClient] = None,
    session: Optional[BrowserSession] = None,
    classifier: Optional[ArticleClassifier] = None,
) -> List[ProbeChannel]:
    """The full channel set, in report order."""
    kinds = (
        OverlayCleanupChannel,
        DomChannel,
        HydrationChannel,
        PageDiagnosticsChannel,
        NetworkInterceptChannel,
        JsonEndpointChannel,
        AltViewChannel,
        UaRefererMatrixChannel,
        ArchiveChannel,
    )
    return [kind(config, http=http, session=session, classifier=classifier) for kind in kinds]


class ProbeOrchestrator:
    """
    Runs one probe against one target.

    Session channels share the browser page and run in a fixed order:
    navigate, record the teaser baseline, run the channels that modify the
    page, run the channels that only read it, then drain and evaluate the
    intercepted traffic. HTTP-only channels run alongside in a bounded pool.

    A failing channel never fails the run: it is reported INCONCLUSIVE (it
    tried and could not decide) or SKIPPED (it never ran).
    """

    def __init__(
        self,
        channels: List[ProbeChannel],
        classifier: Optional[ArticleClassifier] = None,
        aggregator: Optional[FindingAggregator] = None,
        session: Optional[BrowserSession] = None,
        config: Optional[ProbeConfig] = None,
        log_level: int = logging.INFO,
    ):
        self.config = config or ProbeConfig()
        self.channels = list(channels)
        self.classifier = classifier or ArticleClassifier(self.config.lexicon, self.config.thresholds)
        self.aggregator = aggregator or FindingAggregator(FingerprintStore(self.config.artifacts_dir))
        self.session = session

        names = [c.name for c in self.channels]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate channel names: {names}")

        self._results: Dict[str, ChannelResult] = {}
        self._positives: Dict[str, int] = {}
        self._deadline = 0.0

        logging.getLogger("paywall_probe").setLevel(log_level)

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(self, ctx: TargetContext) -> RunReport:
        """Probe `ctx.url` with every channel and return the report."""
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.config.run_timeout
        self._results = {}
        self._positives = {}

        logger.info(f"Probing {ctx.url} with {len(self.channels)} channels")

        baseline_ready = asyncio.Event()
        session_channels = [c for c in self.channels if c.requires_session]
        http_channels = [c for c in self.channels if not c.requires_session]

        await asyncio.gather(
            self._session_phase(ctx, session_channels, baseline_ready),
            self._http_phase(ctx, http_channels, baseline_ready),
        )

        report = self._build_report(ctx)
        logger.info(
            f"Probe of {ctx.url} done: {report.summary.total_findings} findings, "
            f"{len(report.artifacts)} artifacts"
        )
        return report

    def _remaining(self) -> float:
        return self._deadline - asyncio.get_running_loop().time()

    async def _session_phase(self, ctx: TargetContext, channels: List[ProbeChannel], baseline_ready: asyncio.Event):
        try:
            ready = await self._prepare_session(ctx, channels)
        finally:
            baseline_ready.set()

        if not ready:
            return

        mutating = [c for c in channels if c.mutates_session]
        reading = [c for c in channels if not c.mutates_session and not isinstance(c, NetworkInterceptChannel)]
        intercepting = [c for c in channels if isinstance(c, NetworkInterceptChannel)]

        for channel in mutating + reading:
            await self._run_channel(channel, ctx)

        for channel in intercepting:
            drain_timeout = min(self._channel_timeout(channel), max(0.0, self._remaining()))
            await channel.drain(drain_timeout)
            await self._run_channel(channel, ctx)

    async def _prepare_session(self, ctx: TargetContext, channels: List[ProbeChannel]) -> bool:
        """Attach listeners, navigate and record the baseline. False when session channels cannot run."""
        if self.session is None:
            for channel in channels:
                self._results[channel.name] = ChannelResult.skipped(channel.name, "no browser session")
            return False

        for channel in channels:
            channel.attach(self.session)

        timeout = min(self.config.navigation_timeout, self._remaining())
        if timeout <= 0:
            for channel in channels:
                self._results[channel.name] = ChannelResult.skipped(channel.name, "run deadline reached")
            return False

        try:
            await asyncio.wait_for(self.session.navigate(ctx.url, timeout), timeout=timeout)
        except NavigationError as e:
            self._navigation_failed(channels, e.reason)
            return False
        except asyncio.TimeoutError:
            self._navigation_failed(channels, f"timed out after {timeout:.1f}s")
            return False

        await self._capture_baseline(ctx)
        return True

    def _navigation_failed(self, channels: List[ProbeChannel], reason: str):
        logger.warning(f"Navigation failed: {reason}")
        for channel in channels:
            self._results[channel.name] = ChannelResult.inconclusive(channel.name, f"navigation failed: {reason}")

    async def _capture_baseline(self, ctx: TargetContext):
        if ctx.has_baseline:
            return
        try:
            text = await self.session.evaluate(VISIBLE_TEXT_SCRIPT)
        except Exception as e:
            logger.warning(f"Could not read the page for the teaser baseline: {e}")
            return

        text = text if isinstance(text, str) else ""
        word_count, byte_length = len(text.split()), len(text.encode("utf-8"))
        ctx.set_baseline(word_count, byte_length)
        logger.info(f"Teaser baseline: {word_count} words, {byte_length} bytes")

    async def _http_phase(self, ctx: TargetContext, channels: List[ProbeChannel], baseline_ready: asyncio.Event):
        if not channels:
            return

        try:
            await asyncio.wait_for(baseline_ready.wait(), timeout=max(0.0, self._remaining()))
        except asyncio.TimeoutError:
            pass

        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def bounded_run(channel: ProbeChannel):
            async with semaphore:
                return await self._run_channel(channel, ctx)

        await asyncio.gather(*[bounded_run(c) for c in channels])

    # =========================================================================
    # ONE CHANNEL
    # =========================================================================

    def _channel_timeout(self, channel: ProbeChannel) -> float:
        return channel.timeout or self.config.channel_timeout

    async def _run_channel(self, channel: ProbeChannel, ctx: TargetContext) -> ChannelResult:
        remaining = self._remaining()
        if remaining <= 0:
            result = ChannelResult.skipped(channel.name, "run deadline reached")
            self._results[channel.name] = result
            logger.info(f"[{channel.name}] skipped: run deadline reached")
            return result

        timeout = min(self._channel_timeout(channel), remaining)
        log = ChannelLog()
        start = time.monotonic()
        logger.debug(f"[{channel.name}] starting (timeout {timeout:.1f}s)")

        try:
            candidates = await asyncio.wait_for(channel.probe(ctx, log), timeout=timeout)
            result = ChannelResult.success(channel.name, candidates)
        except asyncio.TimeoutError:
            logger.warning(f"[{channel.name}] timed out after {timeout:.1f}s")
            result = ChannelResult.inconclusive(channel.name, f"timed out after {timeout:.1f}s")
        except ProbeChannelError as e:
            logger.warning(f"[{channel.name}] inconclusive: {e.reason}")
            result = ChannelResult.inconclusive(channel.name, e.reason)
        except Exception as e:
            logger.exception(f"[{channel.name}] failed unexpectedly")
            result = ChannelResult.inconclusive(channel.name, f"{type(e).__name__}: {e}")

        result.observations = log.observations
        result.records = log.records
        result.elapsed_ms = int((time.monotonic() - start) * 1000)
        self._results[channel.name] = result

        await self._evaluate(channel, result, ctx)
        return result

    async def _evaluate(self, channel: ProbeChannel, result: ChannelResult, ctx: TargetContext):
        """Classify the channel's candidates and record findings."""
        positives = 0
        for candidate in result.candidates:
            signal = self.classifier.classify(candidate.content, candidate.content_type, ctx.baseline_bytes)
            logger.debug(
                f"[{channel.name}] {candidate.url}: {signal.score.value} "
                f"({signal.word_count} words, density {signal.density})"
            )
            if signal.verdict:
                await self.aggregator.add_positive(candidate, signal, channel)
                positives += 1

        for observation in result.observations:
            await self.aggregator.add_observation(observation, channel.name)

        self._positives[channel.name] = positives

    # =========================================================================
    # REPORT
    # =========================================================================

    def _channel_report(self, channel: ProbeChannel) -> ChannelReport:
        result = self._results.get(channel.name)
        if result is None:
            return ChannelReport(channel.name, ChannelOutcome.SKIPPED, reason="not scheduled")

        positives = self._positives.get(channel.name, 0)
        if result.status is ChannelStatus.SUCCESS:
            outcome = ChannelOutcome.EXPOSED if positives else ChannelOutcome.NOT_EXPOSED
        elif result.status is ChannelStatus.INCONCLUSIVE:
            outcome = ChannelOutcome.INCONCLUSIVE
        else:
            outcome = ChannelOutcome.SKIPPED

        return ChannelReport(
            channel=channel.name,
            outcome=outcome,
            candidates=len(result.candidates),
            positives=positives,
            reason=result.reason,
            elapsed_ms=result.elapsed_ms,
        )

    def _build_report(self, ctx: TargetContext) -> RunReport:
        probe_log = {
            name: result.records
            for name, result in self._results.items()
            if result.records
        }
        return RunReport(
            summary=self.aggregator.summary(ctx.url),
            findings=self.aggregator.findings,
            artifacts={digest: str(path) for digest, path in self.aggregator.store.artifacts.items()},
            channels=[self._channel_report(c) for c in self.channels],
            probe_log=probe_log,
        )


# =============================================================================
# ENTRY POINTS
# =============================================================================

async def probe_url(
    url: str,
    config: Optional[ProbeConfig] = None,
    headless: bool = True,
    user_agent: Optional[str] = None,
    log_level: int = logging.INFO,
) -> RunReport:
    """
    Probe `url` with a fresh Chromium page and the full channel set.

    Only an empty URL (ValueError) or a browser launch failure escape.
    """
    config = config or ProbeConfig()
    ctx = TargetContext(url, user_agent=user_agent, request_timeout=config.request_timeout)

    classifier = ArticleClassifier(config.lexicon, config.thresholds)
    aggregator = FindingAggregator(FingerprintStore(config.artifacts_dir))
    http = AiohttpClient(user_agent=user_agent or config.default_user_agent)

    try:
        async with open_browser_session(
            headless=headless,
            user_agent=user_agent,
            settle_delay=config.settle_delay,
        ) as session:
            orchestrator = ProbeOrchestrator(
                default_channels(config, http=http, session=session, classifier=classifier),
                classifier=classifier,
                aggregator=aggregator,
                session=session,
                config=config,
                log_level=log_level,
            )
            return await orchestrator.run(ctx)
    finally:
        await http.close()


def probe_url_sync(url: str, **kwargs) -> RunReport:
    """Synchronous wrapper for probe_url()."""
    return asyncio.run(probe_url(url, **kwargs))
