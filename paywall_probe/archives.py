"""
Archive channel - ask the Wayback Machine for a fresh snapshot of the
target and check whether the archived copy carries the article.
"""

import asyncio
import logging
import re
from typing import List, Optional
from urllib.parse import urljoin

from .channels import HTML_ACCEPT, ChannelLog, ProbeChannel, short
from .errors import ProbeChannelError
from .fetcher import HttpResponse
from .models import RawCandidate, Severity, TargetContext

logger = logging.getLogger(__name__)

WAYBACK_ROOT = "https://web.archive.org"
LATEST_URL = WAYBACK_ROOT + "/web/{url}"

_SNAPSHOT_RX = re.compile(r"/web/\d{14}[a-z_]*/[^\s\"'<>]+")


def clean_wayback_html(html: str) -> str:
    """Remove the Wayback toolbar, its scripts and its URL rewrites."""
    html = re.sub(
        r"<!-- BEGIN WAYBACK TOOLBAR INSERT -->.*?<!-- END WAYBACK TOOLBAR INSERT -->",
        "",
        html,
        flags=re.DOTALL,
    )
    html = re.sub(
        r"<script[^>]*archive\.org[^>]*>.*?</script>",
        "",
        html,
        flags=re.DOTALL | re.IGNORECASE,
    )
    return re.sub(r'(href|src)="(/web/\d+[a-z]*_?/)?(https?://)', r'\1="\3', html)


def snapshot_reference(response: HttpResponse) -> Optional[str]:
    """Where a save request says the new snapshot lives, if it says so."""
    for header in ("Content-Location", "Location"):
        value = response.header(header)
        if value and "/web/" in value:
            return urljoin(WAYBACK_ROOT, value)

    if "/web/" in response.url:
        return response.url

    match = _SNAPSHOT_RX.search(response.text)
    if match:
        return urljoin(WAYBACK_ROOT, match.group(0))
    return None


class ArchiveChannel(ProbeChannel):
    """
    Submit the target to the archive, then poll for the snapshot.

    A snapshot that never shows up within the poll budget is inconclusive,
    never an error for the run.
    """

    name = "archive_service"
    finding_id = "archive_service"
    title = "Archive service holds the full article"
    severity = Severity.MEDIUM

    @property
    def timeout(self) -> float:
        return self.config.archive_timeout

    async def submit(self, ctx: TargetContext, log: ChannelLog) -> str:
        save_url = self.config.archive_save_url.format(url=ctx.url)
        headers = {"User-Agent": self._user_agent(ctx), "Accept": HTML_ACCEPT}

        response = await self._fetch(log, save_url, headers, ctx.request_timeout)
        reference = snapshot_reference(response) if response is not None else None
        log.record(
            step="submit",
            url=save_url,
            status=response.status if response is not None else None,
            snapshot=reference,
        )

        if reference is None:
            # Fall back to the archive's "latest snapshot" redirect
            reference = LATEST_URL.format(url=ctx.url)
        return reference

    async def probe(self, ctx: TargetContext, log: Optional[ChannelLog] = None) -> List[RawCandidate]:
        log = log or ChannelLog()
        snapshot = await self.submit(ctx, log)
        markup_rx = re.compile(self.lexicon.html_like, re.IGNORECASE)
        headers = {"User-Agent": self._user_agent(ctx), "Accept": HTML_ACCEPT}
        attempts = self.config.archive_poll_attempts

        for attempt in range(1, attempts + 1):
            response = await self._fetch(log, snapshot, headers, ctx.request_timeout)
            if response is not None:
                log.record(step="poll", attempt=attempt, status=response.status, snippet=short(response.text, 120))
                if response.status == 200 and markup_rx.search(response.text):
                    return [RawCandidate(
                        content=clean_wayback_html(response.text),
                        content_type=response.content_type or "text/html",
                        url=snapshot,
                        channel=self.name,
                        metadata={"snapshot": snapshot, "pollAttempt": attempt},
                    )]

            if attempt < attempts:
                await asyncio.sleep(self.config.archive_poll_interval)

        logger.info(f"[{self.name}] no snapshot after {attempts} polls")
        raise ProbeChannelError(self.name, f"no retrievable snapshot after {attempts} poll attempts")
