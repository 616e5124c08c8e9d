"""
Finding aggregator - turns positive classifications into findings.
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, List, Optional

from .classifier import ClassificationSignal
from .errors import ArtifactWriteError
from .models import Finding, Observation, RawCandidate, RunSummary, Severity
from .store import FingerprintStore

if TYPE_CHECKING:
    from .channels import ProbeChannel

logger = logging.getLogger(__name__)


def finding_id(base: str, source_url: str) -> str:
    """Stable across runs: channel id plus a short hash of the source URL."""
    return f"{base}:{hashlib.sha256(source_url.encode('utf-8')).hexdigest()[:12]}"


class FindingAggregator:
    """
    Append-only finding sequence for one run.

    Artifacts are persisted before the finding that references them is
    appended. A failed write is logged and the finding is still kept, with
    evidence_available=False.
    """

    def __init__(self, store: FingerprintStore):
        self.store = store
        self._findings: List[Finding] = []
        self._lock = asyncio.Lock()

    @property
    def findings(self) -> List[Finding]:
        return list(self._findings)

    def ranked(self) -> List[Finding]:
        return sorted(self._findings, key=lambda f: -f.severity.rank)

    async def add_positive(
        self,
        candidate: RawCandidate,
        signal: ClassificationSignal,
        channel: "ProbeChannel",
    ) -> Finding:
        """Persist the candidate's content and append a finding for it."""
        raw = candidate.raw_bytes()
        evidence = {
            "url": candidate.url,
            "method": candidate.method,
            "contentType": candidate.content_type,
            "signals": signal.to_dict(),
        }
        evidence.update(candidate.metadata)

        digest = None
        available = True
        try:
            artifact = await self.store.persist(raw, candidate.content_type)
            digest = artifact.fingerprint
            evidence["sha256"] = digest
            evidence["contentPath"] = str(artifact.path)
        except ArtifactWriteError as e:
            logger.error(f"Artifact write failed for {candidate.url}: {e}")
            digest = e.fingerprint
            available = False
            evidence["sha256"] = digest
            evidence["artifactError"] = e.reason

        finding = Finding(
            id=finding_id(channel.finding_id, candidate.identity),
            title=channel.title,
            severity=channel.severity,
            channel=channel.name,
            evidence=evidence,
            fingerprint=digest,
            evidence_available=available,
        )
        await self._append(finding)
        logger.info(f"[{finding.severity.value}] {finding.title} <- {candidate.url}")
        return finding

    async def add_observation(self, observation: Observation, channel: str) -> Finding:
        """Append an informational finding (no artifact)."""
        finding = Finding(
            id=observation.id,
            title=observation.title,
            severity=Severity.INFO,
            channel=channel,
            evidence=dict(observation.evidence),
        )
        await self._append(finding)
        return finding

    async def _append(self, finding: Finding):
        async with self._lock:
            self._findings.append(finding)

    def summary(self, target: str, generated_at: Optional[str] = None) -> RunSummary:
        counts: Dict[str, int] = {}
        for finding in self._findings:
            counts[finding.severity.value] = counts.get(finding.severity.value, 0) + 1

        return RunSummary(
            target=target,
            generated_at=generated_at or datetime.now(timezone.utc).isoformat(),
            counts_by_severity=counts,
            artifacts=[str(path) for path in self.store.artifacts.values()],
        )
