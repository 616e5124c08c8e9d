"""
Data model shared by channels, classifier, aggregator and orchestrator.
"""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# =============================================================================
# TARGET
# =============================================================================

class TargetContext:
    """
    The page under test.

    Everything is fixed at construction except the teaser baseline, which the
    orchestrator records exactly once, before any channel mutates the page.
    """

    __slots__ = ("_url", "_user_agent", "_request_timeout", "_baseline_words", "_baseline_bytes")

    def __init__(self, url: str, user_agent: Optional[str] = None, request_timeout: float = 15.0):
        if not url or not url.strip():
            raise ValueError("target URL is required")
        self._url = url.strip()
        self._user_agent = user_agent
        self._request_timeout = request_timeout
        self._baseline_words: Optional[int] = None
        self._baseline_bytes: Optional[int] = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def user_agent(self) -> Optional[str]:
        return self._user_agent

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    @property
    def has_baseline(self) -> bool:
        return self._baseline_bytes is not None

    @property
    def baseline_words(self) -> int:
        return self._baseline_words or 0

    @property
    def baseline_bytes(self) -> int:
        return self._baseline_bytes or 0

    def set_baseline(self, words: int, byte_length: int):
        if self.has_baseline:
            raise ValueError("teaser baseline already recorded")
        self._baseline_words = int(words)
        self._baseline_bytes = int(byte_length)

    def __repr__(self) -> str:
        return f"TargetContext(url={self._url!r}, baseline_bytes={self._baseline_bytes})"


# =============================================================================
# CANDIDATES
# =============================================================================

@dataclass
class RawCandidate:
    """Content a channel retrieved, before classification."""
    content: Union[str, bytes]
    content_type: str
    url: str
    channel: str
    method: str = "GET"
    metadata: Dict[str, Any] = field(default_factory=dict)
    key: Optional[str] = None  # distinguishes several candidates sharing one URL

    @property
    def identity(self) -> str:
        return self.key or self.url

    def raw_bytes(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode("utf-8")


@dataclass(frozen=True)
class Observation:
    """Informational fact from a channel, reported as an Info finding."""
    id: str
    title: str
    evidence: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# FINDINGS
# =============================================================================

class Severity(Enum):
    """Finding severity. Ordered: CRITICAL > HIGH > MEDIUM > LOW > INFO."""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


@dataclass(frozen=True)
class Finding:
    """One evidenced exposure (or informational observation)."""
    id: str
    title: str
    severity: Severity
    channel: str
    evidence: Dict[str, Any]
    fingerprint: Optional[str] = None
    evidence_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


# =============================================================================
# CHANNEL RESULTS
# =============================================================================

class ChannelStatus(Enum):
    SUCCESS = "success"            # channel ran; candidates may be empty
    INCONCLUSIVE = "inconclusive"  # channel failed or timed out
    SKIPPED = "skipped"            # channel never ran


class ChannelOutcome(Enum):
    EXPOSED = "exposed"
    NOT_EXPOSED = "not_exposed"
    INCONCLUSIVE = "inconclusive"
    SKIPPED = "skipped"


@dataclass
class ChannelResult:
    """What a channel returned, or why it returned nothing."""
    channel: str
    status: ChannelStatus
    candidates: List[RawCandidate] = field(default_factory=list)
    observations: List[Observation] = field(default_factory=list)
    records: List[Dict[str, Any]] = field(default_factory=list)
    reason: Optional[str] = None
    elapsed_ms: int = 0

    @classmethod
    def success(cls, channel: str, candidates: List[RawCandidate], **kwargs) -> "ChannelResult":
        return cls(channel=channel, status=ChannelStatus.SUCCESS, candidates=list(candidates), **kwargs)

    @classmethod
    def inconclusive(cls, channel: str, reason: str, **kwargs) -> "ChannelResult":
        return cls(channel=channel, status=ChannelStatus.INCONCLUSIVE, reason=reason, **kwargs)

    @classmethod
    def skipped(cls, channel: str, reason: str) -> "ChannelResult":
        return cls(channel=channel, status=ChannelStatus.SKIPPED, reason=reason)


@dataclass
class ChannelReport:
    """Per-channel summary kept in the run report."""
    channel: str
    outcome: ChannelOutcome
    candidates: int = 0
    positives: int = 0
    reason: Optional[str] = None
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


# =============================================================================
# REPORT
# =============================================================================

@dataclass
class RunSummary:
    """Terminal summary consumed by reporting layers."""
    target: str
    generated_at: str
    counts_by_severity: Dict[str, int]
    artifacts: List[str]

    @property
    def total_findings(self) -> int:
        return sum(self.counts_by_severity.values())


@dataclass
class RunReport:
    """Everything one run produced."""
    summary: RunSummary
    findings: List[Finding]
    artifacts: Dict[str, str]
    channels: List[ChannelReport]
    probe_log: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    def ranked(self) -> List[Finding]:
        """Findings by descending severity; ties keep discovery order."""
        return sorted(self.findings, key=lambda f: -f.severity.rank)

    def channel(self, name: str) -> Optional[ChannelReport]:
        for report in self.channels:
            if report.channel == name:
                return report
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.summary.target,
            "generatedAt": self.summary.generated_at,
            "summary": asdict(self.summary),
            "findings": [f.to_dict() for f in self.findings],
            "artifacts": dict(self.artifacts),
            "channels": [c.to_dict() for c in self.channels],
            "probeLog": self.probe_log,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False, default=str)

    def to_markdown(self) -> str:
        lines = [f"# Probe report for {self.summary.target}", "", "## Findings", ""]
        for finding in self.ranked():
            content_path = finding.evidence.get("contentPath")
            suffix = f" [Content: {content_path}]" if content_path else ""
            lines.append(f"- **{finding.severity.value}** - {finding.title} ({finding.id}){suffix}")
        if not self.findings:
            lines.append("_No findings._")

        lines += ["", "## Channels", ""]
        for report in self.channels:
            reason = f" ({report.reason})" if report.reason else ""
            lines.append(f"- `{report.channel}`: {report.outcome.value}{reason}")
        return "\n".join(lines) + "\n"
