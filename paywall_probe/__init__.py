"""
Paywall Exposure Probe
Authorized testing tool that checks whether a paywalled article leaks its
full content through channels the paywall does not cover.

Architecture:
- Probe channels (DOM, hydration state, JSON endpoints, alternate views,
  intercepted XHR, user-agent/referer matrix, archive snapshot)
- Deterministic article-likeness classifier
- Content-addressed artifact store
- Orchestrator with per-channel isolation and deadlines
"""

from .aggregator import FindingAggregator
from .archives import ArchiveChannel
from .browser import BrowserSession, PlaywrightSession, open_browser_session
from .channels import (
    AltViewChannel,
    DomChannel,
    HydrationChannel,
    JsonEndpointChannel,
    NetworkInterceptChannel,
    OverlayCleanupChannel,
    PageDiagnosticsChannel,
    ProbeChannel,
    UaRefererMatrixChannel,
)
from .classifier import ArticleClassifier, ClassificationSignal, ValidationScore
from .config import ClassifierThresholds, Lexicon, ProbeConfig, load_config
from .core import ProbeOrchestrator, default_channels, probe_url, probe_url_sync
from .errors import (
    ArtifactWriteError,
    ClassificationInputError,
    NavigationError,
    ProbeChannelError,
    ProbeError,
)
from .fetcher import AiohttpClient, HttpClient, HttpResponse
from .jsontree import JsonNode, find_key, parse_json
from .models import (
    ChannelOutcome,
    Finding,
    RunReport,
    Severity,
    TargetContext,
)
from .store import FingerprintStore

__version__ = "1.0.0"
__all__ = [
    "ProbeOrchestrator",
    "probe_url",
    "probe_url_sync",
    "default_channels",
    "ProbeChannel",
    "DomChannel",
    "HydrationChannel",
    "JsonEndpointChannel",
    "AltViewChannel",
    "NetworkInterceptChannel",
    "UaRefererMatrixChannel",
    "ArchiveChannel",
    "OverlayCleanupChannel",
    "PageDiagnosticsChannel",
    "ArticleClassifier",
    "ClassificationSignal",
    "ValidationScore",
    "FindingAggregator",
    "FingerprintStore",
    "BrowserSession",
    "PlaywrightSession",
    "open_browser_session",
    "HttpClient",
    "HttpResponse",
    "AiohttpClient",
    "JsonNode",
    "find_key",
    "parse_json",
    "TargetContext",
    "Finding",
    "Severity",
    "ChannelOutcome",
    "RunReport",
    "ProbeConfig",
    "Lexicon",
    "ClassifierThresholds",
    "load_config",
    "ProbeError",
    "NavigationError",
    "ProbeChannelError",
    "ClassificationInputError",
    "ArtifactWriteError",
]
