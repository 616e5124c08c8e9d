"""
Probe configuration - lexicons, thresholds and channel parameters.

Everything that used to be a hardcoded keyword or selector list lives here so
a market-specific lexicon can be swapped in without touching the classifier
or the channels.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# LEXICON
# =============================================================================

# Narrow set: explicit "pay to keep reading" prompts
DEFAULT_SUBSCRIPTION_PROMPTS = (
    r"subscribe (?:now |today )?to (?:continue|read|keep reading|unlock)",
    r"reserved for subscribers",
    r"for subscribers only",
    r"subscribers? only",
    r"already a subscriber",
    r"start your (?:free )?(?:trial|subscription)",
    r"unlock this article",
    r"réservé aux abonnés",
    r"abonnez-vous",
    r"nur für abonnenten",
    r"jetzt abonnieren",
)

DEFAULT_PAYWALL_PROMPTS = (
    r"\bsubscribe\b",
    r"\blog ?in\b",
    r"\bsign in to (?:read|continue)\b",
    r"create (?:a |an )?(?:free )?account to continue",
    r"free articles? remaining",
    r"connectez-vous",
    r"se connecter",
    r"\banmelden\b",
) + DEFAULT_SUBSCRIPTION_PROMPTS


@dataclass(frozen=True)
class Lexicon:
    """Keyword, pattern and selector lists used by the classifier and channels."""

    paywall_prompts: Tuple[str, ...] = DEFAULT_PAYWALL_PROMPTS
    subscription_prompts: Tuple[str, ...] = DEFAULT_SUBSCRIPTION_PROMPTS

    # Keys that hint a payload carries article content or entitlement state
    article_keys: str = (
        r"\b(body_html|articleBody|renderedBody|content_html|contentHtml|"
        r"content\.blocks|paragraphs|paywall|meter|entitlement|subscribe)\b"
    )
    html_like: str = r"<html|<article|<main|<p[\s>]"

    # Structured-data key that holds the article body; `parent.key` paths
    # cover WordPress REST `content.rendered` and similar nested bodies
    body_key: str = (
        r"^(articleBody|article_body|body_html|bodyHtml|renderedBody|"
        r"content_html|contentHtml|articleHtml|fullText|body|"
        r"content\.(rendered|html|body))$"
    )

    content_selectors: Tuple[str, ...] = (
        "main",
        "article",
        ".post-content",
        ".entry-content",
        ".page-content",
        ".article-body",
        ".article__body",
        ".story-body",
    )

    overlay_selectors: Tuple[str, ...] = (
        ".fr-gate-overlay",
        ".fr-gate-container",
        "#CartDrawer-Overlay",
        "cart-drawer",
        "#CybotCookiebotDialog",
        ".issue-article-cover",
        "[class*='paywall']",
        "[id*='paywall']",
        "[class*='regwall']",
        ".modal-backdrop",
    )

    consent_selectors: Tuple[str, ...] = (
        "#CybotCookiebotDialog [data-cybot='accept']",
        "#CybotCookiebotDialog button:has-text('Allow all')",
        "button:has-text('Tout accepter')",
        "#onetrust-accept-btn-handler",
        "button[id*='accept']",
    )

    fragment_candidates: Tuple[str, ...] = (
        "var_ajax=1",
        "view=fragment",
        "view=ajax",
        "render=fragment",
        "/fragment",
        "/partial",
        "component=ajax",
        "wp-admin/admin-ajax.php",
        "_format=amp",
        "format=amp",
        "outputType=amp",
    )

    hydration_ids: Tuple[str, ...] = (
        "__NEXT_DATA__",
        "__NUXT_DATA__",
        "__APOLLO_STATE__",
        "__INITIAL_STATE__",
    )

    global_flags: str = r"piano|poool|meter|paywall|entitlement|subscribe|metering"


# =============================================================================
# THRESHOLDS
# =============================================================================

@dataclass(frozen=True)
class ClassifierThresholds:
    """Boundary between a reported article and ignored content."""

    min_words: int = 1000
    min_density: float = 0.3
    baseline_multiplier: float = 2.0
    min_paragraphs: int = 12
    min_headings: int = 3


# =============================================================================
# PROBE CONFIG
# =============================================================================

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
    "Mozilla/5.0 (compatible; bingbot/2.0; +http://www.bing.com/bingbot.htm)",
    "facebookexternalhit/1.1 (+http://www.facebook.com/externalhit_uatext.php)",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

DEFAULT_REFERERS = (
    "https://www.google.com/",
    "https://www.facebook.com/",
    "https://t.co/",
    "https://news.ycombinator.com/",
)


@dataclass
class ProbeConfig:
    """Run-wide settings. Durations are seconds."""

    navigation_timeout: float = 45.0
    request_timeout: float = 15.0
    matrix_request_timeout: float = 10.0
    channel_timeout: float = 60.0
    run_timeout: float = 300.0
    settle_delay: float = 0.8

    archive_save_url: str = "https://web.archive.org/save/{url}"
    archive_poll_interval: float = 5.0
    archive_poll_attempts: int = 5
    archive_timeout: float = 120.0

    max_concurrency: int = 3
    default_user_agent: str = "paywall-probe/1.0"
    user_agents: Tuple[str, ...] = DEFAULT_USER_AGENTS
    referers: Tuple[str, ...] = DEFAULT_REFERERS

    artifacts_dir: str = "artifacts"

    lexicon: Lexicon = field(default_factory=Lexicon)
    thresholds: ClassifierThresholds = field(default_factory=ClassifierThresholds)


def _merge(base, overrides: Dict[str, Any]):
    """Return a copy of dataclass `base` with known keys from `overrides`."""
    known = {f.name for f in fields(base)}
    values = {}
    for key, value in overrides.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue
        if isinstance(value, list):
            value = tuple(value)
        values[key] = value
    return replace(base, **values)


def load_config(config_path: Optional[str] = None) -> ProbeConfig:
    """
    Load configuration.

    Values from the JSON file at `config_path` override the defaults; the
    nested "lexicon" and "thresholds" objects override field by field.
    """
    config = ProbeConfig()

    if not config_path or not os.path.exists(config_path):
        return config

    with open(config_path) as f:
        user_config = json.load(f)

    lexicon = user_config.pop("lexicon", None)
    thresholds = user_config.pop("thresholds", None)

    config = _merge(config, user_config)
    if lexicon:
        config.lexicon = _merge(config.lexicon, lexicon)
    if thresholds:
        config.thresholds = _merge(config.thresholds, thresholds)

    logger.debug(f"Loaded config from {config_path}")
    return config
