"""
Article-likeness classifier - decides whether retrieved content is a full
article body rather than a teaser or a paywall notice.
"""

import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .config import ClassifierThresholds, Lexicon
from .errors import ClassificationInputError


class ValidationScore(Enum):
    """Why a verdict came out the way it did."""
    HIGH = "HIGH"            # Article-like
    PAYWALLED = "PAYWALLED"  # A paywall/subscription prompt was found
    LOW = "LOW"              # Too short, too sparse or not markup


@dataclass(frozen=True)
class ClassificationSignal:
    """Structural and lexical signal for one piece of content."""
    content_bytes: int
    tag_p: int
    tag_h: int
    has_article_tag: bool
    has_main: bool
    word_count: int
    density: float
    has_article_keys: bool
    paywall_prompt: bool
    subscription_prompt: bool
    looks_html: bool
    verdict: bool
    score: ValidationScore
    malformed: bool = False

    @property
    def has_container(self) -> bool:
        return self.has_article_tag or self.has_main

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["score"] = self.score.value
        return data


_SCRIPT_RX = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RX = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_TAG_RX = re.compile(r"<[^>]+>")
_SPACE_RX = re.compile(r"\s+")
_P_RX = re.compile(r"<p[\s>]", re.IGNORECASE)
_H_RX = re.compile(r"<h[1-3][\s>]", re.IGNORECASE)
_ARTICLE_RX = re.compile(r"<article[\s>]", re.IGNORECASE)
_MAIN_RX = re.compile(r"<main[\s>]", re.IGNORECASE)
_CHARSET_RX = re.compile(r"charset=([\w-]+)", re.IGNORECASE)

# Content type used by channels for body text recovered from JSON fields
STRUCTURED_TEXT = "text/plain"


def plain_text(markup: str) -> str:
    """Strip scripts, styles and tags; collapse whitespace."""
    text = _SCRIPT_RX.sub(" ", markup)
    text = _STYLE_RX.sub(" ", text)
    text = _TAG_RX.sub(" ", text)
    return _SPACE_RX.sub(" ", text).strip()


def _compile(patterns) -> Optional[re.Pattern]:
    if not patterns:
        return None
    return re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)


class ArticleClassifier:
    """
    Deterministic article-likeness scoring.

    Verdict is true only when the content is markup, long enough, dense
    enough, clearly longer than the teaser, structured like an article, and
    free of paywall/subscription prompts. The lexical gates win over every
    structural signal: a long "subscribe to continue" page is still a
    paywall page.
    """

    def __init__(
        self,
        lexicon: Optional[Lexicon] = None,
        thresholds: Optional[ClassifierThresholds] = None,
    ):
        self.lexicon = lexicon or Lexicon()
        self.thresholds = thresholds or ClassifierThresholds()

        self._paywall_rx = _compile(self.lexicon.paywall_prompts)
        self._subscription_rx = _compile(self.lexicon.subscription_prompts)
        self._keys_rx = re.compile(self.lexicon.article_keys, re.IGNORECASE)
        self._html_rx = re.compile(self.lexicon.html_like, re.IGNORECASE)

    def classify(
        self,
        content: Union[str, bytes, None],
        content_type: str = "",
        baseline_bytes: int = 0,
    ) -> ClassificationSignal:
        """Score `content`. Never raises; malformed input scores LOW."""
        try:
            text, byte_length = self._decode(content, content_type)
        except ClassificationInputError:
            return self._malformed()
        return self._score(text, byte_length, content_type or "", baseline_bytes or 0)

    def _decode(self, content, content_type: str):
        if isinstance(content, str):
            return content, len(content.encode("utf-8", errors="replace"))
        if isinstance(content, (bytes, bytearray)):
            match = _CHARSET_RX.search(content_type or "")
            charset = match.group(1) if match else "utf-8"
            try:
                return bytes(content).decode(charset), len(content)
            except (UnicodeDecodeError, LookupError) as e:
                raise ClassificationInputError(str(e)) from e
        raise ClassificationInputError(f"cannot classify {type(content).__name__}")

    def _score(self, markup: str, byte_length: int, content_type: str, baseline_bytes: int) -> ClassificationSignal:
        t = self.thresholds

        tag_p = len(_P_RX.findall(markup))
        tag_h = len(_H_RX.findall(markup))
        has_article = bool(_ARTICLE_RX.search(markup))
        has_main = bool(_MAIN_RX.search(markup))

        text = plain_text(markup)
        word_count = len(text.split()) if text else 0

        if byte_length:
            density = min(1.0, word_count / max(200, byte_length / 6))
        else:
            density = 0.0
        density = round(density, 3)

        looks_html = bool(self._html_rx.search(markup))
        paywall_hit = bool(self._paywall_rx and self._paywall_rx.search(text))
        subscription_hit = bool(self._subscription_rx and self._subscription_rx.search(text))
        gated = paywall_hit or subscription_hit

        # JSON body fields lose their markup; judge those on length alone
        structured_body = content_type.startswith(STRUCTURED_TEXT) and not looks_html

        long_enough = word_count > t.min_words and density > t.min_density
        beats_baseline = baseline_bytes <= 0 or byte_length > t.baseline_multiplier * baseline_bytes
        structured = (has_article or has_main) or (tag_p >= t.min_paragraphs and tag_h >= t.min_headings)

        if structured_body:
            verdict = not gated and long_enough and beats_baseline
        else:
            verdict = looks_html and not gated and long_enough and beats_baseline and structured

        if verdict:
            score = ValidationScore.HIGH
        elif gated:
            score = ValidationScore.PAYWALLED
        else:
            score = ValidationScore.LOW

        return ClassificationSignal(
            content_bytes=byte_length,
            tag_p=tag_p,
            tag_h=tag_h,
            has_article_tag=has_article,
            has_main=has_main,
            word_count=word_count,
            density=density,
            has_article_keys=bool(self._keys_rx.search(markup)),
            paywall_prompt=paywall_hit,
            subscription_prompt=subscription_hit,
            looks_html=looks_html,
            verdict=verdict,
            score=score,
        )

    def _malformed(self) -> ClassificationSignal:
        return ClassificationSignal(
            content_bytes=0,
            tag_p=0,
            tag_h=0,
            has_article_tag=False,
            has_main=False,
            word_count=0,
            density=0.0,
            has_article_keys=False,
            paywall_prompt=False,
            subscription_prompt=False,
            looks_html=False,
            verdict=False,
            score=ValidationScore.LOW,
            malformed=True,
        )
