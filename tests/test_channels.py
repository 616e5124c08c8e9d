"""
Tests for the probe channels, driven by in-memory HTTP and browser fakes.

Run with: pytest tests/test_channels.py -v
"""

import json

import pytest

from conftest import (
    TARGET,
    FakeHttpClient,
    FakeInterceptedResponse,
    FakeSession,
    article_html,
    make_response,
    plain_body,
    teaser_html,
)

from paywall_probe.archives import ArchiveChannel, clean_wayback_html, snapshot_reference
from paywall_probe.channels import (
    AltViewChannel,
    ChannelLog,
    DomChannel,
    HydrationChannel,
    JsonEndpointChannel,
    NetworkInterceptChannel,
    OverlayCleanupChannel,
    PageDiagnosticsChannel,
    UaRefererMatrixChannel,
    first_match,
    with_query,
)
from paywall_probe.classifier import STRUCTURED_TEXT, ArticleClassifier
from paywall_probe.config import DEFAULT_REFERERS, DEFAULT_USER_AGENTS
from paywall_probe.errors import ProbeChannelError
from paywall_probe.models import Severity, TargetContext

GOOGLEBOT = DEFAULT_USER_AGENTS[0]
GOOGLE = DEFAULT_REFERERS[0]


@pytest.fixture
def ctx():
    return TargetContext(TARGET)


# =============================================================================
# HELPERS
# =============================================================================

class TestHelpers:

    def test_with_query(self):
        assert with_query("https://a.test/x", "print=1") == "https://a.test/x?print=1"
        assert with_query("https://a.test/x?id=3", "print=1") == "https://a.test/x?id=3&print=1"
        assert with_query("https://a.test/x#top", "print=1") == "https://a.test/x?print=1#top"

    def test_first_match_stops_consuming(self, run):
        produced = []
        closed = []

        async def numbers():
            try:
                for n in range(10):
                    produced.append(n)
                    yield n
            finally:
                closed.append(True)

        assert run(first_match(numbers(), lambda n: n == 3)) == 3
        assert produced == [0, 1, 2, 3]
        assert closed == [True]

    def test_first_match_without_hit(self, run):
        async def numbers():
            for n in range(3):
                yield n

        assert run(first_match(numbers(), lambda n: n > 10)) is None

    def test_channel_log(self):
        log = ChannelLog()
        assert log.all_failed is False
        log.attempted()
        log.failed()
        assert log.all_failed is True
        log.attempted()
        assert log.all_failed is False


# =============================================================================
# SESSION CHANNELS
# =============================================================================

class TestDomChannel:

    def test_returns_best_container(self, ctx, config, run):
        markup = article_html(1500)
        session = FakeSession(scripts={"best = { sel": {"sel": "article", "len": 9000, "content": markup}})
        log = ChannelLog()

        candidates = run(DomChannel(config, session=session).probe(ctx, log))

        assert len(candidates) == 1
        assert candidates[0].content == markup
        assert candidates[0].content_type == "text/html"
        assert candidates[0].metadata == {"selector": "article", "textLength": 9000}
        assert log.records == [{"selector": "article", "textLength": 9000}]

    def test_nothing_matched(self, ctx, config, run):
        session = FakeSession(scripts={"best = { sel": {"sel": None, "len": 0, "content": None}})
        assert run(DomChannel(config, session=session).probe(ctx)) == []

    def test_needs_session(self, ctx, config, run):
        with pytest.raises(ProbeChannelError):
            run(DomChannel(config).probe(ctx))

    def test_descriptor(self):
        assert DomChannel.finding_id == "client_overlay"
        assert DomChannel.severity is Severity.HIGH
        assert DomChannel.requires_session and not DomChannel.mutates_session


class TestHydrationChannel:

    def page(self, *scripts):
        return "<html><body><main><p>teaser</p></main>" + "".join(scripts) + "</body></html>"

    def test_next_data_html_body(self, ctx, config, run):
        state = {"props": {"pageProps": {"article": {"body_html": article_html(1200)}}}}
        markup = self.page(f'<script id="__NEXT_DATA__" type="application/json">{json.dumps(state)}</script>')

        candidates = run(HydrationChannel(config, session=FakeSession(markup)).probe(ctx))

        assert len(candidates) == 1
        assert candidates[0].content_type == "text/html"
        assert candidates[0].metadata["source"] == "__NEXT_DATA__"

    def test_json_ld_plain_body(self, ctx, config, run):
        ld = {"@context": "https://schema.org", "@type": "NewsArticle", "articleBody": plain_body(1500)}
        markup = self.page(f'<script type="application/ld+json">{json.dumps(ld)}</script>')

        candidates = run(HydrationChannel(config, session=FakeSession(markup)).probe(ctx))

        assert len(candidates) == 1
        assert candidates[0].content_type == STRUCTURED_TEXT
        assert ArticleClassifier().classify(candidates[0].content, candidates[0].content_type).verdict

    def test_window_assignment(self, ctx, config, run):
        state = {"story": {"fullText": plain_body(1200)}}
        markup = self.page(f"<script>window.__INITIAL_STATE__ = {json.dumps(state)};</script>")

        candidates = run(HydrationChannel(config, session=FakeSession(markup)).probe(ctx))

        assert [c.metadata["source"] for c in candidates] == ["__INITIAL_STATE__"]

    def test_duplicate_bodies_reported_once(self, ctx, config, run):
        ld = json.dumps({"@type": "Article", "articleBody": plain_body(1200)})
        markup = self.page(
            f'<script type="application/ld+json">{ld}</script>',
            f'<script type="application/ld+json">{ld}</script>',
        )
        assert len(run(HydrationChannel(config, session=FakeSession(markup)).probe(ctx))) == 1

    def test_bad_json_is_logged(self, ctx, config, run):
        markup = self.page('<script type="application/ld+json">{oops</script>')
        log = ChannelLog()

        assert run(HydrationChannel(config, session=FakeSession(markup)).probe(ctx, log)) == []
        assert "unparseable" in log.records[0]["error"]

    def test_candidates_get_distinct_identities(self, ctx, config, run):
        first = json.dumps({"@type": "Article", "articleBody": plain_body(1200)})
        second = json.dumps({"article": {"articleBody": plain_body(1300)}})
        markup = self.page(
            f'<script type="application/ld+json">{first}</script>',
            f'<script id="__APOLLO_STATE__" type="application/json">{second}</script>',
        )
        candidates = run(HydrationChannel(config, session=FakeSession(markup)).probe(ctx))
        assert len({c.identity for c in candidates}) == 2


class TestOverlayCleanupChannel:

    def test_cleans_page(self, ctx, config, run):
        session = FakeSession(clickable={"#onetrust-accept-btn-handler"})
        log = ChannelLog()

        assert run(OverlayCleanupChannel(config, session=session).probe(ctx, log)) == []

        assert session.clicked == ["#onetrust-accept-btn-handler"]
        assert ("press_key", "Escape") in session.calls
        assert "[class*='paywall']" in session.styles[0]
        assert "display:none" in session.styles[0]
        assert [r["step"] for r in log.records] == ["consent", "escape", "scroll", "css_hide"]

    def test_failed_step_does_not_stop_cleanup(self, ctx, config, run):
        class BrokenScroll(FakeSession):
            async def evaluate(self, expression, arg=None):
                raise RuntimeError("page crashed")

        session = BrokenScroll()
        log = ChannelLog()
        run(OverlayCleanupChannel(config, session=session).probe(ctx, log))

        steps = {r["step"]: r["ok"] for r in log.records}
        assert steps == {"escape": True, "scroll": False, "css_hide": True}
        assert session.styles

    def test_descriptor(self):
        assert OverlayCleanupChannel.mutates_session is True


class TestPageDiagnosticsChannel:

    def test_observations(self, ctx, config, run):
        ld = json.dumps({"@type": "NewsArticle", "headline": "h"})
        markup = (
            "<html><head>"
            f'<script type="application/ld+json">{ld}</script>'
            '<script src="/static/piano.js"></script>'
            "</head><body></body></html>"
        )
        session = FakeSession(markup, scripts={
            "styleSheets": True,
            "getOwnPropertyNames": ["__pianoConfig"],
            "getRegistrations": {"supported": True, "registrations": [{"scope": "/"}]},
        })
        log = ChannelLog()

        assert run(PageDiagnosticsChannel(config, session=session).probe(ctx, log)) == []

        ids = [o.id for o in log.observations]
        assert ids == ["jsonld_present", "print_css", "global_flags", "service_worker"]
        assert log.observations[2].evidence["keys"] == ["__pianoConfig"]
        assert log.records[0]["scripts"] == ["https://news.example.com/static/piano.js"]

    def test_json_ld_with_body(self, ctx, config, run):
        ld = json.dumps([{"@type": "Article", "articleBody": "text"}])
        markup = f'<html><head><script type="application/ld+json">{ld}</script></head></html>'
        log = ChannelLog()

        run(PageDiagnosticsChannel(config, session=FakeSession(markup)).probe(ctx, log))

        assert [o.id for o in log.observations] == ["jsonld_article"]
        assert log.observations[0].evidence == {"count": 1, "withBody": 1}

    def test_quiet_page(self, ctx, config, run):
        log = ChannelLog()
        run(PageDiagnosticsChannel(config, session=FakeSession("<html></html>")).probe(ctx, log))
        assert log.observations == []


# =============================================================================
# NETWORK INTERCEPTION
# =============================================================================

class TestNetworkInterceptChannel:

    FRAGMENT = "https://news.example.com/api/story?view=fragment"
    GRAPHQL = "https://news.example.com/graphql"

    def responses(self):
        return [
            FakeInterceptedResponse(self.FRAGMENT, content_type="text/html; charset=utf-8", body=b"<p>x</p>"),
            FakeInterceptedResponse(
                self.GRAPHQL,
                method="POST",
                body=json.dumps({"data": {"story": {}}}).encode(),
                post_data=json.dumps({"operationName": "StoryQuery", "query": "{ story }"}),
            ),
            FakeInterceptedResponse("https://cdn.example.com/img.png", content_type="image/png"),
        ]

    async def intercept(self, channel, session, ctx, log):
        channel.attach(session)
        await session.navigate(ctx.url, 10)
        await channel.drain(1.0)
        return await channel.probe(ctx, log)

    def test_refetches_fragments(self, ctx, config, run):
        http = FakeHttpClient({self.FRAGMENT: make_response(200, article_html(1500))})
        session = FakeSession(responses=self.responses())
        channel = NetworkInterceptChannel(config, http=http, session=session)
        log = ChannelLog()

        candidates = run(self.intercept(channel, session, ctx, log))

        assert [c.url for c in candidates] == [self.FRAGMENT]
        assert http.urls == [self.FRAGMENT]
        assert len(channel.captured) == 2

        graphql = next(r for r in channel.captured if r["url"] == self.GRAPHQL)
        assert graphql["operationName"] == "StoryQuery"
        assert graphql["topKeys"] == ["data"]
        assert graphql["size"] > 0 and len(graphql["sha256"]) == 64

    def test_second_run_starts_clean(self, ctx, config, run):
        http = FakeHttpClient({self.FRAGMENT: make_response(200, article_html(1500))})
        session = FakeSession(responses=self.responses())
        channel = NetworkInterceptChannel(config, http=http, session=session)

        run(self.intercept(channel, session, ctx, ChannelLog()))
        candidates = run(self.intercept(channel, session, ctx, ChannelLog()))

        assert len(session.callbacks) == 1
        assert len(channel.captured) == 2
        assert [c.url for c in candidates] == [self.FRAGMENT]
        assert http.urls == [self.FRAGMENT, self.FRAGMENT]

    def test_lost_body_is_recorded(self, ctx, config, run):
        session = FakeSession(responses=[
            FakeInterceptedResponse(self.GRAPHQL, body=RuntimeError("No resource with given identifier")),
        ])
        channel = NetworkInterceptChannel(config, http=FakeHttpClient(), session=session)

        assert run(self.intercept(channel, session, ctx, ChannelLog())) == []
        assert "bodyError" in channel.captured[0]

    def test_nothing_captured(self, ctx, config, run):
        session = FakeSession()
        channel = NetworkInterceptChannel(config, http=FakeHttpClient(), session=session)
        assert run(self.intercept(channel, session, ctx, ChannelLog())) == []

    def test_every_refetch_failed(self, ctx, config, run):
        http = FakeHttpClient({self.FRAGMENT: ProbeChannelError("http", "connection reset")})
        session = FakeSession(responses=self.responses()[:1])
        channel = NetworkInterceptChannel(config, http=http, session=session)

        with pytest.raises(ProbeChannelError):
            run(self.intercept(channel, session, ctx, ChannelLog()))


# =============================================================================
# HTTP CHANNELS
# =============================================================================

class TestJsonEndpointChannel:

    def test_variants(self):
        assert JsonEndpointChannel.variants(TARGET) == [
            "https://news.example.com/pages/harvest-story.json",
            "https://news.example.com/articles/harvest-story.json",
            "https://news.example.com/api/pages/harvest-story",
            "https://news.example.com/pages/harvest-story?view=json",
            "https://news.example.com/pages/harvest-story?format=json",
            "https://news.example.com/wp-json/wp/v2/posts?slug=harvest-story",
            "https://news.example.com/api/articles/harvest-story",
        ]

    def test_article_body_in_json(self, ctx, config, run):
        body = plain_body(1500)
        http = FakeHttpClient({
            TARGET + ".json": make_response(200, {"id": 7, "articleBody": body}, "application/json"),
        })

        candidates = run(JsonEndpointChannel(config, http=http).probe(ctx))

        assert len(candidates) == 1
        assert candidates[0].content == body
        assert candidates[0].content_type == STRUCTURED_TEXT
        assert candidates[0].url == TARGET + ".json"
        assert candidates[0].metadata["topKeys"] == ["id", "articleBody"]
        assert ArticleClassifier().classify(candidates[0].content, candidates[0].content_type).verdict
        assert all(h["Accept"] == "application/json" for _, _, h in http.calls)

    def test_wordpress_rendered_content(self, ctx, config, run):
        page = article_html(1500)
        rendered = page[page.index("<article>"):page.index("</article>") + len("</article>")]
        posts = [{
            "id": 7,
            "title": {"rendered": "Harvest story"},
            "content": {"rendered": rendered, "protected": False},
            "excerpt": {"rendered": "<p>Short excerpt</p>"},
        }]
        wp_url = "https://news.example.com/wp-json/wp/v2/posts?slug=harvest-story"
        http = FakeHttpClient({wp_url: make_response(200, posts, "application/json")})

        candidates = run(JsonEndpointChannel(config, http=http).probe(ctx))

        assert len(candidates) == 1
        assert candidates[0].url == wp_url
        assert candidates[0].content == rendered
        assert candidates[0].content_type == "text/html"
        assert ArticleClassifier().classify(candidates[0].content, candidates[0].content_type).verdict

    def test_plain_body_key(self, ctx, config, run):
        api_url = "https://news.example.com/api/articles/harvest-story"
        payload = {"slug": "harvest-story", "body": plain_body(1500)}
        http = FakeHttpClient({api_url: make_response(200, payload, "application/json")})

        candidates = run(JsonEndpointChannel(config, http=http).probe(ctx))

        assert [c.url for c in candidates] == [api_url]

    def test_json_error_status_is_not_walked(self, ctx, config, run):
        http = FakeHttpClient({
            TARGET + ".json": make_response(403, {"articleBody": plain_body(1500)}, "application/json"),
        })
        log = ChannelLog()

        assert run(JsonEndpointChannel(config, http=http).probe(ctx, log)) == []
        assert log.observations == []

    def test_html_answer_is_observed(self, ctx, config, run):
        http = FakeHttpClient({TARGET + "?view=json": make_response(200, teaser_html())})
        log = ChannelLog()

        assert run(JsonEndpointChannel(config, http=http).probe(ctx, log)) == []
        assert len(log.observations) == 1
        assert log.observations[0].id.startswith("json_probe_html:")
        assert log.observations[0].evidence["path"] == TARGET + "?view=json"

    def test_json_without_body(self, ctx, config, run):
        http = FakeHttpClient({TARGET + ".json": make_response(200, {"title": "t"}, "application/json")})
        assert run(JsonEndpointChannel(config, http=http).probe(ctx)) == []

    def test_malformed_json(self, ctx, config, run):
        http = FakeHttpClient({TARGET + ".json": make_response(200, "{broken", "application/json")})
        assert run(JsonEndpointChannel(config, http=http).probe(ctx)) == []

    def test_all_requests_failed(self, ctx, config, run):
        http = FakeHttpClient(handler=lambda m, u, h: ProbeChannelError("http", "timeout"))
        with pytest.raises(ProbeChannelError):
            run(JsonEndpointChannel(config, http=http).probe(ctx))

    def test_some_requests_failed(self, ctx, config, run):
        def handler(method, url, headers):
            return ProbeChannelError("http", "timeout") if url.endswith(".json") else None

        assert run(JsonEndpointChannel(config, http=FakeHttpClient(handler=handler)).probe(ctx)) == []


class TestAltViewChannel:

    def test_variants(self):
        assert AltViewChannel.variants(TARGET) == [
            TARGET + "/amp",
            TARGET + "?print=1",
            TARGET + "?share=1",
            TARGET + "?outputType=amp",
        ]

    def test_print_view(self, ctx, config, run):
        http = FakeHttpClient({
            TARGET + "?print=1": make_response(200, article_html(1500)),
            TARGET + "/amp": make_response(200, "{}", "application/json"),
            TARGET + "?share=1": make_response(200, "<div>fragment only</div>"),
        })
        log = ChannelLog()

        candidates = run(AltViewChannel(config, http=http).probe(ctx, log))

        assert [c.url for c in candidates] == [TARGET + "?print=1"]
        assert [r["qualifies"] for r in log.records] == [False, True, False, False]


class TestUaRefererMatrixChannel:

    def qualifying_only(self, user_agent, referer):
        def handler(method, url, headers):
            if headers["User-Agent"] == user_agent and headers["Referer"] == referer:
                return make_response(200, article_html(1500))
            return make_response(200, teaser_html())
        return handler

    def test_stops_at_first_hit(self, ctx, config, run):
        config.user_agents = (DEFAULT_USER_AGENTS[3], GOOGLEBOT, DEFAULT_USER_AGENTS[1], DEFAULT_USER_AGENTS[2])
        config.referers = (DEFAULT_REFERERS[2], DEFAULT_REFERERS[1], GOOGLE, DEFAULT_REFERERS[3])
        http = FakeHttpClient(handler=self.qualifying_only(GOOGLEBOT, GOOGLE))

        candidates = run(UaRefererMatrixChannel(config, http=http, classifier=ArticleClassifier()).probe(ctx))

        assert len(candidates) == 1
        assert candidates[0].metadata == {"userAgent": GOOGLEBOT, "referer": GOOGLE}
        # four referers for the first UA, then three for Googlebot; nothing after the hit
        assert len(http.calls) == 7
        last_headers = http.calls[-1][2]
        assert (last_headers["User-Agent"], last_headers["Referer"]) == (GOOGLEBOT, GOOGLE)

    def test_user_agents_are_the_outer_loop(self, ctx, config, run):
        http = FakeHttpClient(handler=lambda m, u, h: make_response(403, "denied"))
        run(UaRefererMatrixChannel(config, http=http).probe(ctx))

        pairs = [(h["User-Agent"], h["Referer"]) for _, _, h in http.calls]
        assert len(pairs) == 16
        assert pairs[:4] == [(GOOGLEBOT, r) for r in DEFAULT_REFERERS]

    def test_teasers_everywhere(self, ctx, config, run):
        http = FakeHttpClient(handler=lambda m, u, h: make_response(200, teaser_html()))
        log = ChannelLog()

        assert run(UaRefererMatrixChannel(config, http=http).probe(ctx, log)) == []
        assert len(log.records) == 16
        assert not any(r["verdict"] for r in log.records)

    def test_unreachable(self, ctx, config, run):
        http = FakeHttpClient(handler=lambda m, u, h: ProbeChannelError("http", "refused"))
        with pytest.raises(ProbeChannelError):
            run(UaRefererMatrixChannel(config, http=http).probe(ctx))


# =============================================================================
# ARCHIVE
# =============================================================================

SAVE_URL = "https://web.archive.org/save/" + TARGET
SNAPSHOT = "https://web.archive.org/web/20260101000000/" + TARGET

WAYBACK_PAGE = (
    "<html><head><script src='https://web-static.archive.org/_static/js/wombat.js'></script></head><body>"
    "<!-- BEGIN WAYBACK TOOLBAR INSERT --><div id='wm-ipp'>toolbar</div><!-- END WAYBACK TOOLBAR INSERT -->"
    "<article><p>archived text</p><a href=\"/web/20260101000000/https://news.example.com/next\">next</a></article>"
    "</body></html>"
)


class TestArchiveChannel:

    def test_snapshot_reference_from_header(self):
        response = make_response(200, "", headers={"Content-Location": "/web/20260101000000/" + TARGET})
        assert snapshot_reference(response) == SNAPSHOT

    def test_snapshot_reference_from_final_url(self):
        assert snapshot_reference(make_response(200, "", url=SNAPSHOT)) == SNAPSHOT

    def test_snapshot_reference_missing(self):
        assert snapshot_reference(make_response(200, "<html>busy</html>", url=SAVE_URL)) is None

    def test_clean_wayback_html(self):
        cleaned = clean_wayback_html(WAYBACK_PAGE)
        assert "toolbar" not in cleaned
        assert "wombat.js" not in cleaned
        assert 'href="https://news.example.com/next"' in cleaned

    def test_snapshot_found_after_polling(self, ctx, config, run):
        polls = []

        def handler(method, url, headers):
            if url == SAVE_URL:
                return make_response(200, "saved", headers={"Content-Location": "/web/20260101000000/" + TARGET})
            polls.append(url)
            if len(polls) < 3:
                return make_response(404, "not yet")
            return make_response(200, WAYBACK_PAGE)

        candidates = run(ArchiveChannel(config, http=FakeHttpClient(handler=handler)).probe(ctx))

        assert len(candidates) == 1
        assert candidates[0].url == SNAPSHOT
        assert candidates[0].metadata == {"snapshot": SNAPSHOT, "pollAttempt": 3}
        assert "toolbar" not in candidates[0].content
        assert polls == [SNAPSHOT] * 3

    def test_no_snapshot_is_inconclusive(self, ctx, config, run):
        http = FakeHttpClient()

        with pytest.raises(ProbeChannelError):
            run(ArchiveChannel(config, http=http).probe(ctx))

        assert http.urls[0] == SAVE_URL
        assert http.urls[1:] == ["https://web.archive.org/web/" + TARGET] * 5

    def test_timeout_follows_config(self, config):
        config.archive_timeout = 42.0
        assert ArchiveChannel(config).timeout == 42.0
