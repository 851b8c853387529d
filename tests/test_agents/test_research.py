"""Tests for the research agent, intent detection and the URL whitelist."""

import json

import httpx
import pytest

from chiron.agents.protocol import AgentRequest
from chiron.agents.research import (
    IntentDetector,
    IntentKind,
    ResearchAgent,
    UrlValidator,
    WikipediaClient,
    parse_processed_research,
)
from chiron.exceptions import BackendUnavailableError, ResearchError
from chiron.inference.retry import RetryConfig

NO_WAIT = RetryConfig(max_retries=1, initial_delay=0.0, jitter=False)

CBT_EXTRACT = "Cognitive behavioral therapy is a form of psychotherapy."

MODEL_SUMMARY = json.dumps(
    {
        "summary": "CBT helps people change unhelpful thinking.",
        "key_facts": ["It is structured", "It is evidence-based"],
        "relevant_sections": ["Method"],
        "therapeutic_relevance": "Widely used for anxiety and depression.",
    }
)


def wiki_handler(titles=("Cognitive behavioral therapy",), extract=CBT_EXTRACT, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        params = request.url.params
        if seen is not None:
            seen.append(dict(params))
        if params.get("list") == "search":
            return httpx.Response(200, json={"query": {"search": [{"title": t} for t in titles]}})
        if params.get("prop") == "extracts":
            page = {"title": params["titles"], "extract": extract}
            return httpx.Response(200, json={"query": {"pages": {"1": page}}})
        return httpx.Response(400, json={"error": "bad request"})

    return handler


def make_wikipedia(handler) -> WikipediaClient:
    return WikipediaClient(retry_config=NO_WAIT, transport=httpx.MockTransport(handler))


@pytest.fixture
def detector() -> IntentDetector:
    return IntentDetector()


class TestIntentDetector:
    """Tests for research intent detection."""

    def test_direct_url(self, detector):
        """Test that a pasted link is a direct URL intent."""
        intent = detector.detect("Can you read https://en.wikipedia.org/wiki/Depression")

        assert intent.kind == IntentKind.DIRECT_URL
        assert intent.target == "https://en.wikipedia.org/wiki/Depression"

    def test_markdown_link(self, detector):
        """Test that the URL is taken from a markdown link."""
        intent = detector.detect("Check out [this article](https://www.psychologytoday.com/anxiety)")

        assert intent.target == "https://www.psychologytoday.com/anxiety"

    @pytest.mark.parametrize(
        "text, topic",
        [
            ("Can we research cognitive behavioral therapy?", "cognitive behavioral therapy"),
            ("Tell me about the placebo effect", "placebo effect"),
            ("What is CBT?", "cbt"),
        ],
    )
    def test_explicit_research(self, detector, text, topic):
        """Test that research keywords give an explicit intent with the topic."""
        intent = detector.detect(text)

        assert intent.kind == IntentKind.EXPLICIT
        assert intent.target == topic

    def test_suggested_research(self, detector):
        """Test that a topical question suggests research."""
        intent = detector.detect("How does exposure therapy work?")

        assert intent.kind == IntentKind.SUGGESTED
        assert intent.target == "exposure therapy"

    @pytest.mark.parametrize("text", ["I had a long day at work.", "Why me?", ""])
    def test_no_intent(self, detector, text):
        """Test that ordinary messages carry no research intent."""
        assert detector.detect(text).kind == IntentKind.NONE


class TestUrlValidator:
    """Tests for the domain whitelist."""

    @pytest.mark.parametrize(
        "url",
        ["https://en.wikipedia.org/wiki/Anxiety", "https://www.psychologytoday.com/article"],
    )
    def test_whitelisted(self, url):
        """Test that trusted domains are allowed."""
        assert UrlValidator().is_allowed(url)

    @pytest.mark.parametrize(
        "url",
        [
            "https://malicious-site.com/page",
            "https://google.com",
            "https://en.wikipedia.org.evil.com/wiki/Anxiety",
            "ftp://en.wikipedia.org/wiki/Anxiety",
            "not a url",
        ],
    )
    def test_rejected(self, url):
        """Test that other domains and schemes are refused."""
        assert not UrlValidator().is_allowed(url)

    def test_configured_domains(self):
        """Test that the whitelist can be replaced."""
        validator = UrlValidator(["example.org"])

        assert validator.is_allowed("https://example.org/x")
        assert not validator.is_allowed("https://en.wikipedia.org/wiki/Anxiety")


class TestWikipediaClient:
    """Tests for the MediaWiki API client."""

    def test_search_returns_first_title(self):
        """Test that the best match title is returned."""
        with make_wikipedia(wiki_handler(titles=("First", "Second"))) as wiki:
            assert wiki.search("anything") == "First"

    def test_search_without_results(self):
        """Test that no matches gives None."""
        with make_wikipedia(wiki_handler(titles=())) as wiki:
            assert wiki.search("zzzz") is None

    def test_extract(self):
        """Test that the plain-text introduction is returned."""
        seen = []
        with make_wikipedia(wiki_handler(seen=seen)) as wiki:
            assert wiki.extract("Cognitive behavioral therapy") == CBT_EXTRACT

        assert seen[0]["explaintext"] == "1"

    def test_empty_extract(self):
        """Test that an article without text is an error."""
        with make_wikipedia(wiki_handler(extract="")) as wiki:
            with pytest.raises(ResearchError):
                wiki.extract("Nothing")

    def test_network_failure(self):
        """Test that network errors surface as ResearchError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        with make_wikipedia(handler) as wiki:
            with pytest.raises(ResearchError):
                wiki.search("anxiety")

    def test_title_from_url(self):
        """Test that article links map back to titles."""
        wiki = WikipediaClient()

        assert wiki.title_from_url("https://en.wikipedia.org/wiki/Major_depressive_disorder") == (
            "Major depressive disorder"
        )
        assert wiki.title_from_url("https://www.psychologytoday.com/anxiety") is None
        assert wiki.page_url("Major depressive disorder").endswith("/wiki/Major_depressive_disorder")
        wiki.close()


class TestParseProcessedResearch:
    """Tests for parsing the model's research summary."""

    def test_json_answer(self):
        """Test that a JSON answer is parsed field by field."""
        processed = parse_processed_research(MODEL_SUMMARY)

        assert processed.summary == "CBT helps people change unhelpful thinking."
        assert processed.key_facts == ("It is structured", "It is evidence-based")

    def test_fenced_json(self):
        """Test that markdown code fences are stripped."""
        processed = parse_processed_research(f"```json\n{MODEL_SUMMARY}\n```")

        assert processed.therapeutic_relevance.startswith("Widely used")

    def test_fallback_to_raw_text(self):
        """Test that non-JSON answers fall back to a truncated summary."""
        processed = parse_processed_research("x" * 400)

        assert processed.summary == "x" * 300 + "..."
        assert processed.key_facts == ()


class TestResearchAgent:
    """Tests for ResearchAgent routing scores and answers."""

    def test_can_handle_scores(self, make_backend):
        """Test the routing confidence for each kind of intent."""
        agent = ResearchAgent(make_backend(), WikipediaClient())

        assert agent.can_handle(AgentRequest("https://en.wikipedia.org/wiki/Anxiety")) == 1.0
        assert agent.can_handle(AgentRequest("research anxiety")) == 0.9
        assert agent.can_handle(AgentRequest("How does exposure therapy work?")) == 0.7
        assert agent.can_handle(AgentRequest("I'm tired")) == 0.0
        agent.wikipedia.close()

    def test_explicit_research(self, make_backend):
        """Test that a topic is searched, extracted and condensed by the model."""
        backend = make_backend(replies=[MODEL_SUMMARY])
        seen = []
        with make_wikipedia(wiki_handler(seen=seen)) as wiki:
            response = ResearchAgent(backend, wiki).execute(
                AgentRequest("Can we research cognitive behavioral therapy?")
            )

        assert seen[0]["srsearch"] == "cognitive behavioral therapy"
        assert CBT_EXTRACT in backend.prompts[0]
        assert "Research: Cognitive behavioral therapy" in response.content
        assert "• It is structured" in response.content
        assert response.sources == ("https://en.wikipedia.org/wiki/Cognitive_behavioral_therapy",)

    def test_wikipedia_link(self, make_backend):
        """Test that a Wikipedia link is read without searching."""
        seen = []
        with make_wikipedia(wiki_handler(seen=seen)) as wiki:
            response = ResearchAgent(make_backend(replies=[MODEL_SUMMARY]), wiki).execute(
                AgentRequest("Please read https://en.wikipedia.org/wiki/Major_depressive_disorder")
            )

        assert [params.get("titles") for params in seen] == ["Major depressive disorder"]
        assert "Research: Major depressive disorder" in response.content

    def test_link_outside_whitelist(self, make_backend):
        """Test that untrusted links are refused without any request."""
        backend = make_backend()
        seen = []
        with make_wikipedia(wiki_handler(seen=seen)) as wiki:
            response = ResearchAgent(backend, wiki).execute(
                AgentRequest("read https://malicious-site.com/page")
            )

        assert "trusted sources" in response.content
        assert seen == []
        assert backend.prompts == []

    def test_whitelisted_non_wikipedia_link(self, make_backend):
        """Test that other trusted sites are declined politely."""
        with make_wikipedia(wiki_handler()) as wiki:
            response = ResearchAgent(make_backend(), wiki).execute(
                AgentRequest("https://www.psychologytoday.com/us/basics/anxiety")
            )

        assert "www.psychologytoday.com" in response.content

    def test_suggested_research_offers(self, make_backend):
        """Test that a suggested topic is offered rather than fetched."""
        seen = []
        with make_wikipedia(wiki_handler(seen=seen)) as wiki:
            response = ResearchAgent(make_backend(), wiki).execute(
                AgentRequest("How does exposure therapy work?")
            )

        assert "Would you like me to research" in response.content
        assert seen == []

    def test_no_article_found(self, make_backend):
        """Test the reply when the search finds nothing."""
        with make_wikipedia(wiki_handler(titles=())) as wiki:
            response = ResearchAgent(make_backend(), wiki).execute(AgentRequest("research qwzx"))

        assert "couldn't find" in response.content

    def test_source_failure_becomes_reply(self, make_backend):
        """Test that an unreachable source is explained, not raised."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        with make_wikipedia(handler) as wiki:
            response = ResearchAgent(make_backend(), wiki).execute(AgentRequest("research anxiety"))

        assert response.content.startswith("Research failed")

    def test_model_failure_propagates(self, make_backend):
        """Test that a backend failure while condensing is raised."""
        with make_wikipedia(wiki_handler()) as wiki:
            agent = ResearchAgent(make_backend(fail=True), wiki)
            with pytest.raises(BackendUnavailableError):
                agent.execute(AgentRequest("research cbt"))
