"""
Research agent.

Detects when a user asks for information (a pasted link, "research ...",
"what is ...") and answers from Wikipedia through the MediaWiki API. The
article extract is condensed by the local model into a short summary with
key facts and a note on therapeutic relevance. Links are only followed for
whitelisted domains.
"""

import enum
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from urllib.parse import quote, unquote

import httpx

from chiron import __version__
from chiron.agents.protocol import AgentRequest, AgentResponse
from chiron.exceptions import BackendUnavailableError, ResearchError
from chiron.inference.base import InferenceBackend
from chiron.inference.retry import RetryConfig, check_response, with_retry

logger = logging.getLogger(__name__)

AGENT_NAME = "research"

DEFAULT_ALLOWED_DOMAINS = ("en.wikipedia.org", "www.psychologytoday.com", "psychologytoday.com")
DEFAULT_WIKIPEDIA_API = "https://en.wikipedia.org/w/api.php"
USER_AGENT = f"Chiron research agent/{__version__}"

# Extract text sent to the model is capped
MAX_CONTENT_CHARS = 6000
FALLBACK_SUMMARY_CHARS = 300

URL_PATTERNS = [
    re.compile(r"https?://[^\s)\]]+"),
    re.compile(r"\[.*?\]\((https?://[^\s)]+)\)"),
]

# Longest first, so "research this" wins over "research"
RESEARCH_KEYWORDS = tuple(
    sorted(
        (
            "research",
            "tell me about",
            "what is",
            "explain",
            "look up",
            "find information",
            "search for",
            "more about",
            "definition of",
            "can we research",
            "let's research",
            "research this",
            "research further",
        ),
        key=lambda keyword: (-len(keyword), keyword),
    )
)

QUESTION_TOPIC_PATTERNS = [
    re.compile(r"what is (.+?)(?:\?|$)"),
    re.compile(r"what are (.+?)(?:\?|$)"),
    re.compile(r"how does (.+?) work(?:\?|$)"),
    re.compile(r"how do (.+?) work(?:\?|$)"),
    re.compile(r"tell me about (.+?)(?:\?|$)"),
    re.compile(r"explain (.+?)(?:\?|$)"),
]

RESEARCH_PROMPT = """You are a mental health research assistant. Extract key information from this content about: {query}

Content:
{content}

IMPORTANT: Respond with ONLY a valid JSON object, no markdown formatting, no explanation. Use this exact structure:

{{
    "summary": "Write a 2-3 sentence summary of the main points",
    "key_facts": ["Write 3-5 important facts as separate strings"],
    "relevant_sections": ["List 2-3 main topic areas covered"],
    "therapeutic_relevance": "Explain how this information helps with mental health treatment"
}}

JSON response:"""


class IntentKind(str, enum.Enum):
    DIRECT_URL = "direct_url"
    EXPLICIT = "explicit"
    SUGGESTED = "suggested"
    NONE = "none"


# Routing confidence per intent
INTENT_CONFIDENCE = {
    IntentKind.DIRECT_URL: 1.0,
    IntentKind.EXPLICIT: 0.9,
    IntentKind.SUGGESTED: 0.7,
    IntentKind.NONE: 0.0,
}


@dataclass(frozen=True)
class ResearchIntent:
    """Detected research intent; target is a URL or a topic."""

    kind: IntentKind
    target: str = ""


@dataclass(frozen=True)
class ProcessedResearch:
    """Model-condensed research content."""

    summary: str
    key_facts: tuple[str, ...] = ()
    relevant_sections: tuple[str, ...] = ()
    therapeutic_relevance: str = ""


def _clean_topic(topic: str) -> str:
    topic = topic.strip()
    if topic.startswith("the "):
        topic = topic[4:]
    return topic.strip(" ?.!,")


def extract_research_topic(text: str) -> str:
    """Remove the first research keyword from lowercased text and return the rest."""
    topic = text
    for keyword in RESEARCH_KEYWORDS:
        if keyword in text:
            topic = text.replace(keyword, " ")
            break
    topic = re.sub(r"\s+", " ", _clean_topic(topic))
    if len(topic) < 3:
        return "general topic"
    return topic


def extract_question_topic(text: str) -> str:
    """Return the subject of a "what is X?" style question, or an empty string."""
    for pattern in QUESTION_TOPIC_PATTERNS:
        match = pattern.search(text)
        if match:
            topic = _clean_topic(match.group(1))
            if len(topic) > 2:
                return topic
    return ""


class IntentDetector:
    """Fast pattern-based research intent detection."""

    def detect(self, text: str) -> ResearchIntent:
        url = self.extract_url(text)
        if url:
            return ResearchIntent(IntentKind.DIRECT_URL, url)

        lowered = text.lower().strip()
        if any(keyword in lowered for keyword in RESEARCH_KEYWORDS):
            return ResearchIntent(IntentKind.EXPLICIT, extract_research_topic(lowered))

        if lowered.startswith(("what", "how", "why")) or "?" in lowered:
            topic = extract_question_topic(lowered)
            if topic:
                return ResearchIntent(IntentKind.SUGGESTED, topic)

        return ResearchIntent(IntentKind.NONE)

    @staticmethod
    def extract_url(text: str) -> Optional[str]:
        for pattern in URL_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(match.lastindex or 0)
        return None


class UrlValidator:
    """Domain whitelist for links the agent will follow."""

    def __init__(self, allowed_domains: Iterable[str] = DEFAULT_ALLOWED_DOMAINS):
        self.allowed_domains = frozenset(d.strip().lower() for d in allowed_domains if d.strip())

    def domain(self, url: str) -> Optional[str]:
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError):
            return None
        if parsed.scheme not in ("http", "https") or not parsed.host:
            return None
        return parsed.host.lower()

    def is_allowed(self, url: str) -> bool:
        domain = self.domain(url)
        return domain is not None and domain in self.allowed_domains


class WikipediaClient:
    """Minimal MediaWiki API client for article search and plain-text extracts."""

    def __init__(
        self,
        api_url: str = DEFAULT_WIKIPEDIA_API,
        timeout: float = 15.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url
        api = httpx.URL(api_url)
        self.site = f"{api.scheme}://{api.host}"
        self.host = api.host
        self.retry_config = retry_config or RetryConfig()
        self._client = httpx.Client(
            timeout=timeout, transport=transport, headers={"User-Agent": USER_AGENT}
        )
        self._query_with_retry = with_retry(self.retry_config)(self._query_once)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WikipediaClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def search(self, topic: str) -> Optional[str]:
        """Return the title of the best matching article, if any."""
        data = self._query(
            {"action": "query", "list": "search", "srsearch": topic, "srlimit": "3", "format": "json"}
        )
        results = data.get("query", {}).get("search", [])
        for item in results:
            if isinstance(item, dict) and isinstance(item.get("title"), str):
                return item["title"]
        return None

    def extract(self, title: str) -> str:
        """Return the plain-text introduction of an article.

        Raises:
            ResearchError: If the article is missing or has no text
        """
        data = self._query(
            {
                "action": "query",
                "prop": "extracts",
                "titles": title,
                "exintro": "1",
                "explaintext": "1",
                "redirects": "1",
                "format": "json",
            }
        )
        pages = data.get("query", {}).get("pages", {})
        for page in pages.values() if isinstance(pages, dict) else ():
            extract = page.get("extract") if isinstance(page, dict) else None
            if isinstance(extract, str) and extract.strip():
                return extract.strip()
        raise ResearchError(f"No content found for Wikipedia article '{title}'", source=self.host)

    def page_url(self, title: str) -> str:
        return f"{self.site}/wiki/{quote(title.replace(' ', '_'))}"

    def title_from_url(self, url: str) -> Optional[str]:
        """Return the article title for a link to this wiki, else None."""
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError):
            return None
        if parsed.host != self.host or not parsed.path.startswith("/wiki/"):
            return None
        title = unquote(parsed.path[len("/wiki/"):]).replace("_", " ").strip()
        return title or None

    def _query(self, params: dict[str, str]) -> dict[str, Any]:
        try:
            return self._query_with_retry(params)
        except BackendUnavailableError as e:
            raise ResearchError(f"Wikipedia request failed: {e}", source=self.host) from e

    def _query_once(self, params: dict[str, str]) -> dict[str, Any]:
        response = self._client.get(self.api_url, params=params)
        check_response(response, self.retry_config)
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ResearchError(f"Undecodable response from Wikipedia: {e}", source=self.host) from e
        if not isinstance(data, dict):
            raise ResearchError("Unexpected response shape from Wikipedia", source=self.host)
        return data


def parse_processed_research(raw: str) -> ProcessedResearch:
    """Parse the model's JSON answer, falling back to the raw text."""
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
        cleaned = re.sub(r"\s*```$", "", cleaned)

    try:
        data = json.loads(cleaned)
        if not isinstance(data, dict) or not isinstance(data.get("summary"), str):
            raise ValueError("missing summary")
        return ProcessedResearch(
            summary=data["summary"].strip(),
            key_facts=tuple(str(fact) for fact in data.get("key_facts") or ()),
            relevant_sections=tuple(str(s) for s in data.get("relevant_sections") or ()),
            therapeutic_relevance=str(data.get("therapeutic_relevance") or ""),
        )
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.warning(f"Research summary was not valid JSON: {e}")
        summary = cleaned[:FALLBACK_SUMMARY_CHARS]
        if len(cleaned) > FALLBACK_SUMMARY_CHARS:
            summary += "..."
        return ProcessedResearch(summary=summary)


def format_research(title: str, processed: ProcessedResearch, source_url: str) -> str:
    lines = [f"Research: {title}", "", processed.summary]
    if processed.key_facts:
        lines += ["", "Key facts:"] + [f"• {fact}" for fact in processed.key_facts]
    if processed.therapeutic_relevance:
        lines += ["", f"Therapeutic relevance: {processed.therapeutic_relevance}"]
    lines += ["", f"Source: {source_url}"]
    return "\n".join(lines)


class ResearchAgent:
    """Answers research requests from Wikipedia, condensed by the local model."""

    name = AGENT_NAME

    def __init__(
        self,
        backend: InferenceBackend,
        wikipedia: WikipediaClient,
        detector: Optional[IntentDetector] = None,
        validator: Optional[UrlValidator] = None,
    ):
        self.backend = backend
        self.wikipedia = wikipedia
        self.detector = detector or IntentDetector()
        self.validator = validator or UrlValidator()

    def can_handle(self, request: AgentRequest) -> float:
        return INTENT_CONFIDENCE[self.detector.detect(request.input).kind]

    def execute(self, request: AgentRequest) -> AgentResponse:
        """Answer a research request.

        Source failures become an explanatory reply.

        Raises:
            BackendUnavailableError: If the model cannot condense the article
        """
        intent = self.detector.detect(request.input)
        confidence = INTENT_CONFIDENCE[intent.kind]
        logger.info(f"Research intent {intent.kind.value} in session {request.session_id}")

        try:
            if intent.kind == IntentKind.DIRECT_URL:
                return self._research_url(intent.target, confidence)
            if intent.kind == IntentKind.EXPLICIT:
                title = self.wikipedia.search(intent.target)
                if title is None:
                    return self._respond(
                        f"I couldn't find a Wikipedia article about '{intent.target}'.", confidence
                    )
                return self._research_title(title, intent.target, confidence)
        except ResearchError as e:
            logger.warning(f"Research failed: {e}")
            return self._respond(f"Research failed: {e}", confidence)

        if intent.kind == IntentKind.SUGGESTED:
            return self._respond(
                f"I noticed you mentioned '{intent.target}'. Would you like me to research this "
                "topic for you? I can look it up on Wikipedia for evidence-based information.",
                confidence,
            )
        return self._respond("I don't see a research request in your message.", confidence)

    def _research_url(self, url: str, confidence: float) -> AgentResponse:
        if not self.validator.is_allowed(url):
            allowed = ", ".join(sorted(self.validator.allowed_domains))
            return self._respond(
                f"I can only read links from trusted sources ({allowed}).", confidence
            )
        title = self.wikipedia.title_from_url(url)
        if title is None:
            return self._respond(
                f"I can't read pages from {self.validator.domain(url)} yet, "
                "but I can summarize Wikipedia articles for you.",
                confidence,
            )
        return self._research_title(title, title, confidence)

    def _research_title(self, title: str, query: str, confidence: float) -> AgentResponse:
        content = self.wikipedia.extract(title)[:MAX_CONTENT_CHARS]
        raw = self.backend.generate(
            RESEARCH_PROMPT.format(query=f"Research topic: {query}", content=content)
        )
        source = self.wikipedia.page_url(title)
        return AgentResponse(
            content=format_research(title, parse_processed_research(raw), source),
            agent_name=self.name,
            confidence=confidence,
            sources=(source,),
            content_type="markdown",
        )

    def _respond(self, content: str, confidence: float) -> AgentResponse:
        return AgentResponse(content=content, agent_name=self.name, confidence=confidence)
