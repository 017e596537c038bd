"""
Lexis Lookups -- outbound dictionary, thesaurus, encyclopedia and math-API calls.

Every lookup runs its HTTP call as a producer inside ``RequestCache.fetch``:
repeated words are served from the cache, concurrent requests for the same
URL share one call, and a per-service sliding-window limiter caps how many
real calls go out per minute. A missing word or topic is ``None``.
"""

import collections
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from lexis import __version__
from lexis.errors import InvalidInput, LookupTimeout, TransientLookupFailure
from lexis.learning_store import KnowledgeContent, VocabularyContent, slugify
from lexis.request_cache import RequestCache, request_key

logger = logging.getLogger("lexis.lookups")

DICTIONARY_URL = "https://api.dictionaryapi.dev/api/v2/entries/en/"
THESAURUS_URL = "https://api.datamuse.com/words"
WIKIPEDIA_SUMMARY_URL = "https://en.wikipedia.org/api/rest_v1/page/summary/"
WIKIPEDIA_SEARCH_URL = "https://en.wikipedia.org/w/api.php"
MATHJS_URL = "https://api.mathjs.org/v4/"

WORD_TTL_S = 24 * 3600.0
SYNONYMS_TTL_S = 24 * 3600.0
WIKI_TTL_S = 7 * 24 * 3600.0
WIKI_SEARCH_TTL_S = 3600.0
MATH_TTL_S = 3600.0

USER_AGENT = f"lexis/{__version__} (knowledge acquisition engine)"

_RATE_WINDOW_S = 60.0
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


class RateLimiter:
    """Sliding-window call counter: at most ``limit`` acquisitions per window."""

    def __init__(self, limit: int, window_s: float = _RATE_WINDOW_S, clock: Callable[[], float] = time.monotonic):
        self.limit = max(1, limit)
        self.window_s = window_s
        self._clock = clock
        self._timestamps: collections.deque = collections.deque()

    def acquire(self) -> bool:
        """Record a call and return True, or return False if the window is full."""
        now = self._clock()
        cutoff = now - self.window_s
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()
        if len(self._timestamps) >= self.limit:
            return False
        self._timestamps.append(now)
        return True

    @property
    def remaining(self) -> int:
        cutoff = self._clock() - self.window_s
        return self.limit - sum(1 for t in self._timestamps if t > cutoff)


class HttpFetcher:
    """The fetch capability: ``fetch(url, options) -> parsed body | None``.

    ``options`` may carry ``params``, ``headers`` and ``method``. JSON bodies
    are decoded, anything else comes back as text. 404 means not found.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        )

    async def fetch(self, url: str, options: Optional[Dict[str, Any]] = None) -> Any:
        opts = options or {}
        try:
            response = await self.client.request(
                opts.get("method", "GET"),
                url,
                params=opts.get("params"),
                headers=opts.get("headers"),
            )
        except httpx.TimeoutException as e:
            raise LookupTimeout(f"HTTP timeout for {url}") from e
        except httpx.HTTPError as e:
            raise TransientLookupFailure(f"HTTP request failed for {url}: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code in (400, 422):
            raise InvalidInput(f"Rejected by {response.url.host}: {response.text.strip()[:200]}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransientLookupFailure(f"HTTP {response.status_code} from {url}") from e

        if "json" in response.headers.get("content-type", ""):
            try:
                return response.json()
            except ValueError as e:
                raise TransientLookupFailure(f"Malformed JSON from {url}") from e
        return response.text

    async def aclose(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            await self.client.aclose()


class _CachedLookup:
    """Shared plumbing: rate limiting plus a cached, coalesced producer."""

    service = "lookup"

    def __init__(self, cache: RequestCache, fetcher: HttpFetcher, limiter: Optional[RateLimiter] = None):
        self._cache = cache
        self._fetcher = fetcher
        self._limiter = limiter

    async def _cached(self, key: str, ttl: float, url: str, options: Optional[Dict[str, Any]], parse):
        async def producer():
            if self._limiter is not None and not self._limiter.acquire():
                logger.warning("Rate limit reached for %s", self.service)
                raise TransientLookupFailure(f"Rate limit exceeded for {self.service}")
            raw = await self._fetcher.fetch(url, options)
            if raw is None:
                return None
            return parse(raw)

        return await self._cache.fetch(key, ttl, producer, inflight_key=request_key(url, options))


def _clean_word(word: str) -> str:
    cleaned = (word or "").strip().lower()
    if not cleaned:
        raise InvalidInput("word must not be empty")
    return cleaned


class DictionaryLookup(_CachedLookup):
    service = "dictionary"

    async def lookup(self, word: str) -> Optional[VocabularyContent]:
        w = _clean_word(word)
        return await self._cached(
            f"word_{w}", WORD_TTL_S, DICTIONARY_URL + quote(w), None, lambda raw: _parse_dictionary(raw, w)
        )


def _parse_dictionary(data: Any, word: str) -> Optional[VocabularyContent]:
    if not isinstance(data, list) or not data:
        return None
    entry = data[0]
    definition = ""
    part_of_speech = ""
    examples: List[str] = []
    synonyms: List[str] = []
    antonyms: List[str] = []
    for meaning in entry.get("meanings", []):
        synonyms.extend(meaning.get("synonyms", []))
        antonyms.extend(meaning.get("antonyms", []))
        for defn in meaning.get("definitions", []):
            if not definition and defn.get("definition"):
                definition = defn["definition"]
                part_of_speech = meaning.get("partOfSpeech", "")
            if defn.get("example"):
                examples.append(defn["example"])
            synonyms.extend(defn.get("synonyms", []))
            antonyms.extend(defn.get("antonyms", []))
    if not definition:
        return None
    phonetic = entry.get("phonetic") or next(
        (p.get("text") for p in entry.get("phonetics", []) if p.get("text")), ""
    )
    return VocabularyContent(
        word=entry.get("word") or word,
        definition=definition,
        part_of_speech=part_of_speech,
        phonetic=phonetic or "",
        examples=examples[:3],
        synonyms=list(dict.fromkeys(synonyms))[:10],
        antonyms=list(dict.fromkeys(antonyms))[:10],
    )


class ThesaurusLookup(_CachedLookup):
    service = "thesaurus"

    async def synonyms(self, word: str, limit: int = 10) -> List[str]:
        w = _clean_word(word)
        options = {"params": {"rel_syn": w, "max": limit}}
        result = await self._cached(f"synonyms_{w}", SYNONYMS_TTL_S, THESAURUS_URL, options, _parse_datamuse)
        return list(result or [])


def _parse_datamuse(data: Any) -> Optional[List[str]]:
    if not isinstance(data, list):
        return None
    words = [item["word"] for item in data if isinstance(item, dict) and item.get("word")]
    return words or None


def extract_summary(text: str, max_sentences: int = 2, max_words: int = 50) -> str:
    """First few sentences of an article extract, capped at max_words."""
    if not text:
        return ""
    sentences = _SENTENCE_RE.split(text.strip())
    summary = " ".join(sentences[:max_sentences]).strip()
    words = summary.split()
    if len(words) > max_words:
        summary = " ".join(words[:max_words]) + "..."
    return summary


class WikipediaLookup(_CachedLookup):
    service = "wikipedia"

    async def lookup(self, topic: str) -> Optional[KnowledgeContent]:
        """Summary for topic; falls back to a title search once."""
        slug = slugify(topic or "")
        if not slug:
            raise InvalidInput("topic must not be empty")
        content = await self._summary(topic.strip())
        if content is not None:
            return content

        title = await self._search(topic.strip(), slug)
        if title and slugify(title) != slug:
            return await self._summary(title)
        return None

    async def _summary(self, title: str) -> Optional[KnowledgeContent]:
        url = WIKIPEDIA_SUMMARY_URL + quote(title.replace(" ", "_"))
        return await self._cached(
            f"wiki_{slugify(title)}", WIKI_TTL_S, url, None, lambda raw: _parse_wiki_summary(raw, title)
        )

    async def _search(self, query: str, slug: str) -> Optional[str]:
        options = {"params": {"action": "opensearch", "search": query, "limit": 1, "format": "json"}}
        return await self._cached(f"wiki_search_{slug}", WIKI_SEARCH_TTL_S, WIKIPEDIA_SEARCH_URL, options,
                                  _parse_opensearch)


def _parse_wiki_summary(data: Any, title: str = "") -> Optional[KnowledgeContent]:
    if not isinstance(data, dict) or data.get("type") == "disambiguation":
        return None
    topic = str(data.get("title") or title).strip()
    if not slugify(topic):
        return None
    extract = data.get("extract", "")
    summary = extract_summary(extract)
    if not summary:
        return None
    return KnowledgeContent(
        topic=topic,
        summary=summary,
        details=data.get("description", "") or "",
    )


def _parse_opensearch(data: Any) -> Optional[str]:
    if isinstance(data, list) and len(data) >= 2 and data[1]:
        return str(data[1][0])
    return None


class MathApiLookup(_CachedLookup):
    service = "math"

    async def evaluate(self, expression: str) -> Optional[str]:
        expr = (expression or "").strip()
        if not expr:
            raise InvalidInput("expression must not be empty")
        options = {"params": {"expr": expr}}
        return await self._cached(f"math_{expr}", MATH_TTL_S, MATHJS_URL, options, _parse_mathjs)


def _parse_mathjs(data: Any) -> Optional[str]:
    text = str(data).strip()
    if not text:
        return None
    if text.lower().startswith("error"):
        raise InvalidInput(text)
    return text
