"""
Lexis Engine -- composition root for one message-processing pipeline.

    text -> PatternMatcher (intent) + Tokenizer (tokens)
         -> unknown words / topics looked up through the RequestCache
         -> results learned into the LearningStore
         -> ranked entries, arithmetic answer, learned ids

No signal source is allowed to fail a response: a broken matcher, tokenizer
or lookup is logged, named in ``EngineResponse.degraded`` and costs
confidence instead.

Lifecycle:
    async with Engine(config) as engine:      # start() loads the snapshot
        response = await engine.process("what does serendipity mean")
    # aclose() saves the snapshot and releases the HTTP client and database
"""

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from lexis import arithmetic
from lexis.config import EngineConfig
from lexis.crypto import decrypt_bytes, encrypt_bytes
from lexis.errors import InvalidInput, LexisError
from lexis.kv_store import KeyValueStore, SQLiteKVStore
from lexis.learning_store import (
    KnowledgeContent,
    LearningEntry,
    LearningStore,
    MathContent,
    PatternContent,
    VocabularyContent,
    make_entry_id,
)
from lexis.lookups import (
    DictionaryLookup,
    HttpFetcher,
    MathApiLookup,
    RateLimiter,
    ThesaurusLookup,
    WikipediaLookup,
)
from lexis.matcher import MATH_INTENT, IntentPattern, MatchResult, PatternMatcher
from lexis.request_cache import Producer, RequestCache
from lexis.tokenizer import TokenStats, Tokenizer, split_words
from lexis.types import EntryType, Feedback

logger = logging.getLogger("lexis.engine")

FALLBACK_INTENT = "general"
DEGRADED_PENALTY = 0.15
MARK_USED_TOP = 3
MIN_LOOKUP_WORD = 3
MAX_PATTERN_CHARS = 200

SOURCE_CONVERSATION = "conversation"
SOURCE_DICTIONARY = "dictionary-api"
SOURCE_WIKIPEDIA = "wikipedia-api"
SOURCE_CALCULATION = "calculation"

_TOPIC_INTENTS = frozenset({"explanation_request"})
_TOPIC_PREFIX_RE = re.compile(
    r"^(?:please\s+)?(?:do\s+you\s+know\s+(?:about|of)|tell\s+me\s+about|what\s+(?:is|are|was|were)"
    r"|who\s+(?:is|was|are)|explain|define|describe)\s+(.+)$"
)
_MEANING_RE = re.compile(r"^what\s+does\s+(.+?)\s+mean$")
_TOPIC_STOPWORDS = frozenset({
    "what", "who", "where", "when", "why", "how", "which",
    "is", "are", "was", "were", "am", "do", "does", "did", "can", "could", "would", "should",
    "tell", "me", "about", "know", "you", "your", "please", "explain", "define", "describe",
    "a", "an", "the", "this", "that", "it",
})


def extract_topic(text: str) -> str:
    """Pull the subject out of a question: "tell me about black holes" -> "black holes"."""
    lowered = " ".join(split_words(text)).strip("?!. ")
    if not lowered:
        return ""
    for pattern in (_MEANING_RE, _TOPIC_PREFIX_RE):
        m = pattern.match(lowered)
        if m:
            subject = m.group(1).strip()
            subject = re.sub(r"^(?:a|an|the)\s+", "", subject)
            if subject and subject not in _TOPIC_STOPWORDS:
                return subject
    words = [w for w in lowered.split() if w not in _TOPIC_STOPWORDS]
    return " ".join(words)


@dataclass
class EngineResponse:
    text: str
    intent: str
    confidence: float
    entities: List[str] = field(default_factory=list)
    token_stats: Optional[TokenStats] = None
    entries: List[LearningEntry] = field(default_factory=list)
    learned: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)
    answer: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "text": self.text,
            "intent": self.intent,
            "confidence": round(self.confidence, 4),
            "entities": list(self.entities),
            "entries": [e.to_dict() for e in self.entries],
            "learned": list(self.learned),
            "degraded": list(self.degraded),
            "answer": self.answer,
        }
        if self.token_stats is not None:
            out["tokens"] = [t.to_dict() for t in self.token_stats.tokens]
            out["known_words"] = self.token_stats.known_words
            out["unknown_words"] = self.token_stats.unknown_words
        if self.error:
            out["error"] = self.error
        return out


class Engine:
    """Owns one store, cache, matcher and tokenizer; nothing is module-global."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        kv: Optional[KeyValueStore] = None,
        fetcher: Optional[HttpFetcher] = None,
        patterns: Optional[Sequence[IntentPattern]] = None,
        store: Optional[LearningStore] = None,
    ):
        self.config = config or EngineConfig.from_env()
        self._owns_kv = kv is None
        self.kv: KeyValueStore = kv if kv is not None else SQLiteKVStore(self.config.db_path)
        self.store = store or LearningStore()
        self.cache = RequestCache(timeout=self.config.fetch_timeout_s, max_entries=self.config.cache_max_entries)
        self.matcher = PatternMatcher(patterns, topics=self.store.topics())
        self.tokenizer = Tokenizer(self.store)

        self._fetcher: Optional[HttpFetcher] = None
        self.dictionary: Optional[DictionaryLookup] = None
        self.thesaurus: Optional[ThesaurusLookup] = None
        self.wikipedia: Optional[WikipediaLookup] = None
        self.math_api: Optional[MathApiLookup] = None
        if fetcher is not None or self.config.online_lookups:
            self._fetcher = fetcher or HttpFetcher(timeout=self.config.fetch_timeout_s)
            limit = self.config.rate_limit_per_minute
            self.dictionary = DictionaryLookup(self.cache, self._fetcher, RateLimiter(limit))
            self.thesaurus = ThesaurusLookup(self.cache, self._fetcher, RateLimiter(limit))
            self.wikipedia = WikipediaLookup(self.cache, self._fetcher, RateLimiter(limit))
            self.math_api = MathApiLookup(self.cache, self._fetcher, RateLimiter(limit))

        self._last_consolidated = time.monotonic()
        self._maintenance_task: Optional[asyncio.Task] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> "Engine":
        """Load the persisted snapshot, if any."""
        self.load()
        return self

    async def __aenter__(self) -> "Engine":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def save(self) -> int:
        """Persist the store snapshot (encrypted if enabled); returns entries saved."""
        snapshot = self.store.export_snapshot()
        data = json.dumps(snapshot, ensure_ascii=False).encode("utf-8")
        self.kv.set(self.config.snapshot_key, encrypt_bytes(data))
        logger.info("Saved %d entries to %s", snapshot["entry_count"], self.config.snapshot_key)
        return snapshot["entry_count"]

    def load(self) -> int:
        """Replace the store contents with the persisted snapshot; 0 if none exists."""
        raw = self.kv.get(self.config.snapshot_key)
        if raw is None:
            return 0
        try:
            snapshot = json.loads(decrypt_bytes(raw).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidInput(f"Cannot read snapshot {self.config.snapshot_key!r}: {e}") from e
        count = self.store.import_snapshot(snapshot)
        self.matcher.set_topics(self.store.topics())
        logger.info("Loaded %d entries from %s", count, self.config.snapshot_key)
        return count

    def export_to_file(self, filepath: Path) -> Dict[str, Any]:
        """Write a plaintext JSON snapshot to filepath (owner-only permissions)."""
        snapshot = self.store.export_snapshot()
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(str(path), os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, ensure_ascii=False, indent=2)
        logger.info("Exported %d entries to %s", snapshot["entry_count"], path)
        return {
            "filepath": str(path),
            "entry_count": snapshot["entry_count"],
            "exported_at": snapshot["exported_at"],
            "file_size_kb": path.stat().st_size / 1024,
        }

    def import_from_file(self, filepath: Path, clear_existing: bool = True) -> Dict[str, Any]:
        path = Path(filepath)
        try:
            snapshot = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise InvalidInput(f"{path} is not a JSON snapshot: {e}") from e
        count = self.store.import_snapshot(snapshot, clear_existing=clear_existing)
        self.matcher.set_topics(self.store.topics())
        return {"filepath": str(path), "entry_count": count, "clear_existing": clear_existing}

    def close(self) -> None:
        """Save and release the database. Use ``aclose`` from async code."""
        if self._closed:
            return
        self._closed = True
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
        self.save()
        if self._owns_kv:
            self.kv.close()

    async def aclose(self) -> None:
        """Stop maintenance, save, and close the HTTP client and database."""
        if self._closed:
            return
        await self.stop_maintenance()
        self.close()
        if self._fetcher is not None:
            await self._fetcher.aclose()

    # ------------------------------------------------------------------
    # Scheduler hooks
    # ------------------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Periodic maintenance: sweep the cache, consolidate when due."""
        now = time.monotonic() if now is None else now
        result: Dict[str, Any] = {"evicted": self.cache.tick(), "consolidated": None}
        if now - self._last_consolidated >= self.config.consolidate_interval_s:
            self._last_consolidated = now
            result["consolidated"] = self.store.consolidate()
            self.matcher.set_topics(self.store.topics())
        return result

    async def maintenance_loop(self, interval_s: float = 60.0) -> None:
        """Call ``tick`` every interval until cancelled."""
        while True:
            await asyncio.sleep(interval_s)
            try:
                self.tick()
            except Exception as e:
                logger.error("Maintenance tick failed: %s", e)

    def start_maintenance(self, interval_s: float = 60.0) -> asyncio.Task:
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(self.maintenance_loop(interval_s))
        return self._maintenance_task

    async def stop_maintenance(self) -> None:
        task, self._maintenance_task = self._maintenance_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Core surface
    # ------------------------------------------------------------------

    def match_intent(self, text: str) -> Optional[MatchResult]:
        return self.matcher.match_intent(text)

    def tokenize(self, text: str):
        return self.tokenizer.tokenize(text)

    async def cached_fetch(self, key: str, ttl: float, producer: Producer) -> Any:
        return await self.cache.fetch(key, ttl, producer)

    def learn(self, entry_type: Union[EntryType, str], content: Any, source: str = SOURCE_CONVERSATION) -> str:
        entry_id = self.store.learn(entry_type, content, source)
        if EntryType.parse(entry_type) is EntryType.KNOWLEDGE:
            self.matcher.set_topics(self.store.topics())
        return entry_id

    def query(self, text: str, entry_type: Optional[Union[EntryType, str]] = None, limit: int = 10):
        return self.store.query(text, entry_type, limit)

    def feedback(self, entry_id: str, action: str) -> Optional[LearningEntry]:
        """``used`` marks a retrieval hit; ``positive``/``negative`` reinforce."""
        if str(action).strip().lower() == "used":
            return self.store.mark_used(entry_id)
        return self.store.reinforce(entry_id, Feedback.parse(action))

    def stats(self) -> Dict[str, Any]:
        return {
            "store": self.store.stats(),
            "cache": self.cache.stats(),
            "tokenizer": {"vocabulary_size": self.tokenizer.vocabulary_size},
            "online": self._fetcher is not None,
        }

    # ------------------------------------------------------------------
    # Message processing
    # ------------------------------------------------------------------

    async def process(self, text: str) -> EngineResponse:
        """Classify, tokenize, enrich, learn and retrieve for one message."""
        text = text or ""
        degraded: List[str] = []
        learned: List[str] = []

        try:
            self.matcher.set_topics(self.store.topics())
            match = self.matcher.match_intent(text)
        except Exception as e:
            logger.warning("Intent matching failed, using fallback: %s", e)
            degraded.append("matcher")
            match = None

        try:
            token_stats: Optional[TokenStats] = self.tokenizer.get_token_info(text)
        except Exception as e:
            logger.warning("Tokenization failed: %s", e)
            degraded.append("tokenizer")
            token_stats = None

        if match is not None:
            intent, confidence, entities = match.intent, match.confidence, list(match.entities)
        else:
            intent = FALLBACK_INTENT
            confidence = token_stats.known_ratio * 0.5 if token_stats else 0.0
            entities = [] if "matcher" in degraded else self.matcher.extract_entities(text)

        response = EngineResponse(text=text, intent=intent, confidence=confidence, entities=entities,
                                  token_stats=token_stats, learned=learned, degraded=degraded)

        if intent == MATH_INTENT:
            await self._answer_math(text, response)

        if token_stats is not None and self.dictionary is not None and intent != MATH_INTENT:
            await self._enrich_words(token_stats, response)

        if intent in _TOPIC_INTENTS and self.wikipedia is not None:
            await self._enrich_topic(text, response)

        try:
            response.entries = self.store.query(text, EntryType.MATH if intent == MATH_INTENT else None)
        except LexisError as e:
            logger.warning("Store query failed: %s", e)
            degraded.append("store")

        self._learn_pattern(text, intent)
        for entry in response.entries[:MARK_USED_TOP]:
            self.store.mark_used(entry.id)

        if response.answer is None:
            response.answer = self._compose_answer(match, response)
        penalty = DEGRADED_PENALTY * len(set(degraded))
        response.confidence = max(0.0, min(1.0, response.confidence - penalty))
        return response

    async def _answer_math(self, text: str, response: EngineResponse) -> None:
        expression = arithmetic.extract_expression(text)
        try:
            result = arithmetic.normalize_number(arithmetic.evaluate(expression))
        except arithmetic.UndefinedResult as e:
            response.error = str(e)
            return
        except InvalidInput as e:
            # Local evaluation can't read it; the math API may
            if self.math_api is None:
                response.error = str(e)
                return
            expression = expression or text.strip()
            try:
                result = await self.math_api.evaluate(expression)
            except LexisError as api_err:
                logger.warning("Math API failed for %r: %s", expression, api_err)
                response.degraded.append("math-api")
                response.error = str(e)
                return
            if result is None:
                response.error = str(e)
                return
        response.answer = result
        content = MathContent(
            concept=f"calculation {expression}",
            formula=f"{expression} = {result}",
            steps=[f"{expression} = {result}"],
        )
        response.learned.append(self.store.learn(EntryType.MATH, content, SOURCE_CALCULATION))

    async def _enrich_words(self, token_stats: TokenStats, response: EngineResponse) -> None:
        unknown = [
            t.token for t in token_stats.tokens
            if not t.is_known and len(t.token) >= MIN_LOOKUP_WORD and t.token.isalpha()
        ]
        unknown = list(dict.fromkeys(unknown))[:self.config.max_lookups_per_message]
        if not unknown:
            return
        results = await asyncio.gather(*(self.dictionary.lookup(w) for w in unknown), return_exceptions=True)
        failed = False
        for word, result in zip(unknown, results):
            if isinstance(result, BaseException):
                logger.warning("Dictionary lookup for %r failed: %s", word, result)
                failed = True
            elif isinstance(result, VocabularyContent):
                response.learned.append(self.store.learn(EntryType.VOCABULARY, result, SOURCE_DICTIONARY))
        if failed:
            response.degraded.append("dictionary")

    async def _enrich_topic(self, text: str, response: EngineResponse) -> None:
        topic = extract_topic(text)
        if not topic:
            return
        try:
            known = self.store.get(make_entry_id(EntryType.KNOWLEDGE, KnowledgeContent(topic=topic)))
        except InvalidInput:
            return
        if known is not None:
            return
        try:
            content = await self.wikipedia.lookup(topic)
        except LexisError as e:
            logger.warning("Topic lookup for %r failed: %s", topic, e)
            response.degraded.append("wikipedia")
            return
        if content is None:
            return
        try:
            response.learned.append(self.store.learn(EntryType.KNOWLEDGE, content, SOURCE_WIKIPEDIA))
        except InvalidInput as e:
            logger.warning("Topic summary for %r not learned: %s", topic, e)
            response.degraded.append("wikipedia")
            return
        self.matcher.set_topics(self.store.topics())
        if content.topic not in response.entities and content.topic.lower() in text.lower():
            response.entities.append(content.topic)

    def _learn_pattern(self, text: str, intent: str) -> None:
        phrase = " ".join(split_words(text))[:MAX_PATTERN_CHARS].strip()
        if not phrase:
            return
        try:
            self.store.learn(EntryType.PATTERN, PatternContent(pattern=phrase, contexts=[intent]),
                             SOURCE_CONVERSATION)
        except InvalidInput as e:
            logger.debug("Pattern not learned: %s", e)

    def _compose_answer(self, match: Optional[MatchResult], response: EngineResponse) -> Optional[str]:
        for entry in response.entries:
            content = entry.content
            if isinstance(content, KnowledgeContent) and content.summary:
                return content.summary
            if isinstance(content, VocabularyContent) and content.definition:
                return f"{content.word}: {content.definition}"
        if match is not None and match.pattern is not None and match.pattern.responses:
            return match.pattern.responses[0]
        return None
