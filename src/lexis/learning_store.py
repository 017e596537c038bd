"""
Lexis Learning Store -- scored knowledge entries with reinforcement and consolidation.

Holds everything the engine has learned (vocabulary, math concepts, usage
patterns, topic knowledge) as ``LearningEntry`` objects keyed by a
deterministic id, so learning the same fact twice updates one entry.

Ranking:
    score = query words found in the serialized content
          + usage_count * 0.1
          + max(0, 1 - days_since_last_use / 7) * 0.5

Maintenance (``consolidate``):
    1. Prune entries with confidence < 0.2, no usage, older than 7 days.
    2. Merge near-duplicates of the same type into a single keeper.

Usage:
    store = LearningStore()
    entry_id = store.learn("vocabulary", {"word": "apple", "definition": "a fruit"}, "conversation")
    results = store.query("apple fruit")
"""

import json
import logging
import re
import threading
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Optional, Tuple, Union

from lexis.errors import InvalidInput
from lexis.tokenizer import split_words
from lexis.types import EntryType, Feedback

logger = logging.getLogger("lexis.learning_store")

SNAPSHOT_VERSION = "lexis-learning-v1"
SEED_SOURCE = "seed"

CONFIDENCE_CAP = 0.95
CONFIDENCE_FLOOR = 0.1
MARK_USED_STEP = 0.05
REINFORCE_STEP = 0.1

PRUNE_CONFIDENCE = 0.2
RETENTION_WINDOW = timedelta(days=7)
RECENCY_WINDOW = timedelta(days=7)
RECENCY_WEIGHT = 0.5
USAGE_WEIGHT = 0.1
QUERY_LIMIT = 10

MERGE_JACCARD = 0.85
MAX_CONTEXTS = 20

_DEFAULT_CONFIDENCE = {
    EntryType.VOCABULARY: 0.8,
    EntryType.MATH: 0.7,
    EntryType.KNOWLEDGE: 0.6,
}

_ID_PREFIX = {
    EntryType.VOCABULARY: "vocab",
    EntryType.MATH: "math",
    EntryType.PATTERN: "pattern",
    EntryType.KNOWLEDGE: "knowledge",
}

_SLUG_RE = re.compile(r"[\W_]+")
_ALNUM_RE = re.compile(r"[\W_]")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slugify(text: str) -> str:
    return _SLUG_RE.sub("_", text.strip().lower()).strip("_")


def pattern_confidence(frequency: int) -> float:
    return min(0.9, 0.3 + frequency * 0.1)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(v) for v in value if v is not None and str(v).strip()]


def _word_set(text: str) -> set:
    return {re.sub(r"[^\w]", "", w) for w in text.lower().split() if len(w) > 3}


# ---------------------------------------------------------------------------
# Entry content -- one dataclass per entry type
# ---------------------------------------------------------------------------


@dataclass
class VocabularyContent:
    TYPE: ClassVar[EntryType] = EntryType.VOCABULARY

    word: str
    definition: str = ""
    part_of_speech: str = ""
    phonetic: str = ""
    examples: List[str] = field(default_factory=list)
    synonyms: List[str] = field(default_factory=list)
    antonyms: List[str] = field(default_factory=list)

    def primary_key(self) -> str:
        return self.word.strip().lower()

    def identity_text(self) -> str:
        return self.primary_key()


@dataclass
class MathContent:
    TYPE: ClassVar[EntryType] = EntryType.MATH

    concept: str
    formula: str = ""
    explanation: str = ""
    steps: List[str] = field(default_factory=list)
    examples: List[str] = field(default_factory=list)

    def primary_key(self) -> str:
        return self.concept.strip().lower()

    def identity_text(self) -> str:
        return self.primary_key()


@dataclass
class PatternContent:
    TYPE: ClassVar[EntryType] = EntryType.PATTERN

    pattern: str
    frequency: int = 1
    contexts: List[str] = field(default_factory=list)

    def primary_key(self) -> str:
        return self.pattern.strip().lower()

    def identity_text(self) -> str:
        return self.primary_key()


@dataclass
class KnowledgeContent:
    TYPE: ClassVar[EntryType] = EntryType.KNOWLEDGE

    topic: str
    summary: str = ""
    details: str = ""
    related_topics: List[str] = field(default_factory=list)

    def primary_key(self) -> str:
        return self.topic.strip().lower()

    def identity_text(self) -> str:
        return f"{self.topic} {self.summary}".strip().lower()


EntryContent = Union[VocabularyContent, MathContent, PatternContent, KnowledgeContent]

CONTENT_TYPES: Dict[EntryType, type] = {
    EntryType.VOCABULARY: VocabularyContent,
    EntryType.MATH: MathContent,
    EntryType.PATTERN: PatternContent,
    EntryType.KNOWLEDGE: KnowledgeContent,
}

_LIST_FIELDS = frozenset({"examples", "synonyms", "antonyms", "steps", "contexts", "related_topics"})


def content_to_dict(content: EntryContent) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in fields(content):
        value = getattr(content, f.name)
        out[f.name] = list(value) if isinstance(value, list) else value
    return out


def content_from_dict(entry_type: EntryType, data: Dict[str, Any]) -> EntryContent:
    """Build typed content from a plain dict; unknown keys are ignored."""
    if not isinstance(data, dict):
        raise InvalidInput(f"{entry_type.value} content must be an object")
    cls = CONTENT_TYPES[entry_type]
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data or data[f.name] is None:
            continue
        value = data[f.name]
        if f.name in _LIST_FIELDS:
            kwargs[f.name] = _str_list(value)
        elif f.name == "frequency":
            try:
                kwargs[f.name] = max(1, int(value))
            except (TypeError, ValueError):
                raise InvalidInput(f"frequency must be an integer, got {value!r}") from None
        else:
            kwargs[f.name] = str(value)
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise InvalidInput(f"incomplete {entry_type.value} content: {e}") from None


def copy_content(content: EntryContent) -> EntryContent:
    """Detached copy; list fields are copied too."""
    return replace(content, **{
        f.name: list(getattr(content, f.name)) for f in fields(content) if f.name in _LIST_FIELDS
    })


def coerce_content(entry_type: EntryType, content: Any) -> EntryContent:
    if isinstance(content, dict):
        return content_from_dict(entry_type, content)
    expected = CONTENT_TYPES[entry_type]
    if not isinstance(content, expected):
        raise InvalidInput(f"content for {entry_type.value} must be {expected.__name__}, got {type(content).__name__}")
    return copy_content(content)


def make_entry_id(entry_type: EntryType, content: EntryContent) -> str:
    """Deterministic id from (type, normalized primary key)."""
    slug = slugify(content.primary_key())
    if not slug:
        raise InvalidInput(f"{entry_type.value} entry needs a non-empty key")
    return f"{_ID_PREFIX[entry_type]}_{slug}"


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _parse_dt(value: Any, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        dt = datetime.fromisoformat(str(value))
    except ValueError:
        raise InvalidInput(f"bad timestamp for {name}: {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class LearningEntry:
    id: str
    type: EntryType
    content: EntryContent
    source: str
    confidence: float
    created_at: datetime
    last_used_at: Optional[datetime] = None
    usage_count: int = 0

    def searchable_text(self) -> str:
        """Lowercased serialized content, matched against query words."""
        return json.dumps(content_to_dict(self.content), ensure_ascii=False, sort_keys=True).lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "content": content_to_dict(self.content),
            "source": self.source,
            "confidence": self.confidence,
            "created_at": _iso(self.created_at),
            "last_used_at": _iso(self.last_used_at),
            "usage_count": self.usage_count,
        }

    def copy(self) -> "LearningEntry":
        return replace(self, content=copy_content(self.content))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningEntry":
        if not isinstance(data, dict):
            raise InvalidInput("entry must be an object")
        try:
            entry_type = EntryType.parse(data["type"])
            entry_id = str(data["id"])
            created_at = _parse_dt(data["created_at"], "created_at")
        except KeyError as e:
            raise InvalidInput(f"entry is missing field {e.args[0]!r}") from None
        if not entry_id or created_at is None:
            raise InvalidInput("entry needs an id and created_at")
        try:
            confidence = _clamp(data.get("confidence", _DEFAULT_CONFIDENCE.get(entry_type, 0.5)))
            usage_count = max(0, int(data.get("usage_count", 0)))
        except (TypeError, ValueError):
            raise InvalidInput(f"bad numeric field in entry {entry_id!r}") from None
        return cls(
            id=entry_id,
            type=entry_type,
            content=content_from_dict(entry_type, data.get("content") or {}),
            source=str(data.get("source", "")),
            confidence=confidence,
            created_at=created_at,
            last_used_at=_parse_dt(data.get("last_used_at"), "last_used_at"),
            usage_count=usage_count,
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class LearningStore:
    """In-memory entry map with scored retrieval. Thread-safe."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, LearningEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id in self._entries

    # -- writes ---------------------------------------------------------

    def learn(
        self,
        entry_type: Union[EntryType, str],
        content: Union[EntryContent, Dict[str, Any]],
        source: str,
        confidence: Optional[float] = None,
    ) -> str:
        """Upsert an entry and return its id.

        On an existing id, the incoming content replaces the stored one only
        if its confidence is higher, or equal and not seed provenance. Usage
        counters and created_at always survive; patterns accumulate frequency.
        """
        etype = EntryType.parse(entry_type)
        body = coerce_content(etype, content)
        entry_id = make_entry_id(etype, body)
        source = (source or "").strip() or "unknown"

        if confidence is not None:
            incoming_conf = _clamp(confidence)
        elif isinstance(body, PatternContent):
            incoming_conf = pattern_confidence(body.frequency)
        else:
            incoming_conf = _DEFAULT_CONFIDENCE[etype]

        now = self._clock()
        with self._lock:
            existing = self._entries.get(entry_id)
            if existing is None:
                self._entries[entry_id] = LearningEntry(
                    id=entry_id,
                    type=etype,
                    content=body,
                    source=source,
                    confidence=incoming_conf,
                    created_at=now,
                )
                logger.info("Learned %s from %s", entry_id, source)
                return entry_id

            if isinstance(body, PatternContent):
                merged = existing.content
                merged.frequency += body.frequency
                merged.contexts = _merge_contexts(merged.contexts, body.contexts)
                if confidence is None:
                    incoming_conf = pattern_confidence(merged.frequency)
                existing.confidence = _clamp(max(existing.confidence, incoming_conf))
                logger.debug("Pattern %s seen %d times", entry_id, merged.frequency)
                return entry_id

            replace = incoming_conf > existing.confidence or (
                incoming_conf == existing.confidence and source != SEED_SOURCE
            )
            if replace:
                existing.content = body
                existing.source = source
                logger.info("Updated %s from %s", entry_id, source)
            existing.confidence = _clamp(max(existing.confidence, incoming_conf))
            return entry_id

    def mark_used(self, entry_id: str) -> Optional[LearningEntry]:
        """Record a retrieval hit. Unknown ids are ignored."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            entry.usage_count += 1
            entry.last_used_at = now
            entry.confidence = _clamp(min(CONFIDENCE_CAP, entry.confidence + MARK_USED_STEP))
            return entry.copy()

    def reinforce(self, entry_id: str, feedback: Union[Feedback, str]) -> Optional[LearningEntry]:
        """Apply positive or negative feedback. Unknown ids are ignored."""
        signal = Feedback.parse(feedback)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                logger.debug("reinforce: no entry %s", entry_id)
                return None
            if signal is Feedback.POSITIVE:
                entry.confidence = _clamp(min(CONFIDENCE_CAP, entry.confidence + REINFORCE_STEP))
                entry.usage_count += 1
                entry.last_used_at = now
            else:
                entry.confidence = _clamp(max(CONFIDENCE_FLOOR, entry.confidence - REINFORCE_STEP))
            return entry.copy()

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    # -- reads ----------------------------------------------------------

    def get(self, entry_id: str) -> Optional[LearningEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.copy() if entry is not None else None

    def entries(self, entry_type: Optional[Union[EntryType, str]] = None) -> List[LearningEntry]:
        etype = EntryType.parse(entry_type) if entry_type is not None else None
        with self._lock:
            return [e.copy() for e in self._entries.values() if etype is None or e.type is etype]

    def lookup(self, word: str) -> Optional[VocabularyContent]:
        """Vocabulary lookup by word; lets the store back a Tokenizer."""
        slug = slugify(word or "")
        if not slug:
            return None
        with self._lock:
            entry = self._entries.get(f"{_ID_PREFIX[EntryType.VOCABULARY]}_{slug}")
        return copy_content(entry.content) if entry is not None else None

    def topics(self) -> List[str]:
        """Knowledge topics, in learning order."""
        with self._lock:
            return [e.content.topic for e in self._entries.values() if isinstance(e.content, KnowledgeContent)]

    def _recency_bonus(self, entry: LearningEntry, now: datetime) -> float:
        if entry.last_used_at is None:
            return 0.0
        age = now - entry.last_used_at
        return max(0.0, 1.0 - age / RECENCY_WINDOW) * RECENCY_WEIGHT

    def rank(
        self,
        text: str,
        entry_type: Optional[Union[EntryType, str]] = None,
        limit: int = QUERY_LIMIT,
    ) -> List[Tuple[LearningEntry, float]]:
        """Score every entry against text; return (entry, score) pairs, best first."""
        etype = EntryType.parse(entry_type) if entry_type is not None else None
        words = list(dict.fromkeys(split_words(text)))
        now = self._clock()
        scored: List[Tuple[LearningEntry, float]] = []
        with self._lock:
            for entry in self._entries.values():
                if etype is not None and entry.type is not etype:
                    continue
                haystack = entry.searchable_text()
                score = float(sum(1 for w in words if w in haystack))
                score += entry.usage_count * USAGE_WEIGHT
                score += self._recency_bonus(entry, now)
                if score > 0:
                    scored.append((entry.copy(), score))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:max(0, limit)]

    def query(
        self,
        text: str,
        entry_type: Optional[Union[EntryType, str]] = None,
        limit: int = QUERY_LIMIT,
    ) -> List[LearningEntry]:
        return [entry for entry, _score in self.rank(text, entry_type, limit)]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
        by_type = {t.value: 0 for t in EntryType}
        for e in entries:
            by_type[e.type.value] += 1
        avg = sum(e.confidence for e in entries) / len(entries) if entries else 0.0
        return {
            "total": len(entries),
            "by_type": by_type,
            "average_confidence": round(avg, 4),
            "total_usage": sum(e.usage_count for e in entries),
        }

    # -- maintenance ----------------------------------------------------

    def consolidate(self) -> Dict[str, int]:
        """Prune stale low-value entries, then merge near-duplicates.

        Returns counts of what changed. A second call with no writes in
        between changes nothing.
        """
        stats = {"pruned": 0, "merged": 0, "groups": 0}
        now = self._clock()
        with self._lock:
            # Phase 1: prune
            stale = [
                e.id for e in self._entries.values()
                if e.confidence < PRUNE_CONFIDENCE
                and e.usage_count == 0
                and now - e.created_at > RETENTION_WINDOW
            ]
            for entry_id in stale:
                del self._entries[entry_id]
            stats["pruned"] = len(stale)

            # Phase 2: merge near-duplicates within each type
            for etype in EntryType:
                group_list = _duplicate_groups([e for e in self._entries.values() if e.type is etype])
                for group in group_list:
                    keeper = _merge_group(group)
                    for e in group:
                        if e is not keeper:
                            del self._entries[e.id]
                            stats["merged"] += 1
                    stats["groups"] += 1
            stats["remaining"] = len(self._entries)

        if stats["pruned"] or stats["merged"]:
            logger.info("Consolidated: pruned %d, merged %d in %d groups",
                        stats["pruned"], stats["merged"], stats["groups"])
        return stats

    # -- snapshots ------------------------------------------------------

    def export_snapshot(self) -> Dict[str, Any]:
        """Full state as a self-describing JSON-compatible dict."""
        with self._lock:
            entries = [e.to_dict() for e in self._entries.values()]
        return {
            "version": SNAPSHOT_VERSION,
            "exported_at": _iso(self._clock()),
            "entry_count": len(entries),
            "entries": entries,
        }

    def import_snapshot(self, snapshot: Dict[str, Any], clear_existing: bool = True) -> int:
        """Load a snapshot produced by ``export_snapshot``; returns entries loaded.

        The whole snapshot is validated before the store is touched.
        """
        if not isinstance(snapshot, dict):
            raise InvalidInput("snapshot must be an object")
        version = snapshot.get("version")
        if version != SNAPSHOT_VERSION:
            raise InvalidInput(f"unsupported snapshot version: {version!r}")
        raw_entries = snapshot.get("entries")
        if not isinstance(raw_entries, list):
            raise InvalidInput("snapshot has no entry list")
        loaded = [LearningEntry.from_dict(item) for item in raw_entries]

        with self._lock:
            if clear_existing:
                self._entries.clear()
            for entry in loaded:
                self._entries[entry.id] = entry
        logger.info("Imported %d entries (clear_existing=%s)", len(loaded), clear_existing)
        return len(loaded)


# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------


def _merge_contexts(current: Iterable[str], extra: Iterable[str]) -> List[str]:
    merged = list(dict.fromkeys([*current, *extra]))
    return merged[-MAX_CONTEXTS:]


def _near_duplicates(a: LearningEntry, b: LearningEntry) -> bool:
    key_a = _ALNUM_RE.sub("", a.content.primary_key())
    key_b = _ALNUM_RE.sub("", b.content.primary_key())
    if key_a and key_a == key_b:
        return True
    if a.type not in (EntryType.PATTERN, EntryType.KNOWLEDGE):
        return False
    words_a = _word_set(a.content.identity_text())
    words_b = _word_set(b.content.identity_text())
    if not words_a or not words_b:
        return False
    return len(words_a & words_b) / len(words_a | words_b) >= MERGE_JACCARD


def _duplicate_groups(entries: List[LearningEntry]) -> List[List[LearningEntry]]:
    """Connected components of the near-duplicate relation, size >= 2."""
    parent = list(range(len(entries)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(entries)):
        for j in range(i + 1, len(entries)):
            if _near_duplicates(entries[i], entries[j]):
                root_i, root_j = find(i), find(j)
                if root_i != root_j:
                    parent[root_j] = root_i

    components: Dict[int, List[LearningEntry]] = {}
    for i, entry in enumerate(entries):
        components.setdefault(find(i), []).append(entry)
    return [group for group in components.values() if len(group) > 1]


def _merge_group(group: List[LearningEntry]) -> LearningEntry:
    """Fold a duplicate group into its best member and return it."""
    keeper = min(
        group,
        key=lambda e: (-e.confidence, -e.usage_count, e.created_at, e.id),
    )
    others = [e for e in group if e is not keeper]
    keeper.confidence = _clamp(max(e.confidence for e in group))
    keeper.usage_count = sum(e.usage_count for e in group)
    keeper.created_at = min(e.created_at for e in group)
    used = [e.last_used_at for e in group if e.last_used_at is not None]
    keeper.last_used_at = max(used) if used else None
    if isinstance(keeper.content, PatternContent):
        for e in others:
            keeper.content.frequency += e.content.frequency
            keeper.content.contexts = _merge_contexts(keeper.content.contexts, e.content.contexts)
    logger.debug("Merged %s into %s", [e.id for e in others], keeper.id)
    return keeper
