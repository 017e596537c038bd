"""
Lexis seed data -- expands compact bundled vocabulary and math into the store.

Seed chunks are JSON objects kept in the key-value store:

    seed_vocab_chunk_<n>   {"apple": {"d": ..., "p": ..., "ph": ..., "s": [...],
                                      "a": [...], "e": [...]}, ...}
    seed_maths             {"addition": {"d": ..., "f": ..., "e": [...],
                                         "c": "arithmetic", "l": "basic"}, ...}

Seeding learns entries in small batches with source "seed" and yields to
the event loop between batches so a host stays responsive.
Vocabulary records may carry a corpus frequency "f"; it is ignored.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lexis.errors import InvalidInput
from lexis.kv_store import KeyValueStore
from lexis.learning_store import SEED_SOURCE, LearningStore, MathContent, VocabularyContent
from lexis.types import EntryType

logger = logging.getLogger("lexis.seed")

VOCAB_CHUNK_PREFIX = "seed_vocab_chunk_"
MATH_SEED_KEY = "seed_maths"
DEFAULT_VOCAB_CHUNKS = (1, 2, 3, 4)
DEFAULT_BATCH_SIZE = 25
DEFAULT_PAUSE_S = 0.0


def _list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def expand_vocab_entry(word: str, compact: Dict[str, Any]) -> VocabularyContent:
    """Compact vocabulary record -> content."""
    if not word or not word.strip():
        raise InvalidInput("seed vocabulary entry has no word")
    return VocabularyContent(
        word=word.strip().lower(),
        definition=str(compact.get("d", "")),
        part_of_speech=str(compact.get("p", "")),
        phonetic=str(compact.get("ph", "")),
        synonyms=_list(compact.get("s")),
        antonyms=_list(compact.get("a")),
        examples=_list(compact.get("e")),
    )


def expand_math_entry(concept: str, compact: Dict[str, Any]) -> MathContent:
    """Compact math record -> content. Category and level go into the explanation prefix."""
    if not concept or not concept.strip():
        raise InvalidInput("seed math entry has no concept")
    explanation = str(compact.get("d", ""))
    tags = [str(compact[k]) for k in ("c", "l") if compact.get(k)]
    if tags:
        explanation = f"[{'/'.join(tags)}] {explanation}".strip()
    return MathContent(
        concept=concept.strip(),
        formula=str(compact.get("f", "")),
        explanation=explanation,
        examples=_list(compact.get("e")),
    )


class SeedLoader:
    """Reads seed chunks from a key-value store and feeds them to a LearningStore."""

    def __init__(self, kv: KeyValueStore):
        self._kv = kv
        self.loaded_chunks: List[str] = []

    def _read_chunk(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._kv.get(key)
        if raw is None:
            logger.warning("Seed chunk %s not found", key)
            return None
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning("Seed chunk %s is not valid JSON: %s", key, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Seed chunk %s is not an object", key)
            return None
        self.loaded_chunks.append(key)
        return data

    def load_vocabulary_chunk(self, number: int) -> List[VocabularyContent]:
        """Expanded entries of one vocabulary chunk; [] when missing or broken."""
        data = self._read_chunk(f"{VOCAB_CHUNK_PREFIX}{number}")
        if data is None:
            return []
        out = []
        for word, compact in data.items():
            if not isinstance(compact, dict):
                logger.debug("Skipping malformed seed word %r", word)
                continue
            try:
                out.append(expand_vocab_entry(word, compact))
            except InvalidInput as e:
                logger.debug("Skipping seed word %r: %s", word, e)
        logger.info("Loaded vocabulary chunk %d (%d words)", number, len(out))
        return out

    def load_math(self) -> List[MathContent]:
        data = self._read_chunk(MATH_SEED_KEY)
        if data is None:
            return []
        out = []
        for concept, compact in data.items():
            if not isinstance(compact, dict):
                continue
            try:
                out.append(expand_math_entry(concept, compact))
            except InvalidInput as e:
                logger.debug("Skipping seed concept %r: %s", concept, e)
        logger.info("Loaded math seed data (%d concepts)", len(out))
        return out

    async def seed_store(
        self,
        store: LearningStore,
        chunks: Iterable[int] = DEFAULT_VOCAB_CHUNKS,
        include_math: bool = True,
        batch_size: int = DEFAULT_BATCH_SIZE,
        pause_s: float = DEFAULT_PAUSE_S,
    ) -> Dict[str, int]:
        """Learn every seed entry into store; returns counts per entry type."""
        items: List[Tuple[EntryType, Any]] = []
        for number in chunks:
            items.extend((EntryType.VOCABULARY, content) for content in self.load_vocabulary_chunk(number))
        if include_math:
            items.extend((EntryType.MATH, content) for content in self.load_math())

        counts = {EntryType.VOCABULARY.value: 0, EntryType.MATH.value: 0}
        batch_size = max(1, batch_size)
        for start in range(0, len(items), batch_size):
            for entry_type, content in items[start:start + batch_size]:
                try:
                    store.learn(entry_type, content, SEED_SOURCE)
                except InvalidInput as e:
                    logger.debug("Skipping seed %s entry: %s", entry_type.value, e)
                    continue
                counts[entry_type.value] += 1
            # Yield point between batches
            await asyncio.sleep(pause_s)
        logger.info("Seeded %d vocabulary and %d math entries",
                    counts[EntryType.VOCABULARY.value], counts[EntryType.MATH.value])
        return counts


def write_seed_chunk(kv: KeyValueStore, key: str, data: Dict[str, Any]) -> None:
    """Store a compact seed chunk (used by tooling and tests)."""
    kv.set(key, json.dumps(data, ensure_ascii=False).encode("utf-8"))
