"""
Lexis Tokenizer -- vocabulary-backed tokenization with subword fallback.

Words found by the vocabulary lookup are known tokens. Unknown words are
decomposed greedily into the longest known prefixes (8 down to 2 chars);
a word with no known fragment at all maps to the reserved UNK id.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger("lexis.tokenizer")

PAD_ID = 0
UNK_ID = 1
START_ID = 2
END_ID = 3

SPECIAL_TOKENS = {
    "<PAD>": PAD_ID,
    "<UNK>": UNK_ID,
    "<START>": START_ID,
    "<END>": END_ID,
}

MAX_PREFIX = 8
MIN_PREFIX = 2

_STRIP_RE = re.compile(r"[^\w\s'-]")
_WHITESPACE_RE = re.compile(r"\s+")


class VocabularyLookup(Protocol):
    """Anything that can answer ``lookup(word) -> definition | None``."""

    def lookup(self, word: str) -> Optional[Any]: ...


def split_words(text: str) -> List[str]:
    """Lowercase, strip punctuation (keeping apostrophes and hyphens), split on whitespace."""
    if not text:
        return []
    cleaned = _STRIP_RE.sub(" ", text.lower())
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return [w for w in cleaned.split(" ") if w]


@dataclass
class TokenInfo:
    token: str
    id: int
    is_known: bool
    subwords: Optional[List[str]] = None
    entry: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"token": self.token, "id": self.id, "is_known": self.is_known}
        if self.subwords is not None:
            out["subwords"] = list(self.subwords)
        return out


@dataclass
class TokenStats:
    tokens: List[TokenInfo]
    known_words: int
    unknown_words: int
    total_tokens: int

    @property
    def known_ratio(self) -> float:
        """Share of known tokens; 0.0 for empty input."""
        if not self.total_tokens:
            return 0.0
        return self.known_words / self.total_tokens

    def unknown(self) -> List[str]:
        return [t.token for t in self.tokens if not t.is_known]


class Tokenizer:
    """Assigns stable integer ids to words for the lifetime of the instance."""

    def __init__(self, vocabulary: VocabularyLookup):
        self._vocabulary = vocabulary
        self._token_to_id: Dict[str, int] = dict(SPECIAL_TOKENS)
        self._id_to_token: Dict[int, str] = {v: k for k, v in SPECIAL_TOKENS.items()}
        self._next_id = max(SPECIAL_TOKENS.values()) + 1

    @property
    def vocabulary_size(self) -> int:
        """Number of ids handed out so far, reserved ids included."""
        return len(self._token_to_id)

    def _lookup(self, word: str) -> Optional[Any]:
        try:
            return self._vocabulary.lookup(word)
        except Exception as e:
            # A broken lookup degrades to "unknown", it never fails tokenization
            logger.debug("Vocabulary lookup failed for %r: %s", word, e)
            return None

    def _id_for(self, token: str) -> int:
        existing = self._token_to_id.get(token)
        if existing is not None:
            return existing
        token_id = self._next_id
        self._next_id += 1
        self._token_to_id[token] = token_id
        self._id_to_token[token_id] = token
        return token_id

    def decompose(self, word: str) -> List[str]:
        """Split word into known prefixes, merging unmatched characters into runs.

        Each step consumes at least one character, so this always terminates
        and the fragments always concatenate back to ``word``.
        """
        fragments: List[str] = []
        unknown_run = ""
        pos = 0
        while pos < len(word):
            matched = None
            longest = min(MAX_PREFIX, len(word) - pos)
            for length in range(longest, MIN_PREFIX - 1, -1):
                candidate = word[pos:pos + length]
                if self._lookup(candidate) is not None:
                    matched = candidate
                    break
            if matched is None:
                unknown_run += word[pos]
                pos += 1
                continue
            if unknown_run:
                fragments.append(unknown_run)
                unknown_run = ""
            fragments.append(matched)
            pos += len(matched)
        if unknown_run:
            fragments.append(unknown_run)
        return fragments

    def _token_for(self, word: str) -> TokenInfo:
        entry = self._lookup(word)
        if entry is not None:
            return TokenInfo(token=word, id=self._id_for(word), is_known=True, entry=entry)

        fragments = self.decompose(word)
        if len(fragments) > 1:
            return TokenInfo(token=word, id=self._id_for(word), is_known=False, subwords=fragments)
        return TokenInfo(token=word, id=UNK_ID, is_known=False)

    def tokenize(self, text: str) -> List[TokenInfo]:
        """Tokenize text; empty or punctuation-only input yields an empty list."""
        return [self._token_for(word) for word in split_words(text)]

    def get_token_info(self, text: str) -> TokenStats:
        tokens = self.tokenize(text)
        known = sum(1 for t in tokens if t.is_known)
        return TokenStats(
            tokens=tokens,
            known_words=known,
            unknown_words=len(tokens) - known,
            total_tokens=len(tokens),
        )

    def encode(self, text: str, add_special: bool = True) -> List[int]:
        ids = [t.id for t in self.tokenize(text)]
        if add_special:
            return [START_ID] + ids + [END_ID]
        return ids

    def decode(self, ids: Sequence[int]) -> str:
        """Map ids back to text, skipping PAD/START/END; unseen ids become <UNK>."""
        words = []
        for token_id in ids:
            if token_id in (PAD_ID, START_ID, END_ID):
                continue
            words.append(self._id_to_token.get(token_id, "<UNK>"))
        return " ".join(words)

    def id_of(self, token: str) -> Optional[int]:
        return self._token_to_id.get(token)

    def token_of(self, token_id: int) -> Optional[str]:
        return self._id_to_token.get(token_id)
