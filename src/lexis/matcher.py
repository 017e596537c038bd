"""
Lexis Pattern Matcher -- classifies an utterance into an intent.

Two stages:
1. Arithmetic fast path: a number plus a math keyword or operator symbol
   short-circuits to the ``mathematics`` intent at fixed confidence 0.9.
2. Fuzzy phrase matching against the registered intent patterns; the best
   pattern wins only if its score exceeds the threshold (0.3).

Matching is pure: no state changes between calls, so the same input and
the same pattern table always produce the same result.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger("lexis.matcher")

MATH_INTENT = "mathematics"
MATH_CONFIDENCE = 0.9
DEFAULT_THRESHOLD = 0.3

MATH_KEYWORDS = (
    "multiply",
    "times",
    "plus",
    "add",
    "minus",
    "subtract",
    "divide",
    "equals",
    "calculate",
    "what is",
    "how much",
    "result",
    "answer",
)

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_MATH_SYMBOL_RE = re.compile(r"[+\-×÷*/=^%]")
_WORDS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class IntentPattern:
    """An intent label with the example phrases that express it."""
    intent: str
    phrases: Tuple[str, ...]
    responses: Tuple[str, ...] = ()
    follow_up: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "phrases": list(self.phrases),
            "responses": list(self.responses),
            "follow_up": list(self.follow_up),
        }


@dataclass
class MatchResult:
    intent: str
    confidence: float
    pattern: Optional[IntentPattern] = None
    entities: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "confidence": round(self.confidence, 4),
            "entities": list(self.entities),
        }


MATH_PATTERN = IntentPattern(
    intent=MATH_INTENT,
    phrases=("mathematical expression detected",),
    responses=("Let me calculate that for you.",),
    follow_up=("Would you like to try another calculation?",),
)

DEFAULT_PATTERNS: Tuple[IntentPattern, ...] = (
    IntentPattern(
        intent="greeting",
        phrases=("hello", "hi", "hey", "good morning", "good afternoon", "good evening",
                 "greetings", "howdy", "what's up", "how's it going"),
        responses=("Hello! What would you like to talk about?",),
        follow_up=("Is there anything specific you'd like to discuss?",),
    ),
    IntentPattern(
        intent="how_are_you",
        phrases=("how are you", "how are you doing", "how do you feel", "what's your status",
                 "how are things", "how's life", "how are you today"),
        responses=("I'm doing well, and learning something from every conversation.",),
        follow_up=("How about you?",),
    ),
    IntentPattern(
        intent="what_are_you",
        phrases=("what are you", "who are you", "what is this", "are you ai",
                 "are you artificial intelligence", "what kind of ai are you", "tell me about yourself"),
        responses=("I'm a small assistant that starts with a seed vocabulary and learns as we talk.",),
    ),
    IntentPattern(
        intent="capabilities",
        phrases=("what can you do", "what are your capabilities", "how can you help", "what do you know",
                 "what are you good at", "what can we talk about"),
        responses=("I can answer questions, do arithmetic, look up words and topics, and learn new ones.",),
    ),
    IntentPattern(
        intent="learning",
        phrases=("how do you learn", "can you learn", "do you get smarter", "how does learning work",
                 "can you remember", "do you improve"),
        responses=("I learn new words and topics from our conversations and from your feedback.",),
        follow_up=("Would you like to teach me a new word?",),
    ),
    IntentPattern(
        intent="help_request",
        phrases=("can you help", "i need help", "help me", "assist me", "can you assist",
                 "i have a question", "i need assistance"),
        responses=("Of course. What do you need help with?",),
    ),
    IntentPattern(
        intent="explanation_request",
        phrases=("explain", "what does this mean", "can you explain", "help me understand",
                 "what is", "define", "tell me about"),
        responses=("Let me explain what I know about that.",),
        follow_up=("Would you like a simple or detailed explanation?",),
    ),
    IntentPattern(
        intent="goodbye",
        phrases=("goodbye", "bye", "see you later", "farewell", "talk to you later",
                 "gotta go", "i have to leave", "until next time"),
        responses=("Goodbye! Thanks for the conversation.",),
    ),
    IntentPattern(
        intent="compliment",
        phrases=("you're smart", "good job", "well done", "that's correct", "you're helpful",
                 "nice work", "impressive", "you're good at this"),
        responses=("Thank you! Feedback like that helps me learn.",),
    ),
)


def extract_numbers(text: str) -> List[str]:
    """Return numeric literals in order of appearance."""
    return _NUMBER_RE.findall(text)


def score_phrase(text: str, phrase: str) -> float:
    """Score how well a lowercased input matches one pattern phrase.

    1.0 exact, 0.9 input contains phrase, 0.8 phrase contains input,
    otherwise shared words over the longer word count.
    """
    if not text or not phrase:
        return 0.0
    if text == phrase:
        return 1.0
    if phrase in text:
        return 0.9
    if text in phrase:
        return 0.8
    text_words = _WORDS_RE.split(text)
    phrase_words = _WORDS_RE.split(phrase)
    phrase_set = set(phrase_words)
    shared = sum(1 for w in text_words if w in phrase_set)
    return shared / max(len(text_words), len(phrase_words))


class PatternMatcher:
    """Intent classifier over an ordered pattern table and a topic list."""

    def __init__(
        self,
        patterns: Optional[Sequence[IntentPattern]] = None,
        topics: Optional[Iterable[str]] = None,
        threshold: float = DEFAULT_THRESHOLD,
    ):
        self._patterns: Tuple[IntentPattern, ...] = tuple(DEFAULT_PATTERNS if patterns is None else patterns)
        self._topics: Tuple[str, ...] = tuple(t for t in (topics or ()) if t and t.strip())
        self.threshold = threshold

    @property
    def patterns(self) -> Tuple[IntentPattern, ...]:
        return self._patterns

    @property
    def topics(self) -> Tuple[str, ...]:
        return self._topics

    def set_topics(self, topics: Iterable[str]) -> None:
        """Replace the knowledge-base topic list used for entity extraction."""
        self._topics = tuple(t for t in topics if t and t.strip())

    def detect_math(self, text: str) -> Optional[MatchResult]:
        """Arithmetic fast path; None when the input does not look like math."""
        numbers = extract_numbers(text)
        if not numbers:
            return None
        lowered = text.lower()
        has_keyword = any(kw in lowered for kw in MATH_KEYWORDS)
        if not has_keyword and not _MATH_SYMBOL_RE.search(text):
            return None
        return MatchResult(intent=MATH_INTENT, confidence=MATH_CONFIDENCE, pattern=MATH_PATTERN, entities=numbers)

    def extract_entities(self, text: str) -> List[str]:
        """Topics whose lowercased text occurs in the input, in topic order."""
        lowered = text.lower()
        return [topic for topic in self._topics if topic.lower() in lowered]

    def score_pattern(self, text: str, pattern: IntentPattern) -> float:
        """Best score across the pattern's phrases."""
        best = 0.0
        for phrase in pattern.phrases:
            best = max(best, score_phrase(text, phrase.lower().strip()))
        return best

    def match_intent(self, text: str) -> Optional[MatchResult]:
        if not text or not text.strip():
            return None

        math = self.detect_math(text)
        if math is not None:
            return math

        lowered = text.lower().strip()
        best_pattern: Optional[IntentPattern] = None
        best_score = 0.0
        for pattern in self._patterns:
            score = self.score_pattern(lowered, pattern)
            # Strict comparison keeps the earliest registered pattern on ties
            if score > best_score:
                best_score = score
                best_pattern = pattern

        if best_pattern is None or best_score <= self.threshold:
            return None
        return MatchResult(
            intent=best_pattern.intent,
            confidence=best_score,
            pattern=best_pattern,
            entities=self.extract_entities(lowered),
        )
