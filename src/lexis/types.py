"""Lexis shared enums -- entry types and feedback values."""

from enum import Enum


class EntryType(str, Enum):
    """Kind of knowledge held by a learning entry."""
    VOCABULARY = "vocabulary"
    MATH = "math"
    PATTERN = "pattern"
    KNOWLEDGE = "knowledge"

    @classmethod
    def parse(cls, value) -> "EntryType":
        """Accept an EntryType or its string value; raise InvalidInput otherwise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            from lexis.errors import InvalidInput

            raise InvalidInput(f"unknown entry type: {value!r}") from None


class Feedback(str, Enum):
    """Reinforcement signal for a learning entry."""
    POSITIVE = "positive"
    NEGATIVE = "negative"

    @classmethod
    def parse(cls, value) -> "Feedback":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            from lexis.errors import InvalidInput

            raise InvalidInput(f"unknown feedback value: {value!r}") from None

