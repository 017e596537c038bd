"""Lexis exception taxonomy.

A missing definition or topic is not an error: lookups return ``None``.
Everything the engine raises on purpose derives from ``LexisError``.
"""


class LexisError(Exception):
    """Base class for deliberate Lexis failures."""


class LookupTimeout(LexisError, TimeoutError):
    """An outbound lookup exceeded the hard deadline. Not retried by the cache."""


class TransientLookupFailure(LexisError):
    """Any other outbound lookup failure (transport error, 5xx, rate limit)."""


class InvalidInput(LexisError, ValueError):
    """Malformed arguments: empty keys, unknown enum values, undefined arithmetic."""
