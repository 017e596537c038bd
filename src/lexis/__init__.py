"""Lexis: a small knowledge acquisition and retrieval engine.

Direct Python API::

    from lexis import Engine
    async with Engine() as engine:
        response = await engine.process("what is 5 + 3")
        print(response.intent, response.answer)

The building blocks are usable on their own: ``PatternMatcher``,
``Tokenizer``, ``LearningStore`` and ``RequestCache``.

For the MCP server and HTTP transport, install with:
``pip install lexis-engine[server]``
"""

__version__ = "0.1.0"

from lexis.errors import InvalidInput, LexisError, LookupTimeout, TransientLookupFailure
from lexis.types import EntryType, Feedback
from lexis.config import EngineConfig
from lexis.request_cache import CacheEntry, RequestCache, request_key
from lexis.tokenizer import TokenInfo, TokenStats, Tokenizer
from lexis.matcher import IntentPattern, MatchResult, PatternMatcher
from lexis.learning_store import (
    KnowledgeContent,
    LearningEntry,
    LearningStore,
    MathContent,
    PatternContent,
    VocabularyContent,
)
from lexis.kv_store import InMemoryKVStore, SQLiteKVStore
from lexis.engine import Engine, EngineResponse

__all__ = [
    # Engine
    "Engine",
    "EngineResponse",
    "EngineConfig",
    # Components
    "RequestCache",
    "CacheEntry",
    "request_key",
    "Tokenizer",
    "TokenInfo",
    "TokenStats",
    "PatternMatcher",
    "IntentPattern",
    "MatchResult",
    "LearningStore",
    "LearningEntry",
    # Entry content
    "EntryType",
    "Feedback",
    "VocabularyContent",
    "MathContent",
    "PatternContent",
    "KnowledgeContent",
    # Persistence
    "SQLiteKVStore",
    "InMemoryKVStore",
    # Errors
    "LexisError",
    "LookupTimeout",
    "TransientLookupFailure",
    "InvalidInput",
    # Meta
    "__version__",
]
