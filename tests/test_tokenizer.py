"""Tests for lexis.tokenizer -- ids, subword decomposition, encode/decode."""
import pytest

from lexis.learning_store import LearningStore
from lexis.tokenizer import END_ID, PAD_ID, START_ID, UNK_ID, Tokenizer, split_words


class WordSet:
    """Minimal vocabulary: a word is known iff it is in the set."""

    def __init__(self, *words):
        self.words = set(words)
        self.calls = 0

    def lookup(self, word):
        self.calls += 1
        return {"word": word} if word in self.words else None


class BrokenVocabulary:
    def lookup(self, word):
        raise RuntimeError("vocabulary offline")


class TestSplitWords:
    def test_lowercases_and_strips_punctuation(self):
        assert split_words("Hello, World!") == ["hello", "world"]

    def test_keeps_apostrophes_and_hyphens(self):
        assert split_words("Don't over-think it.") == ["don't", "over-think", "it"]

    def test_empty_and_punctuation_only(self):
        assert split_words("") == []
        assert split_words("?!...") == []


class TestTokenize:
    def test_known_words_get_stable_ids(self):
        tok = Tokenizer(WordSet("hello", "world"))
        first = [t.id for t in tok.tokenize("hello world")]
        second = [t.id for t in tok.tokenize("world hello")]
        assert first == list(reversed(second))
        assert all(i > END_ID for i in first)
        assert first[0] != first[1]

    def test_known_token_flags(self):
        tok = Tokenizer(WordSet("hello"))
        [info] = tok.tokenize("Hello!")
        assert info.token == "hello"
        assert info.is_known is True
        assert info.subwords is None

    def test_unknown_word_with_known_prefixes_gets_fresh_id(self):
        tok = Tokenizer(WordSet("sun", "flower"))
        [info] = tok.tokenize("sunflower")
        assert info.is_known is False
        assert info.subwords == ["sun", "flower"]
        assert info.id not in (PAD_ID, UNK_ID, START_ID, END_ID)

    def test_unknown_word_without_fragments_is_unk(self):
        tok = Tokenizer(WordSet("hello"))
        [info] = tok.tokenize("xyzzy")
        assert info.id == UNK_ID
        assert info.is_known is False
        assert info.subwords is None

    def test_empty_input(self):
        tok = Tokenizer(WordSet())
        assert tok.tokenize("") == []
        stats = tok.get_token_info("   ")
        assert stats.total_tokens == 0
        assert stats.known_ratio == 0.0

    def test_broken_vocabulary_degrades_to_unknown(self):
        tok = Tokenizer(BrokenVocabulary())
        [info] = tok.tokenize("hello")
        assert info.id == UNK_ID

    def test_token_stats(self):
        tok = Tokenizer(WordSet("the", "cat"))
        stats = tok.get_token_info("the cat qqq")
        assert stats.known_words == 2
        assert stats.unknown_words == 1
        assert stats.total_tokens == 3
        assert stats.unknown() == ["qqq"]
        assert stats.known_ratio == pytest.approx(2 / 3)


class TestDecompose:
    def test_longest_prefix_wins(self):
        tok = Tokenizer(WordSet("pl", "play", "ground"))
        assert tok.decompose("playground") == ["play", "ground"]

    def test_unknown_characters_merge_into_one_fragment(self):
        tok = Tokenizer(WordSet("sun"))
        assert tok.decompose("xyzsun") == ["xyz", "sun"]

    def test_no_match_is_single_fragment(self):
        tok = Tokenizer(WordSet())
        assert tok.decompose("abc") == ["abc"]

    def test_single_character_word(self):
        tok = Tokenizer(WordSet())
        assert tok.decompose("a") == ["a"]

    def test_fragments_reassemble_word(self):
        tok = Tokenizer(WordSet("in", "form", "ation"))
        word = "xinformationz"
        assert "".join(tok.decompose(word)) == word

    def test_prefixes_limited_to_eight_characters(self):
        tok = Tokenizer(WordSet("abcdefghi"))
        # The nine-letter word can never be found as a prefix
        assert tok.decompose("abcdefghij") == ["abcdefghij"]


class TestEncodeDecode:
    def test_encode_wraps_in_start_end(self):
        tok = Tokenizer(WordSet("hello", "world"))
        ids = tok.encode("hello world")
        assert ids[0] == START_ID
        assert ids[-1] == END_ID
        assert len(ids) == 4

    def test_encode_without_specials(self):
        tok = Tokenizer(WordSet("hello"))
        assert len(tok.encode("hello", add_special=False)) == 1

    def test_decode_round_trip_for_known_words(self):
        tok = Tokenizer(WordSet("hello", "world"))
        assert tok.decode(tok.encode("Hello world")) == "hello world"

    def test_decode_skips_padding_and_marks_unseen_ids(self):
        tok = Tokenizer(WordSet("hello"))
        hello_id = tok.encode("hello", add_special=False)[0]
        assert tok.decode([PAD_ID, START_ID, hello_id, 9999, END_ID]) == "hello <UNK>"

    def test_vocabulary_size_counts_reserved_ids(self):
        tok = Tokenizer(WordSet("a1", "b2"))
        assert tok.vocabulary_size == 4
        tok.tokenize("a1 b2 a1")
        assert tok.vocabulary_size == 6
        assert tok.token_of(tok.id_of("b2")) == "b2"


class TestStoreBackedTokenizer:
    def test_learned_vocabulary_becomes_known(self):
        store = LearningStore()
        tok = Tokenizer(store)
        assert tok.tokenize("serendipity")[0].is_known is False
        store.learn("vocabulary", {"word": "serendipity", "definition": "a happy accident"}, "conversation")
        assert tok.tokenize("serendipity")[0].is_known is True
