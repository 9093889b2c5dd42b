"""Tests for the sentence chunker."""

from garden.chunker import SentenceChunker, split_sentences


def test_empty_input_yields_no_chunks():
    assert SentenceChunker(100).chunk("") == []


def test_short_text_is_one_chunk_verbatim():
    text = "  One sentence. Another one!  "
    assert SentenceChunker(100).chunk(text) == [text]


def test_split_sentences_on_terminators_and_newlines():
    text = "First one. Second one? Third!\nA line without end\nLast."
    assert split_sentences(text) == [
        "First one.",
        "Second one?",
        "Third!",
        "A line without end",
        "Last.",
    ]


def test_decimal_point_does_not_split():
    assert split_sentences("Pi is 3.14 roughly. Yes.") == ["Pi is 3.14 roughly.", "Yes."]


def test_chunks_respect_size():
    sentence = "This sentence has exactly forty chars.."
    text = " ".join([sentence] * 30)
    chunks = SentenceChunker(100).chunk(text)
    assert len(chunks) > 1
    assert all(len(c) <= 100 for c in chunks)
    assert " ".join(chunks) == text


def test_oversized_sentence_is_its_own_chunk():
    long_sentence = "x" * 250 + "."
    text = f"Short one. {long_sentence} Tail."
    chunks = SentenceChunker(100).chunk(text)
    assert chunks == ["Short one.", long_sentence, "Tail."]
