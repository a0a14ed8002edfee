from __future__ import annotations

import pytest

from noterag.models import Chunk, SearchResult
from noterag.services.query import ContextAssembler, PromptBuilder


def _result(chunk_id: str, chars: int, similarity: float) -> SearchResult:
    text = "x" * chars
    chunk = Chunk(id=chunk_id, content=text, start=0, end=chars)
    return SearchResult(chunk=chunk, similarity=similarity, relevance_score=similarity)


def test_assembly_stops_at_first_chunk_over_budget():
    results = [_result("a", 40, 0.9), _result("b", 120, 0.8), _result("c", 20, 0.7)]
    assembled = ContextAssembler().assemble(results, max_tokens=20)
    assert [source.chunk.id for source in assembled.sources] == ["a"]
    assert assembled.total_tokens == 10
    assert assembled.text == "x" * 40


def test_assembly_joins_whole_chunks_with_blank_lines():
    results = [_result("a", 8, 0.6), _result("b", 8, 0.4)]
    assembled = ContextAssembler().assemble(results, max_tokens=4)
    assert assembled.text == "xxxxxxxx\n\nxxxxxxxx"
    assert assembled.average_similarity == pytest.approx(0.5)


def test_empty_results_yield_empty_context():
    assembled = ContextAssembler().assemble([], max_tokens=100)
    assert assembled.text == ""
    assert assembled.sources == []
    assert assembled.average_similarity == 0.0


def test_question_prompt_without_context_is_the_question():
    builder = PromptBuilder()
    assert builder.question_prompt("Why?", "") == "Why?"
    prompt = builder.question_prompt("Why?", "Because.")
    assert prompt.startswith("Context from the document:\nBecause.")
    assert "Question: Why?" in prompt


def test_topic_uses_first_words_of_first_sentence():
    assert PromptBuilder().topic("Cells, the basic unit of life, divide often. More text.") == "Cells the basic unit of"
