"""Prompt construction and token-budgeted context assembly."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from noterag.chunking.tokens import DEFAULT_ESTIMATOR, TokenEstimator
from noterag.models import SearchResult


@dataclass(frozen=True)
class AssembledContext:
    text: str
    sources: Sequence[SearchResult]
    total_tokens: int

    @property
    def average_similarity(self) -> float:
        if not self.sources:
            return 0.0
        return sum(source.similarity for source in self.sources) / len(self.sources)


class ContextAssembler:
    """Packs whole retrieved chunks into a token budget, best first."""

    def __init__(self, estimator: TokenEstimator | None = None) -> None:
        self._estimator = estimator or DEFAULT_ESTIMATOR

    def assemble(self, results: Sequence[SearchResult], max_tokens: int) -> AssembledContext:
        if max_tokens < 0:
            raise ValueError("max_tokens must not be negative")
        parts: List[str] = []
        sources: List[SearchResult] = []
        total = 0
        for result in results:
            tokens = self._estimator.estimate(result.chunk.content)
            if total + tokens > max_tokens:
                break
            parts.append(result.chunk.content)
            sources.append(result)
            total += tokens
        return AssembledContext(text="\n\n".join(parts).strip(), sources=sources, total_tokens=total)


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    topic_words: int = 5


class PromptBuilder:
    """Builds prompts for the generation backend."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def question_prompt(self, question: str, context: str) -> str:
        if not context:
            return question
        return (
            "Context from the document:\n"
            f"{context}\n\n"
            f"Question: {question}\n\n"
            "Please provide a comprehensive answer based on the context provided above. "
            "If the context doesn't contain enough information to fully answer the question, "
            "mention what additional information might be needed."
        )

    def study_question_prompt(self, content: str, difficulty: str) -> str:
        return (
            f"Based on the following content, generate a {difficulty} level study question "
            "that tests understanding:\n\n"
            f"{content}\n\n"
            "Generate a clear, specific question that would help a student learn and remember this material."
        )

    def combine_with_context(self, content: str, context: str) -> str:
        return (
            "Original Content:\n"
            f"{content}\n\n"
            "Additional Context:\n"
            f"{context}\n\n"
            "Please analyze the original content and use the additional context "
            "to provide enhanced insights and understanding."
        )

    def topic(self, content: str) -> str:
        """First few words of the first sentence, punctuation stripped."""
        first_sentence = content.split(".", 1)[0]
        words = first_sentence.split()[: self._config.topic_words]
        return "".join(ch for ch in " ".join(words) if ch.isalnum() or ch.isspace() or ch == "_")
