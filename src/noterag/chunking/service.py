"""Semantic document chunking for NoteRAG."""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass, replace
from typing import List, Literal, Sequence, Tuple
from uuid import NAMESPACE_URL, uuid5

from noterag.chunking.tokens import DEFAULT_ESTIMATOR, TokenEstimator
from noterag.metrics.observability import PipelineMetrics, get_logger
from noterag.models import Chunk, ChunkMetadata, ChunkType, DocumentStructure, OutlineEntry
from noterag.similarity import clamp_score

UNTITLED = "Untitled Document"
FALLBACK_TITLE = "Processed Document"
TOKENS_PER_WORD = 1.3
MAX_OVERLAP_SENTENCES = 3


@dataclass(frozen=True)
class ChunkingOptions:
    """Configuration for document chunking; sizes are in estimated tokens."""

    max_chunk_size: int = 800
    overlap_size: int = 100
    preserve_semantic_boundaries: bool = True
    analysis_level: Literal["basic", "advanced"] = "advanced"

    def __post_init__(self) -> None:
        if self.max_chunk_size < 1:
            raise ValueError("max_chunk_size must be at least 1")
        if self.overlap_size < 0:
            raise ValueError("overlap_size must not be negative")
        if self.analysis_level not in ("basic", "advanced"):
            raise ValueError(f"Unknown analysis level: {self.analysis_level}")


@dataclass(frozen=True)
class _Section:
    type: ChunkType
    start: int
    end: int
    title: str | None


@dataclass(frozen=True)
class _Span:
    start: int
    end: int
    type: ChunkType
    overlap_chars: int = 0
    title: str | None = None


class DocumentChunker:
    """Split raw text into typed, sized chunks with significance scores."""

    IMPORTANT_TERMS: Tuple[str, ...] = (
        "key",
        "important",
        "main",
        "primary",
        "essential",
        "critical",
        "fundamental",
    )

    _MARKDOWN_HEADING = re.compile(r"^(#{1,6})\s+(.+)$")
    _FENCE = re.compile(r"^(```|~~~)")
    _TABLE = re.compile(r"\|.*\|")
    _QUOTE = re.compile(r"^(?:>|[\"“])")
    _LIST = re.compile(r"^(?:[-*•+]\s|\d+[.)]\s)")
    _CODE = re.compile(r"^[{}()\[\];]|\{\s*$")
    _TERMINAL = re.compile(r"[.!?]$")
    _SENTENCE = re.compile(r"[^.!?]*(?:[.!?]+|$)")
    _WORD = re.compile(r"\S+")
    _IMPORTANT = re.compile(r"\b(?:" + "|".join(IMPORTANT_TERMS) + r")\b", re.IGNORECASE)

    _logger = get_logger("chunking")

    def __init__(
        self,
        options: ChunkingOptions | None = None,
        token_estimator: TokenEstimator | None = None,
    ) -> None:
        self._options = options or ChunkingOptions()
        self._tokens = token_estimator or DEFAULT_ESTIMATOR

    @property
    def options(self) -> ChunkingOptions:
        return self._options

    @property
    def estimator(self) -> TokenEstimator:
        return self._tokens

    def chunk(
        self,
        text: str,
        *,
        document_id: str | None = None,
        options: ChunkingOptions | None = None,
    ) -> DocumentStructure:
        """Chunk ``text``. Internal errors degrade to fixed word windows; never raises."""

        opts = options or self._options
        start = time.perf_counter()
        try:
            structure = self._chunk_semantic(text, opts, document_id)
        except Exception as exc:
            self._logger.warning("chunking.fallback", error=str(exc), document_id=document_id)
            PipelineMetrics.chunking_fallbacks.inc()
            structure = self._fallback(text, opts, document_id)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_chunking(duration, len(structure.chunks))
        self._logger.info(
            "chunking.complete",
            document_id=document_id,
            chunk_count=len(structure.chunks),
            degraded=structure.degraded,
            duration_seconds=duration,
        )
        return replace(structure, processing_time_ms=duration * 1000)

    def estimate_tokens(self, text: str) -> int:
        return self._tokens.estimate(text)

    def _chunk_semantic(self, text: str, opts: ChunkingOptions, document_id: str | None) -> DocumentStructure:
        if not text.strip():
            return DocumentStructure(title=UNTITLED, chunks=[], total_tokens=0)
        if opts.preserve_semantic_boundaries:
            spans: List[_Span] = []
            for section in self._split_sections(text):
                spans.extend(self._split_section(text, section, opts))
        else:
            spans = self._word_window_spans(text, opts)
        chunks = self._score_significance(
            [self._make_chunk(text, span, order, document_id) for order, span in enumerate(spans)],
        )
        outline = self._extract_outline(text, chunks) if opts.analysis_level == "advanced" else []
        return DocumentStructure(
            title=self._extract_title(text),
            chunks=chunks,
            outline=outline,
            total_tokens=self._tokens.estimate(text),
        )

    def _fallback(self, text: str, opts: ChunkingOptions, document_id: str | None) -> DocumentStructure:
        spans = self._word_window_spans(text, opts)
        chunks = self._score_significance(
            [self._make_chunk(text, span, order, document_id) for order, span in enumerate(spans)],
        )
        return DocumentStructure(
            title=FALLBACK_TITLE,
            chunks=chunks,
            outline=[],
            total_tokens=self._tokens.estimate(text),
            degraded=True,
        )

    # -- section detection -------------------------------------------------

    def _classify(self, line: str, in_fence: bool) -> Tuple[ChunkType, bool]:
        if self._FENCE.match(line):
            return "code", not in_fence
        if in_fence:
            return "code", True
        if self._MARKDOWN_HEADING.match(line):
            return "heading", False
        if self._TABLE.search(line):
            return "table", False
        if self._QUOTE.match(line):
            return "quote", False
        if self._LIST.match(line):
            return "paragraph", False
        if self._CODE.search(line):
            return "code", False
        if len(line) < 50 and line[0].isupper() and not self._TERMINAL.search(line):
            return "heading", False
        return "paragraph", False

    def _heading_text(self, line: str) -> str:
        match = self._MARKDOWN_HEADING.match(line)
        return match.group(2).strip() if match else line

    def _split_sections(self, text: str) -> List[_Section]:
        sections: List[_Section] = []
        current_type: ChunkType | None = None
        section_start = section_end = 0
        heading: str | None = None
        in_fence = False
        offset = 0

        def flush() -> None:
            nonlocal current_type
            if current_type is not None:
                sections.append(_Section(current_type, section_start, section_end, heading))
            current_type = None

        for raw_line in text.splitlines(keepends=True):
            line_start = offset
            offset += len(raw_line)
            stripped = raw_line.strip()
            if not stripped:
                if not in_fence:
                    flush()
                continue
            content_start = line_start + len(raw_line) - len(raw_line.lstrip())
            content_end = line_start + len(raw_line.rstrip())
            line_type, in_fence = self._classify(stripped, in_fence)
            if current_type is not None and line_type != current_type:
                flush()
            if line_type == "heading":
                heading = self._heading_text(stripped)
            if current_type is None:
                current_type = line_type
                section_start = content_start
            section_end = content_end
        flush()
        return sections

    # -- sizing --------------------------------------------------------------

    def _split_section(self, text: str, section: _Section, opts: ChunkingOptions) -> List[_Span]:
        budget = opts.max_chunk_size
        if self._tokens.estimate(text[section.start : section.end]) <= budget:
            return [_Span(section.start, section.end, section.type, 0, section.title)]

        sentences = self._sentence_spans(text, section.start, section.end)
        spans: List[_Span] = []
        chunk_first = 0
        new_first = 0
        index = 0
        while index < len(sentences):
            has_new = index > new_first
            if has_new and self._tokens.estimate(text[sentences[chunk_first][0] : sentences[index][1]]) > budget:
                spans.append(
                    _Span(
                        sentences[chunk_first][0],
                        sentences[index - 1][1],
                        section.type,
                        sentences[new_first][0] - sentences[chunk_first][0],
                        section.title,
                    ),
                )
                overlap_first = self._overlap_start(text, sentences, index, opts.overlap_size)
                if (
                    overlap_first < index
                    and self._tokens.estimate(text[sentences[overlap_first][0] : sentences[index][1]]) > budget
                ):
                    overlap_first = index
                chunk_first = overlap_first
                new_first = index
                continue
            index += 1
        spans.append(
            _Span(
                sentences[chunk_first][0],
                sentences[-1][1],
                section.type,
                sentences[new_first][0] - sentences[chunk_first][0],
                section.title,
            ),
        )
        return spans

    def _sentence_spans(self, text: str, start: int, end: int) -> List[Tuple[int, int]]:
        spans: List[Tuple[int, int]] = []
        for match in self._SENTENCE.finditer(text, start, end):
            raw = match.group()
            span_start = match.start() + len(raw) - len(raw.lstrip())
            span_end = match.end() - (len(raw) - len(raw.rstrip()))
            if span_start < span_end:
                spans.append((span_start, span_end))
        return spans or [(start, end)]

    def _overlap_start(self, text: str, sentences: Sequence[Tuple[int, int]], index: int, budget: int) -> int:
        """Return the index of the earliest sentence carried into the next chunk."""
        first = index
        used = 0
        for candidate in range(index - 1, max(-1, index - 1 - MAX_OVERLAP_SENTENCES), -1):
            cost = self._tokens.estimate(text[sentences[candidate][0] : sentences[candidate][1]])
            if used + cost > budget:
                break
            used += cost
            first = candidate
        return first

    def _word_window_spans(self, text: str, opts: ChunkingOptions) -> List[_Span]:
        words = [match.span() for match in self._WORD.finditer(text)]
        if not words:
            return []
        max_words = max(1, math.floor(opts.max_chunk_size / TOKENS_PER_WORD))
        overlap_words = min(math.floor(opts.overlap_size / TOKENS_PER_WORD), max_words - 1)
        step = max(max_words - overlap_words, 1)
        spans: List[_Span] = []
        for first in range(0, len(words), step):
            window = words[first : first + max_words]
            overlap_chars = 0
            if first > 0 and overlap_words:
                new_index = first + overlap_words
                boundary = words[new_index][0] if new_index < len(words) else window[-1][1]
                overlap_chars = boundary - window[0][0]
            spans.append(_Span(window[0][0], window[-1][1], "paragraph", overlap_chars))
            if first + max_words >= len(words):
                break
        return spans

    # -- chunk construction --------------------------------------------------

    def _make_chunk(self, text: str, span: _Span, order: int, document_id: str | None) -> Chunk:
        content = text[span.start : span.end]
        chunk_id = f"{document_id}-{order}" if document_id else uuid5(NAMESPACE_URL, f"{order}:{span.start}:{content}").hex
        return Chunk(
            id=chunk_id,
            content=content,
            start=span.start,
            end=span.end,
            type=span.type,
            metadata=ChunkMetadata(
                word_count=len(content.split()),
                char_count=len(content),
                overlap_chars=span.overlap_chars,
                section_title=span.title,
            ),
        )

    def _score_significance(self, chunks: Sequence[Chunk]) -> List[Chunk]:
        if not chunks:
            return []
        mean_length = sum(chunk.metadata.char_count for chunk in chunks) / len(chunks) or 1.0
        scored: List[Chunk] = []
        for chunk in chunks:
            significance = 0.5
            if chunk.type == "heading":
                significance += 0.3
            significance += min(chunk.metadata.char_count / mean_length * 0.2, 0.2)
            if self._IMPORTANT.search(chunk.content):
                significance += 0.1
            metadata = replace(chunk.metadata, significance=clamp_score(significance))
            scored.append(replace(chunk, metadata=metadata))
        return scored

    # -- document analysis ---------------------------------------------------

    def _extract_title(self, text: str) -> str:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        for line in lines[:5]:
            if 5 < len(line) < 100:
                return self._heading_text(line)
        return UNTITLED

    def _extract_outline(self, text: str, chunks: Sequence[Chunk]) -> List[OutlineEntry]:
        found: List[Tuple[int, str, int]] = []
        in_fence = False
        offset = 0
        for raw_line in text.splitlines(keepends=True):
            line_start = offset
            offset += len(raw_line)
            stripped = raw_line.strip()
            if not stripped:
                continue
            was_in_fence = in_fence
            line_type, in_fence = self._classify(stripped, in_fence)
            if was_in_fence or line_type == "code":
                continue
            markdown = self._MARKDOWN_HEADING.match(stripped)
            if markdown:
                found.append((len(markdown.group(1)), markdown.group(2).strip(), line_start))
            elif (
                line_type in ("heading", "paragraph")
                and len(stripped) < 80
                and stripped[0].isupper()
                and not self._TERMINAL.search(stripped)
                and not self._LIST.match(stripped)
            ):
                found.append((1, stripped, line_start))

        starts = [self._chunk_index_at(chunks, position) for _, _, position in found]
        outline: List[OutlineEntry] = []
        for index, (level, title, _) in enumerate(found):
            start_chunk = starts[index]
            next_start = starts[index + 1] if index + 1 < len(starts) else len(chunks)
            end_chunk = max(start_chunk, next_start - 1) if chunks else 0
            outline.append(OutlineEntry(level=level, title=title, start_chunk=start_chunk, end_chunk=end_chunk))
        return outline

    @staticmethod
    def _chunk_index_at(chunks: Sequence[Chunk], position: int) -> int:
        for index, chunk in enumerate(chunks):
            if position < chunk.end:
                return index
        return max(len(chunks) - 1, 0)


def chunk_text(text: str, *, options: ChunkingOptions | None = None, document_id: str | None = None) -> DocumentStructure:
    """Convenience helper for tests and ad-hoc chunking."""

    return DocumentChunker(options=options).chunk(text, document_id=document_id)
