"""Generation backends for NoteRAG."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger(__name__)

SummaryStyle = Literal["academic", "bullet", "qna", "mindmap"]
DEFAULT_ANSWER = (
    "Based on the available information, I can provide some insights, "
    "but a more specific answer would require additional context."
)


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for model-backed generation."""

    model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    max_new_tokens: int = 512
    temperature: float = 0.3
    use_model: bool = False
    device: str | None = None


@dataclass(frozen=True)
class GenerationSettings:
    summary_style: SummaryStyle = "academic"
    detail_level: int = 3
    include_examples: bool = True
    use_multiple_models: bool = True
    design_style: str = "modern"


@dataclass(frozen=True)
class ResourceContext:
    content_type: str = "text"
    content_length: int = 0
    priority: Literal["low", "medium", "high"] = "medium"
    user_tier: Literal["free", "pro"] = "pro"
    max_cost: float = 1.0
    timeout_ms: int = 30000


class KeyConcept(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = ""
    definition: str = ""


class SummarySection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    heading: str = ""
    points: List[str] = Field(default_factory=list)


class GeneratedNote(BaseModel):
    """Structured note returned by a generation backend."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    title: str = ""
    key_concepts: List[KeyConcept] = Field(default_factory=list, alias="keyConcepts")
    summary_points: List[SummarySection] = Field(default_factory=list, alias="summaryPoints")
    question: Optional[str] = None
    answer: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class GenerationSuccess:
    data: GeneratedNote
    model: str
    confidence: float

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class GenerationFailure:
    error: str
    model: str = "unknown"

    @property
    def ok(self) -> bool:
        return False


GenerationResult = Union[GenerationSuccess, GenerationFailure]


class GenerationPayload(BaseModel):
    """Wire shape of a generation collaborator response."""

    data: GeneratedNote
    model: str = "unknown"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def parse_generation_response(raw: Any, *, model: str = "unknown") -> GenerationResult:
    """Validate a raw collaborator payload into a tagged result."""

    if isinstance(raw, (GenerationSuccess, GenerationFailure)):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            return GenerationFailure(f"Generation response is not valid JSON: {exc}", model)
    if not isinstance(raw, Mapping):
        return GenerationFailure("Unexpected generation response format", model)
    try:
        payload = GenerationPayload.model_validate(raw)
    except ValidationError as exc:
        return GenerationFailure(f"Invalid generation response: {exc.error_count()} errors", model)
    return GenerationSuccess(data=payload.data, model=payload.model, confidence=payload.confidence)


class GenerationBackend(Protocol):
    """Protocol describing the generation collaborator."""

    async def generate(
        self,
        prompt: str,
        settings: GenerationSettings,
        resource_context: ResourceContext,
    ) -> GenerationResult:
        """Return a structured note generated for ``prompt``."""


_SENTENCE = re.compile(r"[^.!?]+[.!?]?")
_PROMPT_SECTIONS = (
    ("Context from the document:\n", "\n\nQuestion:"),
    ("Original Content:\n", "\n\nAdditional Context:"),
    ("tests understanding:\n\n", "\n\nGenerate a clear"),
)


def _sentences(text: str) -> List[str]:
    return [match.group(0).strip() for match in _SENTENCE.finditer(text) if match.group(0).strip()]


class TemplateGenerator:
    """Simple deterministic generator used for tests and offline environments.

    Extracts sentences from the prompt body rather than calling a model.
    """

    model_name = "template"

    def __init__(self, confidence: float = 0.5, max_points: int = 5) -> None:
        self._confidence = confidence
        self._max_points = max_points

    async def generate(
        self,
        prompt: str,
        settings: GenerationSettings,
        resource_context: ResourceContext,
    ) -> GenerationResult:
        return GenerationSuccess(data=self.build_note(prompt, settings), model=self.model_name, confidence=self._confidence)

    def build_note(self, prompt: str, settings: GenerationSettings) -> GeneratedNote:
        body = self._body(prompt)
        sentences = _sentences(body)
        title = sentences[0][:80].rstrip(".!?") if sentences else "Untitled"
        points = sentences[: self._max_points]
        note = GeneratedNote(
            title=title,
            summary_points=[SummarySection(heading="Summary", points=points)] if points else [],
            key_concepts=[KeyConcept(title=title, definition=sentences[0])] if sentences else [],
        )
        if settings.summary_style == "qna" and sentences:
            note.question = f"What does the material say about {title}?"
            note.answer = " ".join(points)
        return note

    @staticmethod
    def _body(prompt: str) -> str:
        # Quoted material only, not the surrounding instructions.
        for start, end in _PROMPT_SECTIONS:
            if start in prompt:
                return prompt.split(start, 1)[1].split(end, 1)[0]
        return prompt


class QwenGenerator:
    """Generator that optionally calls into Qwen models via Transformers."""

    def __init__(self, config: GenerationConfig | None = None, fallback: GenerationBackend | None = None) -> None:
        self._config = config or GenerationConfig()
        self._fallback = fallback or TemplateGenerator()
        self._tokenizer = None
        self._model = None
        if not self._config.use_model:
            LOGGER.info("QwenGenerator running in template-only mode.")
            return
        try:
            from transformers import AutoModelForCausalLM, AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(self._config.model, trust_remote_code=True)
            self._model = AutoModelForCausalLM.from_pretrained(self._config.model, trust_remote_code=True)
            if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
                self._tokenizer.pad_token = self._tokenizer.eos_token
            if self._config.device:
                self._model.to(self._config.device)
            LOGGER.info("Loaded generation model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - optional model dependency
            LOGGER.warning("Falling back to template generator: %s", exc)
            self._tokenizer = None
            self._model = None

    async def generate(
        self,
        prompt: str,
        settings: GenerationSettings,
        resource_context: ResourceContext,
    ) -> GenerationResult:
        if self._tokenizer is None or self._model is None:
            return await self._fallback.generate(prompt, settings, resource_context)
        try:
            text = await asyncio.to_thread(self._complete, prompt, settings)
        except Exception as exc:
            LOGGER.warning("Qwen generation failed: %s", exc)
            return GenerationFailure(str(exc), self._config.model)
        return self._to_result(text, settings)

    def _complete(self, prompt: str, settings: GenerationSettings) -> str:  # pragma: no cover - needs model weights
        import torch

        messages = self._build_messages(prompt, settings)
        if hasattr(self._tokenizer, "apply_chat_template"):
            rendered = self._tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
        else:
            rendered = f"{messages[0]['content']}\n\n{prompt}"
        tokenized = self._tokenizer(rendered, return_tensors="pt", padding=True)
        input_ids = tokenized.input_ids
        attention_mask = tokenized.attention_mask
        prompt_length = input_ids.shape[1]
        if self._config.device:
            input_ids = input_ids.to(self._config.device)
            attention_mask = attention_mask.to(self._config.device)
        with torch.no_grad():
            output = self._model.generate(
                input_ids,
                attention_mask=attention_mask,
                max_new_tokens=self._config.max_new_tokens,
                temperature=self._config.temperature,
            )
        return self._tokenizer.decode(output[0][prompt_length:], skip_special_tokens=True).strip()

    def _build_messages(self, prompt: str, settings: GenerationSettings) -> list[dict[str, str]]:
        system = (
            "You turn study material into structured notes. Reply with JSON containing "
            "title, keyConcepts (title, definition) and summaryPoints (heading, points)."
        )
        if settings.summary_style == "qna":
            system += " Also include a question and its answer."
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]

    def _to_result(self, text: str, settings: GenerationSettings) -> GenerationResult:
        try:
            note = GeneratedNote.model_validate_json(text)
        except ValidationError:
            # Free text answers become a single summary section.
            sentences = _sentences(text)
            note = GeneratedNote(
                title=sentences[0][:80] if sentences else "Answer",
                summary_points=[SummarySection(heading="Answer", points=[text])] if text else [],
            )
            if settings.summary_style == "qna":
                note.question = note.title if note.title.endswith("?") else None
        return GenerationSuccess(data=note, model=self._config.model, confidence=0.7)


class CallableGenerationBackend:
    """Adapts a foreign async callable returning raw mappings."""

    def __init__(
        self,
        func: Callable[[str, GenerationSettings, ResourceContext], Awaitable[Any]],
        *,
        model: str = "external",
    ) -> None:
        self._func = func
        self._model = model

    async def generate(
        self,
        prompt: str,
        settings: GenerationSettings,
        resource_context: ResourceContext,
    ) -> GenerationResult:
        try:
            raw = await self._func(prompt, settings, resource_context)
        except Exception as exc:
            LOGGER.warning("Generation collaborator failed: %s", exc)
            return GenerationFailure(str(exc), self._model)
        return parse_generation_response(raw, model=self._model)


def build_generator(config: GenerationConfig) -> GenerationBackend:
    if config.use_model:
        return QwenGenerator(config)
    return TemplateGenerator()


def extract_answer(note: GeneratedNote) -> str:
    """Flatten a generated note into answer text."""
    if note.answer:
        return note.answer
    points = " ".join(point for section in note.summary_points for point in section.points)
    if len(points) > 50:
        return points
    if note.key_concepts:
        return " ".join(f"{concept.title}: {concept.definition}" for concept in note.key_concepts)
    return DEFAULT_ANSWER


@dataclass(frozen=True)
class ParsedQuestion:
    question: str = ""
    answer: str = ""


def parse_question(note: GeneratedNote) -> ParsedQuestion:
    """Pull a question/answer pair out of a generated note; missing parts stay empty."""
    question = note.question or ""
    if not question and note.title:
        question = note.title if note.title.endswith("?") else f"What is {note.title}?"
    answer = note.answer or ""
    if not answer and note.summary_points:
        answer = " ".join(point for section in note.summary_points for point in section.points)
    if not answer and note.key_concepts:
        answer = " ".join(concept.definition for concept in note.key_concepts if concept.definition)
    return ParsedQuestion(question=question.strip(), answer=answer.strip())
