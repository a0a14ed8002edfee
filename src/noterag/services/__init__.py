"""Service layer orchestrations for NoteRAG."""

from .generation import (
    CallableGenerationBackend,
    GeneratedNote,
    GenerationBackend,
    GenerationConfig,
    GenerationFailure,
    GenerationSettings,
    GenerationSuccess,
    QwenGenerator,
    ResourceContext,
    TemplateGenerator,
    build_generator,
)
from .query import AssembledContext, ContextAssembler, PromptBuilder, PromptBuilderConfig
from .rag import AnswerOptions, EnhancedProcessingOptions, RAGConfig, RAGService

__all__ = [
    "AnswerOptions",
    "AssembledContext",
    "CallableGenerationBackend",
    "ContextAssembler",
    "EnhancedProcessingOptions",
    "GeneratedNote",
    "GenerationBackend",
    "GenerationConfig",
    "GenerationFailure",
    "GenerationSettings",
    "GenerationSuccess",
    "PromptBuilder",
    "PromptBuilderConfig",
    "QwenGenerator",
    "RAGConfig",
    "RAGService",
    "ResourceContext",
    "TemplateGenerator",
    "build_generator",
]
