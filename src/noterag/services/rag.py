"""Retrieval-augmented question answering over indexed documents."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Sequence
from uuid import uuid4

from noterag.cache.semantic import CacheSearchOptions, InvalidationCriteria, SemanticCache
from noterag.chunking.service import ChunkingOptions, DocumentChunker
from noterag.embeddings.service import CachedEmbedder
from noterag.embeddings.store import SearchOptions, VectorCollectionStore, collection_id_for
from noterag.errors import ContextNotFoundError, ProviderError
from noterag.metrics.observability import PipelineMetrics, TimedSection, get_logger
from noterag.models import (
    ContextState,
    QueryMetadata,
    RAGContext,
    RAGQueryResult,
    SearchResult,
    StudyQuestion,
    utcnow,
)
from noterag.persistence.store import KeyValueStore
from noterag.services.generation import (
    GeneratedNote,
    GenerationBackend,
    GenerationFailure,
    GenerationSettings,
    GenerationSuccess,
    ResourceContext,
    TemplateGenerator,
    extract_answer,
    parse_question,
)
from noterag.services.query import ContextAssembler, PromptBuilder

Difficulty = Literal["easy", "medium", "hard"]

APOLOGY = (
    "I'm sorry, but I encountered an error while processing your question. "
    "Please try rephrasing your question or check if the document is properly loaded."
)
FALLBACK_MODEL = "error-fallback"
MAX_STUDY_QUESTIONS = 20

ANSWER_SETTINGS = GenerationSettings(summary_style="academic", detail_level=4)
QUESTION_SETTINGS = GenerationSettings(
    summary_style="qna",
    include_examples=False,
    use_multiple_models=False,
    design_style="academic",
)


@dataclass(frozen=True)
class RAGConfig:
    """Defaults for retrieval and answer caching."""

    max_context_tokens: int = 1500
    retrieval_top_k: int = 10
    min_similarity: float = 0.2
    similar_content_min_similarity: float = 0.3
    fallback_confidence: float = 0.1
    context_ttl_seconds: int = 86400 * 7
    answer_cache_ttl_seconds: int = 7200
    answer_cache_similarity: float = 0.85


@dataclass(frozen=True)
class AnswerOptions:
    max_context_tokens: int = 1500
    similarity_threshold: float = 0.2
    top_k: int = 10
    rerank: bool = True
    use_cache: bool = True

    def __post_init__(self) -> None:
        if self.max_context_tokens < 1:
            raise ValueError("max_context_tokens must be at least 1")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be within [0, 1]")
        if self.top_k < 1:
            raise ValueError("top_k must be at least 1")


@dataclass(frozen=True)
class EnhancedProcessingOptions:
    use_rag: bool = True
    max_context_tokens: int = 2000
    similarity_threshold: float = 0.3
    rerank: bool = True
    self_retrieval_chars: int = 500

    def __post_init__(self) -> None:
        if self.max_context_tokens < 1:
            raise ValueError("max_context_tokens must be at least 1")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be within [0, 1]")
        if self.self_retrieval_chars < 1:
            raise ValueError("self_retrieval_chars must be at least 1")


def document_tag(document_id: str) -> str:
    return f"doc:{document_id}"


class RAGService:
    """Indexes documents and answers questions grounded in their chunks.

    Contexts move through UNINDEXED, INDEXING and READY; invalidation or
    deletion makes a document unqueryable until it is initialized again.
    Provider failures degrade to fallback results. Only a missing context is
    reported to the caller, as ``ContextNotFoundError``.
    """

    def __init__(
        self,
        chunker: DocumentChunker,
        embedder: CachedEmbedder,
        vector_store: VectorCollectionStore,
        generator: GenerationBackend,
        config: RAGConfig | None = None,
        *,
        semantic_cache: SemanticCache | None = None,
        context_store: KeyValueStore | None = None,
        prompt_builder: PromptBuilder | None = None,
        assembler: ContextAssembler | None = None,
    ) -> None:
        self._chunker = chunker
        self._embedder = embedder
        self._store = vector_store
        self._generator = generator
        self._config = config or RAGConfig()
        self._cache = semantic_cache
        self._context_store = context_store
        self._prompts = prompt_builder or PromptBuilder()
        self._assembler = assembler or ContextAssembler(chunker.estimator)
        self._contexts: Dict[str, RAGContext] = {}
        self._logger = get_logger("rag")

    @staticmethod
    def context_key(document_id: str) -> str:
        return f"rag-context:{document_id}"

    def get_context(self, document_id: str) -> RAGContext | None:
        return self._contexts.get(document_id)

    # -- indexing ----------------------------------------------------------------

    async def initialize_document_context(
        self,
        document_id: str,
        content: str,
        chunking_options: ChunkingOptions | None = None,
    ) -> RAGContext:
        context = await self._index(document_id, content, chunking_options, persist=True)
        if self._cache is not None:
            await self._cache.invalidate(InvalidationCriteria(tags=[document_tag(document_id)]))
        return context

    async def _index(
        self,
        document_id: str,
        content: str,
        chunking_options: ChunkingOptions | None,
        *,
        persist: bool,
    ) -> RAGContext:
        previous = self._contexts.get(document_id)
        self._contexts[document_id] = RAGContext(
            document_id=document_id,
            collection_id="",
            original_content=content,
            state=ContextState.INDEXING,
        )
        if previous is not None and previous.collection_id:
            await self._store.delete_collection(previous.collection_id)
        try:
            structure = self._chunker.chunk(content, document_id=document_id, options=chunking_options)
            chunks = await self._embedder.embed_chunks(structure.chunks)
            collection_id = await self._fresh_collection(f"note_{document_id}")
            await self._store.add_chunks(collection_id, chunks)
            context = RAGContext(
                document_id=document_id,
                collection_id=collection_id,
                original_content=content,
                structure=structure,
                last_updated=utcnow(),
                state=ContextState.READY,
                degraded=structure.degraded,
            )
        except Exception as exc:
            self._logger.error("rag.index.failed", document_id=document_id, error=str(exc))
            context = RAGContext(
                document_id=document_id,
                collection_id=await self._fresh_collection(f"note_{document_id}_fallback"),
                original_content=content,
                last_updated=utcnow(),
                state=ContextState.READY,
                degraded=True,
            )
            self._contexts[document_id] = context
            await self._prune_contexts()
            return context

        self._contexts[document_id] = context
        await self._prune_contexts()
        if persist:
            await self._save_pointer(context)
        self._logger.info(
            "rag.index.complete",
            document_id=document_id,
            collection_id=context.collection_id,
            chunk_count=len(chunks),
        )
        return context

    async def _fresh_collection(self, name: str) -> str:
        # Re-indexing must not leave chunks of the old content behind.
        await self._store.delete_collection(collection_id_for(name))
        return await self._store.create_collection(name)

    async def _prune_contexts(self) -> None:
        """Forget contexts whose collection was evicted or dropped."""
        stale = [
            document_id
            for document_id, context in self._contexts.items()
            if context.state is not ContextState.INDEXING and context.collection_id not in self._store
        ]
        for document_id in stale:
            context = self._contexts.pop(document_id)
            if context.state is ContextState.READY:
                await self._forget_pointer(document_id)
        if stale:
            self._logger.info("rag.context.pruned", count=len(stale), remaining=len(self._contexts))

    async def invalidate_document_context(self, document_id: str) -> bool:
        """Drop the document's index and cached answers; the context record stays as INVALIDATED."""
        context = self._contexts.get(document_id)
        if context is None:
            return False
        await self._drop_index(context)
        context.state = ContextState.INVALIDATED
        context.last_updated = utcnow()
        self._logger.info("rag.context.invalidated", document_id=document_id)
        return True

    async def delete_document_context(self, document_id: str) -> bool:
        context = self._contexts.pop(document_id, None)
        if context is None:
            return False
        await self._drop_index(context)
        context.state = ContextState.DELETED
        self._logger.info("rag.context.deleted", document_id=document_id)
        return True

    async def _drop_index(self, context: RAGContext) -> None:
        await self._store.delete_collection(context.collection_id)
        await self._forget_pointer(context.document_id)
        if self._cache is not None:
            await self._cache.invalidate(InvalidationCriteria(tags=[document_tag(context.document_id)]))

    # -- querying ----------------------------------------------------------------

    async def answer_question(
        self,
        document_id: str,
        question: str,
        options: AnswerOptions | None = None,
    ) -> RAGQueryResult:
        opts = options or AnswerOptions(
            max_context_tokens=self._config.max_context_tokens,
            similarity_threshold=self._config.min_similarity,
            top_k=self._config.retrieval_top_k,
        )
        started = time.perf_counter()
        context = await self._resolve_context(document_id)
        tag = document_tag(document_id)
        try:
            if opts.use_cache and self._cache is not None:
                cached = await self._cached_answer(context, question, tag, started)
                if cached is not None:
                    return cached

            retrieval_start = time.perf_counter()
            query_embedding = await self._embedder.embed(question)
            results = self._store.semantic_search(
                context.collection_id,
                query_embedding,
                SearchOptions(top_k=opts.top_k, min_similarity=opts.similarity_threshold, rerank=opts.rerank),
            )
            assembled = self._assembler.assemble(results, opts.max_context_tokens)
            PipelineMetrics.observe_retrieval(
                time.perf_counter() - retrieval_start,
                len(assembled.sources),
                (source.similarity for source in assembled.sources),
            )

            prompt = self._prompts.question_prompt(question, assembled.text)
            resources = ResourceContext(
                content_length=len(prompt),
                priority="high",
                user_tier="pro",
                max_cost=1.5,
                timeout_ms=25000,
            )
            with TimedSection(PipelineMetrics.observe_generation):
                response = await self._generator.generate(prompt, ANSWER_SETTINGS, resources)
            if isinstance(response, GenerationFailure):
                raise ProviderError(f"Generation failed ({response.model}): {response.error}")

            average = assembled.average_similarity
            answer = extract_answer(response.data)
            result = RAGQueryResult(
                answer=answer,
                sources=list(assembled.sources),
                confidence=min(average + response.confidence, 1.0),
                processing_time_ms=(time.perf_counter() - started) * 1000,
                used_context=assembled.text,
                metadata=QueryMetadata(
                    total_chunks=self._total_chunks(context),
                    relevant_chunks=len(assembled.sources),
                    average_similarity=average,
                    model_used=response.model,
                ),
            )
        except Exception as exc:
            self._logger.error("rag.answer.degraded", document_id=document_id, error=str(exc))
            return self._degraded_result(started)

        if opts.use_cache and self._cache is not None:
            try:
                await self._cache.set(
                    question,
                    self._cache_payload(result),
                    model=result.metadata.model_used,
                    confidence=result.confidence,
                    tags=[tag],
                    ttl_seconds=self._config.answer_cache_ttl_seconds,
                )
            except Exception as exc:
                self._logger.warning("rag.answer.cache_failed", document_id=document_id, error=str(exc))

        self._logger.info(
            "rag.answer.complete",
            document_id=document_id,
            sources=len(result.sources),
            confidence=round(result.confidence, 3),
            duration_ms=round(result.processing_time_ms, 2),
        )
        return result

    async def generate_study_questions(
        self,
        document_id: str,
        count: int = 5,
        difficulty: Difficulty = "medium",
    ) -> List[StudyQuestion]:
        if count < 1:
            raise ValueError("count must be at least 1")
        if difficulty not in ("easy", "medium", "hard"):
            raise ValueError(f"Unknown difficulty: {difficulty}")
        count = min(count, MAX_STUDY_QUESTIONS)
        context = await self._resolve_context(document_id)
        chunks = sorted(self._store.get_chunks(context.collection_id), key=lambda chunk: chunk.start)
        samples = chunks[: count * 2]

        questions: List[StudyQuestion] = []
        for chunk in samples:
            if len(questions) >= count:
                break
            prompt = self._prompts.study_question_prompt(chunk.content, difficulty)
            resources = ResourceContext(
                content_length=len(prompt),
                priority="medium",
                user_tier="pro",
                max_cost=0.5,
                timeout_ms=15000,
            )
            try:
                response = await self._generator.generate(prompt, QUESTION_SETTINGS, resources)
            except Exception as exc:
                self._logger.warning("rag.study_question.failed", chunk_id=chunk.id, error=str(exc))
                continue
            if not isinstance(response, GenerationSuccess):
                self._logger.warning("rag.study_question.failed", chunk_id=chunk.id, error=response.error)
                continue
            parsed = parse_question(response.data)
            if not parsed.question or not parsed.answer:
                continue
            questions.append(
                StudyQuestion(
                    question=parsed.question,
                    answer=parsed.answer,
                    difficulty=difficulty,
                    topic=self._prompts.topic(chunk.content),
                    sources=(SearchResult(chunk=chunk, similarity=1.0, relevance_score=1.0),),
                ),
            )
        self._logger.info("rag.study_questions.complete", document_id=document_id, count=len(questions))
        return questions

    async def get_similar_content(self, document_id: str, query: str, limit: int = 3) -> List[SearchResult]:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        context = await self._resolve_context(document_id)
        try:
            embedding = await self._embedder.embed(query)
            return self._store.semantic_search(
                context.collection_id,
                embedding,
                SearchOptions(top_k=limit, min_similarity=self._config.similar_content_min_similarity, rerank=True),
            )
        except Exception as exc:
            self._logger.error("rag.similar_content.failed", document_id=document_id, error=str(exc))
            return []

    async def process_content_with_rag(
        self,
        content: str,
        settings: GenerationSettings | None = None,
        options: EnhancedProcessingOptions | None = None,
    ) -> GeneratedNote:
        """Generate a note for unpersisted content, enriched by retrieval over itself."""
        settings = settings or GenerationSettings()
        opts = options or EnhancedProcessingOptions()
        try:
            enhanced = content
            sources: Sequence[SearchResult] = []
            if opts.use_rag:
                enhanced, sources = await self._self_retrieve(content, opts)
            response = await self._generator.generate(
                enhanced,
                settings,
                ResourceContext(content_length=len(enhanced), priority="medium", user_tier="pro", max_cost=1.0),
            )
            if isinstance(response, GenerationFailure):
                raise ProviderError(f"Generation failed ({response.model}): {response.error}")
            average = sum(source.similarity for source in sources) / len(sources) if sources else 0.0
            return self._with_metadata(
                response.data,
                rag_enhanced=opts.use_rag,
                rag_sources=len(sources),
                average_similarity=average,
            )
        except Exception as exc:
            self._logger.warning("rag.enhance.failed", error=str(exc))
        return await self._plain_note(content, settings)

    async def _self_retrieve(
        self,
        content: str,
        options: EnhancedProcessingOptions,
    ) -> tuple[str, Sequence[SearchResult]]:
        temp_id = f"tmp-{uuid4().hex}"
        context = await self._index(temp_id, content, None, persist=False)
        try:
            embedding = await self._embedder.embed(content[: options.self_retrieval_chars])
            results = self._store.semantic_search(
                context.collection_id,
                embedding,
                SearchOptions(
                    top_k=self._config.retrieval_top_k,
                    min_similarity=options.similarity_threshold,
                    rerank=options.rerank,
                ),
            )
            assembled = self._assembler.assemble(results, options.max_context_tokens)
        finally:
            await self._store.delete_collection(context.collection_id)
            self._contexts.pop(temp_id, None)
        if not assembled.sources:
            return content, []
        self._logger.info("rag.enhance.context", sources=len(assembled.sources), tokens=assembled.total_tokens)
        return self._prompts.combine_with_context(content, assembled.text), assembled.sources

    async def _plain_note(self, content: str, settings: GenerationSettings) -> GeneratedNote:
        resources = ResourceContext(
            content_length=len(content),
            priority="medium",
            user_tier="free",
            max_cost=0.5,
            timeout_ms=20000,
        )
        try:
            response = await self._generator.generate(content, settings, resources)
        except Exception as exc:
            response = GenerationFailure(str(exc))
        if isinstance(response, GenerationSuccess):
            return response.data
        self._logger.error("rag.enhance.fallback_failed", error=response.error)
        note = TemplateGenerator().build_note(content, settings)
        return self._with_metadata(note, rag_enhanced=False, rag_sources=0, average_similarity=0.0, degraded=True)

    # -- helpers -----------------------------------------------------------------

    async def _resolve_context(self, document_id: str) -> RAGContext:
        context = self._contexts.get(document_id)
        if context is not None:
            if context.state is ContextState.INVALIDATED:
                raise ContextNotFoundError(f"RAG context for {document_id} was invalidated")
            if context.state is ContextState.INDEXING:
                raise ContextNotFoundError(f"RAG context for {document_id} is still indexing")
            if context.collection_id in self._store or await self._store.restore_collection(context.collection_id):
                return context
            self._contexts.pop(document_id, None)
            await self._forget_pointer(document_id)
            self._logger.warning("rag.context.collection_lost", document_id=document_id, collection_id=context.collection_id)
            raise ContextNotFoundError(f"Collection for {document_id} is no longer available")
        restored = await self._restore_context(document_id)
        if restored is None:
            raise ContextNotFoundError(f"RAG context not found for {document_id}")
        return restored

    async def _restore_context(self, document_id: str) -> RAGContext | None:
        if self._context_store is None:
            return None
        try:
            pointer = await self._context_store.get(self.context_key(document_id))
        except Exception as exc:
            self._logger.warning("rag.context.restore_failed", document_id=document_id, error=str(exc))
            return None
        if not pointer:
            return None
        collection_id = str(pointer["collection_id"])
        if not await self._store.restore_collection(collection_id):
            await self._forget_pointer(document_id)
            return None
        context = RAGContext(
            document_id=document_id,
            collection_id=collection_id,
            last_updated=datetime.fromisoformat(str(pointer["last_updated"])),
            state=ContextState.READY,
        )
        self._contexts[document_id] = context
        self._logger.info("rag.context.restored", document_id=document_id, collection_id=collection_id)
        return context

    async def _save_pointer(self, context: RAGContext) -> None:
        if self._context_store is None:
            return
        pointer = {
            "document_id": context.document_id,
            "collection_id": context.collection_id,
            "last_updated": context.last_updated.isoformat(),
        }
        try:
            await self._context_store.set(self.context_key(context.document_id), pointer, self._config.context_ttl_seconds)
        except Exception as exc:
            self._logger.warning("rag.context.persist_failed", document_id=context.document_id, error=str(exc))

    async def _forget_pointer(self, document_id: str) -> None:
        if self._context_store is None:
            return
        try:
            await self._context_store.delete(self.context_key(document_id))
        except Exception as exc:
            self._logger.warning("rag.context.delete_failed", document_id=document_id, error=str(exc))

    def _total_chunks(self, context: RAGContext) -> int:
        stats = self._store.get_collection_stats(context.collection_id)
        return stats.total_chunks if stats else context.total_chunks

    async def _cached_answer(
        self,
        context: RAGContext,
        question: str,
        tag: str,
        started: float,
    ) -> RAGQueryResult | None:
        entry = await self._cache.get(
            question,
            CacheSearchOptions(similarity_threshold=self._config.answer_cache_similarity, tag_filter=[tag]),
        )
        if entry is None or not isinstance(entry.response, Mapping):
            return None
        payload: Mapping[str, Any] = entry.response
        chunks = {chunk.id: chunk for chunk in self._store.get_chunks(context.collection_id)}
        sources = [
            SearchResult(
                chunk=chunks[item["chunk_id"]],
                similarity=float(item["similarity"]),
                relevance_score=float(item["relevance_score"]),
            )
            for item in payload.get("sources", [])
            if item.get("chunk_id") in chunks
        ]
        average = sum(source.similarity for source in sources) / len(sources) if sources else 0.0
        self._logger.info("rag.answer.cached", document_id=context.document_id, entry_id=entry.id)
        return RAGQueryResult(
            answer=str(payload.get("answer", "")),
            sources=sources,
            confidence=float(payload.get("confidence", entry.metadata.confidence)),
            processing_time_ms=(time.perf_counter() - started) * 1000,
            used_context=str(payload.get("used_context", "")),
            metadata=QueryMetadata(
                total_chunks=self._total_chunks(context),
                relevant_chunks=len(sources),
                average_similarity=average,
                model_used=entry.metadata.model,
                cached=True,
            ),
        )

    @staticmethod
    def _cache_payload(result: RAGQueryResult) -> Dict[str, Any]:
        return {
            "answer": result.answer,
            "confidence": result.confidence,
            "used_context": result.used_context,
            "sources": [
                {
                    "chunk_id": source.chunk.id,
                    "similarity": source.similarity,
                    "relevance_score": source.relevance_score,
                }
                for source in result.sources
            ],
        }

    def _degraded_result(self, started: float) -> RAGQueryResult:
        return RAGQueryResult(
            answer=APOLOGY,
            sources=[],
            confidence=self._config.fallback_confidence,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            used_context="",
            metadata=QueryMetadata(
                total_chunks=0,
                relevant_chunks=0,
                average_similarity=0.0,
                model_used=FALLBACK_MODEL,
            ),
        )

    @staticmethod
    def _with_metadata(note: GeneratedNote, **extra: Any) -> GeneratedNote:
        return note.model_copy(update={"metadata": {**note.metadata, **extra}})
