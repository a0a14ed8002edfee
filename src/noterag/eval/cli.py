"""Offline retrieval evaluation for NoteRAG document contexts."""

from __future__ import annotations

import argparse
import asyncio
import json
import statistics
import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence

from noterag.config import Settings, get_settings
from noterag.models import SearchResult
from noterag.persistence.store import InMemoryKeyValueStore
from noterag.runtime import build_dependencies


@dataclass(frozen=True)
class DocumentFixture:
    id: str
    title: str
    content: str

    @property
    def text(self) -> str:
        return f"{self.title}\n\n{self.content}" if self.title else self.content


@dataclass(frozen=True)
class QueryFixture:
    question: str
    relevant_document_ids: Sequence[str]


@dataclass(frozen=True)
class QueryOutcome:
    question: str
    retrieved: List[str]
    relevant: List[str]
    rank: int | None
    latency_ms: float

    @property
    def reciprocal_rank(self) -> float:
        return 1 / self.rank if self.rank else 0.0


@dataclass(frozen=True)
class EvaluationResult:
    total_queries: int
    hits: int
    recall_at_k: float
    mean_reciprocal_rank: float
    average_latency_ms: float
    details: List[Dict[str, object]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def load_dataset(path: Path) -> tuple[list[DocumentFixture], list[QueryFixture]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    documents = [DocumentFixture(item["id"], item.get("title", ""), item["content"]) for item in data["documents"]]
    queries = [QueryFixture(item["question"], item.get("relevant_document_ids", [])) for item in data["queries"]]
    return documents, queries


def _rank_documents(hits: Sequence[tuple[str, SearchResult]], top_k: int) -> list[str]:
    """Order document ids by their best chunk."""
    ranked: list[str] = []
    for doc_id, _ in sorted(hits, key=lambda item: item[1].relevance_score, reverse=True):
        if doc_id not in ranked:
            ranked.append(doc_id)
    return ranked[:top_k]


def _first_relevant_rank(retrieved: Sequence[str], relevant: Sequence[str]) -> int | None:
    return next((index for index, doc_id in enumerate(retrieved, start=1) if doc_id in relevant), None)


async def _evaluate(
    documents: Sequence[DocumentFixture],
    queries: Sequence[QueryFixture],
    *,
    top_k: int,
    settings: Settings,
) -> list[QueryOutcome]:
    # Always offline: hash embeddings, template generation, in-memory persistence.
    runtime = build_dependencies(
        settings.model_copy(update={"use_model_embeddings": False, "use_model_generator": False}),
        store=InMemoryKeyValueStore(),
    )
    outcomes: list[QueryOutcome] = []
    async with runtime:
        for fixture in documents:
            await runtime.rag.initialize_document_context(fixture.id, fixture.text)
        for query in queries:
            started = time.perf_counter()
            hits: list[tuple[str, SearchResult]] = []
            for fixture in documents:
                results = await runtime.rag.get_similar_content(fixture.id, query.question, limit=top_k)
                hits.extend((fixture.id, result) for result in results)
            retrieved = _rank_documents(hits, top_k)
            outcomes.append(
                QueryOutcome(
                    question=query.question,
                    retrieved=retrieved,
                    relevant=list(query.relevant_document_ids),
                    rank=_first_relevant_rank(retrieved, query.relevant_document_ids),
                    latency_ms=(time.perf_counter() - started) * 1000,
                ),
            )
    return outcomes


def run_evaluation(
    dataset_path: Path,
    *,
    top_k: int = 3,
    settings: Settings | None = None,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> EvaluationResult:
    documents, queries = load_dataset(dataset_path)
    outcomes = asyncio.run(_evaluate(documents, queries, top_k=top_k, settings=settings or get_settings()))

    hits = sum(1 for outcome in outcomes if outcome.rank is not None)
    result = EvaluationResult(
        total_queries=len(outcomes),
        hits=hits,
        recall_at_k=hits / len(outcomes) if outcomes else 0.0,
        mean_reciprocal_rank=statistics.fmean(o.reciprocal_rank for o in outcomes) if outcomes else 0.0,
        average_latency_ms=statistics.fmean(o.latency_ms for o in outcomes) if outcomes else 0.0,
        details=[asdict(outcome) for outcome in outcomes],
    )
    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(result), encoding="utf-8")
    return result


def _format_markdown(result: EvaluationResult) -> str:
    lines = [
        "# NoteRAG Retrieval Evaluation",
        "",
        f"- Queries: {result.total_queries} ({result.hits} hits)",
        f"- Recall@k: {result.recall_at_k:.2f}",
        f"- MRR: {result.mean_reciprocal_rank:.2f}",
        f"- Avg latency (ms): {result.average_latency_ms:.2f}",
        "",
        "| Question | Rank | Retrieved | Relevant |",
        "| --- | --- | --- | --- |",
    ]
    for item in result.details:
        rank = item["rank"] or "-"
        retrieved = ", ".join(item["retrieved"]) or "-"
        relevant = ", ".join(item["relevant"]) or "-"
        lines.append(f"| {item['question']} | {rank} | {retrieved} | {relevant} |")
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate NoteRAG retrieval over fixture documents.")
    parser.add_argument(
        "--dataset",
        type=Path,
        default=Path("evaluations/fixtures/sample.json"),
        help="JSON file with documents and queries.",
    )
    parser.add_argument("--top-k", type=int, default=3, help="Documents considered per query")
    parser.add_argument("--json-out", type=Path, default=None, help="Write the JSON report here")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Write a Markdown report here")
    parser.add_argument("--min-recall", type=float, default=None, help="Fail below this recall@k")
    parser.add_argument("--min-mrr", type=float, default=None, help="Fail below this MRR")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    min_recall = settings.evaluation_min_recall if args.min_recall is None else args.min_recall
    min_mrr = settings.evaluation_min_mrr if args.min_mrr is None else args.min_mrr

    result = run_evaluation(
        args.dataset,
        top_k=args.top_k,
        settings=settings,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps(result.to_dict(), indent=2))
    if result.recall_at_k < min_recall or result.mean_reciprocal_rank < min_mrr:
        print(
            f"Below thresholds: recall {result.recall_at_k:.2f} < {min_recall} or "
            f"MRR {result.mean_reciprocal_rank:.2f} < {min_mrr}",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
