from __future__ import annotations

import json
from pathlib import Path

from noterag.eval.cli import main, run_evaluation

SAMPLE = Path(__file__).resolve().parents[1] / "evaluations" / "fixtures" / "sample.json"


def _write_dataset(path: Path) -> Path:
    dataset = {
        "documents": [
            {
                "id": "networks",
                "title": "",
                "content": "Routers forward each packet toward its destination address.",
            },
            {
                "id": "history",
                "title": "",
                "content": "Printed books spread literacy across Europe within a century.",
            },
        ],
        "queries": [
            {
                "question": "Routers forward each packet toward its destination address.",
                "relevant_document_ids": ["networks"],
            },
        ],
    }
    path.write_text(json.dumps(dataset), encoding="utf-8")
    return path


def test_run_evaluation_finds_exact_match(tmp_path):
    dataset = _write_dataset(tmp_path / "dataset.json")
    markdown = tmp_path / "report.md"
    result = run_evaluation(dataset, top_k=2, markdown_out=markdown)
    assert result.total_queries == 1
    assert result.recall_at_k == 1.0
    assert result.mean_reciprocal_rank == 1.0
    assert result.details[0]["retrieved"][0] == "networks"
    assert "Recall@k: 1.00" in markdown.read_text(encoding="utf-8")


def test_main_writes_json_report(tmp_path):
    output = tmp_path / "report.json"
    code = main(["--dataset", str(SAMPLE), "--min-recall", "0", "--min-mrr", "0", "--json-out", str(output)])
    assert code == 0
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["total_queries"] == 3


def test_main_fails_below_thresholds(tmp_path):
    dataset = _write_dataset(tmp_path / "dataset.json")
    assert main(["--dataset", str(dataset), "--min-recall", "1.5"]) == 1
