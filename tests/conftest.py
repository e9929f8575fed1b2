from __future__ import annotations

from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from archgen.mermaid import union_fragments
from archgen.models import BucketResult, Item


class FakeGenerator:
    """Deterministic generator whose replies depend only on the bucket's items."""

    def __init__(
        self,
        *,
        fail_on: Iterable[str] = (),
        merged: Optional[str] = None,
        fragments: Optional[Dict[str, str]] = None,
        summaries: Optional[Dict[str, str]] = None,
        connected: bool = True,
    ) -> None:
        self.fail_on = set(fail_on)
        self.merged = merged
        self.fragments = dict(fragments or {})
        self.summaries = dict(summaries or {})
        self.connected = connected
        self.calls: List[Tuple[List[str], str, str]] = []
        self.merge_calls: List[Tuple[str, List[str]]] = []

    @staticmethod
    def _stems(items: Sequence[Item]) -> List[str]:
        return [PurePosixPath(i.path).stem for i in items]

    def process_bucket(self, items, accumulated_summary, accumulated_diagram) -> BucketResult:
        self.calls.append(([i.path for i in items], accumulated_summary, accumulated_diagram))
        names = {PurePosixPath(i.path).name for i in items}
        if names & self.fail_on:
            raise RuntimeError("backend unavailable")
        stems = self._stems(items)
        key = stems[0]
        summary = self.summaries.get(key, f"summary of {', '.join(stems)}")
        fragment = self.fragments.get(key, f"flowchart TD\n    {key} --> core")
        return BucketResult(summary=summary, diagram_fragment=fragment, usage_cost=0.25)

    def generate_summary(self, items, previous_summary=""):
        return f"summary of {', '.join(self._stems(items))}"

    def generate_diagram(self, summary, items, previous_diagram=""):
        return "flowchart TD\n    " + "\n    ".join(f"{s} --> core" for s in self._stems(items))

    def merge_or_repair(self, existing_diagram, fragments):
        self.merge_calls.append((existing_diagram, list(fragments)))
        if self.merged is not None:
            return self.merged
        return union_fragments(existing_diagram, fragments)

    def validate_connection(self) -> bool:
        return self.connected

    def estimate_cost(self, input_units, output_units) -> float:
        return 0.0


@pytest.fixture
def fake_generator():
    return FakeGenerator


@pytest.fixture
def make_item():
    def _make(name: str, weight: int, *, content: str = "x", content_type: str = ".py") -> Item:
        return Item(
            path=f"/src/{name}",
            content=content,
            size=weight * 4,
            content_type=content_type,
            weight=weight,
        )

    return _make
