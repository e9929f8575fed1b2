"""Core records shared by the planner, accumulator and state store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Item:
    """A discovered source file with its estimated capacity cost."""
    path: str
    content: str
    size: int
    content_type: str
    weight: int


@dataclass
class Bucket:
    """A capacity-bounded group of items sent to the generator together."""
    items: List[Item] = field(default_factory=list)
    weight: int = 0
    summary: Optional[str] = None
    diagram_fragment: Optional[str] = None

    def paths(self) -> List[str]:
        return [i.path for i in self.items]


@dataclass(frozen=True)
class SkipRecord:
    """An item left out of every bucket because it alone exceeds the hard ceiling."""
    path: str
    size: int
    weight: int
    reason: str


@dataclass
class ProcessingState:
    """Running result of the accumulation loop; cursor counts completed buckets."""
    cursor: int = 0
    total_buckets: int = 0
    items_processed: int = 0
    total_items: int = 0
    accumulated_summary: str = ""
    accumulated_diagram: str = ""
    fragments: List[str] = field(default_factory=list)
    usage_cost: float = 0.0

    @property
    def is_complete(self) -> bool:
        return self.cursor >= self.total_buckets

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingState":
        if not isinstance(data, dict):
            raise ValueError("state record must be a mapping")
        fragments = data.get("fragments") or []
        if not isinstance(fragments, list):
            raise ValueError("state.fragments must be a list")
        return cls(
            cursor=int(data.get("cursor", 0)),
            total_buckets=int(data.get("total_buckets", 0)),
            items_processed=int(data.get("items_processed", 0)),
            total_items=int(data.get("total_items", 0)),
            accumulated_summary=str(data.get("accumulated_summary") or ""),
            accumulated_diagram=str(data.get("accumulated_diagram") or ""),
            fragments=[str(f) for f in fragments],
            usage_cost=float(data.get("usage_cost", 0.0)),
        )


@dataclass(frozen=True)
class BucketResult:
    """What the generator returns for one bucket."""
    summary: str
    diagram_fragment: str
    usage_cost: float = 0.0


@dataclass(frozen=True)
class BucketStatistics:
    count: int = 0
    total_items: int = 0
    total_weight: int = 0
    avg_weight_per_bucket: float = 0.0
    avg_items_per_bucket: float = 0.0
    utilization_rate: float = 0.0


@dataclass
class Artifact:
    """The emitted diagram text plus non-fatal validation warnings."""
    text: str
    diagram: str
    warnings: List[str] = field(default_factory=list)
