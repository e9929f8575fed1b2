"""Group weighted items into capacity-bounded buckets."""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from .models import Bucket, BucketStatistics, Item, SkipRecord
from .weights import WeightEstimator

DEFAULT_SOFT_THRESHOLD = 0.9
DEFAULT_HARD_CEILING = 100_000
UNDER_UTILIZED_PCT = 50.0
OVER_UTILIZED_PCT = 100.0


def format_skip_report(records: Sequence[SkipRecord]) -> str:
    if not records:
        return "No items were skipped."
    lines = [f"Skipped {len(records)} item(s):"]
    for rec in records:
        lines.append(f"- {rec.path} ({rec.size} bytes): {rec.reason}")
    return "\n".join(lines) + "\n"


class BucketPlanner:
    """Greedy largest-first packer with a soft target and a hard ceiling.

    ``target_capacity`` is the weight a bucket aims for; a bucket is closed early
    once adding the next item would cross ``soft_threshold * target_capacity``.
    ``hard_ceiling`` bounds both buckets and single items; items above it are
    recorded in the skip list instead of being packed.
    """

    def __init__(
        self,
        target_capacity: int,
        *,
        soft_threshold: float = DEFAULT_SOFT_THRESHOLD,
        hard_ceiling: int = DEFAULT_HARD_CEILING,
        estimator: Optional[WeightEstimator] = None,
        log: Optional[Callable[[str], None]] = None,
    ) -> None:
        if target_capacity <= 0:
            raise ValueError("target_capacity must be positive")
        if not 0 < soft_threshold <= 1:
            raise ValueError("soft_threshold must be in (0, 1]")
        if hard_ceiling <= 0:
            raise ValueError("hard_ceiling must be positive")
        self.target_capacity = target_capacity
        self.soft_threshold = soft_threshold
        self.hard_ceiling = hard_ceiling
        self.estimator = estimator or WeightEstimator()
        self.log = log
        self._skipped: List[SkipRecord] = []

    @property
    def soft_limit(self) -> float:
        return self.soft_threshold * self.target_capacity

    def _weight(self, item: Item) -> int:
        return self.estimator.item_weight(item)

    def _sorted(self, items: Sequence[Item]) -> List[Item]:
        return sorted(items, key=self._weight, reverse=True)

    def create_buckets(self, items: Sequence[Item]) -> List[Bucket]:
        """Pack ``items`` into buckets; oversized items go to the skip list."""
        buckets: List[Bucket] = []
        current: List[Item] = []
        current_weight = 0

        for item in self._sorted(items):
            w = self._weight(item)
            if w > self.hard_ceiling:
                reason = f"Item exceeds hard limit of {self.hard_ceiling} (estimated: {w})"
                self._skipped.append(SkipRecord(path=item.path, size=item.size, weight=w, reason=reason))
                if self.log is not None:
                    self.log(f"[SKIP] {item.path} weight={w} hard_ceiling={self.hard_ceiling}")
                continue

            over_hard = current_weight + w > self.hard_ceiling
            over_soft = current_weight + w > self.soft_limit
            if current and (over_hard or over_soft):
                buckets.append(Bucket(items=current, weight=current_weight))
                current = [item]
                current_weight = w
            else:
                current.append(item)
                current_weight += w

        if current:
            buckets.append(Bucket(items=current, weight=current_weight))

        if self.log is not None:
            for idx, b in enumerate(buckets, start=1):
                self.log(
                    f"[BUCKET] {idx}/{len(buckets)} items={len(b.items)} weight={b.weight} "
                    f"utilization={self.utilization(b):.1f}%"
                )
        return buckets

    def is_bucket_ready(self, bucket: Bucket) -> bool:
        """True once the bucket reaches the soft limit."""
        return bucket.weight >= self.soft_limit

    def is_bucket_at_capacity(self, bucket: Bucket) -> bool:
        return bucket.weight >= self.target_capacity

    def utilization(self, bucket: Bucket) -> float:
        return bucket.weight / self.target_capacity * 100

    def add_item(self, bucket: Bucket, item: Item) -> bool:
        """Add ``item`` when it fits within target capacity; report whether it did."""
        w = self._weight(item)
        if bucket.weight + w > self.target_capacity:
            return False
        bucket.items.append(item)
        bucket.weight += w
        return True

    def remove_item(self, bucket: Bucket, path: str) -> bool:
        """Remove the item stored under ``path``; report whether one was found."""
        for idx, item in enumerate(bucket.items):
            if item.path == path:
                del bucket.items[idx]
                bucket.weight -= self._weight(item)
                return True
        return False

    def split(self, bucket: Bucket) -> List[Bucket]:
        """Re-pack an over-capacity bucket using target capacity as the only limit."""
        if bucket.weight <= self.target_capacity:
            return [bucket]

        out: List[Bucket] = []
        current: List[Item] = []
        current_weight = 0
        for item in self._sorted(bucket.items):
            w = self._weight(item)
            if current and current_weight + w > self.target_capacity:
                out.append(Bucket(items=current, weight=current_weight))
                current = [item]
                current_weight = w
            else:
                current.append(item)
                current_weight += w
        if current:
            out.append(Bucket(items=current, weight=current_weight))
        return out

    def merge(self, a: Bucket, b: Bucket) -> Optional[Bucket]:
        """Return a new combined bucket when it fits, else None. Inputs are untouched."""
        total = a.weight + b.weight
        if total > self.target_capacity:
            return None
        return Bucket(
            items=list(a.items) + list(b.items),
            weight=total,
            summary=a.summary or b.summary,
            diagram_fragment=a.diagram_fragment or b.diagram_fragment,
        )

    def statistics(self, buckets: Sequence[Bucket]) -> BucketStatistics:
        """Aggregate counts, weights and utilization over ``buckets``."""
        if not buckets:
            return BucketStatistics()
        count = len(buckets)
        total_items = sum(len(b.items) for b in buckets)
        total_weight = sum(b.weight for b in buckets)
        return BucketStatistics(
            count=count,
            total_items=total_items,
            total_weight=total_weight,
            avg_weight_per_bucket=total_weight / count,
            avg_items_per_bucket=total_items / count,
            utilization_rate=total_weight / (count * self.target_capacity) * 100,
        )

    def optimize(self, buckets: Sequence[Bucket]) -> List[Bucket]:
        """Split over-full buckets and pairwise merge under-used ones."""
        nominal: List[Bucket] = []
        under: List[Bucket] = []
        over: List[Bucket] = []

        for bucket in buckets:
            pct = self.utilization(bucket)
            if pct < UNDER_UTILIZED_PCT:
                under.append(bucket)
            elif pct > OVER_UTILIZED_PCT:
                over.append(bucket)
            else:
                nominal.append(bucket)

        for bucket in over:
            nominal.extend(self.split(bucket))

        while len(under) > 1:
            first = under.pop(0)
            second = under.pop(0)
            merged = self.merge(first, second)
            if merged is not None:
                under.append(merged)
            else:
                nominal.extend([first, second])

        nominal.extend(under)
        return nominal

    def skipped_items(self) -> List[SkipRecord]:
        return list(self._skipped)

    def skipped_summary(self) -> str:
        return format_skip_report(self._skipped)

    def clear_skipped(self) -> None:
        self._skipped = []
