from __future__ import annotations

import random

import pytest

from archgen.buckets import BucketPlanner, format_skip_report
from archgen.models import Bucket


def _bucket(items) -> Bucket:
    return Bucket(items=list(items), weight=sum(i.weight for i in items))


def test_greedy_packing_respects_soft_threshold(make_item) -> None:
    planner = BucketPlanner(1000, soft_threshold=0.9, hard_ceiling=100_000)
    items = [make_item(f"f{w}.py", w) for w in (200, 300, 400, 500)]
    buckets = planner.create_buckets(items)
    assert [b.weight for b in buckets] == [900, 500]
    assert [[i.weight for i in b.items] for b in buckets] == [[500, 400], [300, 200]]
    assert planner.skipped_items() == []


def test_item_over_hard_ceiling_is_skipped(make_item) -> None:
    planner = BucketPlanner(1000, hard_ceiling=100_000)
    buckets = planner.create_buckets([make_item("huge.py", 500_000)])
    assert buckets == []
    skipped = planner.skipped_items()
    assert len(skipped) == 1
    assert skipped[0].path == "/src/huge.py"
    assert "exceeds hard limit" in skipped[0].reason
    assert "Item exceeds hard limit of 100000 (estimated: 500000)" == skipped[0].reason


def test_weight_accounting_covers_every_item(make_item) -> None:
    weights = [5, 70, 120_000, 300, 95_000, 1, 40_000, 250_000, 820]
    items = [make_item(f"f{i}.py", w) for i, w in enumerate(weights)]
    planner = BucketPlanner(50_000, soft_threshold=0.8, hard_ceiling=100_000)
    buckets = planner.create_buckets(items)
    skipped = planner.skipped_items()

    bucketed = sum(b.weight for b in buckets)
    assert bucketed + sum(s.weight for s in skipped) == sum(weights)
    paths = [i.path for b in buckets for i in b.items] + [s.path for s in skipped]
    assert sorted(paths) == sorted(i.path for i in items)
    assert all(b.weight <= 100_000 for b in buckets)
    assert all(b.weight == sum(i.weight for i in b.items) for b in buckets)


@pytest.mark.parametrize("seed", range(50))
def test_weight_accounting_holds_for_generated_weights(make_item, seed: int) -> None:
    rng = random.Random(seed)
    hard = rng.choice([500, 5_000, 100_000])
    target = rng.randint(100, 60_000)
    soft = rng.choice([0.5, 0.8, 0.9, 1.0])
    weights = [rng.choice([rng.randint(1, 200), rng.randint(1, 20_000), rng.randint(1, 250_000)])
               for _ in range(rng.randint(0, 40))]
    items = [make_item(f"f{i}.py", w) for i, w in enumerate(weights)]
    planner = BucketPlanner(target, soft_threshold=soft, hard_ceiling=hard)
    buckets = planner.create_buckets(items)
    skipped = planner.skipped_items()

    assert sum(b.weight for b in buckets) + sum(s.weight for s in skipped) == sum(weights)
    paths = [i.path for b in buckets for i in b.items] + [s.path for s in skipped]
    assert sorted(paths) == sorted(i.path for i in items)
    assert all(s.weight > hard for s in skipped)
    assert all(b.items for b in buckets)
    assert all(b.weight <= hard for b in buckets)
    assert all(b.weight == sum(i.weight for i in b.items) for b in buckets)


def test_lone_item_above_target_stays_in_its_own_bucket(make_item) -> None:
    planner = BucketPlanner(1000, hard_ceiling=100_000)
    buckets = planner.create_buckets([make_item("big.py", 5000), make_item("small.py", 10)])
    assert [b.weight for b in buckets] == [5000, 10]


def test_hard_ceiling_closes_bucket_before_soft_limit(make_item) -> None:
    planner = BucketPlanner(1000, soft_threshold=1.0, hard_ceiling=600)
    buckets = planner.create_buckets([make_item("a.py", 400), make_item("b.py", 300)])
    assert [b.weight for b in buckets] == [400, 300]


def test_sort_is_stable_for_equal_weights(make_item) -> None:
    planner = BucketPlanner(1000)
    items = [make_item(n, 100) for n in ("a.py", "b.py", "c.py")]
    buckets = planner.create_buckets(items)
    assert buckets[0].paths() == ["/src/a.py", "/src/b.py", "/src/c.py"]


def test_constructor_validates_arguments() -> None:
    with pytest.raises(ValueError):
        BucketPlanner(0)
    with pytest.raises(ValueError):
        BucketPlanner(1000, soft_threshold=0)
    with pytest.raises(ValueError):
        BucketPlanner(1000, soft_threshold=1.5)
    with pytest.raises(ValueError):
        BucketPlanner(1000, hard_ceiling=0)


def test_readiness_capacity_and_utilization(make_item) -> None:
    planner = BucketPlanner(1000, soft_threshold=0.9)
    assert planner.is_bucket_ready(_bucket([make_item("a.py", 900)]))
    assert not planner.is_bucket_ready(_bucket([make_item("a.py", 899)]))
    assert planner.is_bucket_at_capacity(_bucket([make_item("a.py", 1000)]))
    assert not planner.is_bucket_at_capacity(_bucket([make_item("a.py", 999)]))
    assert planner.utilization(_bucket([make_item("a.py", 250)])) == 25.0


def test_add_item_only_within_capacity(make_item) -> None:
    planner = BucketPlanner(1000)
    bucket = _bucket([make_item("a.py", 900)])
    assert planner.add_item(bucket, make_item("b.py", 100))
    assert bucket.weight == 1000
    assert not planner.add_item(bucket, make_item("c.py", 1))
    assert bucket.weight == 1000
    assert len(bucket.items) == 2


def test_remove_item(make_item) -> None:
    planner = BucketPlanner(1000)
    bucket = _bucket([make_item("a.py", 300), make_item("b.py", 200)])
    assert planner.remove_item(bucket, "/src/a.py")
    assert bucket.weight == 200
    assert bucket.paths() == ["/src/b.py"]
    assert not planner.remove_item(bucket, "/src/missing.py")
    assert bucket.weight == 200


def test_merge_is_pure_and_capacity_bound(make_item) -> None:
    planner = BucketPlanner(1000)
    a = _bucket([make_item("a.py", 400)])
    b = _bucket([make_item("b.py", 600)])
    b.summary = "from b"
    merged = planner.merge(a, b)
    assert merged is not None
    assert merged.weight == 1000
    assert merged.paths() == ["/src/a.py", "/src/b.py"]
    assert merged.summary == "from b"
    assert len(a.items) == 1 and len(b.items) == 1

    c = _bucket([make_item("c.py", 500)])
    assert planner.merge(b, c) is None
    assert b.weight == 600 and c.weight == 500


def test_split_identity_and_repack(make_item) -> None:
    planner = BucketPlanner(1000)
    small = _bucket([make_item("a.py", 800)])
    assert planner.split(small)[0] is small
    assert len(planner.split(small)) == 1

    big = _bucket([make_item("a.py", 300), make_item("b.py", 700), make_item("c.py", 500)])
    parts = planner.split(big)
    assert len(parts) >= 2
    assert all(p.weight <= 1000 for p in parts)
    assert [p.weight for p in parts] == [700, 800]
    assert sum(p.weight for p in parts) == big.weight


def test_statistics(make_item) -> None:
    planner = BucketPlanner(1000)
    empty = planner.statistics([])
    assert empty.count == 0
    assert empty.utilization_rate == 0.0

    stats = planner.statistics([_bucket([make_item("a.py", 900)]), _bucket([make_item("b.py", 300), make_item("c.py", 200)])])
    assert stats.count == 2
    assert stats.total_items == 3
    assert stats.total_weight == 1400
    assert stats.avg_weight_per_bucket == 700
    assert stats.avg_items_per_bucket == 1.5
    assert stats.utilization_rate == pytest.approx(70.0)


def test_optimize_splits_over_and_merges_under(make_item) -> None:
    planner = BucketPlanner(1000)
    buckets = [
        _bucket([make_item("u1.py", 300)]),
        _bucket([make_item("u2.py", 200)]),
        _bucket([make_item("o1.py", 700), make_item("o2.py", 500), make_item("o3.py", 300)]),
        _bucket([make_item("n1.py", 800)]),
    ]
    optimized = planner.optimize(buckets)
    assert sorted(b.weight for b in optimized) == [500, 700, 800, 800]
    assert sum(b.weight for b in optimized) == 2800
    assert all(b.weight <= 1000 for b in optimized)


def test_skip_summary_and_clear(make_item) -> None:
    planner = BucketPlanner(1000, hard_ceiling=5000)
    assert planner.skipped_summary() == "No items were skipped."
    planner.create_buckets([make_item("huge.py", 9000), make_item("ok.py", 10)])
    report = planner.skipped_summary()
    assert report.startswith("Skipped 1 item(s):")
    assert "- /src/huge.py (36000 bytes): Item exceeds hard limit of 5000 (estimated: 9000)" in report
    planner.clear_skipped()
    assert planner.skipped_items() == []
    assert format_skip_report([]) == "No items were skipped."
