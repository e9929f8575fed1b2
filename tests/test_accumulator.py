from __future__ import annotations

from datetime import datetime, timezone

import pytest

from archgen.accumulator import SUMMARY_DELIMITER, Accumulator, format_duration
from archgen.errors import GenerationError, ValidationWarning
from archgen.models import Bucket, ProcessingState, SkipRecord
from archgen.state import StateStore


def _fixed_clock() -> datetime:
    return datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.fixture
def buckets(make_item):
    def _build():
        return [
            Bucket(items=[make_item("a.py", 30)], weight=30),
            Bucket(items=[make_item("b.py", 20), make_item("b2.py", 5)], weight=25),
            Bucket(items=[make_item("c.py", 10)], weight=10),
        ]

    return _build


def test_deferred_strategy_queues_fragments(fake_generator, buckets) -> None:
    gen = fake_generator()
    acc = Accumulator(gen)
    state = acc.process(buckets(), prior_diagram="flowchart TD\n    legacy --> core")

    assert state.cursor == 3
    assert state.is_complete
    assert state.items_processed == 4
    assert state.total_items == 4
    assert state.accumulated_diagram == "flowchart TD\n    legacy --> core"
    assert state.fragments == [
        "flowchart TD\n    a --> core",
        "flowchart TD\n    b --> core",
        "flowchart TD\n    c --> core",
    ]
    assert state.usage_cost == pytest.approx(0.75)
    # second call sees the prior diagram plus the first pending fragment
    assert gen.calls[1][2] == "flowchart TD\n    legacy --> core\n\nflowchart TD\n    a --> core"


def test_summaries_are_joined_with_delimiter(fake_generator, buckets) -> None:
    gen = fake_generator(summaries={"b": ""})
    state = Accumulator(gen).process(buckets(), prior_summary="prior")
    assert state.accumulated_summary == SUMMARY_DELIMITER.join(["prior", "summary of a", "summary of c"])
    assert gen.calls[1][1] == "prior" + SUMMARY_DELIMITER + "summary of a"


def test_results_are_attached_to_buckets(fake_generator, buckets) -> None:
    plan = buckets()
    Accumulator(fake_generator()).process(plan)
    assert plan[1].summary == "summary of b, b2"
    assert plan[1].diagram_fragment == "flowchart TD\n    b --> core"


def test_structural_strategy_merges_same_kind(fake_generator, buckets) -> None:
    gen = fake_generator(fragments={"c": "sequenceDiagram\n    c->>core: call"})
    state = Accumulator(gen, strategy="structural").process(buckets())
    assert state.accumulated_diagram == "flowchart TD\n    a --> core\n    b --> core"
    assert state.fragments == ["sequenceDiagram\n    c->>core: call"]


def test_generator_failure_aborts_with_bucket_index(fake_generator, buckets) -> None:
    gen = fake_generator(fail_on={"b.py"})
    with pytest.raises(GenerationError) as exc:
        Accumulator(gen).process(buckets())
    assert exc.value.bucket_index == 1
    assert "bucket 2/3" in str(exc.value)
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert len(gen.calls) == 2


def test_resume_matches_uninterrupted_run(tmp_path, fake_generator, buckets) -> None:
    store = StateStore(str(tmp_path / "state.json"))
    with pytest.raises(GenerationError):
        Accumulator(fake_generator(fail_on={"b.py"}), store).process(buckets(), prior_summary="p")

    contents = {i.path: i.content for b in buckets() for i in b.items}
    loaded = store.load_checkpoint(contents.__getitem__)
    assert loaded is not None
    saved, restored = loaded
    assert saved.cursor == 1

    resumed_gen = fake_generator()
    resumed = Accumulator(resumed_gen, store).process(restored, resume=saved)
    baseline = Accumulator(fake_generator(), None).process(buckets(), prior_summary="p")

    assert resumed == baseline
    assert [c[0] for c in resumed_gen.calls] == [["/src/b.py", "/src/b2.py"], ["/src/c.py"]]


def test_resume_cursor_past_end_is_rejected(fake_generator, buckets) -> None:
    with pytest.raises(ValueError):
        Accumulator(fake_generator()).process(buckets(), resume=ProcessingState(cursor=9))


def test_every_step_is_persisted(tmp_path, fake_generator, buckets) -> None:
    store = StateStore(str(tmp_path / "state.json"))
    Accumulator(fake_generator(), store).process(buckets())
    assert store.load().cursor == 3
    assert store.checkpoint_path.exists()


def test_finalize_merges_pending_fragments(fake_generator, buckets) -> None:
    gen = fake_generator()
    acc = Accumulator(gen, clock=_fixed_clock)
    state = acc.process(buckets())
    artifact = acc.finalize(state)

    assert len(gen.merge_calls) == 1
    assert gen.merge_calls[0][1] == state.fragments
    assert artifact.diagram == "flowchart TD\n    a --> core\n    b --> core\n    c --> core\n"
    assert artifact.warnings == []
    assert artifact.text.startswith(artifact.diagram)


def test_finalize_falls_back_to_local_union(fake_generator, buckets) -> None:
    logged = []
    acc = Accumulator(fake_generator(merged="  "), log=logged.append)
    artifact = acc.finalize(acc.process(buckets()))
    assert "c --> core" in artifact.diagram
    assert any("local union" in line for line in logged)


def test_finalize_reports_validation_warnings(fake_generator, buckets) -> None:
    acc = Accumulator(fake_generator(merged="flowchart TD\n  A[x --> B"))
    state = acc.process(buckets())
    with pytest.warns(ValidationWarning):
        artifact = acc.finalize(state)
    assert artifact.warnings == ["Unbalanced brackets in diagram"]
    assert "A[x --> B" in artifact.text


def test_trailer_for_mermaid_output(fake_generator, buckets) -> None:
    acc = Accumulator(fake_generator(), clock=_fixed_clock)
    state = acc.process(buckets())
    skipped = [SkipRecord(path="/src/huge.py", size=2_000_000, weight=500_000, reason="Item exceeds hard limit of 100000 (estimated: 500000)")]
    text = acc.finalize(state, skipped).text

    assert "%% Summary:" in text
    assert "%% summary of a" in text
    assert "%% Processed 4/4 items in 3/3 buckets" in text
    assert "%% Generated: 2026-01-02T03:04:05+00:00" in text
    assert "%% Skipped 1 item(s):" in text
    assert "%% - /src/huge.py (2000000 bytes): Item exceeds hard limit of 100000 (estimated: 500000)" in text
    assert text.endswith("\n")


def test_trailer_without_summary(fake_generator, buckets) -> None:
    acc = Accumulator(fake_generator(), include_summary=False, clock=_fixed_clock)
    text = acc.finalize(acc.process(buckets())).text
    assert "Summary:" not in text
    assert "%% No items were skipped." in text


def test_markdown_output_fences_diagram(fake_generator, buckets) -> None:
    acc = Accumulator(fake_generator(), output_format="markdown", clock=_fixed_clock)
    artifact = acc.finalize(acc.process(buckets()))
    assert artifact.text.startswith("```mermaid\nflowchart TD\n")
    assert "\n```\n\n<!--\n" in artifact.text
    assert artifact.text.endswith("\n-->\n")
    assert artifact.text.count("-->\n") == 1 + artifact.diagram.count("-->\n")


def test_progress(fake_generator) -> None:
    progress = Accumulator.progress(ProcessingState(cursor=1, total_buckets=4, items_processed=3, total_items=9))
    assert progress["percent"] == 25.0
    assert progress["current_bucket"] == 2
    assert progress["completed_buckets"] == 1
    assert Accumulator.progress(ProcessingState())["percent"] == 100.0


def test_invalid_options(fake_generator) -> None:
    with pytest.raises(ValueError):
        Accumulator(fake_generator(), strategy="magic")
    with pytest.raises(ValueError):
        Accumulator(fake_generator(), output_format="svg")


def test_format_duration() -> None:
    assert format_duration(0.25) == "250ms"
    assert format_duration(3.5) == "3.50s"
    assert format_duration(75) == "1m15.0s"
    assert format_duration(3725) == "1h02m05.0s"


def test_bucket_log_reports_progress(fake_generator, buckets) -> None:
    logged = []
    Accumulator(fake_generator(), log=logged.append).process(buckets())
    ok_lines = [line for line in logged if line.startswith("[OK] bucket")]
    assert [line.split(" pending_fragments")[0] for line in ok_lines] == [
        "[OK] bucket 1/3 progress=33.3% items=1/4",
        "[OK] bucket 2/3 progress=66.7% items=3/4",
        "[OK] bucket 3/3 progress=100.0% items=4/4",
    ]
