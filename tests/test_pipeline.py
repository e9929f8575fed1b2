from __future__ import annotations

from pathlib import Path

import pytest

from archgen.config import from_mapping
from archgen.errors import GenerationError, InputError
from archgen.pipeline import RunOptions, build_prompts, effective_capacity, run
from archgen.weights import WeightEstimator

# 20 one-unit words; .py density rescales that to 23
BODY = "word " * 20


def _config(tmp_path: Path, **sections):
    data = {
        "scan": {"prefer_git": False, "file_types": [".py"]},
        "buckets": {"target_capacity": 30},
        "llm": {"num_ctx": 0},
        "output": {"file_path": str(tmp_path / "out" / "repo.mermaid")},
        "state": {"path": str(tmp_path / "state" / "state.json")},
    }
    for name, values in sections.items():
        data[name] = {**data.get(name, {}), **values}
    return from_mapping(data)


@pytest.fixture
def src(tmp_path: Path) -> Path:
    root = tmp_path / "src"
    root.mkdir()
    for name in ("a.py", "b.py", "c.py"):
        (root / name).write_text(BODY, encoding="utf-8")
    (root / "readme.md").write_text("ignored\n", encoding="utf-8")
    return root


def test_full_run_writes_output_and_clears_state(tmp_path, src, fake_generator) -> None:
    config = _config(tmp_path)
    gen = fake_generator()
    logged = []
    result = run(config, RunOptions(directory=str(src)), generator=gen, log=logged.append)

    assert [b.weight for b in result.buckets] == [23, 23, 23]
    assert [len(c[0]) for c in gen.calls] == [1, 1, 1]
    assert result.output_path == tmp_path / "out" / "repo.mermaid"
    text = result.output_path.read_text(encoding="utf-8")
    assert text.startswith("flowchart TD\n    a --> core\n    b --> core\n    c --> core\n")
    assert "%% Processed 3/3 items in 3/3 buckets" in text
    assert result.state is not None and result.state.is_complete
    assert result.warnings == []
    assert not (tmp_path / "state" / "state.json").exists()
    assert any(line.startswith("[OK] wrote ") for line in logged)


def test_state_kept_when_not_clearing(tmp_path, src, fake_generator) -> None:
    config = _config(tmp_path, state={"clear_on_success": False})
    run(config, RunOptions(directory=str(src)), generator=fake_generator())
    assert (tmp_path / "state" / "state.json").exists()
    assert (tmp_path / "state" / "state-checkpoint.json").exists()


def test_dry_run_makes_no_requests(tmp_path, src, fake_generator) -> None:
    gen = fake_generator(connected=False)
    result = run(_config(tmp_path), RunOptions(directory=str(src), dry_run=True), generator=gen)
    assert result.statistics.count == 3
    assert result.statistics.total_items == 3
    assert result.artifact is None
    assert gen.calls == []
    assert not (tmp_path / "out" / "repo.mermaid").exists()


def test_empty_directory_is_an_input_error(tmp_path, fake_generator) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    with pytest.raises(InputError, match="No files found"):
        run(_config(tmp_path), RunOptions(directory=str(empty)), generator=fake_generator())


def test_everything_skipped_is_an_input_error(tmp_path, src, fake_generator) -> None:
    config = _config(tmp_path, buckets={"hard_ceiling": 1})
    with pytest.raises(InputError, match="All 3 discovered file"):
        run(config, RunOptions(directory=str(src)), generator=fake_generator())


def test_skipped_items_are_reported(tmp_path, src, fake_generator) -> None:
    (src / "big.py").write_text(BODY * 10, encoding="utf-8")
    config = _config(tmp_path, buckets={"hard_ceiling": 100})
    result = run(config, RunOptions(directory=str(src)), generator=fake_generator())
    assert [Path(r.path).name for r in result.skipped] == ["big.py"]
    assert "%% Skipped 1 item(s):" in result.artifact.text


def test_existing_diagram_is_built_upon(tmp_path, src, fake_generator) -> None:
    existing = tmp_path / "old.mermaid"
    existing.write_text("```mermaid\nflowchart TD\n    legacy --> core\n```\n", encoding="utf-8")
    gen = fake_generator()
    result = run(_config(tmp_path), RunOptions(directory=str(src), existing_diagram=str(existing)), generator=gen)
    assert gen.calls[0][2] == "flowchart TD\n    legacy --> core"
    assert "legacy --> core" in result.artifact.diagram


def test_missing_existing_diagram(tmp_path, src, fake_generator) -> None:
    options = RunOptions(directory=str(src), existing_diagram=str(tmp_path / "nope.mermaid"))
    with pytest.raises(InputError, match="Existing diagram not found"):
        run(_config(tmp_path), options, generator=fake_generator())


def test_unreachable_model_is_a_generation_error(tmp_path, src, fake_generator) -> None:
    gen = fake_generator(connected=False)
    with pytest.raises(GenerationError, match="Cannot use model"):
        run(_config(tmp_path), RunOptions(directory=str(src)), generator=gen)
    assert gen.calls == []

    run(_config(tmp_path), RunOptions(directory=str(src), check_connection=False), generator=gen)
    assert len(gen.calls) == 3


def test_resume_continues_after_failure(tmp_path, src, fake_generator) -> None:
    config = _config(tmp_path)
    with pytest.raises(GenerationError) as exc:
        run(config, RunOptions(directory=str(src)), generator=fake_generator(fail_on={"b.py"}))
    assert exc.value.bucket_index == 1

    gen = fake_generator()
    result = run(config, RunOptions(directory=str(src), resume=True), generator=gen)
    assert [Path(c[0][0]).name for c in gen.calls] == ["b.py", "c.py"]
    assert gen.calls[0][1] == "summary of a"
    assert result.state.items_processed == 3

    baseline = run(_config(tmp_path / "fresh"), RunOptions(directory=str(src)), generator=fake_generator())
    assert result.artifact.diagram == baseline.artifact.diagram


def test_resume_without_checkpoint_starts_fresh(tmp_path, src, fake_generator) -> None:
    logged = []
    gen = fake_generator()
    run(_config(tmp_path), RunOptions(directory=str(src), resume=True), generator=gen, log=logged.append)
    assert len(gen.calls) == 3
    assert "[STATE] no usable checkpoint, starting fresh" in logged


def test_resume_from_state_when_checkpoints_are_disabled(tmp_path, src, fake_generator) -> None:
    config = _config(tmp_path, state={"checkpoint": False})
    with pytest.raises(GenerationError):
        run(config, RunOptions(directory=str(src)), generator=fake_generator(fail_on={"b.py"}))
    assert (tmp_path / "state" / "state.json").exists()
    assert not (tmp_path / "state" / "state-checkpoint.json").exists()

    logged = []
    gen = fake_generator()
    result = run(config, RunOptions(directory=str(src), resume=True), generator=gen, log=logged.append)
    assert [Path(c[0][0]).name for c in gen.calls] == ["b.py", "c.py"]
    assert gen.calls[0][1] == "summary of a"
    assert "[STATE] no checkpoint, resuming from saved state at bucket 2/3" in logged
    assert result.state.items_processed == 3


def test_saved_state_for_a_different_plan_is_not_resumed(tmp_path, src, fake_generator) -> None:
    config = _config(tmp_path, state={"checkpoint": False})
    with pytest.raises(GenerationError):
        run(config, RunOptions(directory=str(src)), generator=fake_generator(fail_on={"b.py"}))
    (src / "d.py").write_text(BODY, encoding="utf-8")

    logged = []
    gen = fake_generator()
    run(config, RunOptions(directory=str(src), resume=True), generator=gen, log=logged.append)
    assert len(gen.calls) == 4
    assert any(line.startswith("[WARN] saved state covers 3 item(s) in 3 bucket(s)") for line in logged)
    assert not any(line.startswith("[STATE] no checkpoint, resuming") for line in logged)


def test_effective_capacity(tmp_path) -> None:
    estimator = WeightEstimator()
    config = _config(tmp_path, buckets={"target_capacity": 24_000}, llm={"num_ctx": 0})
    assert effective_capacity(config, estimator, build_prompts(config)) == 24_000

    config = _config(tmp_path, buckets={"target_capacity": 24_000}, llm={"num_ctx": 8192, "max_tokens": 1024})
    capacity = effective_capacity(config, estimator, build_prompts(config))
    assert 0 < capacity < 8192 - 1024 - 512

    config = _config(tmp_path, llm={"num_ctx": 1000, "max_tokens": 1024})
    with pytest.raises(RuntimeError, match="leaves no room"):
        effective_capacity(config, estimator, build_prompts(config))
