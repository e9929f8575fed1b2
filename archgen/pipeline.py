"""Wire scanning, planning, generation and output into one run."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import httpx

from .accumulator import Accumulator
from .buckets import BucketPlanner
from .config import Config
from .errors import GenerationError, InputError
from .generator import Generator, create_generator
from .mermaid import clean_diagram
from .models import Artifact, Bucket, BucketStatistics, ProcessingState, SkipRecord
from .prompts import PromptSet, bucket_envelope
from .sources import SourceScanner
from .state import StateStore
from .weights import WeightEstimator


@dataclass
class RunOptions:
    directory: str = "."
    specific_files: Optional[List[str]] = None
    recursive: bool = True
    existing_diagram: Optional[str] = None
    resume: bool = False
    dry_run: bool = False
    check_connection: bool = True


@dataclass
class RunResult:
    buckets: List[Bucket]
    skipped: List[SkipRecord]
    statistics: BucketStatistics
    capacity: int
    artifact: Optional[Artifact] = None
    state: Optional[ProcessingState] = None
    output_path: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)


def build_prompts(config: Config) -> PromptSet:
    return PromptSet.build(
        config.prompts,
        colors=config.colors,
        additional_instructions=config.llm.additional_instructions,
    )


def effective_capacity(config: Config, estimator: WeightEstimator, prompts: PromptSet) -> int:
    """Target capacity limited so a bucket plus its prompt envelope fits the model context."""
    target = config.buckets.target_capacity
    llm = config.llm
    if llm.num_ctx <= 0:
        return target
    envelope = estimator.message_weight(prompts.system_for("analysis"), bucket_envelope())
    budget = llm.num_ctx - llm.max_tokens - llm.context_reserve - envelope
    if budget <= 0:
        raise RuntimeError(
            f"llm.num_ctx={llm.num_ctx} leaves no room for content "
            f"(max_tokens={llm.max_tokens} reserve={llm.context_reserve} envelope={envelope})"
        )
    return min(target, budget)


def read_existing_diagram(path: str) -> str:
    p = Path(path).expanduser()
    if not p.is_file():
        raise InputError(f'Existing diagram not found: "{p}"')
    return clean_diagram(p.read_text(encoding="utf-8", errors="ignore"))


def _plan(
    scanner: SourceScanner,
    planner: BucketPlanner,
    options: RunOptions,
    optimize: bool,
) -> Tuple[List[Bucket], List[SkipRecord]]:
    items = scanner.discover(options.directory, options.specific_files, options.recursive)
    if not items:
        raise InputError(f'No files found to process in "{options.directory}"')
    buckets = planner.create_buckets(items)
    if optimize:
        buckets = planner.optimize(buckets)
    skipped = planner.skipped_items()
    if not buckets:
        raise InputError(f"All {len(items)} discovered file(s) were skipped:\n{planner.skipped_summary()}")
    return buckets, skipped


def run(
    config: Config,
    options: RunOptions,
    *,
    generator: Optional[Generator] = None,
    log: Optional[Callable[[str], None]] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> RunResult:
    """Execute one generation run; raises InputError or GenerationError on fatal problems."""

    def _log(msg: str) -> None:
        if log is not None:
            log(msg)

    estimator = WeightEstimator(ratio=config.weights.ratio)
    prompts = build_prompts(config)
    scanner = SourceScanner.from_config(config, estimator=estimator, log=log)
    capacity = effective_capacity(config, estimator, prompts)
    planner = BucketPlanner(
        capacity,
        soft_threshold=config.buckets.soft_threshold,
        hard_ceiling=config.buckets.hard_ceiling,
        estimator=estimator,
        log=log,
    )
    store = StateStore(config.state.path, log=log)
    _log(f"[PLAN] capacity={capacity} soft={config.buckets.soft_threshold} hard={config.buckets.hard_ceiling}")

    resume_state: Optional[ProcessingState] = None
    buckets: Sequence[Bucket] = []
    skipped: List[SkipRecord] = []
    planned = False
    if options.resume:
        loaded = store.load_checkpoint(scanner.read)
        saved = store.load() if loaded is None else None
        if loaded is not None:
            resume_state, restored = loaded
            buckets = [b for b in restored if b.items]
            if len(buckets) != len(restored):
                _log("[WARN] checkpoint had buckets with no readable items, starting fresh")
                resume_state = None
            else:
                # Oversized items never enter a checkpoint; re-plan to rebuild their skip records.
                _, skipped = _plan(scanner, planner, options, config.buckets.optimize)
        elif saved is not None:
            # No checkpoint to restore the plan from; a fresh plan must match the saved counts.
            buckets, skipped = _plan(scanner, planner, options, config.buckets.optimize)
            planned = True
            total_items = sum(len(b.items) for b in buckets)
            if (
                saved.total_buckets == len(buckets)
                and saved.total_items == total_items
                and saved.cursor <= len(buckets)
            ):
                _log(f"[STATE] no checkpoint, resuming from saved state at bucket {saved.cursor + 1}/{len(buckets)}")
                resume_state = saved
            else:
                _log(
                    f"[WARN] saved state covers {saved.total_items} item(s) in {saved.total_buckets} bucket(s) "
                    f"but the current plan has {total_items} in {len(buckets)}, starting fresh"
                )
        else:
            _log("[STATE] no usable checkpoint, starting fresh")

    if resume_state is None and not planned:
        planner.clear_skipped()
        buckets, skipped = _plan(scanner, planner, options, config.buckets.optimize)

    stats = planner.statistics(buckets)
    _log(
        f"[PLAN] buckets={stats.count} items={stats.total_items} weight={stats.total_weight} "
        f"utilization={stats.utilization_rate:.1f}% skipped={len(skipped)}"
    )
    result = RunResult(
        buckets=list(buckets),
        skipped=skipped,
        statistics=stats,
        capacity=capacity,
        warnings=list(store.warnings),
    )
    if options.dry_run:
        return result

    prior_diagram = read_existing_diagram(options.existing_diagram) if options.existing_diagram else ""
    if generator is None:
        generator = create_generator(config.llm, prompts, log=log, transport=transport)
    if options.check_connection and not generator.validate_connection():
        raise GenerationError(
            f'Cannot use model "{config.llm.model}" via provider "{config.llm.provider}" '
            f"at {config.llm.resolved_base_url}"
        )

    accumulator = Accumulator(
        generator,
        store,
        strategy=config.output.strategy,
        checkpoint=config.state.checkpoint,
        include_summary=config.output.include_summary,
        output_format=config.output.format,
        log=log,
    )
    state = accumulator.process(buckets, "", prior_diagram, resume=resume_state)
    artifact = accumulator.finalize(state, skipped)

    out_path = Path(config.output.file_path).expanduser()
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(artifact.text, encoding="utf-8")
    except OSError as e:
        raise RuntimeError(f'Failed to write output "{out_path}": {e}') from e
    _log(f"[OK] wrote {out_path}")

    if config.state.clear_on_success:
        store.clear()

    result.artifact = artifact
    result.state = state
    result.output_path = out_path
    result.warnings = list(artifact.warnings) + list(store.warnings)
    return result
