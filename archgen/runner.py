"""CLI runner for architecture diagram generation."""

from __future__ import annotations

import argparse
import sys
import time
import warnings
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .accumulator import format_duration
from .config import STRATEGIES, Config, load_config
from .errors import GenerationError, InputError, StorageWarning, ValidationWarning
from .pipeline import RunOptions, RunResult, run

VERBOSE_TAGS = ("[FILE]", "[LLM]", "[SKIP]", "[BUCKET]", "[STATE] checkpoint")


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="archgen",
        description="Generate a Mermaid architecture diagram of a source tree with an LLM",
    )
    ap.add_argument("directory", nargs="?", default=".", help="Directory to analyze")
    ap.add_argument("-c", "--config", default=None, help="Path to archgen.yaml")
    ap.add_argument("-o", "--output", default=None, help="Output file path")
    ap.add_argument("-t", "--token-limit", type=int, default=None, help="Target capacity per bucket")
    ap.add_argument("-f", "--file-types", default="", help="Comma-separated list of file extensions")
    ap.add_argument("-s", "--specific-files", default="", help="Comma-separated list of files to process")
    ap.add_argument("--no-recursive", dest="recursive", action="store_false", help="Only scan the top directory")
    ap.add_argument("-e", "--existing-diagram", default=None, help="Existing Mermaid file to build upon")
    ap.add_argument("-p", "--provider", default=None, help="LLM provider (ollama, openai)")
    ap.add_argument("-m", "--model", default=None, help="LLM model name")
    ap.add_argument("--base-url", default=None, help="LLM API base URL")
    ap.add_argument("--strategy", choices=STRATEGIES, default=None, help="How diagram fragments are folded")
    ap.add_argument("--resume", action="store_true", help="Continue from the last checkpoint")
    ap.add_argument("-d", "--dry-run", action="store_true", help="Plan buckets without calling the LLM")
    ap.add_argument("--skip-connection-check", action="store_true", help="Do not probe the LLM before running")
    ap.add_argument("-v", "--verbose", action="store_true", help="Log per-file and per-request details")
    return ap


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Return ``config`` with command line values applied on top."""
    llm = config.llm
    if args.provider:
        llm = replace(llm, provider=args.provider)
    if args.model:
        llm = replace(llm, model=args.model)
    if args.base_url:
        llm = replace(llm, base_url=args.base_url)

    buckets = config.buckets
    if args.token_limit is not None:
        if args.token_limit <= 0:
            raise RuntimeError("--token-limit must be positive")
        buckets = replace(buckets, target_capacity=args.token_limit)

    scan = config.scan
    if args.file_types:
        types = [t if t.startswith(".") else f".{t}" for t in _split_csv(args.file_types)]
        scan = replace(scan, file_types=[t.lower() for t in types])

    output = config.output
    if args.output:
        output = replace(output, file_path=args.output)
    if args.strategy:
        output = replace(output, strategy=args.strategy)

    return replace(config, llm=llm, buckets=buckets, scan=scan, output=output)


def _print_plan(result: RunResult, log) -> None:
    stats = result.statistics
    log("Bucket statistics:")
    log(f"  Buckets: {stats.count}")
    log(f"  Items: {stats.total_items}")
    log(f"  Total weight: {stats.total_weight}")
    log(f"  Average weight per bucket: {round(stats.avg_weight_per_bucket)}")
    log(f"  Average items per bucket: {stats.avg_items_per_bucket:.1f}")
    log(f"  Utilization: {stats.utilization_rate:.1f}% of capacity {result.capacity}")
    for idx, bucket in enumerate(result.buckets, start=1):
        log(f"  [{idx}] items={len(bucket.items)} weight={bucket.weight}")
    skipped = [f"{r.path} ({r.size} bytes): {r.reason}" for r in result.skipped]
    if skipped:
        log(f"Skipped {len(skipped)} item(s):")
        for line in skipped:
            log(f"  - {line}")
    else:
        log("No items were skipped.")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    # Both are reported through the run log instead.
    warnings.simplefilter("ignore", StorageWarning)
    warnings.simplefilter("ignore", ValidationWarning)

    run_log_path: Optional[Path] = None

    def _append_log(line: str) -> None:
        if run_log_path is None:
            return
        run_log_path.parent.mkdir(parents=True, exist_ok=True)
        with run_log_path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def _log(msg: str, *, stderr: bool = False) -> None:
        stream = sys.stderr if stderr else sys.stdout
        print(msg, file=stream)
        _append_log(msg)

    def _component_log(msg: str) -> None:
        if msg.startswith(("[WARN]", "[ERROR]")):
            _log(msg, stderr=True)
        elif args.verbose or not msg.startswith(VERBOSE_TAGS):
            _log(msg)
        else:
            _append_log(msg)

    try:
        config = apply_overrides(load_config(args.config), args)
    except RuntimeError as e:
        _log(f"[ERROR] {e}", stderr=True)
        return 2

    run_log_path = Path(config.output.file_path).expanduser().resolve().parent / "run.log"
    _append_log(f"[RUN] start {time.strftime('%Y-%m-%d %H:%M:%S')}")
    if config.source is not None:
        _log(f"[CONFIG] {config.source}")
    _log(f"[RUN] provider={config.llm.provider} model={config.llm.model} strategy={config.output.strategy}")

    options = RunOptions(
        directory=args.directory,
        specific_files=_split_csv(args.specific_files) or None,
        recursive=args.recursive,
        existing_diagram=args.existing_diagram,
        resume=args.resume,
        dry_run=args.dry_run,
        check_connection=not args.skip_connection_check,
    )

    started = time.monotonic()
    try:
        result = run(config, options, log=_component_log)
    except InputError as e:
        _log(f"[ERROR] {e}", stderr=True)
        return 2
    except GenerationError as e:
        _log(f"[ERROR] {e}", stderr=True)
        if e.bucket_index is not None and config.state.checkpoint:
            _log("[HINT] rerun with --resume to continue from the last completed bucket", stderr=True)
        return 1
    except RuntimeError as e:
        _log(f"[ERROR] {e}", stderr=True)
        return 2

    if options.dry_run:
        _print_plan(result, _log)
        _log("[OK] dry run, no LLM requests were made")
        return 0

    state = result.state
    if state is not None:
        _log(f"[OK] processed {state.items_processed}/{state.total_items} items in {state.cursor} bucket(s)")
        if state.usage_cost:
            _log(f"[COST] estimated ${state.usage_cost:.4f}")
    if result.skipped:
        _log(f"[WARN] {len(result.skipped)} item(s) skipped, see the report at the end of the output", stderr=True)
    if result.warnings:
        _log(f"[WARN] finished with {len(result.warnings)} warning(s)", stderr=True)
    _log(f"[TIME] total={format_duration(time.monotonic() - started)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
