"""Drive the generator across buckets and fold the results into one diagram."""

from __future__ import annotations

import time
import warnings
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from .buckets import format_skip_report
from .errors import GenerationError, ValidationWarning
from .generator import Generator
from .mermaid import sanitize, structural_merge, union_fragments, validate
from .models import Artifact, Bucket, BucketResult, ProcessingState, SkipRecord
from .state import StateStore

SUMMARY_DELIMITER = "\n\n--- Additional Analysis ---\n\n"
STRATEGIES = ("deferred", "structural")


def format_duration(seconds: float) -> str:
    """Format elapsed seconds into a compact, human-readable string."""
    if seconds < 0:
        seconds = 0.0
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{int(minutes)}m{secs:04.1f}s"
    hours, minutes = divmod(minutes, 60)
    return f"{int(hours)}h{int(minutes):02d}m{secs:04.1f}s"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Accumulator:
    """Sequential bucket loop with durable state after every step.

    With the ``deferred`` strategy each fragment is queued and reconciled once
    by ``generator.merge_or_repair`` in :meth:`finalize`. The ``structural``
    strategy unions same-kind fragments into the running diagram as they
    arrive and queues only the ones it cannot merge line by line.
    """

    def __init__(
        self,
        generator: Generator,
        store: Optional[StateStore] = None,
        *,
        strategy: str = "deferred",
        checkpoint: bool = True,
        include_summary: bool = True,
        output_format: str = "mermaid",
        log: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {STRATEGIES}, got {strategy!r}")
        if output_format not in ("mermaid", "markdown"):
            raise ValueError(f"unsupported output format {output_format!r}")
        self.generator = generator
        self.store = store
        self.strategy = strategy
        self.checkpoint = checkpoint
        self.include_summary = include_summary
        self.output_format = output_format
        self.log = log
        self.clock = clock

    def _log(self, msg: str) -> None:
        if self.log is not None:
            self.log(msg)

    @staticmethod
    def context_diagram(state: ProcessingState) -> str:
        """The accumulated diagram followed by every fragment still pending."""
        parts = [state.accumulated_diagram.strip()] + [f.strip() for f in state.fragments]
        return "\n\n".join(p for p in parts if p)

    def _start(
        self,
        buckets: Sequence[Bucket],
        prior_summary: str,
        prior_diagram: str,
        resume: Optional[ProcessingState],
    ) -> ProcessingState:
        total_items = sum(len(b.items) for b in buckets)
        if resume is None:
            return ProcessingState(
                cursor=0,
                total_buckets=len(buckets),
                items_processed=0,
                total_items=total_items,
                accumulated_summary=prior_summary,
                accumulated_diagram=prior_diagram,
            )
        if resume.cursor > len(buckets):
            raise ValueError(f"resume cursor {resume.cursor} is past the last bucket ({len(buckets)})")
        self._log(f"[STATE] resuming at bucket {resume.cursor + 1}/{len(buckets)}")
        return replace(
            resume,
            total_buckets=len(buckets),
            total_items=total_items,
            fragments=list(resume.fragments),
        )

    def _fold(self, state: ProcessingState, bucket: Bucket, result: BucketResult) -> None:
        bucket.summary = result.summary
        bucket.diagram_fragment = result.diagram_fragment

        summary = result.summary.strip()
        if summary:
            if state.accumulated_summary:
                state.accumulated_summary += SUMMARY_DELIMITER + summary
            else:
                state.accumulated_summary = summary

        fragment = result.diagram_fragment.strip()
        if not fragment:
            return
        if self.strategy == "structural":
            merged = structural_merge(state.accumulated_diagram, fragment)
            if merged is not None:
                state.accumulated_diagram = merged
                return
            self._log("[MERGE] fragment deferred: kinds differ or nested blocks present")
        state.fragments.append(fragment)

    def _persist(self, state: ProcessingState, buckets: Sequence[Bucket]) -> None:
        if self.store is None:
            return
        self.store.save(state)
        if self.checkpoint:
            self.store.save_checkpoint(state, buckets)

    def process(
        self,
        buckets: Sequence[Bucket],
        prior_summary: str = "",
        prior_diagram: str = "",
        resume: Optional[ProcessingState] = None,
    ) -> ProcessingState:
        """Run the generator over ``buckets`` in order; raises GenerationError on failure."""
        state = self._start(buckets, prior_summary, prior_diagram, resume)
        total = len(buckets)

        for index in range(state.cursor, total):
            bucket = buckets[index]
            self._log(f"[BUCKET] processing {index + 1}/{total} items={len(bucket.items)} weight={bucket.weight}")
            started = time.monotonic()
            try:
                result = self.generator.process_bucket(
                    bucket.items, state.accumulated_summary, self.context_diagram(state)
                )
            except Exception as e:
                raise GenerationError(
                    f"Generator failed on bucket {index + 1}/{total}: {type(e).__name__}: {e}",
                    bucket_index=index,
                ) from e

            self._fold(state, bucket, result)
            state.cursor = index + 1
            state.items_processed += len(bucket.items)
            state.usage_cost += result.usage_cost
            self._persist(state, buckets)
            done = self.progress(state)
            self._log(
                f"[OK] bucket {index + 1}/{total} progress={done['percent']:.1f}% "
                f"items={done['items_processed']}/{done['total_items']} "
                f"pending_fragments={len(state.fragments)} cost={state.usage_cost:.4f}"
            )
            self._log(f"[TIME] bucket {index + 1}/{total} took {format_duration(time.monotonic() - started)}")

        return state

    def _reconcile(self, state: ProcessingState) -> str:
        if not state.fragments:
            return state.accumulated_diagram
        self._log(f"[MERGE] reconciling {len(state.fragments)} fragment(s)")
        try:
            merged = self.generator.merge_or_repair(state.accumulated_diagram, list(state.fragments))
        except Exception as e:
            raise GenerationError(f"Generator failed to merge diagram fragments: {type(e).__name__}: {e}") from e
        if merged.strip():
            return merged
        self._log("[WARN] generator returned no merged diagram, using local union")
        return union_fragments(state.accumulated_diagram, state.fragments)

    def finalize(self, state: ProcessingState, skipped: Sequence[SkipRecord] = ()) -> Artifact:
        """Reconcile pending fragments, sanitize, validate and render the artifact."""
        diagram = sanitize(self._reconcile(state))
        report = validate(diagram)
        for msg in report.warnings:
            self._log(f"[WARN] {msg}")
            warnings.warn(msg, ValidationWarning, stacklevel=2)
        return Artifact(text=self.render(diagram, state, skipped), diagram=diagram, warnings=list(report.warnings))

    def _trailer(self, state: ProcessingState, skipped: Sequence[SkipRecord]) -> List[str]:
        lines: List[str] = []
        if self.include_summary and state.accumulated_summary.strip():
            lines.append("Summary:")
            lines.extend(state.accumulated_summary.strip().split("\n"))
            lines.append("")
        lines.append(
            f"Processed {state.items_processed}/{state.total_items} items "
            f"in {state.cursor}/{state.total_buckets} buckets"
        )
        lines.append(f"Generated: {self.clock().isoformat(timespec='seconds')}")
        lines.extend(format_skip_report(skipped).rstrip("\n").split("\n"))
        return lines

    def render(self, diagram: str, state: ProcessingState, skipped: Sequence[SkipRecord] = ()) -> str:
        trailer = self._trailer(state, skipped)
        body = diagram.rstrip("\n")
        if self.output_format == "markdown":
            comment = "\n".join(line.replace("-->", "-- >") for line in trailer)
            return f"```mermaid\n{body}\n```\n\n<!--\n{comment}\n-->\n"
        comment = "\n".join(f"%% {line}".rstrip() for line in trailer)
        return f"{body}\n\n{comment}\n"

    @staticmethod
    def progress(state: ProcessingState) -> Dict[str, Any]:
        """Completion figures for ``state``; an empty run counts as done."""
        total = state.total_buckets
        percent = 100.0 if total == 0 else min(100.0, state.cursor / total * 100)
        return {
            "percent": percent,
            "current_bucket": min(state.cursor + 1, total),
            "completed_buckets": state.cursor,
            "total_buckets": total,
            "items_processed": state.items_processed,
            "total_items": state.total_items,
        }
