"""Persist and reload processing state and per-bucket checkpoints."""

from __future__ import annotations

import json
import warnings
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import StorageWarning
from .models import Bucket, Item, ProcessingState


def checkpoint_path_for(state_path: Path) -> Path:
    return state_path.with_name(f"{state_path.stem}-checkpoint.json")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class StateStore:
    """JSON-file state store; I/O failures become warnings, never exceptions.

    The checkpoint holds item metadata only. Content is re-read on load through
    the callable handed to ``load_checkpoint``.
    """

    def __init__(self, state_path: str, *, log: Optional[Callable[[str], None]] = None) -> None:
        self.state_path = Path(state_path)
        self.checkpoint_path = checkpoint_path_for(self.state_path)
        self.log = log
        self.warnings: List[str] = []

    def _warn(self, msg: str) -> None:
        self.warnings.append(msg)
        if self.log is not None:
            self.log(f"[WARN] {msg}")
        warnings.warn(msg, StorageWarning, stacklevel=3)

    def _write_json(self, path: Path, data: Dict[str, Any]) -> bool:
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            self._warn(f'Failed to write "{path}": {e}')
            return False
        return True

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self._warn(f'Failed to read "{path}": {e}')
            return None
        if not isinstance(data, dict):
            self._warn(f'State file "{path}" must hold a JSON object')
            return None
        return data

    def save(self, state: ProcessingState) -> bool:
        """Write ``state`` atomically; returns False when the write failed."""
        return self._write_json(self.state_path, state.to_dict())

    def load(self) -> Optional[ProcessingState]:
        """Read the saved state, or None when it is missing or unreadable."""
        data = self._read_json(self.state_path)
        if data is None:
            return None
        try:
            return ProcessingState.from_dict(data)
        except (TypeError, ValueError) as e:
            self._warn(f'Invalid state in "{self.state_path}": {e}')
            return None

    def save_checkpoint(self, state: ProcessingState, buckets: Sequence[Bucket]) -> bool:
        """Snapshot ``state`` and the bucket plan, without item content."""
        records = []
        for bucket in buckets:
            record: Dict[str, Any] = {
                "items": [
                    {"identity": i.path, "size": i.size, "type": i.content_type, "weight": i.weight}
                    for i in bucket.items
                ],
                "weight": bucket.weight,
            }
            if bucket.summary is not None:
                record["summary"] = bucket.summary
            if bucket.diagram_fragment is not None:
                record["diagram_fragment"] = bucket.diagram_fragment
            records.append(record)
        ok = self._write_json(
            self.checkpoint_path,
            {"state": state.to_dict(), "buckets": records, "timestamp": _now_iso()},
        )
        if ok and self.log is not None:
            self.log(f"[STATE] checkpoint {state.cursor}/{state.total_buckets} -> {self.checkpoint_path}")
        return ok

    def load_checkpoint(
        self, read_item: Callable[[str], str]
    ) -> Optional[Tuple[ProcessingState, List[Bucket]]]:
        """Reload the checkpoint, re-reading item content with ``read_item(identity)``."""
        data = self._read_json(self.checkpoint_path)
        if data is None:
            return None
        try:
            state = ProcessingState.from_dict(data.get("state"))
            records = data.get("buckets")
            if not isinstance(records, list):
                raise ValueError("buckets must be a list")
            buckets = [self._restore_bucket(r, read_item) for r in records]
        except (TypeError, ValueError, KeyError) as e:
            self._warn(f'Invalid checkpoint in "{self.checkpoint_path}": {e}')
            return None
        if self.log is not None:
            self.log(f"[STATE] resumed {state.cursor}/{state.total_buckets} from {self.checkpoint_path}")
        return state, buckets

    def _restore_bucket(self, record: Dict[str, Any], read_item: Callable[[str], str]) -> Bucket:
        items: List[Item] = []
        for entry in record["items"]:
            identity = str(entry["identity"])
            try:
                content = read_item(identity)
            except OSError as e:
                self._warn(f'Dropping unreadable item "{identity}": {e}')
                continue
            items.append(
                Item(
                    path=identity,
                    content=content,
                    size=int(entry["size"]),
                    content_type=str(entry["type"]),
                    weight=int(entry["weight"]),
                )
            )
        return Bucket(
            items=items,
            weight=sum(i.weight for i in items),
            summary=record.get("summary"),
            diagram_fragment=record.get("diagram_fragment"),
        )

    def clear(self) -> None:
        """Remove the state and checkpoint files."""
        for path in (self.state_path, self.checkpoint_path):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                self._warn(f'Failed to remove "{path}": {e}')
