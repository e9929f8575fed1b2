"""Discover and read source files as weighted items."""

from __future__ import annotations

import fnmatch
import os
import re
import subprocess
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .config import DEFAULT_IGNORE_DIRS, Config
from .models import Item
from .weights import WeightEstimator

PRIVATE_KEY_BLOCK_RE = re.compile(
    r"-----BEGIN [A-Z0-9 \-]*PRIVATE KEY-----.*?-----END [A-Z0-9 \-]*PRIVATE KEY-----",
    re.DOTALL,
)
AUTH_BEARER_RE = re.compile(r"(?i)(authorization:\s*bearer\s+)([A-Za-z0-9\-._~+/]+=*)")
SIMPLE_SECRET_RE = re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s'\"`]+)")


def redact(text: str) -> str:
    """Redact secrets from file content before it leaves the machine."""
    text = PRIVATE_KEY_BLOCK_RE.sub("[REDACTED_PRIVATE_KEY_BLOCK]", text)
    text = AUTH_BEARER_RE.sub(r"\1[REDACTED]", text)

    def _repl(m: re.Match) -> str:
        return f"{m.group(1)}=[REDACTED]"

    return SIMPLE_SECRET_RE.sub(_repl, text)


def is_probably_binary(p: Path) -> bool:
    """Heuristic to detect binary files by null bytes."""
    try:
        with p.open("rb") as f:
            chunk = f.read(4096)
        return b"\x00" in chunk
    except OSError:
        return True


def relposix(base: Path, p: Path) -> str:
    return p.relative_to(base).as_posix()


class SourceScanner:
    """Turns a directory tree into weighted items and reads them back by path."""

    def __init__(
        self,
        *,
        file_types: Sequence[str],
        exclude_patterns: Sequence[str] = (),
        ignore_dirs: Sequence[str] = DEFAULT_IGNORE_DIRS,
        prefer_git: bool = True,
        redact_secrets: bool = True,
        max_file_bytes: int = 1_000_000,
        estimator: Optional[WeightEstimator] = None,
        density_adjust: bool = True,
        log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.file_types = {t.lower() for t in file_types}
        self.exclude_patterns = list(exclude_patterns)
        self.ignore_dirs = {d.lower() for d in ignore_dirs}
        self.prefer_git = prefer_git
        self.redact_secrets = redact_secrets
        self.max_file_bytes = max_file_bytes
        self.estimator = estimator or WeightEstimator()
        self.density_adjust = density_adjust
        self.log = log

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        estimator: Optional[WeightEstimator] = None,
        log: Optional[Callable[[str], None]] = None,
    ) -> "SourceScanner":
        return cls(
            file_types=config.scan.file_types,
            exclude_patterns=config.scan.exclude_patterns,
            ignore_dirs=config.scan.ignore_dirs,
            prefer_git=config.scan.prefer_git,
            redact_secrets=config.scan.redact_secrets,
            max_file_bytes=config.scan.max_file_bytes,
            estimator=estimator or WeightEstimator(ratio=config.weights.ratio),
            density_adjust=config.weights.density_adjust,
            log=log,
        )

    def _log(self, msg: str) -> None:
        if self.log is not None:
            self.log(msg)

    def is_excluded(self, rel: str) -> bool:
        """Match a root-relative POSIX path against ignore dirs and exclude patterns."""
        parts = rel.split("/")
        if any(seg.lower() in self.ignore_dirs for seg in parts[:-1]):
            return True
        name = parts[-1]
        for pat in self.exclude_patterns:
            if any(ch in pat for ch in "*?["):
                if fnmatch.fnmatch(name, pat) or fnmatch.fnmatch(rel, pat):
                    return True
            elif pat in parts:
                return True
        return False

    def _git_files(self, root: Path) -> Optional[List[Path]]:
        if not self.prefer_git or not (root / ".git").exists():
            return None
        try:
            out = subprocess.check_output(
                ["git", "-C", str(root), "ls-files", "-z"],
                stderr=subprocess.DEVNULL,
            )
        except (OSError, subprocess.CalledProcessError):
            return None
        files: List[Path] = []
        for b in out.split(b"\x00"):
            if not b:
                continue
            p = root / b.decode("utf-8", errors="ignore")
            if p.is_file():
                files.append(p)
        return files

    def _walk(self, root: Path, recursive: bool) -> List[Path]:
        files: List[Path] = []
        for dirpath, dirs, filenames in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d.lower() not in self.ignore_dirs) if recursive else []
            for fn in sorted(filenames):
                p = Path(dirpath) / fn
                if p.is_file():
                    files.append(p)
        return files

    def list_files(self, root: Path, recursive: bool = True) -> List[Path]:
        """Candidate files under ``root``, preferring git-tracked files when possible."""
        files = self._git_files(root)
        if files is None:
            files = self._walk(root, recursive)
        elif not recursive:
            files = [p for p in files if p.parent == root]
        return files

    def discover(self, root: str, specific: Optional[Iterable[str]] = None, recursive: bool = True) -> List[Item]:
        """Return items for the files under ``root`` (or only ``specific`` files)."""
        base = Path(root).expanduser().resolve()
        if not base.is_dir():
            raise RuntimeError(f'Source directory not found: "{base}"')

        if specific:
            candidates: List[Path] = []
            for name in specific:
                p = Path(name).expanduser()
                p = (p if p.is_absolute() else base / p).resolve()
                if not p.is_file():
                    self._log(f"[WARN] specific file not found: {name}")
                    continue
                candidates.append(p)
            explicit = True
        else:
            candidates = self.list_files(base, recursive)
            explicit = False

        items: List[Item] = []
        for p in sorted(candidates):
            try:
                rel = relposix(base, p)
            except ValueError:
                rel = p.name
            if not explicit:
                if p.suffix.lower() not in self.file_types or self.is_excluded(rel):
                    continue
            item = self._item(p, rel)
            if item is not None:
                items.append(item)

        self._log(f"[SCAN] {base} items={len(items)} weight={self.estimator.total_weight(items)}")
        return items

    def _item(self, p: Path, rel: str) -> Optional[Item]:
        try:
            size = p.stat().st_size
        except OSError as e:
            self._log(f"[SKIP] {rel} read_error={type(e).__name__}")
            return None
        if size > self.max_file_bytes:
            self._log(f"[SKIP] {rel} bytes={size} max_file_bytes={self.max_file_bytes}")
            return None
        if is_probably_binary(p):
            self._log(f"[SKIP] {rel} binary")
            return None
        try:
            content = self.read(str(p))
        except OSError as e:
            self._log(f"[SKIP] {rel} read_error={type(e).__name__}")
            return None

        self._log(f"[FILE] {rel} bytes={size}")
        return self.make_item(p.as_posix(), content, size, p.suffix.lower())

    def make_item(self, path: str, content: str, size: int, content_type: str) -> Item:
        """Build an item and assign its weight."""
        item = Item(path=path, content=content, size=size, content_type=content_type, weight=0)
        if self.density_adjust:
            return self.estimator.recalculate(item)
        return Item(
            path=path,
            content=content,
            size=size,
            content_type=content_type,
            weight=self.estimator.estimate(content),
        )

    def read(self, path: str) -> str:
        """Read an item's content; raises OSError when the file is gone."""
        text = Path(path).read_bytes().decode("utf-8", errors="ignore")
        if self.redact_secrets:
            text = redact(text)
        return text
