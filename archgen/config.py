"""Load and validate the YAML configuration."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

CONFIG_ENV_VAR = "ARCHGEN_CONFIG_PATH"
DEFAULT_CONFIG_NAME = "archgen.yaml"

DEFAULT_FILE_TYPES = [
    ".cs", ".py", ".js", ".ts", ".jsx", ".tsx", ".java", ".go", ".rs",
    ".cpp", ".h", ".hpp", ".c", ".php", ".rb", ".swift", ".kt", ".scala",
    ".clj", ".hs", ".ml", ".fs", ".vb", ".sql", ".sh", ".ps1", ".bat",
    ".yaml", ".yml", ".json", ".xml", ".html", ".css", ".scss", ".less",
    ".vue", ".svelte", ".astro",
]
DEFAULT_EXCLUDE_PATTERNS = ["*.log", "*.tmp", "*.temp", "*.min.js", "*.lock"]
DEFAULT_IGNORE_DIRS = [
    "node_modules", ".git", "dist", "build", "target", "bin", "obj",
    ".next", ".nuxt", ".cache", ".parcel-cache", "coverage", ".nyc_output",
    ".vscode", ".idea", "__pycache__", ".venv", "venv", ".tox", ".mypy_cache",
    ".pytest_cache",
]
DEFAULT_COLORS = {
    "tests": "#e17055",
    "config": "#fdcb6e",
    "core": "#0984e3",
    "llm": "#55efc4",
    "output": "#6c5ce7",
}

PROVIDER_BASE_URLS = {
    "ollama": "http://localhost:11434",
    "openai": "https://api.openai.com/v1",
}
OUTPUT_FORMATS = ("mermaid", "markdown")
STRATEGIES = ("deferred", "structural")
SCALAR_NAMES = {"bool": "a boolean", "int": "an integer", "float": "a number", "str": "a string"}

DEFAULTS: Dict[str, Any] = {
    "scan": {
        "file_types": DEFAULT_FILE_TYPES,
        "exclude_patterns": DEFAULT_EXCLUDE_PATTERNS,
        "ignore_dirs": DEFAULT_IGNORE_DIRS,
        "prefer_git": True,
        "redact_secrets": True,
        "max_file_bytes": 1_000_000,
    },
    "weights": {
        "ratio": 4.0,
        "density_adjust": True,
    },
    "buckets": {
        "target_capacity": 24_000,
        "soft_threshold": 0.9,
        "hard_ceiling": 100_000,
        "optimize": False,
    },
    "llm": {
        "provider": "ollama",
        "model": "qwen2.5-coder:7b-instruct",
        "base_url": "",
        "api_key_env": "OPENAI_API_KEY",
        "temperature": 0.1,
        "max_tokens": 4096,
        "timeout_s": 900,
        "retries": 2,
        "num_ctx": 32768,
        "context_reserve": 512,
        "additional_instructions": "",
    },
    "prompts": {},
    "colors": DEFAULT_COLORS,
    "output": {
        "file_path": "repo.mermaid",
        "format": "mermaid",
        "include_summary": True,
        "strategy": "deferred",
    },
    "state": {
        "path": ".archgen/state.json",
        "checkpoint": True,
        "clear_on_success": True,
    },
}


@dataclass(frozen=True)
class ScanConfig:
    file_types: List[str]
    exclude_patterns: List[str]
    ignore_dirs: List[str]
    prefer_git: bool = True
    redact_secrets: bool = True
    max_file_bytes: int = 1_000_000


@dataclass(frozen=True)
class WeightsConfig:
    ratio: float = 4.0
    density_adjust: bool = True


@dataclass(frozen=True)
class BucketsConfig:
    target_capacity: int = 24_000
    soft_threshold: float = 0.9
    hard_ceiling: int = 100_000
    optimize: bool = False


@dataclass(frozen=True)
class LLMConfig:
    provider: str = "ollama"
    model: str = "qwen2.5-coder:7b-instruct"
    base_url: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.1
    max_tokens: int = 4096
    timeout_s: float = 900
    retries: int = 2
    num_ctx: int = 32768
    context_reserve: int = 512
    additional_instructions: str = ""

    @property
    def resolved_base_url(self) -> str:
        base = self.base_url or PROVIDER_BASE_URLS.get(self.provider, "")
        return base.rstrip("/")


@dataclass(frozen=True)
class OutputConfig:
    file_path: str = "repo.mermaid"
    format: str = "mermaid"
    include_summary: bool = True
    strategy: str = "deferred"


@dataclass(frozen=True)
class StateConfig:
    path: str = ".archgen/state.json"
    checkpoint: bool = True
    clear_on_success: bool = True


@dataclass(frozen=True)
class Config:
    scan: ScanConfig
    weights: WeightsConfig
    buckets: BucketsConfig
    llm: LLMConfig
    output: OutputConfig
    state: StateConfig
    prompts: Dict[str, str] = field(default_factory=dict)
    colors: Dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``base`` updated recursively with ``override``; lists are replaced."""
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read the YAML config from disk and validate its top-level type."""
    if not path.exists():
        raise RuntimeError(f'Config file not found: "{path}"')
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise RuntimeError(f'Failed to read config "{path}": {e}') from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RuntimeError(f'Config file "{path}" must be a YAML mapping at top level')
    return data


def resolve_config_path(explicit: Optional[str] = None) -> Optional[Path]:
    """Resolve the config path from the argument, env override or working directory."""
    if explicit:
        return Path(explicit).expanduser().resolve()
    override = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser().resolve()
    local = Path.cwd() / DEFAULT_CONFIG_NAME
    if local.is_file():
        return local
    return None


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return the mapping stored under ``name``; a missing section is empty."""
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise RuntimeError(f'Config section "{name}" must be a mapping')
    return value


def _str_list(section: str, key: str, value: Any) -> List[str]:
    """Validate a list of strings, dropping blank entries."""
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RuntimeError(f'Config value "{section}.{key}" must be a list of strings')
    return [v.strip() for v in value if v.strip()]


def _scalar_ok(kind: str, value: Any) -> bool:
    # bool is a subclass of int, so it is never accepted as a number
    if kind == "bool":
        return isinstance(value, bool)
    if kind == "int":
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == "float":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == "str":
        return isinstance(value, str)
    return True


def _build(section: str, cls: type, values: Dict[str, Any]) -> Any:
    """Instantiate a section dataclass, rejecting unknown keys and mistyped scalars."""
    try:
        built = cls(**values)
    except TypeError as e:
        raise RuntimeError(f'Config section "{section}" is invalid: {e}') from e
    for f in fields(cls):
        value = getattr(built, f.name)
        if not _scalar_ok(str(f.type), value):
            raise RuntimeError(
                f'Config value "{section}.{f.name}" must be {SCALAR_NAMES[str(f.type)]} (got {value!r})'
            )
    return built


def _check_range(name: str, ok: bool, expected: str) -> None:
    if not ok:
        raise RuntimeError(f'Config value "{name}" must be {expected}')


def from_mapping(data: Dict[str, Any], source: Optional[Path] = None) -> Config:
    """Validate a merged mapping and build the typed config."""
    merged = deep_merge(DEFAULTS, data)

    scan = dict(_section(merged, "scan"))
    for key in ("file_types", "exclude_patterns", "ignore_dirs"):
        scan[key] = _str_list("scan", key, scan.get(key, []))
    scan["file_types"] = [t if t.startswith(".") else f".{t}" for t in scan["file_types"]]
    scan["file_types"] = [t.lower() for t in scan["file_types"]]

    llm = _build("llm", LLMConfig, _section(merged, "llm"))
    if llm.provider not in PROVIDER_BASE_URLS:
        raise RuntimeError(
            f'Config value "llm.provider" must be one of: {", ".join(sorted(PROVIDER_BASE_URLS))} '
            f'(got "{llm.provider}")'
        )
    output = _build("output", OutputConfig, _section(merged, "output"))
    if output.format not in OUTPUT_FORMATS:
        raise RuntimeError(f'Config value "output.format" must be one of: {", ".join(OUTPUT_FORMATS)}')
    if output.strategy not in STRATEGIES:
        raise RuntimeError(f'Config value "output.strategy" must be one of: {", ".join(STRATEGIES)}')

    prompts = _section(merged, "prompts")
    colors = _section(merged, "colors")
    for name, value in list(prompts.items()) + list(colors.items()):
        if not isinstance(value, str):
            raise RuntimeError(f'Config value "{name}" must be a string')

    buckets = _build("buckets", BucketsConfig, _section(merged, "buckets"))
    if buckets.target_capacity <= 0 or buckets.hard_ceiling <= 0:
        raise RuntimeError('Config values "buckets.target_capacity" and "buckets.hard_ceiling" must be positive')
    if not 0 < buckets.soft_threshold <= 1:
        raise RuntimeError('Config value "buckets.soft_threshold" must be in (0, 1]')

    weights = _build("weights", WeightsConfig, _section(merged, "weights"))
    _check_range("weights.ratio", weights.ratio > 0, "positive")
    scan_config = _build("scan", ScanConfig, scan)
    _check_range("scan.max_file_bytes", scan_config.max_file_bytes > 0, "positive")
    _check_range("llm.temperature", llm.temperature >= 0, "zero or more")
    _check_range("llm.max_tokens", llm.max_tokens > 0, "positive")
    _check_range("llm.timeout_s", llm.timeout_s > 0, "positive")
    for key in ("retries", "num_ctx", "context_reserve"):
        _check_range(f"llm.{key}", getattr(llm, key) >= 0, "zero or more")

    return Config(
        scan=scan_config,
        weights=weights,
        buckets=buckets,
        llm=llm,
        output=output,
        state=_build("state", StateConfig, _section(merged, "state")),
        prompts=dict(prompts),
        colors=dict(colors),
        source=source,
    )


def load_config(path: Optional[str] = None) -> Config:
    """Load the config file (if any) over the built-in defaults."""
    resolved = resolve_config_path(path)
    data = _read_yaml(resolved) if resolved is not None else {}
    return from_mapping(data, source=resolved)
