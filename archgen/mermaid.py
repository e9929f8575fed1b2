"""Sanitize, validate and structurally merge Mermaid diagrams."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

MERMAID_BLOCK_START_RE = re.compile(r"^\s*```mermaid\s*$")
MERMAID_BLOCK_END_RE = re.compile(r"^\s*```\s*$")
CODE_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*$")

DIAGRAM_KEYWORDS = (
    "graph",
    "flowchart",
    "sequenceDiagram",
    "classDiagram",
    "stateDiagram",
    "erDiagram",
    "journey",
    "gantt",
    "pie",
    "gitGraph",
    "mindmap",
    "timeline",
    "C4Context",
    "C4Container",
    "C4Component",
    "C4Dynamic",
    "C4Deployment",
)
DIAGRAM_KEYWORD_RE = re.compile(r"\b(" + "|".join(DIAGRAM_KEYWORDS) + r")", re.IGNORECASE)
_KIND_ALIASES = {"graph": "flowchart", "statediagram-v2": "statediagram"}

EDGE_RE = re.compile(
    r"(-->|---|-\.->|-\.-|==>|===|--[xo]\b|<-->|-->>|->>|<\|--|--\|>|\*--|o--|\.\.>|\.\.\|>|\.\.)"
)

# Connector forms carrying an inline label; each rewrite is strictly shorter.
INLINE_LABEL_RES: Tuple[re.Pattern, ...] = (
    re.compile(r"--\s*\|[^|\n]*\|\s*-->"),
    re.compile(r"-->\s*\|[^|\n]*\|"),
    re.compile(r'(?<![-.=<])--\s*"[^"\n]*"\s*-->'),
    re.compile(r"(?<![-.=<])--\s+(?:(?!-->)[^\n|\"])+?\s+-->"),
    re.compile(r"-->\|"),
    re.compile(r"\|-->"),
)

# Node shapes whose label may need quoting; compound shapes are tried first.
NODE_SHAPES: Tuple[Tuple[str, str], ...] = (
    ("((", "))"),
    ("{{", "}}"),
    ("[(", ")]"),
    ("([", "])"),
    ("[[", "]]"),
    ("[", "]"),
    ("{", "}"),
    ("(", ")"),
)
_LABEL_BODY = r"[^\[\]{}()\n]*"
NODE_LABEL_RE = re.compile(
    r"\b([A-Za-z_][\w-]*)(?:"
    + "|".join(f"({re.escape(o)})({_LABEL_BODY})({re.escape(c)})" for o, c in NODE_SHAPES)
    + ")"
)
ENTITY_OR_RESERVED_RE = re.compile(r"&(?:[A-Za-z]+|#\d+);|[<>=#+&\"]")
LABEL_ENTITIES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    "=": "&equals;",
    "#": "&num;",
    "+": "&plus;",
    '"': "&quot;",
}

# A whole connector token; runs of dashes are never split.
ARROW = r"(?:-{2,}>|={2,}>|-\.+-+>|-{3,}|={3,}|--[xo](?!\w)|--)"
BARE_LINK_RE = re.compile(r"(?<=\S)(\s+)--(\s+)(?=[A-Za-z_])")
REPEATED_ARROW_RE = re.compile(rf"(?<![-=.<]){ARROW}(?:(?:(?<=[>xo])\s*|\s+){ARROW})+(?![-=>.])")
ONLY_ARROW_RE = re.compile(rf"^\s*{ARROW}\s*$")
TRAILING_ARROW_RE = re.compile(rf"^(\s*)(\S.*?)\s*(?<![-=.<])({ARROW})\s*$")
LEADING_ARROW_RE = re.compile(rf"^(\s*)({ARROW})(?![-=>.])\s*(\S.*)$")
LEADING_ID_RE = re.compile(r"^\s*([A-Za-z_]\w*)")
NON_NODE_KEYWORDS = {
    "graph",
    "flowchart",
    "subgraph",
    "end",
    "style",
    "classDef",
    "class",
    "click",
    "linkStyle",
    "direction",
}

BLANK_RUN_RE = re.compile(r"\n{3,}")
MAX_REWRITE_ROUNDS = 32


@dataclass
class ValidationReport:
    valid: bool
    warnings: List[str] = field(default_factory=list)


def _content_lines(text: str) -> List[str]:
    """Lines of a diagram without code fences."""
    return [line for line in text.replace("\r\n", "\n").split("\n") if not CODE_FENCE_RE.match(line)]


def _header_line(text: str) -> str:
    for line in _content_lines(text):
        s = line.strip()
        if s and not s.startswith("%%"):
            return s
    return ""


def diagram_kind(text: str) -> str:
    """Return the normalized diagram kind declared by the first line, or ''."""
    header = _header_line(text)
    if not header:
        return ""
    token = header.split()[0].rstrip(";").lower()
    token = _KIND_ALIASES.get(token, token)
    if token in {kw.lower() for kw in DIAGRAM_KEYWORDS}:
        return token
    return ""


def clean_diagram(text: str) -> str:
    """Strip code fences and make sure the text starts with a diagram keyword."""
    cleaned = "\n".join(_content_lines(text)).strip()
    if not cleaned:
        return ""
    if not any(cleaned.lower().startswith(kw.lower()) for kw in DIAGRAM_KEYWORDS):
        cleaned = f"flowchart TD\n{cleaned}"
    return cleaned


def _has_blocks(text: str) -> bool:
    """Check for nested constructs that line-level merging would break."""
    for line in _content_lines(text):
        s = line.strip()
        if not s:
            continue
        first = s.split()[0]
        if first in ("subgraph", "end") or s.endswith("{") or s == "}":
            return True
    return False


def _body_lines(text: str) -> List[str]:
    out: List[str] = []
    header_seen = False
    for line in _content_lines(text):
        s = line.strip()
        if not s or s.startswith("%%"):
            continue
        if not header_seen:
            header_seen = True
            continue
        out.append(s)
    return out


def structural_merge(prior: str, fragment: str) -> Optional[str]:
    """Union distinct node and edge lines of two same-kind diagrams.

    Returns None when the kinds differ or either side has nested blocks; the
    caller then defers the fragment to the generator's merge/repair step.
    """
    if not prior.strip():
        return fragment.strip()
    if not fragment.strip():
        return prior.strip()
    kind = diagram_kind(prior)
    if not kind or kind != diagram_kind(fragment):
        return None
    if _has_blocks(prior) or _has_blocks(fragment):
        return None

    nodes: List[str] = []
    edges: List[str] = []
    seen: set[str] = set()
    for text in (prior, fragment):
        for line in _body_lines(text):
            if line in seen:
                continue
            seen.add(line)
            if EDGE_RE.search(line):
                edges.append(line)
            else:
                nodes.append(line)

    out = [_header_line(prior)]
    out.extend(f"    {l}" for l in nodes)
    out.extend(f"    {l}" for l in edges)
    return "\n".join(out)


def union_fragments(base: str, fragments: Iterable[str]) -> str:
    """Fold fragments locally; used when the generator returns no merged diagram."""
    result = base.strip()
    for fragment in fragments:
        merged = structural_merge(result, fragment)
        if merged is None:
            merged = result + "\n\n" + fragment.strip()
        result = merged
    return result


def _strip_inline_labels(line: str) -> str:
    """Rewrite labelled connectors to a plain directed connector."""
    while True:
        updated = line
        for rx in INLINE_LABEL_RES:
            updated = rx.sub("-->", updated)
        if updated == line:
            return line
        line = updated


def _escape_label(text: str) -> str:
    """Entity-escape reserved characters, leaving existing entities alone."""
    def _repl(m: re.Match) -> str:
        tok = m.group(0)
        return LABEL_ENTITIES.get(tok, tok)

    return ENTITY_OR_RESERVED_RE.sub(_repl, text)


def _has_reserved(text: str) -> bool:
    return any(len(m.group(0)) == 1 for m in ENTITY_OR_RESERVED_RE.finditer(text))


def _quote_node_labels(line: str) -> str:
    """Quote node labels holding reserved characters and collapse repeated quotes."""
    def _repl(m: re.Match) -> str:
        ident = m.group(1)
        shapes = m.groups()[1:]
        # exactly one shape alternative matched; its groups are the non-None triple
        idx = next(i for i in range(0, len(shapes), 3) if shapes[i] is not None)
        open_c, label, close_c = shapes[idx:idx + 3]
        inner = label.strip()
        if not inner:
            return m.group(0)
        quoted = inner.startswith('"') or inner.endswith('"')
        core = inner.strip('"')
        if not quoted and not _has_reserved(core):
            return m.group(0)
        return f'{ident}{open_c}"{_escape_label(core)}"{close_c}'

    return NODE_LABEL_RE.sub(_repl, line)


def _neighbor_identifier(lines: List[str], idx: int, step: int) -> Optional[str]:
    """Leading node id of the nearest non-empty line in direction ``step``."""
    j = idx + step
    while 0 <= j < len(lines):
        s = lines[j].strip()
        if s and not s.startswith("%%"):
            m = LEADING_ID_RE.match(s)
            if m and m.group(1) not in NON_NODE_KEYWORDS:
                return m.group(1)
            return None
        j += step
    return None


def _complete_connectors(lines: List[str]) -> List[str]:
    """Give dangling connectors an endpoint from the neighbouring line, or drop them."""
    out = list(lines)
    for i, line in enumerate(out):
        s = line.strip()
        if not s or s.startswith("%%"):
            continue
        if ONLY_ARROW_RE.match(line):
            src = _neighbor_identifier(out, i, -1)
            dst = _neighbor_identifier(out, i, 1)
            indent = line[: len(line) - len(line.lstrip())]
            out[i] = f"{indent}{src} --> {dst}" if src and dst else ""
            continue

        m = LEADING_ARROW_RE.match(line)
        if m:
            src = _neighbor_identifier(out, i, -1)
            if src:
                line = f"{m.group(1)}{src} {m.group(2)} {m.group(3)}"
            else:
                line = f"{m.group(1)}{m.group(3)}"

        m = TRAILING_ARROW_RE.match(line)
        if m:
            dst = _neighbor_identifier(out, i, 1)
            if dst:
                line = f"{m.group(1)}{m.group(2)} {m.group(3)} {dst}"
            else:
                line = f"{m.group(1)}{m.group(2)}"
        out[i] = line
    return out


def _flowchart_round(lines: List[str]) -> List[str]:
    """One rewrite of every flowchart line; fence lines inside the body are dropped."""
    fixed: List[str] = []
    for line in lines:
        if CODE_FENCE_RE.match(line):
            fixed.append("")
            continue
        if line.strip().startswith("%%"):
            fixed.append(line)
            continue
        line = _strip_inline_labels(line)
        line = BARE_LINK_RE.sub(r"\1-->\2", line)
        line = REPEATED_ARROW_RE.sub("-->", line)
        fixed.append(_quote_node_labels(line))
    return [l.rstrip() for l in _complete_connectors(fixed)]


def _sanitize_block(lines: List[str]) -> List[str]:
    """Sanitize one diagram body according to its kind.

    Flowchart rewrites repeat until the body stops changing, so a connector left
    dangling by one rewrite is completed or dropped before the body is returned.
    """
    lines = [l.rstrip() for l in lines]
    if diagram_kind("\n".join(lines)) != "flowchart":
        return lines
    for _ in range(MAX_REWRITE_ROUNDS):
        updated = _flowchart_round(lines)
        if updated == lines:
            break
        lines = updated
    return lines


def _normalize_whitespace(lines: List[str]) -> str:
    text = "\n".join(l.rstrip() for l in lines)
    text = BLANK_RUN_RE.sub("\n\n", text)
    text = text.strip("\n")
    return text + "\n" if text else ""


def sanitize(text: str) -> str:
    """Deterministic, idempotent clean-up of Mermaid text before emission."""
    lines = text.replace("\r\n", "\n").split("\n")
    if not any(MERMAID_BLOCK_START_RE.match(l) for l in lines):
        return _normalize_whitespace(_sanitize_block(lines))

    out: List[str] = []
    in_block = False
    block_lines: List[str] = []
    for line in lines:
        if not in_block:
            out.append(line)
            if MERMAID_BLOCK_START_RE.match(line):
                in_block = True
                block_lines = []
            continue
        if MERMAID_BLOCK_END_RE.match(line):
            out.extend(_sanitize_block(block_lines))
            out.append(line)
            in_block = False
            block_lines = []
            continue
        block_lines.append(line)
    if in_block:
        out.extend(_sanitize_block(block_lines))
    return _normalize_whitespace(out)


def validate(text: str) -> ValidationReport:
    """Non-fatal structural checks on a sanitized diagram."""
    warnings: List[str] = []
    if not text.strip():
        return ValidationReport(valid=False, warnings=["Empty diagram content"])
    if not DIAGRAM_KEYWORD_RE.search(text):
        warnings.append("No valid Mermaid diagram type found")
    if text.count("[") != text.count("]"):
        warnings.append("Unbalanced brackets in diagram")
    if text.count("(") != text.count(")"):
        warnings.append("Unbalanced parentheses in diagram")
    return ValidationReport(valid=not warnings, warnings=warnings)
