"""Prompt templates and builders for the generator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence

from .models import Item

ANALYSIS_SYSTEM = """You are an expert software architect and code analyst. Analyze code files and produce a concise architecture summary and a Mermaid diagram of the components and their relationships.

Focus on:
- key components, modules and their interactions
- class relationships, inheritance and composition
- important data flows and dependencies
- the overall system structure rather than implementation details

Diagram rules:
- use valid Mermaid syntax, preferably a flowchart
- keep node ids short identifiers; put readable names in labels
- do not put labels on edges
- quote labels containing special characters"""

SUMMARY_SYSTEM = """You are an expert software architect. Analyze the provided code files and write an architecture summary covering:
1. architecture and design patterns
2. key components and their relationships
3. data flow and dependencies
4. overall system structure

Be concise but thorough. Return plain text only."""

DIAGRAM_SYSTEM = """You are an expert at creating Mermaid diagrams. Create a clear, well-structured Mermaid diagram of the code architecture.

Requirements:
1. include all major components and their relationships
2. use clear, descriptive labels
3. produce valid Mermaid syntax
4. focus on architectural relationships rather than implementation details

Return only the Mermaid diagram code, without Markdown fences or explanations."""

MERGE_SYSTEM = """You merge partial Mermaid diagrams of one codebase into a single valid diagram.

Rules:
- keep every distinct component and relationship from the inputs
- unify nodes that clearly describe the same component under one id
- use a single diagram header
- fix any invalid Mermaid syntax

Return only the merged Mermaid diagram code, without Markdown fences or explanations."""

JSON_REPAIR_SYSTEM = """You repair malformed JSON.

Return exactly one JSON object with the keys "summary" and "mermaid_content", both strings, recovered from INPUT_TEXT. Output JSON only, with no commentary and no code fences."""

DEFAULT_PROMPTS: Dict[str, str] = {
    "analysis_system": ANALYSIS_SYSTEM,
    "summary_system": SUMMARY_SYSTEM,
    "diagram_system": DIAGRAM_SYSTEM,
    "merge_system": MERGE_SYSTEM,
    "json_repair_system": JSON_REPAIR_SYSTEM,
}

LANGUAGES: Dict[str, str] = {
    ".js": "javascript",
    ".ts": "typescript",
    ".jsx": "jsx",
    ".tsx": "tsx",
    ".py": "python",
    ".cs": "csharp",
    ".java": "java",
    ".cpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".hpp": "cpp",
    ".go": "go",
    ".rs": "rust",
    ".php": "php",
    ".rb": "ruby",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".clj": "clojure",
    ".hs": "haskell",
    ".ml": "ocaml",
    ".fs": "fsharp",
    ".vb": "vbnet",
    ".sql": "sql",
    ".sh": "bash",
    ".ps1": "powershell",
    ".bat": "batch",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".xml": "xml",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
    ".less": "less",
    ".vue": "vue",
    ".svelte": "svelte",
    ".astro": "astro",
}

DIAGRAM_KEY_FILES = 5


def language_for(content_type: str) -> str:
    return LANGUAGES.get(content_type.lower(), "text")


@dataclass(frozen=True)
class PromptSet:
    """System prompts plus styling hints, fixed for the lifetime of a generator."""
    analysis_system: str = ANALYSIS_SYSTEM
    summary_system: str = SUMMARY_SYSTEM
    diagram_system: str = DIAGRAM_SYSTEM
    merge_system: str = MERGE_SYSTEM
    json_repair_system: str = JSON_REPAIR_SYSTEM
    colors: Dict[str, str] = field(default_factory=dict)
    additional_instructions: str = ""

    @classmethod
    def build(
        cls,
        overrides: Optional[Mapping[str, str]] = None,
        *,
        colors: Optional[Mapping[str, str]] = None,
        additional_instructions: str = "",
    ) -> "PromptSet":
        merged = dict(DEFAULT_PROMPTS)
        for key, value in (overrides or {}).items():
            if key not in merged:
                raise RuntimeError(f'Unknown prompt "{key}" (expected one of: {", ".join(sorted(merged))})')
            if isinstance(value, str) and value.strip():
                merged[key] = value
        return cls(
            colors=dict(colors or {}),
            additional_instructions=additional_instructions.strip(),
            **merged,
        )

    def _decorate(self, system: str) -> str:
        parts = [system]
        if self.colors:
            lines = ["Styling: declare a classDef per category and assign nodes to it:"]
            for name, color in self.colors.items():
                lines.append(f"- classDef {name} fill:{color}")
            parts.append("\n".join(lines))
        if self.additional_instructions:
            parts.append("Additional instructions:\n" + self.additional_instructions)
        return "\n\n".join(parts)

    def system_for(self, kind: str) -> str:
        """Return the system prompt for ``kind`` with styling hints appended."""
        base = {
            "analysis": self.analysis_system,
            "summary": self.summary_system,
            "diagram": self.diagram_system,
            "merge": self.merge_system,
        }[kind]
        return self._decorate(base)


def format_files(items: Sequence[Item]) -> str:
    parts = []
    for item in items:
        parts.append(
            f"--- File: {item.path} ---\n"
            f"Extension: {item.content_type}\n"
            f"Size: {item.size} bytes\n"
            f"Estimated weight: {item.weight}\n\n"
            f"Content:\n```{language_for(item.content_type)}\n{item.content}\n```\n"
        )
    return "\n".join(parts)


def _context_block(previous_summary: str, previous_diagram: str) -> str:
    if not previous_summary and not previous_diagram:
        return ""
    out = "Previous context:\n"
    if previous_summary:
        out += f"Summary: {previous_summary}\n\n"
    if previous_diagram:
        out += f"Previous Mermaid diagram:\n```mermaid\n{previous_diagram}\n```\n\n"
    out += "Build upon this previous analysis and integrate the new files into the existing architecture.\n\n"
    return out


def bucket_prompt(items: Sequence[Item], previous_summary: str = "", previous_diagram: str = "") -> str:
    """User prompt asking for a JSON reply with a summary and a diagram fragment."""
    return (
        "Analyze the following code files and provide an architecture summary and a Mermaid diagram.\n\n"
        + _context_block(previous_summary, previous_diagram)
        + "Files to analyze:\n\n"
        + format_files(items)
        + "\nRespond with JSON only, using this structure:\n"
        + '{\n  "summary": "architecture summary of these files",\n'
        + '  "mermaid_content": "Mermaid diagram for these files"\n}'
    )


def bucket_envelope(previous_summary: str = "", previous_diagram: str = "") -> str:
    """The fixed part of a bucket prompt, without any file content."""
    return bucket_prompt([], previous_summary, previous_diagram)


def summary_prompt(items: Sequence[Item], previous_summary: str = "") -> str:
    return (
        "Summarize the architecture of the following code files.\n\n"
        + _context_block(previous_summary, "")
        + "Files to analyze:\n\n"
        + format_files(items)
    )


def diagram_prompt(summary: str, items: Sequence[Item], previous_diagram: str = "") -> str:
    out = f"Based on the following summary and code files, create a Mermaid diagram:\n\nSummary: {summary}\n\n"
    if previous_diagram:
        out += f"Previous diagram to build upon:\n```mermaid\n{previous_diagram}\n```\n\n"
    out += "Key files to consider:\n"
    for item in items[:DIAGRAM_KEY_FILES]:
        out += f"- {item.path} ({item.content_type})\n"
    return out


def merge_prompt(existing_diagram: str, fragments: Sequence[str]) -> str:
    parts = []
    if existing_diagram.strip():
        parts.append(f"EXISTING DIAGRAM:\n```mermaid\n{existing_diagram.strip()}\n```")
    for idx, fragment in enumerate(fragments, start=1):
        parts.append(f"FRAGMENT {idx}:\n```mermaid\n{fragment.strip()}\n```")
    return "Merge the following Mermaid diagrams into one diagram.\n\n" + "\n\n".join(parts)


def repair_prompt(raw: str) -> str:
    return "INPUT_TEXT:\n" + raw
