"""Generator capability set with interchangeable LLM provider backends."""

from __future__ import annotations

import os
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from .config import LLMConfig
from .json_tools import extract_labelled_text, parse_or_repair_json
from .llm_client import ChatReply, ollama_chat, ollama_models, openai_chat, openai_models
from .mermaid import clean_diagram
from .models import BucketResult, Item
from .prompts import (
    PromptSet,
    bucket_prompt,
    diagram_prompt,
    merge_prompt,
    repair_prompt,
    summary_prompt,
)

# Upper bound on reply tokens per request kind; the configured max_tokens caps these.
REPLY_LIMITS = {
    "bucket": 4000,
    "summary": 2000,
    "diagram": 3000,
    "merge": 4000,
    "repair": 4000,
}


class Generator(Protocol):
    def process_bucket(
        self, items: Sequence[Item], accumulated_summary: str, accumulated_diagram: str
    ) -> BucketResult: ...

    def generate_summary(self, items: Sequence[Item], previous_summary: str = "") -> str: ...

    def generate_diagram(self, summary: str, items: Sequence[Item], previous_diagram: str = "") -> str: ...

    def merge_or_repair(self, existing_diagram: str, fragments: Sequence[str]) -> str: ...

    def validate_connection(self) -> bool: ...

    def estimate_cost(self, input_units: int, output_units: int) -> float: ...


class OllamaBackend:
    name = "ollama"

    def __init__(self, settings: LLMConfig, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.settings = settings
        self.base_url = settings.resolved_base_url
        self.transport = transport

    def chat(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int,
        temperature: float,
        log: Optional[Callable[[str], None]] = None,
        label: str = "request",
    ) -> ChatReply:
        return ollama_chat(
            self.base_url,
            self.settings.model,
            system,
            user,
            temperature=temperature,
            timeout_s=self.settings.timeout_s,
            num_predict=max_tokens,
            num_ctx=self.settings.num_ctx,
            retries=self.settings.retries,
            transport=self.transport,
            log=log,
            label=label,
        )

    def models(self) -> List[str]:
        return ollama_models(self.base_url, timeout_s=self.settings.timeout_s, transport=self.transport)

    def has_model(self, available: Sequence[str]) -> bool:
        model = self.settings.model
        if ":" in model:
            return model in available
        return any(name == model or name.split(":", 1)[0] == model for name in available)

    def pricing(self) -> Tuple[float, float]:
        return (0.0, 0.0)


class OpenAIBackend:
    name = "openai"

    # USD per 1K tokens (input, output).
    PRICING: Dict[str, Tuple[float, float]] = {
        "gpt-4": (0.03, 0.06),
        "gpt-4-turbo": (0.01, 0.03),
        "gpt-3.5-turbo": (0.001, 0.002),
        "gpt-3.5-turbo-16k": (0.003, 0.004),
    }
    DEFAULT_MODEL_PRICING = "gpt-4"

    def __init__(self, settings: LLMConfig, transport: Optional[httpx.BaseTransport] = None) -> None:
        api_key = os.environ.get(settings.api_key_env, "").strip()
        if not api_key:
            raise RuntimeError(f'Environment variable "{settings.api_key_env}" is not set (required by provider "openai")')
        self.settings = settings
        self.base_url = settings.resolved_base_url
        self.api_key = api_key
        self.transport = transport

    def chat(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int,
        temperature: float,
        log: Optional[Callable[[str], None]] = None,
        label: str = "request",
    ) -> ChatReply:
        return openai_chat(
            self.base_url,
            self.settings.model,
            system,
            user,
            api_key=self.api_key,
            temperature=temperature,
            timeout_s=self.settings.timeout_s,
            max_tokens=max_tokens,
            retries=self.settings.retries,
            transport=self.transport,
            log=log,
            label=label,
        )

    def models(self) -> List[str]:
        return openai_models(
            self.base_url,
            api_key=self.api_key,
            timeout_s=self.settings.timeout_s,
            transport=self.transport,
        )

    def has_model(self, available: Sequence[str]) -> bool:
        return self.settings.model in available

    def pricing(self) -> Tuple[float, float]:
        return self.PRICING.get(self.settings.model, self.PRICING[self.DEFAULT_MODEL_PRICING])


PROVIDERS = {
    OllamaBackend.name: OllamaBackend,
    OpenAIBackend.name: OpenAIBackend,
}


class ChatGenerator:
    """Generator over a chat backend; every capability is one or two chat requests."""

    def __init__(
        self,
        backend,
        prompts: PromptSet,
        settings: LLMConfig,
        *,
        log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.backend = backend
        self.prompts = prompts
        self.settings = settings
        self.log = log

    @property
    def provider(self) -> str:
        return self.backend.name

    def _limit(self, kind: str) -> int:
        return min(self.settings.max_tokens, REPLY_LIMITS[kind])

    def _chat(self, kind: str, system: str, user: str, *, temperature: Optional[float] = None) -> ChatReply:
        return self.backend.chat(
            system,
            user,
            max_tokens=self._limit(kind),
            temperature=self.settings.temperature if temperature is None else temperature,
            log=self.log,
            label=kind,
        )

    def _cost(self, reply: ChatReply) -> float:
        return self.estimate_cost(reply.prompt_tokens, reply.completion_tokens)

    def process_bucket(
        self, items: Sequence[Item], accumulated_summary: str, accumulated_diagram: str
    ) -> BucketResult:
        reply = self._chat(
            "bucket",
            self.prompts.system_for("analysis"),
            bucket_prompt(items, accumulated_summary, accumulated_diagram),
        )
        cost = self._cost(reply)
        repair_costs: List[float] = []

        def _repair(raw: str) -> str:
            fixed = self._chat("repair", self.prompts.json_repair_system, repair_prompt(raw), temperature=0.0)
            repair_costs.append(self._cost(fixed))
            return fixed.text

        parsed = parse_or_repair_json(reply.text, _repair, log=self.log)
        if parsed is None:
            if self.log is not None:
                self.log("[LLM] falling back to labelled-text extraction")
            parsed = extract_labelled_text(reply.text)

        summary = str(parsed.get("summary") or "").strip()
        fragment = clean_diagram(str(parsed.get("mermaid_content") or ""))
        return BucketResult(summary=summary, diagram_fragment=fragment, usage_cost=cost + sum(repair_costs))

    def generate_summary(self, items: Sequence[Item], previous_summary: str = "") -> str:
        reply = self._chat("summary", self.prompts.system_for("summary"), summary_prompt(items, previous_summary))
        return reply.text.strip()

    def generate_diagram(self, summary: str, items: Sequence[Item], previous_diagram: str = "") -> str:
        reply = self._chat(
            "diagram",
            self.prompts.system_for("diagram"),
            diagram_prompt(summary, items, previous_diagram),
        )
        return clean_diagram(reply.text)

    def merge_or_repair(self, existing_diagram: str, fragments: Sequence[str]) -> str:
        """Ask the model to reconcile ``existing_diagram`` with pending fragments."""
        pending = [f for f in fragments if f.strip()]
        if not pending and not existing_diagram.strip():
            return ""
        reply = self._chat("merge", self.prompts.system_for("merge"), merge_prompt(existing_diagram, pending))
        return clean_diagram(reply.text)

    def validate_connection(self) -> bool:
        try:
            available = self.backend.models()
        except (httpx.HTTPError, ValueError) as e:
            if self.log is not None:
                self.log(f"[WARN] connection check failed: {type(e).__name__}: {e}")
            return False
        return self.backend.has_model(available)

    def estimate_cost(self, input_units: int, output_units: int) -> float:
        price_in, price_out = self.backend.pricing()
        return input_units / 1000 * price_in + output_units / 1000 * price_out


def create_generator(
    settings: LLMConfig,
    prompts: PromptSet,
    *,
    log: Optional[Callable[[str], None]] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> ChatGenerator:
    """Build a generator for the provider named in ``settings``."""
    backend_cls = PROVIDERS.get(settings.provider)
    if backend_cls is None:
        raise RuntimeError(
            f'Unknown LLM provider "{settings.provider}" (expected one of: {", ".join(sorted(PROVIDERS))})'
        )
    return ChatGenerator(backend_cls(settings, transport), prompts, settings, log=log)
