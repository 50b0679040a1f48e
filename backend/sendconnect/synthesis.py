from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from sendconnect.config import Settings
from sendconnect.errors import ConfigurationError, SynthesisError
from sendconnect.models import Passage

logger = logging.getLogger("sendconnect.synthesis")

UNKNOWN_PAGE = "Unknown"
EXCERPT_SEPARATOR = "\n\n---\n\n"

SYSTEM_PROMPT = """You are an expert assistant helping SEND specialists understand JCQ regulations and guidance documents.

Your role is to:
- Provide accurate, authoritative information from the source material
- Always cite specific page numbers when making claims
- Use clear, professional language appropriate for education professionals
- If information is ambiguous or incomplete, acknowledge this
- Quote directly from the source when it strengthens your answer

Format citations as: (Page X) immediately after the relevant information."""


def page_label_or_unknown(passage: Passage) -> int | str:
    return passage.page_label if passage.page_label is not None else UNKNOWN_PAGE


def format_context(passages: Sequence[Passage]) -> str:
    blocks = [
        f"[Excerpt {index} - Page {page_label_or_unknown(passage)}]\n{passage.text.strip()}"
        for index, passage in enumerate(passages, start=1)
    ]
    return EXCERPT_SEPARATOR.join(blocks)


def build_user_prompt(*, topic_title: str, query: str, context: str) -> str:
    return (
        f'Based on the following excerpts from "{topic_title}", please answer this question:\n\n'
        f"**Question**: {query}\n\n"
        "**Source Excerpts**:\n\n"
        f"{context}\n\n"
        "Please provide a clear, well-structured answer with specific page citations."
    )


class AnswerSynthesizer:
    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._settings.anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is not configured.")
        try:
            import anthropic
        except ImportError as exc:
            raise ConfigurationError("The anthropic package is required for answer synthesis.") from exc
        self._client = anthropic.Anthropic(api_key=self._settings.anthropic_api_key)
        return self._client

    def synthesize(self, *, topic_title: str, query: str, passages: Sequence[Passage]) -> str:
        if not passages:
            raise SynthesisError("Answer synthesis requires at least one retrieved passage.")

        user_prompt = build_user_prompt(topic_title=topic_title, query=query, context=format_context(passages))
        client = self._get_client()
        model = self._settings.anthropic_model
        started = time.perf_counter()
        try:
            message = client.messages.create(
                model=model,
                max_tokens=self._settings.anthropic_max_tokens,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except Exception as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.warning(
                "synthesis_failed",
                extra={"event": "synthesis_failed", "model": model, "duration_ms": duration_ms, "error": str(exc)},
            )
            raise SynthesisError(f"Answer synthesis failed for model '{model}': {exc}") from exc

        answer = self._extract_text(message)
        logger.info(
            "synthesis_completed",
            extra={
                "event": "synthesis_completed",
                "model": model,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "passages": len(passages),
                "user_prompt_chars": len(user_prompt),
                "answer_chars": len(answer),
            },
        )
        return answer

    @staticmethod
    def _extract_text(message: Any) -> str:
        content = getattr(message, "content", None) or []
        if not content:
            return ""
        first = content[0]
        if getattr(first, "type", None) == "text":
            return str(getattr(first, "text", "") or "")
        return ""
