"""
Answer generation contract
---------------------------
The chat-completion call lives outside the retrieval core.  This module
defines what the core hands to it:

  GenerationRequest -- OpenAI-style message list (system prompt with
                       numbered context blocks, recent history, question)
                       plus the blocks and citations it was built from
  AnswerGenerator   -- anything with `async generate(request) -> str`

Context budget: final_k parent chunks of up to ~4k tokens each, so the
system prompt can reach ~20k tokens at default settings.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from loguru import logger

from course_rag.generation.prompts import CITATION_TEMPLATE, SYSTEM_PROMPT
from course_rag.retrieval.context import format_context_blocks
from course_rag.schemas import ContextBlock, ConversationMessage, SourceCitation


@dataclass
class GenerationRequest:
    """Provider-agnostic input for one answer."""

    messages: list[dict[str, str]]
    context_blocks: list[ContextBlock] = field(default_factory=list)
    sources: list[SourceCitation] = field(default_factory=list)

    @property
    def system_prompt(self) -> str:
        return self.messages[0]["content"] if self.messages else ""


class AnswerGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> str:
        ...


def build_generation_request(
    question: str,
    context_blocks: list[ContextBlock],
    sources: list[SourceCitation],
    history: list[ConversationMessage],
    history_limit: int = 10,
) -> GenerationRequest:
    """
    Assemble the message list: system prompt + last `history_limit` turns + question.
    """
    system_message = SYSTEM_PROMPT.format(context=format_context_blocks(context_blocks))
    recent = history[-history_limit:] if history_limit > 0 else []

    messages = [{"role": "system", "content": system_message}]
    messages.extend({"role": m.role, "content": m.content} for m in recent)
    messages.append({"role": "user", "content": question})

    logger.debug(
        f"[Generation] {len(context_blocks)} blocks | {len(recent)} history turns | "
        f"question={question[:60]!r}"
    )
    return GenerationRequest(messages=messages, context_blocks=context_blocks, sources=sources)


def format_citations(sources: list[SourceCitation]) -> list[str]:
    """One display line per citation, numbered in retrieval order."""
    return [
        CITATION_TEMPLATE.format(
            index=i,
            file_name=source.file_name,
            page=f", p. {source.page_number}" if source.page_number is not None else "",
            similarity=source.similarity,
        )
        for i, source in enumerate(sources, start=1)
    ]
