"""
Token Budget Trimming

Prunes a conversation so it fits a model's input-token budget before the
request is translated and sent. The first system message is always kept;
after that, the newest messages win.

Token counts are a character heuristic (~4 chars per token over text
segments only), not an exact tokenizer.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence, Union

from .exceptions import LiteLLMError
from .model_provider.types import Message, Role, ToolSchema

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# Anthropic-family backends reject requests close to their stated limit
ANTHROPIC_SAFETY_MARGIN = 0.02

DEFAULT_CONTEXT_LENGTH = 128000
DEFAULT_MAX_OUTPUT_TOKENS = 16000

TokenEstimator = Callable[[Message], int]


class BudgetExceededError(LiteLLMError):
    """The conversation cannot be made to fit the token budget.

    Raised before any network call when the budget is non-positive, when the
    system message alone exceeds it, or when the newest message cannot fit
    even on its own.
    """

    def __init__(self, required: int, budget: int, reason: Optional[str] = None):
        self.required = required
        self.budget = budget
        self.reason = reason

        message = self._format_message()
        super().__init__(message)

    def _format_message(self) -> str:
        lines = ["Message exceeds token limit."]
        if self.reason:
            lines.append(f"Reason: {self.reason}")
        lines.append(f"Required: {self.required} tokens, budget: {self.budget} tokens")
        return "\n".join(lines)


def estimate_text_tokens(text: Optional[str]) -> int:
    """Estimate tokens for a string (ceil of chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """Estimate tokens for one message, counting text segments only."""
    return sum(estimate_text_tokens(p.text) for p in message.parts if p.text)


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def estimate_tool_tokens(tools: Optional[Sequence[Union[ToolSchema, dict]]]) -> int:
    """Rough token estimate for tool definitions by JSON size.

    Args:
        tools: Canonical ToolSchemas or already-translated wire tool dicts.

    Returns:
        Estimated tokens, 0 when there are no tools.
    """
    if not tools:
        return 0
    serializable: List[Any] = []
    for tool in tools:
        if isinstance(tool, ToolSchema):
            serializable.append({
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            })
        else:
            serializable.append(tool)
    try:
        return estimate_text_tokens(json.dumps(serializable))
    except (TypeError, ValueError):
        return 0


def is_anthropic_model(model_id: str, provider: Optional[str] = None) -> bool:
    """Whether a model should get the stricter Anthropic-style budget."""
    if provider and "anthropic" in provider.lower():
        return True
    lowered = model_id.lower()
    return "claude" in lowered or "anthropic" in lowered


@dataclass(frozen=True)
class TokenBudget:
    """Input-token budget for one request.

    Attributes:
        hard_limit: Provider's stated max input tokens.
        tool_definition_reserve: Tokens set aside for tool definitions.
        safety_margin_fraction: Fraction of hard_limit withheld for
            providers that reject requests near their limit (e.g. 0.02).
    """
    hard_limit: int
    tool_definition_reserve: int = 0
    safety_margin_fraction: float = 0.0

    @property
    def limit(self) -> int:
        """Tokens available for messages. May be zero or negative."""
        base = max(1, self.hard_limit)
        if self.safety_margin_fraction > 0:
            base = max(1, math.floor(base * (1 - self.safety_margin_fraction)))
        return base - self.tool_definition_reserve

    @classmethod
    def for_model(
        cls,
        model_id: str,
        max_input_tokens: Optional[int] = None,
        tools: Optional[Sequence[Union[ToolSchema, dict]]] = None,
        provider: Optional[str] = None,
    ) -> 'TokenBudget':
        """Build the budget for ``model_id`` with its tool definitions."""
        margin = ANTHROPIC_SAFETY_MARGIN if is_anthropic_model(model_id, provider) else 0.0
        return cls(
            hard_limit=max_input_tokens or DEFAULT_CONTEXT_LENGTH,
            tool_definition_reserve=estimate_tool_tokens(tools),
            safety_margin_fraction=margin,
        )


def trim_to_budget(
    messages: Sequence[Message],
    budget: TokenBudget,
    estimate: TokenEstimator = estimate_message_tokens,
) -> List[Message]:
    """Trim messages to fit within the budget.

    Keeps the first system message, then walks the rest from newest to
    oldest and stops at the first message that would overflow. When nothing
    but the system message fits, the newest message is kept anyway as long
    as it fits the budget on its own; one long message is better than an
    empty request. Later system messages are trimmed like any other
    message.

    Args:
        messages: Conversation in order.
        budget: Token budget.
        estimate: Per-message token estimator.

    Returns:
        The kept messages, system message first, in original order.

    Raises:
        BudgetExceededError: If the budget is non-positive, the system
            message alone exceeds it, or the newest message cannot fit even
            by itself.
    """
    limit = budget.limit
    if limit <= 0:
        raise BudgetExceededError(
            required=budget.tool_definition_reserve,
            budget=limit,
            reason="no room left after tool definitions",
        )

    system: Optional[Message] = None
    remaining: List[Message] = []
    for msg in messages:
        if system is None and msg.role == Role.SYSTEM:
            system = msg
            continue
        remaining.append(msg)

    used = 0
    if system is not None:
        used = estimate(system)
        if used > limit:
            raise BudgetExceededError(required=used, budget=limit, reason="system message too long")

    kept: List[Message] = []
    for msg in reversed(remaining):
        cost = estimate(msg)
        if used + cost <= limit:
            kept.append(msg)
            used += cost
            continue
        if not kept:
            if cost > limit:
                raise BudgetExceededError(required=cost, budget=limit, reason="newest message too long")
            kept.append(msg)
            used += cost
        break

    kept.reverse()
    if len(kept) < len(remaining):
        logger.debug("Trimmed %d of %d messages to fit %d tokens",
                     len(remaining) - len(kept), len(remaining), limit)
    if system is not None:
        return [system] + kept
    return kept
