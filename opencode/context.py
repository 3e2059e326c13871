"""Token-bounded conversation window.

History and snippets are two independent recency queues sharing one token
budget. Eviction drops the single oldest history entry first, then the
oldest snippet, one item at a time, until the running total fits.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable

import tiktoken

from .errors import TokenBudgetError
from .messages import Message

logger = logging.getLogger(__name__)

MAX_CONTEXT_TOKENS = 4000

_encoder = tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count tokens with the cl100k_base encoding (GPT-4 family)."""
    return len(_encoder.encode(text, disallowed_special=()))


def format_snippet(source: str, content: str) -> str:
    return f"Content from {source}:\n```\n{content}\n```"


@dataclass(frozen=True)
class ContextSnippet:
    source: str
    content: str
    token_count: int

    def to_message(self) -> Message:
        return Message.system(format_snippet(self.source, self.content))


class ConversationWindow:
    """Ordered history plus context snippets under a hard token budget."""

    def __init__(
        self,
        max_tokens: int = MAX_CONTEXT_TOKENS,
        tokenizer: Callable[[str], int] | None = None,
    ):
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self._max_tokens = max_tokens
        self._count = tokenizer or count_tokens
        self._history: deque[tuple[Message, int]] = deque()
        self._snippets: deque[ContextSnippet] = deque()
        self._total = 0

    # -- Read-only views ---------------------------------------------------

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @property
    def total_token_count(self) -> int:
        return self._total

    @property
    def history(self) -> list[Message]:
        return [msg for msg, _ in self._history]

    @property
    def snippets(self) -> list[ContextSnippet]:
        return list(self._snippets)

    def __len__(self) -> int:
        return len(self._history) + len(self._snippets)

    # -- Mutation ----------------------------------------------------------

    def add_message(self, message: Message) -> None:
        """Append a message and evict old entries until the budget holds.

        Raises TokenBudgetError if nothing is left to evict and the window
        is still over budget.
        """
        tokens = self._count(message.content) if message.content else 0
        self._history.append((message, tokens))
        self._total += tokens
        logger.debug(
            "added %s message (%d tokens, total %d)",
            message.role.value,
            tokens,
            self._total,
        )
        self.ensure_token_limit()

    def add_snippet(self, source: str, content: str) -> None:
        """Append reference material. Its cost is that of the formatted text."""
        tokens = self._count(format_snippet(source, content))
        self._snippets.append(ContextSnippet(source, content, tokens))
        self._total += tokens
        logger.debug(
            "added snippet from %s (%d tokens, total %d)", source, tokens, self._total
        )
        self.ensure_token_limit()

    def clear_history(self) -> None:
        self._history.clear()
        self._recompute()

    def clear_snippets(self) -> None:
        self._snippets.clear()
        self._recompute()

    def _recompute(self) -> None:
        self._total = sum(t for _, t in self._history) + sum(
            s.token_count for s in self._snippets
        )

    def ensure_token_limit(self) -> None:
        while self._total > self._max_tokens:
            if self._history:
                msg, tokens = self._history.popleft()
                self._total -= tokens
                logger.debug(
                    "evicted oldest %s message (%d tokens)", msg.role.value, tokens
                )
            elif self._snippets:
                snippet = self._snippets.popleft()
                self._total -= snippet.token_count
                logger.debug(
                    "evicted oldest snippet from %s (%d tokens)",
                    snippet.source,
                    snippet.token_count,
                )
            else:
                raise TokenBudgetError(
                    f"Cannot reduce tokens below limit: {self._total} tokens "
                    f"exceed the budget of {self._max_tokens} with nothing left to evict"
                )

    # -- Rendering ---------------------------------------------------------

    def construct_messages(self) -> list[Message]:
        """Render snippets (as system messages) then history, oldest first.

        Items are re-costed newest-first so the most recent content survives
        if the running total ever disagrees with a fresh count.
        """
        self.ensure_token_limit()

        used = 0
        snippet_msgs: list[Message] = []
        for snippet in reversed(self._snippets):
            msg = snippet.to_message()
            tokens = self._count(msg.content)
            if used + tokens > self._max_tokens:
                logger.warning(
                    "skipping snippet from %s during construction: token limit",
                    snippet.source,
                )
                continue
            snippet_msgs.append(msg)
            used += tokens

        history_msgs: list[Message] = []
        for msg, tokens in reversed(self._history):
            if used + tokens > self._max_tokens:
                logger.warning(
                    "dropping %s message and everything older: token limit",
                    msg.role.value,
                )
                break
            history_msgs.append(msg)
            used += tokens

        snippet_msgs.reverse()
        history_msgs.reverse()
        logger.debug(
            "constructed %d messages (%d tokens)",
            len(snippet_msgs) + len(history_msgs),
            used,
        )
        return snippet_msgs + history_msgs

    def stats(self) -> dict:
        return {
            "history": len(self._history),
            "snippets": len(self._snippets),
            "tokens": self._total,
            "max_tokens": self._max_tokens,
        }
