"""Token estimation for advertised tool schemas."""

from __future__ import annotations

import asyncio
import inspect
import json
import math
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Tuple, Union

from mcpprobe.verifier.schema import ToolDescriptor

# Display thresholds for aggregate tool cost.
LOW_TOKEN_THRESHOLD = 5000
MEDIUM_TOKEN_THRESHOLD = 15000

DEFAULT_FRAMING_ENVELOPE = json.dumps({"tools": []}, indent=2)


class EstimatorError(RuntimeError):
    """Raised when the token estimator fails or returns a nonsense count."""


class TokenEstimator(Protocol):
    """
    Maps text to a token count.

    ``estimate`` may be a plain function or a coroutine. Estimators that are
    not safe to call concurrently set ``reentrant = False``.
    """

    reentrant: bool

    def estimate(self, text: str) -> Union[int, Awaitable[int]]:
        ...


class CharTokenEstimator:
    """Cheap approximation: one token per ``chars_per_token`` characters."""

    reentrant = True

    def __init__(self, chars_per_token: int = 4):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)


def serialize_tool(tool: ToolDescriptor) -> str:
    """Canonical text that gets priced for one tool."""
    return json.dumps(tool.canonical_payload(), indent=2)


def token_level(count: int) -> str:
    """``low``, ``medium`` or ``high``, for coloring."""
    if count <= LOW_TOKEN_THRESHOLD:
        return "low"
    if count <= MEDIUM_TOKEN_THRESHOLD:
        return "medium"
    return "high"


class ToolPricer:
    """
    Runs an estimator over a tool list.

    Holds the lock that serializes non-reentrant estimators across concurrent
    verification attempts. Create it inside the event loop that uses it.
    """

    def __init__(
        self,
        estimator: TokenEstimator,
        framing_envelope: str = DEFAULT_FRAMING_ENVELOPE,
        include_framing: bool = True,
    ):
        self.estimator = estimator
        self.framing_envelope = framing_envelope
        self.include_framing = include_framing
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    async def _call(self, text: str) -> int:
        try:
            count: Any = self.estimator.estimate(text)
            if inspect.isawaitable(count):
                count = await count
        except Exception as exc:
            raise EstimatorError(f"Token estimator failed: {exc}") from exc

        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise EstimatorError(f"Token estimator returned an invalid count: {count!r}")
        return count

    async def estimate(self, text: str) -> int:
        if getattr(self.estimator, "reentrant", True):
            return await self._call(text)
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        async with self._lock:
            return await self._call(text)

    async def price(self, tools: List[ToolDescriptor]) -> Tuple[Dict[str, int], int, int]:
        """
        Price every tool plus the list envelope.

        Returns ``(tool_token_counts, framing_tokens, total_tool_tokens)``.
        """
        counts: Dict[str, int] = {}
        for tool in tools:
            counts[tool.name] = await self.estimate(serialize_tool(tool))

        framing = await self.estimate(self.framing_envelope) if self.include_framing else 0
        return counts, framing, sum(counts.values()) + framing
