"""StructuredChat backend: one JSON-schema-constrained call per iteration.

The model receives the composed prompt (instruction plus rendered history)
and must answer ``{"actions": [...], "reasoning": "..."}``. Output that
doesn't parse or validate aborts the invocation with a ``BackendError``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from ..actions import ProposedAction
from ..errors import BackendError
from ..llm import LLMResponse
from ..logging import get_logger, tagged
from ..prompts import get_structured_prompt
from ..tools import STRUCTURED_SCHEMA_TITLE, structured_output_schema
from .base import ChatBackend, Decision, DecisionContext, Progress

logger = get_logger()

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class StructuredDecision(BaseModel):
    """Shape of a structured-output answer. Individual actions stay raw dicts;
    they are normalized by the executor like every other proposal."""
    actions: list[Any]
    reasoning: Optional[str] = None


def parse_structured_output(response: LLMResponse) -> StructuredDecision:
    """Extract and validate the structured answer from a model response.

    Providers that enforce the schema through a forced tool call return it as
    that call's arguments; the others return JSON text, sometimes fenced.
    """
    payload: Any = None
    for tc in response.tool_calls:
        if tc.name == STRUCTURED_SCHEMA_TITLE or len(response.tool_calls) == 1:
            payload = tc.args
            break
    if payload is None:
        text = (response.text or "").strip()
        match = _FENCE_RE.match(text)
        if match:
            text = match.group(1)
        if not text:
            raise ValueError("empty response")
        payload = json.loads(text)
    return StructuredDecision.model_validate(payload)


class StructuredChatBackend(ChatBackend):
    name = "structured"

    async def decide(self, context: DecisionContext, progress: Progress) -> Decision:
        response = await self._call(
            self.adapter.generate,
            self.model,
            context.prompt,
            system_prompt=get_structured_prompt(),
            json_schema=structured_output_schema(),
            max_tokens=self.max_tokens,
        )
        try:
            parsed = parse_structured_output(response)
        except (ValueError, ValidationError) as e:
            logger.debug(f"Unparseable structured output: {response.text[:500]!r}", extra=tagged("structured"))
            raise BackendError(self.name, f"could not parse model output: {e}") from e

        return Decision(
            narrative=(parsed.reasoning or "").strip() or None,
            actions=[ProposedAction(raw=a) for a in parsed.actions],
        )
