from __future__ import annotations

from typing import Any, Dict

from .base import ToolAdapter

GROUNDING_TOOL = "grounding"


class GroundingCheckpoint(ToolAdapter):
    """In-plan stand-in for the grounding validator.

    The composed answer does not exist while the plan runs, so the step only marks that every
    upstream step reached a terminal state. Answer validation happens after composition.
    """

    name = GROUNDING_TOOL
    description = "Marks the point after which the composed answer is validated against evidence."

    async def _run(self, payload: Dict[str, Any]) -> Any:
        steps = payload.get("steps") or []
        return {"status": "ready", "steps": list(steps)}
