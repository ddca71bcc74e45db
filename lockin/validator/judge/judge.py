"""Judge: turns a goal and its proof into a bounded adjudication result.

``adjudicate`` never raises. Transport errors, timeouts and unparseable
output all resolve to a conservative rejection, so the request processor
can always cast a vote.
"""

from __future__ import annotations

import asyncio
import time

import bittensor as bt

from lockin.validator.models import AdjudicationResult, Goal, ProofPayload

from .backends import InferenceBackend
from .parsers import DEFAULT_STRATEGIES, ParseStrategy, conservative_reject, parse_response
from .prompt import build_prompt


class Judge:
    """LLM-backed proof adjudicator."""

    def __init__(
        self,
        backend: InferenceBackend,
        timeout: float = 60.0,
        strategies: tuple[ParseStrategy, ...] = DEFAULT_STRATEGIES,
    ):
        self.backend = backend
        self.timeout = timeout
        self.strategies = strategies

    @property
    def model(self) -> str:
        return getattr(self.backend, "model", "unknown")

    async def adjudicate(self, goal: Goal, proof: ProofPayload) -> AdjudicationResult:
        prompt = build_prompt(goal, proof)
        start = time.monotonic()

        try:
            raw = await asyncio.wait_for(self.backend.generate(prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            bt.logging.warning({"judge": {"event": "timeout", "goal_id": goal.id, "model": self.model, "timeout": self.timeout}})
            return self._finish(
                conservative_reject("", note=f"Model call timed out after {self.timeout}s. Defaulting to rejection."),
                start, "",
            )
        except Exception as e:
            bt.logging.warning({"judge": {"event": "backend_error", "goal_id": goal.id, "model": self.model, "error": str(e)}})
            return self._finish(
                conservative_reject("", note=f"Error during model call: {e}. Defaulting to rejection."),
                start, "",
            )

        try:
            result = parse_response(raw, self.strategies)
        except Exception as e:
            bt.logging.warning({"judge": {"event": "parse_error", "goal_id": goal.id, "model": self.model, "error": str(e) or type(e).__name__}})
            result = conservative_reject(raw or "", note="Unparseable model output. Defaulting to rejection.")
        if result.degraded:
            bt.logging.warning({"judge": {"event": "degraded_parse", "goal_id": goal.id, "approved": result.approved, "confidence": result.confidence}})
        return self._finish(result, start, raw or "")

    def _finish(self, result: AdjudicationResult, start: float, raw: str) -> AdjudicationResult:
        elapsed = round(time.monotonic() - start, 3)
        bt.logging.info({"judge": {"event": "adjudicated", "model": self.model, "approved": result.approved, "confidence": result.confidence, "seconds": elapsed}})
        return result.model_copy(update={
            "model": self.model,
            "inference_seconds": elapsed,
            "raw_response": raw,
        })


__all__ = ["Judge"]
