"""Prompt construction for proof adjudication.

The prompt is a pure function of (goal, proof) so every validator judging
the same request sends the model the same text.
"""

from __future__ import annotations

from lockin.validator.models import Goal, ProofPayload

SYSTEM_PROMPT = (
    "You are an impartial goal verification validator. "
    "Always respond with a single valid JSON object."
)

RESPONSE_SHAPE = """{
  "approved": true or false,
  "confidence": 0-100,
  "reasoning": "2-3 sentences explaining the decision",
  "manipulation_detected": true or false
}"""

_GUIDELINES = """\
- Judge only the evidence below; do not assume facts that are not shown.
- Screenshots and text can be fabricated. Weigh how specific and checkable the evidence is.
- Time-based goals need timestamps, durations or equivalent evidence.
- Generic statements without concrete evidence should not be approved.
- If the proof is ambiguous, reject it and ask for more evidence.
- Confidence reflects certainty: 100 = certain, 50 = unclear, 0 = no confidence."""


def _image_section(images: tuple[str, ...]) -> str:
    if not images:
        return "NO IMAGES PROVIDED"
    lines = [f"PROOF INCLUDES {len(images)} IMAGE(S), referenced below (not inlined):"]
    lines.extend(f"Image {i}: {ref}" for i, ref in enumerate(images, start=1))
    return "\n".join(lines)


def build_prompt(goal: Goal, proof: ProofPayload) -> str:
    """Build the adjudication prompt for one goal/proof pair."""
    target = f"\nTarget: {goal.target}" if goal.target else ""
    return f"""You are an objective validator in a decentralized accountability network.
Decide whether the submitted proof genuinely demonstrates completion of the stated goal.
The user has money at stake, so be strict but fair.

GOAL INFORMATION:
Title: {goal.title}
Description: {goal.description}
Type: {goal.goal_type}{target}

USER'S SUBMITTED PROOF:
{proof.text}

{_image_section(proof.images)}

VALIDATION TASK:
1. Does the proof genuinely demonstrate completion of the stated goal?
2. Is there any sign of manipulation, fabrication or dishonesty?
3. How confident are you (0-100)?
4. Give clear, specific reasoning for the decision.

GUIDELINES:
{_GUIDELINES}

RESPOND ONLY WITH JSON IN EXACTLY THIS SHAPE:
{RESPONSE_SHAPE}

JSON RESPONSE:"""


__all__ = ["RESPONSE_SHAPE", "SYSTEM_PROMPT", "build_prompt"]
