import logging
from typing import Optional, Sequence

from decision_recovery.services.llm import ConfigMissing, GenerationClient, GenerationFailed

logger = logging.getLogger("uvicorn.error")

DECISION_SYSTEM_PROMPT = (
    "You are a supportive, clear-thinking guide.\n"
    "Your goal is to synthesize the user's reflections into ONE clear, simple, low-risk action "
    "they can take right now.\n"
    "Rules:\n"
    "- Output ONLY the action sentence.\n"
    "- No explanations, no preamble.\n"
    "- Keep it under 20 words.\n"
    "- Start with a verb."
)

UNCONFIGURED_DECISION = "Take a 5-minute walk without your phone."
FALLBACK_DECISION = "If nothing changed for 5 years, what would you regret not doing now?"


def build_decision_prompt(answers: Sequence[str], day_number: Optional[int] = None) -> str:
    lines = "\n".join(f"{idx}: {answer}" for idx, answer in enumerate(answers, start=1))
    prompt = f"User Answers:\n{lines}"
    if day_number:
        prompt += f"\nThis is Day {day_number} of the user's 7-day program."
    return prompt


async def synthesize(client: GenerationClient, answers: Sequence[str], day_number: Optional[int] = None) -> str:
    if not client.configured:
        return UNCONFIGURED_DECISION
    try:
        text = await client.generate(
            build_decision_prompt(answers, day_number),
            DECISION_SYSTEM_PROMPT,
            max_output_tokens=100,
            temperature=0.3,
        )
    except ConfigMissing:
        return UNCONFIGURED_DECISION
    except GenerationFailed as exc:
        logger.warning("decision_generation_fallback day=%s detail=%s", day_number, str(exc)[:220])
        return FALLBACK_DECISION
    return text.strip() or FALLBACK_DECISION
