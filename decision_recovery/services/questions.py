import json
import logging
import re
from typing import Optional, Sequence

from decision_recovery.services.llm import ConfigMissing, GenerationClient, GenerationFailed

logger = logging.getLogger("uvicorn.error")

PROGRAM_LENGTH_DAYS = 7

DAY_ONE_QUESTIONS = [
    "What is the single biggest thing weighing on your mind right now?",
    "If you could only do one thing today to make tomorrow better, what would it be?",
    "What is the worst-case scenario if you do nothing?",
    "How much energy do you realistically have (1-10)?",
    "Is there a deadline involved? If so, when?",
]

FINAL_DAY_QUESTIONS = [
    "Looking back at this week, what surprised you most?",
    "What small action made the biggest difference?",
    "What will you continue doing after this program?",
]

GENERIC_QUESTIONS = [
    "What's on your mind today?",
    "How did yesterday's action actually go?",
    "What would make today feel successful?",
    "What's one small step you could take right now?",
]

_LEADING_MARKERS = re.compile(r"^[-\d.)\"'\s*•]+")


def question_count(day_number: int) -> int:
    if day_number == 1:
        return 5
    if day_number == PROGRAM_LENGTH_DAYS:
        return 3
    return 4


def canned_questions(day_number: int) -> list[str]:
    if day_number == 1:
        return list(DAY_ONE_QUESTIONS)
    if day_number == PROGRAM_LENGTH_DAYS:
        return list(FINAL_DAY_QUESTIONS)
    return list(GENERIC_QUESTIONS)


def build_question_instructions(day_number: int, prior_actions: Sequence[str]) -> str:
    count = question_count(day_number)
    if day_number == 1:
        return (
            f"Generate {count} thoughtful, open-ended questions to help a user identify their core stress point "
            "or challenge.\n"
            "Questions should:\n"
            "- Be progressive (building on each other)\n"
            "- Feel calm and non-judgmental\n"
            "- Help them get specific about what's bothering them\n"
            "- Avoid being clinical or therapeutic\n"
            "- Be concise (under 20 words each)\n\n"
            'Output as a JSON array: ["question1", "question2", ...]'
        )
    if day_number == PROGRAM_LENGTH_DAYS:
        history = "\n".join(f"Day {idx}: {action}" for idx, action in enumerate(prior_actions, start=1))
        return (
            f"User has completed {PROGRAM_LENGTH_DAYS - 1} days of a reflection program. "
            f"Generate {count} integration questions.\n"
            f"Previous actions taken:\n{history}\n\n"
            "Questions should:\n"
            "- Reflect on overall progress\n"
            "- Identify sustainable habits formed\n"
            "- Plan for continued independence\n"
            "- Feel celebratory but grounded\n\n"
            'Output as a JSON array: ["question1", "question2", "question3"]'
        )
    last_action = prior_actions[-1] if prior_actions else ""
    return (
        f"User is on Day {day_number} of a {PROGRAM_LENGTH_DAYS}-day program.\n"
        f'Yesterday\'s action: "{last_action}"\n\n'
        f"Generate {count} reflection questions that:\n"
        "- Check how yesterday's action went\n"
        "- Identify any new challenges\n"
        "- Build momentum without overwhelming\n"
        "- Stay grounded and practical\n\n"
        'Output as a JSON array: ["question1", "question2", "question3", "question4"]'
    )


def _fit(questions: list[str], day_number: int) -> list[str]:
    count = question_count(day_number)
    fitted = questions[:count]
    for filler in canned_questions(day_number):
        if len(fitted) >= count:
            break
        if filler not in fitted:
            fitted.append(filler)
    return fitted


def _parse_json_array(raw_text: str) -> list[str]:
    start = raw_text.find("[")
    end = raw_text.rfind("]")
    if start == -1 or end <= start:
        return []
    try:
        parsed = json.loads(raw_text[start : end + 1])
    except json.JSONDecodeError:
        logger.warning("questions_json_parse_failed falling back to line splitting")
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item).strip() for item in parsed if isinstance(item, str) and item.strip()]


def _parse_lines(raw_text: str) -> list[str]:
    lines = [_LEADING_MARKERS.sub("", line).strip() for line in raw_text.splitlines()]
    return [line for line in lines if len(line) > 10 and line.endswith("?")]


def parse_questions(raw_text: str, day_number: int) -> Optional[list[str]]:
    """Questions found in a model response, sized for the day, or None when nothing usable."""
    questions = _parse_json_array(raw_text) or _parse_lines(raw_text)
    if not questions:
        return None
    return _fit(questions, day_number)


async def questions_for(
    client: GenerationClient, day_number: int, prior_actions: Sequence[str] = ()
) -> list[str]:
    """Questions for one program day. Always returns a full list, never raises.

    ``prior_actions`` are the recommendations of earlier steps, oldest first.
    """
    if not client.configured:
        return canned_questions(day_number)

    try:
        raw = await client.generate(
            "Generate the questions now.",
            build_question_instructions(day_number, prior_actions),
            max_output_tokens=300,
            temperature=0.7,
        )
    except (ConfigMissing, GenerationFailed) as exc:
        logger.warning("questions_generation_fallback day=%s detail=%s", day_number, str(exc)[:220])
        return canned_questions(day_number)

    parsed = parse_questions(raw, day_number)
    if parsed is None:
        logger.warning("questions_unparseable day=%s", day_number)
        return canned_questions(day_number)
    return parsed
