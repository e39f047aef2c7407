"""
Decision extraction: prompt construction and parsing of the model's JSON.

The model is asked for a JSON array of decisions. Gemini's JSON mode plus the
response schema below make that reliable, but we still validate every entry:
a malformed decision is dropped, a non-JSON answer is a provider error.
"""

import json
import logging
from typing import List

from pydantic import ValidationError

from pipeline.config import LLM_DECISIONS_MAX_TEXT
from pipeline.llm_provider import DecisionProvider, ProviderResponseError
from pipeline.models import MeetingDecision


logger = logging.getLogger("decisions")

DECISIONS_RESPONSE_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "title": {"type": "STRING"},
            "content": {"type": "STRING"},
            "location": {
                "type": "ARRAY",
                "items": {"type": "NUMBER"},
                "nullable": True,
            },
            "summary": {"type": "STRING"},
        },
        "required": ["title", "content", "location", "summary"],
    },
}

_EXAMPLE_MOTION = """THAT Council authorize City staff to negotiate to the satisfaction of the City's
Chief Human Resources Officer, City's Director of Legal Services, and the City's
Chief Procurement Officer and enter into a contract with Homewood Health Inc.
("HHI") under which HHI will provide Employee and Family Assistance Plan
services for an initial term of (3) three-years with an estimated contract value of
$1,122,076 plus applicable taxes, with the option to extend for (6) six additional
(1) one- year terms, with an estimated contract value of $3,570,983, plus
applicable taxes over the entire term of the contract to be funded through the
operating budget"""

_EXAMPLE_OUTPUT = {
    "title": "Decision on the contract with Homewood Health Inc.",
    "content": _EXAMPLE_MOTION,
    "location": None,
    "summary": (
        "The City Council is going to start negotiations for a multi-year contract with "
        "Homewood Health Inc. to provide Employee and Family Assistance Plan services, with "
        "options to extend, funded through the city's operating budget."
    ),
}


def make_decisions_prompt(minutes_text: str) -> str:
    minutes = (minutes_text or "").strip()[:LLM_DECISIONS_MAX_TEXT]
    return (
        "You are a smart summarization program for council meeting decisions. Extract all of the "
        "meeting decisions given the council meeting minutes as plain text and output a JSON array "
        "containing the decisions formatted as described below.\n\n"
        "Format of each decision:\n"
        "{\n"
        '    "title": string,\n'
        '    "content": string,\n'
        '    "location": [number, number] | null,\n'
        '    "summary": string\n'
        "}\n\n"
        "The title must be understandable in layman language. The location, if it exists, must be "
        "included as a latitude and a longitude.\n\n"
        "For example, given the following text:\n"
        f"{_EXAMPLE_MOTION}\n\n"
        "You would output:\n"
        f"{json.dumps(_EXAMPLE_OUTPUT, indent=4)}\n\n"
        "Extract all of the meeting decisions in the following text:\n"
        f"{minutes}\n"
    )


def parse_decisions(raw_text: str) -> List[MeetingDecision]:
    """
    Parse the model's JSON answer into validated decisions.

    Accepts a bare array or an object wrapping it under "decisions".
    """
    try:
        data = json.loads(raw_text or "")
    except json.JSONDecodeError as exc:
        raise ProviderResponseError(f"Model returned invalid JSON: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("decisions", [data])
    if not isinstance(data, list):
        raise ProviderResponseError(f"Expected a JSON array of decisions, got {type(data).__name__}")

    decisions = []
    for idx, entry in enumerate(data):
        try:
            decisions.append(MeetingDecision.model_validate(entry))
        except ValidationError as exc:
            logger.warning(f"Dropping malformed decision #{idx}: {exc.error_count()} validation errors")
    return decisions


def extract_meeting_decisions(minutes_text: str, provider: DecisionProvider) -> List[MeetingDecision]:
    if not isinstance(minutes_text, str) or not minutes_text.strip():
        raise ValueError("Please provide valid meeting minutes text")
    raw = provider.generate_json(
        make_decisions_prompt(minutes_text),
        response_schema=DECISIONS_RESPONSE_SCHEMA,
        operation="extract_decisions",
    )
    return parse_decisions(raw)
