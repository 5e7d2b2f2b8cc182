"""
Age model computed by the generative-AI service.

The delegate sees only section ids, names, sample depths and tie-points.  Its
answer is checked against the same rules as the local model before any age is
merged back into the original records; any problem fails the whole call.
"""

import json
import logging
import math
import numbers

from .agemodel import (
    DEFAULT_AGE_DECIMALS,
    MIN_TIE_POINTS,
    DelegateFailure,
    apply_ages,
    group_tie_points,
)
from .ai_service import AINotConfiguredError, AIServiceError, parse_json_output

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = """You are a highly skilled paleoceanographic data scientist. Your task is to create an age model for a set of sediment sections from the same core.
You will be given the sections, each with a series of data points at different depths, and a list of stratigraphic tie-points.
A tie-point provides a known age for a specific depth in a specific section.

Your instructions are:
1. For each section, use the provided tie-points that belong to that section.
2. Perform linear interpolation between the tie-points to calculate an age for every single 'depth' value in the 'dataPoints' array of that section.
3. If a section has only one tie-point, you cannot interpolate. In this case, do not add an age to any data point for that section.
4. If a section has no tie-points, do not add an age to any data point for that section.
5. For depths outside the range of the provided tie-points, perform linear extrapolation using the two nearest tie-points.
6. Return a JSON object containing an array of all the sections, each with its 'dataPoints' array. Each data point that could be calculated must have an 'age' property.

Ensure your output is ONLY the JSON object and nothing else."""

RESPONSE_SCHEMA = {
    'type': 'OBJECT',
    'properties': {
        'calibratedSections': {
            'type': 'ARRAY',
            'items': {
                'type': 'OBJECT',
                'properties': {
                    'id': {'type': 'STRING'},
                    'dataPoints': {
                        'type': 'ARRAY',
                        'items': {
                            'type': 'OBJECT',
                            'properties': {
                                'depth': {'type': 'NUMBER'},
                                'age': {'type': 'NUMBER', 'nullable': True},
                            },
                            'required': ['depth'],
                        },
                    },
                },
                'required': ['id', 'dataPoints'],
            },
        },
    },
    'required': ['calibratedSections'],
}


def _is_number(value):
    return (isinstance(value, numbers.Real) and not isinstance(value, bool)
            and math.isfinite(value))


def build_request(sections, tie_points):
    """Reduced projection of the inputs sent to the delegate."""
    return {
        'sections': [{
            'id': s.id,
            'name': s.name,
            'dataPoints': [{'depth': dp.depth} for dp in s.data_points if dp.depth is not None],
        } for s in sections],
        'tiePoints': [{
            'sectionId': tp.section_id,
            'depth': tp.depth,
            'age': tp.age,
        } for tp in tie_points],
    }


def parse_response(payload, sections, tie_points):
    """Validate a delegate answer and return ``{section_id: {depth: age}}``."""
    if not isinstance(payload, dict) or not isinstance(payload.get('calibratedSections'), list):
        raise DelegateFailure("Delegate response has no 'calibratedSections' list")

    returned = {}
    for entry in payload['calibratedSections']:
        if not isinstance(entry, dict) or not isinstance(entry.get('id'), str) \
                or not isinstance(entry.get('dataPoints'), list):
            raise DelegateFailure("Delegate returned a malformed section entry")
        if entry['id'] in returned:
            raise DelegateFailure(f"Delegate returned section {entry['id']!r} more than once")
        ages = {}
        for dp in entry['dataPoints']:
            if not isinstance(dp, dict) or not _is_number(dp.get('depth')):
                raise DelegateFailure(f"Delegate returned a data point without depth in {entry['id']!r}")
            age = dp.get('age')
            if age is None:
                continue
            if not _is_number(age):
                raise DelegateFailure(f"Delegate returned a non-numeric age in {entry['id']!r}")
            ages[float(dp['depth'])] = float(age)
        returned[entry['id']] = ages

    missing = [s.id for s in sections if s.id not in returned]
    if missing:
        raise DelegateFailure(f"Delegate response is missing section(s): {', '.join(missing)}")

    by_section = group_tie_points(tie_points)
    for s in sections:
        if len(by_section.get(s.id, [])) < MIN_TIE_POINTS and returned[s.id]:
            raise DelegateFailure(
                f"Delegate assigned ages to section {s.id!r}, which has fewer than "
                f"{MIN_TIE_POINTS} tie-points")

    return {s.id: returned[s.id] for s in sections}


class DelegatedAgeModel:
    """Age model computed by an ``LLMClient``, validated before use."""

    name = 'ai'

    def __init__(self, client, decimals=DEFAULT_AGE_DECIMALS):
        self.client = client
        self.decimals = decimals

    def calibrate(self, sections, tie_points):
        sections = list(sections)
        tie_points = list(tie_points)
        request = build_request(sections, tie_points)
        prompt = "Here is the data:\n" + json.dumps(request, indent=2)

        try:
            text = self.client.generate(prompt, system_instruction=SYSTEM_INSTRUCTION,
                                        response_schema=RESPONSE_SCHEMA)
            payload = parse_json_output(text)
        except AINotConfiguredError:
            raise
        except AIServiceError as e:
            logger.error("Age model delegate failed: %s", e)
            raise DelegateFailure(f"AI Age Model Error: {e}") from e

        ages = parse_response(payload, sections, tie_points)
        logger.info("Delegate calibrated %d section(s)", len(sections))
        return [apply_ages(s, ages[s.id], self.decimals) for s in sections]
