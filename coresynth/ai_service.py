"""
Generative-AI helpers: section summaries, Q&A, CSV header mapping and
microfossil identification.

All calls go through an ``LLMClient``.  ``GeminiClient`` talks to the Gemini
REST API with ``requests``; tests pass their own client.
"""

import json
import logging
import os
import re
from typing import Optional, Protocol

import requests

from .models import PROXY_KEYS

logger = logging.getLogger(__name__)

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_MODEL = 'gemini-2.5-flash'
DEFAULT_TIMEOUT = 60.0

SEARCH_KEYWORDS = ('search', 'find studies', 'what is new on', 'latest research', 'recent articles')


class AIServiceError(Exception):
    """The AI service failed or returned something unusable."""


class AINotConfiguredError(AIServiceError):
    def __init__(self, message="GEMINI_API_KEY is not configured"):
        super().__init__(message)


class AIOutputError(AIServiceError):
    def __init__(self, raw_output, reason):
        self.raw_output = raw_output
        self.reason = reason
        super().__init__(f"AI output could not be used: {reason}")


class LLMClient(Protocol):
    def generate(
        self,
        prompt: str,
        *,
        system_instruction: Optional[str] = None,
        response_schema: Optional[dict] = None,
        image: Optional[tuple[str, str]] = None,
        temperature: Optional[float] = None,
        use_search: bool = False,
    ) -> str:
        ...


class GeminiClient:
    """Minimal Gemini ``generateContent`` client over HTTPS."""

    def __init__(self, api_key=None, model=None, timeout=None, session=None):
        self.api_key = api_key if api_key is not None else os.environ.get('GEMINI_API_KEY', '')
        self.model = model or os.environ.get('CORESYNTH_AI_MODEL', DEFAULT_MODEL)
        self.timeout = float(timeout or os.environ.get('CORESYNTH_AI_TIMEOUT', DEFAULT_TIMEOUT))
        self.session = session or requests.Session()

    def _payload(self, prompt, system_instruction, response_schema, image,
                 temperature, use_search):
        parts = []
        if image is not None:
            data, mime_type = image
            parts.append({'inline_data': {'mime_type': mime_type, 'data': data}})
        parts.append({'text': prompt})

        payload = {'contents': [{'role': 'user', 'parts': parts}]}
        if system_instruction:
            payload['systemInstruction'] = {'parts': [{'text': system_instruction}]}

        config = {}
        if response_schema is not None:
            config['responseMimeType'] = 'application/json'
            config['responseSchema'] = response_schema
        if temperature is not None:
            config['temperature'] = temperature
        if config:
            payload['generationConfig'] = config
        if use_search:
            payload['tools'] = [{'google_search': {}}]
        return payload

    def generate(self, prompt, *, system_instruction=None, response_schema=None,
                 image=None, temperature=None, use_search=False):
        if not self.api_key:
            raise AINotConfiguredError()

        url = GEMINI_ENDPOINT.format(model=self.model)
        payload = self._payload(prompt, system_instruction, response_schema, image,
                                temperature, use_search)
        logger.debug("Gemini request: model=%s json=%s image=%s",
                     self.model, response_schema is not None, image is not None)
        try:
            resp = self.session.post(url, json=payload, timeout=self.timeout,
                                     headers={'x-goog-api-key': self.api_key})
        except requests.RequestException as e:
            raise AIServiceError(f"Gemini request failed: {e}") from e

        if resp.status_code != 200:
            logger.error("Gemini API error: %s %s", resp.status_code, resp.text[:200])
            raise AIServiceError(f"Gemini API error: HTTP {resp.status_code}")

        try:
            data = resp.json()
            parts = data['candidates'][0]['content']['parts']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AIOutputError(resp.text[:500], f"unexpected response shape ({e})") from e
        text = ''.join(p.get('text', '') for p in parts if isinstance(p, dict))
        if not text:
            raise AIOutputError(resp.text[:500], "empty response")
        return text


def get_client():
    """Default client built from the environment."""
    return GeminiClient()


def ai_configured():
    return bool(os.environ.get('GEMINI_API_KEY'))


def parse_json_output(text):
    """Parse a JSON answer, tolerating a surrounding markdown code fence."""
    cleaned = text.strip()
    fence = re.match(r'^```(?:json)?\s*(.*?)\s*```$', cleaned, re.DOTALL)
    if fence:
        cleaned = fence.group(1)
    try:
        return json.loads(cleaned)
    except ValueError as e:
        raise AIOutputError(text, f"invalid JSON ({e})") from e


# ---------------------------------------------------------------------------
# Section summary and Q&A
# ---------------------------------------------------------------------------

SUMMARY_INSTRUCTION = (
    "You are a paleoceanography expert. Your task is to provide a concise, integrated "
    "scientific summary of a sediment section. Focus on key findings, trends, and potential "
    "climatic implications suggested by the combined datasets. If data for a section is "
    "missing or sparse, note that. Structure your response with a brief overview followed "
    "by key bullet points."
)

ANALYSIS_INSTRUCTION = (
    "You are a world-class paleoceanographer. Analyze the provided sediment section data to "
    "answer the user's question. Be concise, scientific, and refer to specific data points or "
    "trends where possible. If the user asks for recent information or studies, use your "
    "search tool."
)


def _drop_empty(value):
    if isinstance(value, dict):
        return {k: _drop_empty(v) for k, v in value.items()
                if v is not None and v != '' and v != [] and v != {}}
    if isinstance(value, list):
        return [_drop_empty(v) for v in value]
    return value


def section_context(section):
    """Short plain-text description of a section for chat prompts."""
    if section.data_points:
        headers = list(section.data_points[0].to_dict().keys())
        data_summary = (f"The section has a data series of {len(section.data_points)} points "
                        f"with columns: {', '.join(headers)}.")
    else:
        data_summary = "No data points provided for this section."
    return (
        "Section Data:\n"
        f"- Core ID: {section.core_id}, Section Name: {section.name}\n"
        f"- Depth: {section.section_depth:g} cmbsf\n"
        f"- Age/Epoch: {section.age_range}, {section.epoch}, {section.geological_period} period\n"
        f"- {data_summary}\n"
    )


def summary_payload(section, microfossils):
    fossils = {f.id: f for f in microfossils}
    records = []
    for r in section.microfossil_records:
        fossil = fossils.get(r.fossil_id)
        records.append({
            'species': fossil.display_name if fossil else r.fossil_id,
            'abundance': r.abundance,
            'preservation': r.preservation,
            'observations': r.observations,
        })

    if section.data_points:
        series = {
            'rowCount': len(section.data_points),
            'columns': list(section.data_points[0].to_dict().keys()),
            'samplePoints': [dp.to_dict() for dp in section.data_points[:3]],
        }
    else:
        series = "Not provided"

    return _drop_empty({
        'metadata': {
            'coreId': section.core_id,
            'sectionName': section.name,
            'ageRange': section.age_range,
            'epoch': section.epoch,
            'geologicalPeriod': section.geological_period,
        },
        'labAnalysis': section.lab_analysis.model_dump() if section.lab_analysis else None,
        'fossilRecords': records,
        'dataSeriesSummary': series,
    })


def generate_section_summary(client, section, microfossils):
    """Scientific summary of a section, with markdown emphasis stripped."""
    prompt = ("Please generate a scientific summary for the following sediment section data:\n"
              + json.dumps(summary_payload(section, microfossils), indent=2))
    text = client.generate(prompt, system_instruction=SUMMARY_INSTRUCTION)
    return re.sub(r'[*#]', '', text)


def answer_section_question(client, section, query):
    use_search = any(k in query.lower() for k in SEARCH_KEYWORDS)
    prompt = f'{section_context(section)}\n\nUser Question: "{query}"'
    return client.generate(prompt, system_instruction=ANALYSIS_INSTRUCTION,
                           temperature=0.5, use_search=use_search)


# ---------------------------------------------------------------------------
# CSV header mapping
# ---------------------------------------------------------------------------

def map_csv_headers(client, headers, known_keys=None):
    """Map CSV headers to standard proxy keys.

    Unknown or ambiguous headers map to None.  Any AI failure falls back to
    an all-None mapping so the user can map columns by hand.
    """
    known = list(known_keys or PROXY_KEYS)
    fallback = {h: None for h in headers}
    if not headers:
        return fallback

    schema = {
        'type': 'OBJECT',
        'properties': {
            'mapping': {
                'type': 'OBJECT',
                'properties': {
                    h: {'type': 'STRING', 'nullable': True,
                        'description': f"The mapped key for '{h}'. Should be one of "
                                       f"[{', '.join(known)}] or null."}
                    for h in headers
                },
            },
        },
        'required': ['mapping'],
    }
    prompt = (
        "You are an expert data processor for paleoceanography. Your task is to map CSV "
        "headers to a standard set of keys.\n\n"
        f"Here are the standard keys:\n{', '.join(known)}\n\n"
        f"Here are the headers from the user's CSV file:\n{', '.join(headers)}\n\n"
        "Please provide a mapping for each header. If a header clearly corresponds to one of "
        "the standard keys, provide that key. If a header does not match any standard key or "
        "is ambiguous, map it to null."
    )

    try:
        mapping = parse_json_output(client.generate(prompt, response_schema=schema))['mapping']
        if not isinstance(mapping, dict):
            raise AIOutputError(str(mapping), "mapping is not an object")
    except AINotConfiguredError:
        raise
    except (AIServiceError, KeyError, TypeError) as e:
        logger.warning("CSV header mapping failed, falling back to manual mapping: %s", e)
        return fallback

    return {h: (mapping.get(h) if mapping.get(h) in known else None) for h in headers}


# ---------------------------------------------------------------------------
# Microfossil identification
# ---------------------------------------------------------------------------

IDENTIFY_PROMPT = (
    "You are a micropaleontologist. Please identify the microfossil in this image. Provide a "
    "probable identification, describe its key morphological features, and mention its typical "
    "paleoecological significance. Format your response clearly with the following headings:\n"
    "### Identification\n"
    "### Morphological Description\n"
    "### Paleoecological Significance"
)


def identify_fossil_from_image(client, image_base64, mime_type):
    return client.generate(IDENTIFY_PROMPT, image=(image_base64, mime_type))


def parse_fossil_analysis(text):
    """Split an identification answer into taxonomy, description and ecology."""
    sections = {}
    current = None
    for line in text.splitlines():
        heading = re.match(r'^###\s+(.*)', line)
        if heading:
            current = heading.group(1).strip().lower()
            sections[current] = ''
        elif current and line.strip():
            sections[current] += re.sub(r'^[-*]', '', line.strip()).strip() + ' '

    taxonomy = {}
    ident = sections.get('identification', '').strip()
    if ident:
        parts = ident.split()
        taxonomy['genus'] = parts[0] if len(parts) >= 2 else ident
        if len(parts) >= 2:
            taxonomy['species'] = parts[1]

    return {
        'taxonomy': taxonomy,
        'description': sections.get('morphological description', '').strip(),
        'ecology': {'notes': sections.get('paleoecological significance', '').strip()},
    }
