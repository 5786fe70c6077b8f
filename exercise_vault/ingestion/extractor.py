"""Exercise extraction from a single page image via the Gemini API.

The page is sent together with a fixed instruction and a structured-output
schema. Each returned entry becomes an :class:`ExerciseCandidate` whose tag
list starts with the exercise type. Failures are raised, never retried.
"""

from __future__ import annotations

import base64
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .config import DEFAULT_GEMINI_BASE_URL, DEFAULT_GEMINI_MODEL, VaultConfig
from .errors import AssetIOError, SchemaMismatch, UpstreamServiceError
from .models import ExerciseCandidate, ExerciseType
from .storage import DEFAULT_MIME, mime_for_path, split_data_url

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = (
    "Analyze this textbook/PDF page. Identify all distinct exercises or questions. "
    "For each exercise, provide:\n\n"
    "1. A 4-WORD NAME starting with the exercise number (e.g., 'Ex 1.2 Ridge Regression', "
    "'Problem 5 Calculate MSE', 'Q3 Prove Convergence'). Format: [Exercise Number] "
    "[Task Description]. Maximum 4 words total. ALWAYS include the exercise number as the "
    "first part of the name.\n\n"
    "2. The type of exercise - must be EXACTLY one of: 'exercise', 'homework', or 'programming'\n\n"
    "3. Relevant topic tags - should be specific keywords about the concepts, techniques, "
    "or topics covered.\n\n"
    "IMPORTANT FORMATTING:\n"
    "- The 'exerciseType' field should contain ONLY: 'exercise', 'homework', or 'programming'\n"
    "- The 'tags' array should contain topic keywords ONLY (do NOT include the exercise type in tags)\n"
    "- The exercise type will be automatically added as the first tag by the system"
)

SYSTEM_INSTRUCTION = (
    "You are an educational assistant. Your job is to structure unstructured textbook pages "
    "into database records. Always put the exercise type as the first tag."
)

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "exercises": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {
                        "type": "string",
                        "description": "A 4-word name starting with exercise number "
                        "(e.g., 'Ex 1.2 Ridge Regression', 'Problem 5 Calculate MSE')",
                    },
                    "exerciseType": {
                        "type": "string",
                        "enum": [t.value for t in ExerciseType],
                        "description": "Type of exercise - EXACTLY one of: 'exercise', 'homework', or 'programming'",
                    },
                    "tags": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Topic keywords only (e.g., 'ridge regression', 'regularization'). "
                        "Do NOT include exercise type.",
                    },
                },
                "required": ["name", "exerciseType", "tags"],
            },
        }
    },
    "required": ["exercises"],
}


def normalize_tags(classification: str, tags: Iterable[str]) -> List[str]:
    """
    Classification first, then the remaining tags deduplicated (case-sensitive)
    and sorted. Author ordering of topic tags is not preserved.
    """
    rest = {t.strip() for t in tags if t and t.strip()}
    rest.discard(classification)
    return [classification] + sorted(rest)


def build_request_body(image_base64: str, mime_type: str = DEFAULT_MIME) -> Dict[str, Any]:
    return {
        "contents": [
            {
                "parts": [
                    {"inline_data": {"mime_type": mime_type, "data": image_base64}},
                    {"text": EXTRACTION_PROMPT},
                ]
            }
        ],
        "generationConfig": {
            "response_mime_type": "application/json",
            "response_schema": RESPONSE_SCHEMA,
        },
        "system_instruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
    }


def parse_candidates(response_json: Dict[str, Any]) -> List[ExerciseCandidate]:
    try:
        text = response_json["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as exc:
        raise SchemaMismatch("No text in classification response") from exc
    if not isinstance(text, str):
        raise SchemaMismatch("Classification response text is not a string")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SchemaMismatch(f"Failed to parse exercises: {exc}") from exc

    entries = payload.get("exercises") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        raise SchemaMismatch("Classification response has no 'exercises' list")

    candidates: List[ExerciseCandidate] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise SchemaMismatch(f"Exercise #{idx} is not an object")
        name = entry.get("name")
        raw_type = entry.get("exerciseType")
        tags = entry.get("tags")
        if not isinstance(name, str) or not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise SchemaMismatch(f"Exercise #{idx} is missing name or tags")
        try:
            classification = ExerciseType(raw_type)
        except ValueError as exc:
            raise SchemaMismatch(f"Exercise #{idx} has unknown exerciseType {raw_type!r}") from exc
        candidates.append(
            ExerciseCandidate(
                name=name.strip(),
                classification=classification,
                tags=normalize_tags(classification.value, tags),
            )
        )
    return candidates


class Extractor:
    """
    Abstract page extractor. Implementations take exactly one of an inline
    page image or a path to one.
    """

    async def extract_page(
        self,
        page_image: Optional[str] = None,
        page_image_path: Optional[str] = None,
        api_key: str = "",
    ) -> List[ExerciseCandidate]:
        raise NotImplementedError


class GeminiExtractor(Extractor):
    """
    Calls ``models/<model>:generateContent`` once per page. A client can be
    injected (tests pass one built on ``httpx.MockTransport``); otherwise a
    short-lived client is opened for each call.
    """

    def __init__(
        self,
        model: str = DEFAULT_GEMINI_MODEL,
        base_url: str = DEFAULT_GEMINI_BASE_URL,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, config: VaultConfig) -> "GeminiExtractor":
        return cls(model=config.gemini_model, base_url=config.gemini_base_url, timeout=config.gemini_timeout)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def extract_page(
        self,
        page_image: Optional[str] = None,
        page_image_path: Optional[str] = None,
        api_key: str = "",
    ) -> List[ExerciseCandidate]:
        if not api_key:
            raise ValueError("API key is missing")
        mime_type, image_base64 = self._load_image(page_image, page_image_path)
        body = build_request_body(image_base64, mime_type)

        logger.debug("Sending page (%d base64 chars) to %s", len(image_base64), self.endpoint)
        response = await self._post(body, api_key)
        if not response.is_success:
            logger.error("Classification request failed with status %s", response.status_code)
            raise UpstreamServiceError(response.status_code, response.text, self.endpoint)

        try:
            response_json = response.json()
        except ValueError as exc:
            raise SchemaMismatch(f"Classification response is not JSON: {exc}") from exc

        candidates = parse_candidates(response_json)
        logger.info("Extracted %d exercises from page", len(candidates))
        return candidates

    async def _post(self, body: Dict[str, Any], api_key: str) -> httpx.Response:
        params = {"key": api_key}
        try:
            if self._client is not None:
                return await self._client.post(self.endpoint, params=params, json=body)
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                return await client.post(self.endpoint, params=params, json=body)
        except httpx.HTTPError as exc:
            raise UpstreamServiceError(None, str(exc), self.endpoint) from exc

    def _load_image(self, page_image: Optional[str], page_image_path: Optional[str]):
        if (page_image is None) == (page_image_path is None):
            raise ValueError("Provide exactly one of page_image or page_image_path")
        if page_image is not None:
            return split_data_url(page_image)
        path = Path(page_image_path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise AssetIOError(f"Failed to read page image {path}: {exc}") from exc
        return mime_for_path(path), base64.b64encode(data).decode("ascii")
