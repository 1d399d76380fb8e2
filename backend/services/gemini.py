import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from services.config import Settings, require_credential
from services.errors import DecodingError, ImageGenerationError, NetworkError, classify_status
from services.image_normalize import optimize_image_for_api
from services.preferences import EvaluationResult, SwipeDirection
from services.rate_guard import BlockingRateGuard

logger = logging.getLogger(__name__)

# Direct REST calls to the Gemini generateContent endpoint with API key authentication.

DESCRIBE_PROMPT = "Briefly describe the main visual features of this image in under 50 words."

EVALUATE_PROMPT = """
The user rated this image as "{direction}".

In under 100 words, analyze:
- why the user may have felt it was {direction}
- the main visual features
- what to learn for future images

Answer concisely in English.
"""

PREFERENCES_PROMPT = """
Analyze the following image evaluation data and identify the user's preference patterns.

Analysis of liked images:
{liked}

Analysis of disliked images:
{disliked}

Provide the result in this format, using "-" bullet points under each heading:
Preferred features:
Avoided elements:
Recommendations:
Aesthetic profile:

Be detailed and practical.
"""

OPTIMIZE_PROMPT = """
Optimize the following image generation prompt based on the user's preference analysis.

Original prompt: "{prompt}"

Preferred features:
{preferred}

Elements to avoid:
{avoided}

Recommendations:
{recommendations}

Keep the intent of the original prompt. Return ONLY the optimized English prompt.
"""

FALLBACK_EVALUATION = (
    "The user rated this image as {direction}. Detailed analysis is not available right now, "
    "but the rating is still used for learning."
)

_SECTION_HEADINGS = {
    "preferred": ("preferred features", "preferred feature"),
    "avoided": ("avoided elements", "avoided element", "elements to avoid"),
    "recommendations": ("recommendations", "recommendation"),
    "profile": ("aesthetic profile",),
}


@dataclass
class UserPreferenceAnalysis:
    preferred_features: List[str]
    avoided_elements: List[str]
    recommendations: List[str]
    aesthetic_profile: str
    total_evaluations: int
    like_count: int
    analysis_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def like_rate(self) -> float:
        if self.total_evaluations <= 0:
            return 0.0
        return self.like_count / self.total_evaluations * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preferred_features": self.preferred_features,
            "avoided_elements": self.avoided_elements,
            "recommendations": self.recommendations,
            "aesthetic_profile": self.aesthetic_profile,
            "analysis_date": self.analysis_date.isoformat(),
            "total_evaluations": self.total_evaluations,
            "like_count": self.like_count,
            "like_rate": round(self.like_rate, 1),
        }


async def _gemini_post_json(
    client: httpx.AsyncClient,
    *,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
) -> httpx.Response:
    """
    Thin wrapper for Gemini HTTP calls so tests can monkeypatch the network away.
    """
    return await client.post(url, headers=headers, json=payload)


def extract_candidate_text(data: Dict[str, Any]) -> str:
    """First text part of the first candidate, or "" when there is none or the shape is unexpected."""
    if not isinstance(data, dict):
        return ""
    candidates = data.get("candidates") or []
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return ""
    content = candidates[0].get("content") or {}
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts") or []
    if not isinstance(parts, list):
        return ""
    for part in parts:
        if isinstance(part, dict) and part.get("text"):
            return str(part["text"]).strip()
    return ""


def _extract_section(text: str, key: str, limit: int = 5) -> List[str]:
    """Bullet lines ("-", "•", "*") that follow the heading for `key`, up to the next heading."""
    items: List[str] = []
    inside = False
    all_headings = [h for names in _SECTION_HEADINGS.values() for h in names]
    for raw in text.splitlines():
        line = raw.strip()
        normalized = re.sub(r"^[#*\d.\s]+", "", line).rstrip(":*").strip().lower()
        if normalized in all_headings:
            inside = normalized in _SECTION_HEADINGS[key]
            continue
        if inside and line[:1] in ("-", "•", "*"):
            item = line[1:].strip()
            if item:
                items.append(item)
                if len(items) >= limit:
                    break
    return items


class GeminiClient:
    """
    Client for the analysis endpoint (Gemini generateContent).

    Every outgoing call first passes the blocking rate guard, so bursts wait for the
    next window instead of failing.
    """

    def __init__(self, settings: Settings, rate_guard: Optional[BlockingRateGuard] = None, *, sleep=asyncio.sleep):
        self.settings = settings
        self.rate_guard = rate_guard or BlockingRateGuard(
            settings.analysis_max_per_minute, 60.0, name="gemini-analysis"
        )
        self._sleep = sleep

    @property
    def endpoint(self) -> str:
        return f"{self.settings.gemini_base_url}/{self.settings.gemini_model}:generateContent"

    async def _generate_content(self, parts: List[Dict[str, Any]], *, timeout: Optional[float] = None) -> str:
        api_key = require_credential(self.settings.gemini_api_key, "GEMINI_API_KEY", backend="gemini")
        await self.rate_guard.acquire()

        payload = {"contents": [{"role": "user", "parts": parts}]}
        try:
            async with httpx.AsyncClient(timeout=timeout or self.settings.gemini_timeout_s) as client:
                response = await _gemini_post_json(
                    client,
                    url=f"{self.endpoint}?key={api_key}",
                    headers={"Content-Type": "application/json"},
                    payload=payload,
                )
        except httpx.HTTPError as e:
            raise NetworkError(f"Gemini request failed: {e}", backend="gemini") from e

        if response.status_code != 200:
            logger.error(f"Gemini API error: {response.status_code} - {response.text[:300]}")
            raise classify_status(response.status_code, response.text, backend="gemini")

        try:
            data = response.json()
        except ValueError as e:
            raise DecodingError(f"Gemini returned non-JSON body: {e}", backend="gemini") from e

        text = extract_candidate_text(data)
        if not text:
            logger.warning(f"No text in Gemini response. Response: {json.dumps(data)[:500]}")
            raise DecodingError("Gemini response contained no candidate text", backend="gemini")
        return text

    @staticmethod
    def _image_part(image_bytes: bytes) -> Dict[str, Any]:
        optimized, mime = optimize_image_for_api(image_bytes)
        return {
            "inline_data": {
                "mime_type": mime,
                "data": base64.b64encode(optimized).decode("utf-8"),
            }
        }

    async def generate_text(self, prompt: str) -> str:
        """Text-only call. Raises taxonomy errors; callers decide how to degrade."""
        return await self._generate_content([{"text": prompt}])

    async def analyze_image(self, image_bytes: bytes) -> Optional[str]:
        """Short description of one image, or None if analysis is unavailable."""
        try:
            return await self._generate_content(
                [{"text": DESCRIBE_PROMPT}, self._image_part(image_bytes)],
                timeout=15.0,
            )
        except (ImageGenerationError, ValueError) as e:
            logger.warning(f"Image analysis failed: {e}")
            return None

    async def evaluate_swiped_image(self, image_bytes: bytes, direction: SwipeDirection) -> EvaluationResult:
        direction = SwipeDirection.parse(direction)
        try:
            text = await self._generate_content(
                [
                    {"text": EVALUATE_PROMPT.format(direction=direction.value)},
                    self._image_part(image_bytes),
                ],
                timeout=10.0,
            )
        except (ImageGenerationError, ValueError) as e:
            logger.warning(f"Swipe evaluation failed, using fallback evaluation: {e}")
            text = FALLBACK_EVALUATION.format(direction=direction.value)
        return EvaluationResult(direction=direction, analysis_text=text)

    async def analyze_images(self, images: Sequence[bytes]) -> List[Optional[str]]:
        """
        Describe a batch of images with bounded parallelism.

        Images are processed in chunks of `analysis_concurrency`; the requests inside a
        chunk run concurrently and chunks are separated by `analysis_chunk_delay_s`.
        Result order matches input order; failed entries are None.
        """
        size = max(1, self.settings.analysis_concurrency)
        chunks = [list(images[i:i + size]) for i in range(0, len(images), size)]
        results: List[Optional[str]] = []
        for index, chunk in enumerate(chunks):
            if index > 0:
                await self._sleep(self.settings.analysis_chunk_delay_s)
            chunk_results = await asyncio.gather(*(self.analyze_image(image) for image in chunk))
            results.extend(chunk_results)
        logger.info(f"Analyzed {len(images)} images in {len(chunks)} chunks ({sum(r is not None for r in results)} ok)")
        return results

    async def analyze_user_preferences(self, evaluations: Sequence[EvaluationResult]) -> UserPreferenceAnalysis:
        if not evaluations:
            raise ValueError("No evaluations to analyze")

        liked = [e for e in evaluations if e.direction == SwipeDirection.LIKED]
        disliked = [e for e in evaluations if e.direction == SwipeDirection.DISLIKED]
        prompt = PREFERENCES_PROMPT.format(
            liked="\n".join(f"- {e.analysis_text}" for e in liked) or "- (none)",
            disliked="\n".join(f"- {e.analysis_text}" for e in disliked) or "- (none)",
        )
        response = await self.generate_text(prompt)

        return UserPreferenceAnalysis(
            preferred_features=_extract_section(response, "preferred"),
            avoided_elements=_extract_section(response, "avoided"),
            recommendations=_extract_section(response, "recommendations"),
            aesthetic_profile=response,
            total_evaluations=len(evaluations),
            like_count=len(liked),
        )

    async def optimize_prompt(self, base_prompt: str, analysis: UserPreferenceAnalysis) -> str:
        """Rewrite `base_prompt` towards the analysed preferences. Raises taxonomy errors."""
        if not (base_prompt or "").strip():
            raise ValueError("Prompt must not be empty")
        prompt = OPTIMIZE_PROMPT.format(
            prompt=base_prompt,
            preferred=", ".join(analysis.preferred_features) or "(none)",
            avoided=", ".join(analysis.avoided_elements) or "(none)",
            recommendations=", ".join(analysis.recommendations) or "(none)",
        )
        optimized = (await self.generate_text(prompt)).strip().strip("\"'").strip()
        if not optimized:
            raise DecodingError("Prompt optimization returned an empty prompt", backend="gemini")
        logger.info(f"Optimized prompt ({len(base_prompt)} -> {len(optimized)} chars)")
        return optimized
