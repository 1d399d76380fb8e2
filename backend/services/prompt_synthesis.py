import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from services.errors import ImageGenerationError
from services.models import InputShape

logger = logging.getLogger(__name__)

SYNTHESIS_INSTRUCTION = """
The user likes images with the following characteristics:

{descriptions}

Analyze these characteristics and write an English prompt for generating a new image that matches the user's taste.
Be specific about art style, color, composition and atmosphere.

Answer using exactly these lines:
PROMPT: <English image generation prompt>
NEGATIVE: <things to avoid, comma separated>
REASON: <why this prompt fits the user's taste>
STYLE: <art style in a few words>
MOOD: <mood in a few words>

Example:
PROMPT: Beautiful anime-style illustration of a young woman with flowing hair, soft pastel colors, dreamy atmosphere, high quality digital art
NEGATIVE: blurry, low resolution, harsh shadows
REASON: The user consistently liked anime illustrations with soft colors and gentle characters.
STYLE: anime illustration
MOOD: dreamy
"""

RESPONSE_FIELDS = ("prompt", "negative", "reason", "style", "mood")

# Lines with at least two of these look like an English prompt even without a PROMPT: label.
HEURISTIC_KEYWORDS = (
    "beautiful",
    "artwork",
    "style",
    "detailed",
    "high quality",
    "masterpiece",
    "art",
    "painting",
    "illustration",
)

KEYWORD_CATEGORIES: Dict[str, tuple] = {
    "art": ("anime", "manga", "illustration", "painting", "watercolor", "digital art", "sketch", "photograph"),
    "color": ("red", "blue", "green", "bright", "pastel", "vibrant", "pink", "purple", "golden", "monochrome"),
    "mood": ("beautiful", "cute", "mysterious", "dreamy", "romantic", "calm", "dramatic", "cheerful"),
    "theme": ("nature", "forest", "city", "ocean", "night", "fantasy", "portrait", "animal", "cat", "flower"),
    "technique": ("soft lighting", "bokeh", "minimalist", "detailed", "cinematic", "surreal", "abstract", "3d render"),
}
MAX_KEYWORDS = 8

POSITIVE_SENTIMENT_WORDS = (
    "beautiful", "love", "like", "lovely", "amazing", "wonderful", "stunning", "pleasing", "favorite", "enjoy",
)

QUALITY_FAMILY = ("high quality", "detailed", "masterpiece", "best quality", "4k", "8k")
QUALITY_SUFFIX = "high quality, detailed, masterpiece"

GENERIC_PROMPTS = {
    InputShape.SIMPLE_TEXT: "Generate something amazing, detailed, high quality.",
    InputShape.STRUCTURED_IMAGEN: "Generate something amazing, detailed, high quality, photorealistic.",
    InputShape.NATIVE_CLOUD: (
        "Create a beautiful, high-quality, photorealistic image with stunning details and artistic composition."
    ),
    InputShape.FLAG_ONLY: "(this model does not use a text prompt)",
}
NO_PREFERENCE_RATIONALE = "No strong preference was found among the rated images, so a generic prompt was used."


@dataclass(frozen=True)
class ParsedPromptResponse:
    prompt: Optional[str] = None
    negative: Optional[str] = None
    reason: Optional[str] = None
    style: Optional[str] = None
    mood: Optional[str] = None


@dataclass(frozen=True)
class SynthesizedPrompt:
    prompt: str
    rationale: str
    negative_prompt: Optional[str] = None
    source: str = "generic"

    def __iter__(self):
        # Allows `prompt, rationale = await synthesizer.synthesize(...)`.
        return iter((self.prompt, self.rationale))


def parse_prompt_response(text: str) -> ParsedPromptResponse:
    """
    Scan response lines for `PROMPT:`, `NEGATIVE:`, `REASON:`, `STYLE:` and `MOOD:` prefixes
    (case-insensitive, optional markdown bullets/bold). The first non-empty value per field wins;
    other lines are ignored.
    """
    found: Dict[str, str] = {}
    for raw in (text or "").splitlines():
        line = raw.strip().lstrip("-*• ").replace("**", "").strip()
        head, sep, value = line.partition(":")
        if not sep:
            continue
        key = head.strip().lower()
        value = value.strip().strip('"').strip()
        if key in RESPONSE_FIELDS and key not in found and value:
            found[key] = value
    return ParsedPromptResponse(**found)


def find_prompt_like_line(text: str) -> Optional[str]:
    """First line of 20-200 chars containing at least two quality keywords."""
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not 20 <= len(line) <= 200:
            continue
        lowered = line.lower()
        hits = sum(1 for keyword in HEURISTIC_KEYWORDS if keyword in lowered)
        if hits >= 2:
            return line
    return None


def extract_keywords(descriptions: Sequence[str], limit: int = MAX_KEYWORDS) -> List[str]:
    combined = " ".join(descriptions).lower()
    found: List[str] = []
    for keywords in KEYWORD_CATEGORIES.values():
        for keyword in keywords:
            if keyword in combined and keyword not in found:
                found.append(keyword)
                if len(found) >= limit:
                    return found
    return found


def ensure_quality_keywords(prompt: str) -> str:
    lowered = prompt.lower()
    if any(word in lowered for word in QUALITY_FAMILY):
        return prompt
    return f"{prompt.rstrip().rstrip(',.')}, {QUALITY_SUFFIX}"


def generic_prompt(input_shape: InputShape = InputShape.NATIVE_CLOUD) -> SynthesizedPrompt:
    return SynthesizedPrompt(
        prompt=GENERIC_PROMPTS.get(input_shape, GENERIC_PROMPTS[InputShape.SIMPLE_TEXT]),
        rationale=NO_PREFERENCE_RATIONALE,
        source="generic",
    )


def keyword_prompt(descriptions: Sequence[str]) -> SynthesizedPrompt:
    """Local fallback: keyword extraction, then a sentiment-dependent template."""
    keywords = extract_keywords(descriptions)
    if keywords:
        keyword_text = ", ".join(keywords)
        prompt = f"Create a beautiful artwork featuring {keyword_text}, high quality, detailed, artistic style"
        return SynthesizedPrompt(
            prompt=ensure_quality_keywords(prompt),
            rationale=f"Built from keywords found in the liked image descriptions: {keyword_text}.",
            source="keywords",
        )

    hints = ". ".join(d.strip() for d in descriptions if d.strip())
    if len(hints) > 200:
        hints = hints[:197].rstrip() + "..."
    lowered = hints.lower()
    if any(word in lowered for word in POSITIVE_SENTIMENT_WORDS):
        prompt = f'Create an image the user will love, inspired by: "{hints}". Keep the same appeal with an artistic style'
    else:
        prompt = (
            f'Generate an image based on user preferences. User likes images described as: "{hints}". '
            "Generate a similar image with artistic style"
        )
    return SynthesizedPrompt(
        prompt=ensure_quality_keywords(prompt),
        rationale="No known keywords were found, so the liked image descriptions were used directly.",
        source="template",
    )


class PromptSynthesizer:
    """
    Turns liked descriptions into a generation prompt.

    Order: remote language model (structured fields, then the keyword-line heuristic),
    local keyword extraction, and finally a template that embeds the descriptions.
    Every path yields a non-empty prompt.
    """

    def __init__(self, text_client=None):
        self.text_client = text_client

    async def synthesize(
        self,
        liked_descriptions: Sequence[str],
        input_shape: InputShape = InputShape.NATIVE_CLOUD,
    ) -> SynthesizedPrompt:
        descriptions = [d for d in liked_descriptions if d and d.strip()]
        if not descriptions:
            return generic_prompt(input_shape)

        remote = await self._synthesize_remote(descriptions)
        if remote is not None:
            return remote

        result = keyword_prompt(descriptions)
        return SynthesizedPrompt(
            prompt=result.prompt,
            rationale=f"Language model prompt generation was unavailable. {result.rationale}",
            source=result.source,
        )

    async def _synthesize_remote(self, descriptions: Sequence[str]) -> Optional[SynthesizedPrompt]:
        if self.text_client is None:
            return None

        labeled = "\n".join(f"{index}. {text}" for index, text in enumerate(descriptions, start=1))
        try:
            response = await self.text_client.generate_text(SYNTHESIS_INSTRUCTION.format(descriptions=labeled))
        except ImageGenerationError as e:
            logger.warning(f"Remote prompt synthesis failed ({e.kind}): {e}")
            return None

        parsed = parse_prompt_response(response)
        prompt = parsed.prompt or find_prompt_like_line(response)
        if not prompt:
            logger.warning("Remote prompt synthesis returned no usable prompt")
            return None

        rationale = parsed.reason or f"Prompt written by the language model from {len(descriptions)} liked images."
        extras = [f"{label}: {value}" for label, value in (("Style", parsed.style), ("Mood", parsed.mood)) if value]
        if extras:
            rationale = f"{rationale} ({'; '.join(extras)})"

        return SynthesizedPrompt(
            prompt=ensure_quality_keywords(prompt),
            rationale=rationale,
            negative_prompt=parsed.negative,
            source="remote",
        )
