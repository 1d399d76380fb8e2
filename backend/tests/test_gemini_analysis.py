import asyncio
import base64
import io

import pytest
from PIL import Image

from conftest import DummyResponse, gemini_text_response
from services import gemini
from services.config import Settings
from services.errors import AuthenticationError, ConfigurationError, DecodingError
from services.gemini import GeminiClient, UserPreferenceAnalysis, _extract_section, extract_candidate_text
from services.image_normalize import optimize_image_for_api
from services.preferences import EvaluationResult, SwipeDirection
from services.prompt_synthesis import PromptSynthesizer


def _png(width, height, color=(200, 120, 90)):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buf, format="PNG")
    return buf.getvalue()


def _client(settings=None, sleep=None):
    async def no_sleep(_seconds):
        return None

    return GeminiClient(settings or Settings(gemini_api_key="test-key"), sleep=sleep or no_sleep)


PREFERENCE_RESPONSE = """
**Preferred features:**
- Soft pastel colors
- Anime character design
• Gentle lighting

**Avoided elements:**
- Dark, gritty scenes

**Recommendations:**
- Keep compositions simple
- Use warm highlights
- Add subtle sparkles
- Try watercolor textures
- Explore spring themes
- Sixth item is dropped

Aesthetic profile:
Dreamy and cute.
"""


def test_extract_section_reads_bullets_under_heading():
    assert _extract_section(PREFERENCE_RESPONSE, "preferred") == [
        "Soft pastel colors", "Anime character design", "Gentle lighting",
    ]
    assert _extract_section(PREFERENCE_RESPONSE, "avoided") == ["Dark, gritty scenes"]
    assert len(_extract_section(PREFERENCE_RESPONSE, "recommendations")) == 5


@pytest.mark.asyncio
async def test_generate_text_posts_prompt_with_api_key(monkeypatch):
    seen = {}

    async def fake_post(_client, *, url, headers, payload):
        seen.update(url=url, payload=payload)
        return gemini_text_response("hello")

    monkeypatch.setattr(gemini, "_gemini_post_json", fake_post)
    assert await _client().generate_text("say hello") == "hello"
    assert seen["url"].endswith(":generateContent?key=test-key")
    assert seen["payload"]["contents"][0]["parts"] == [{"text": "say hello"}]


@pytest.mark.asyncio
async def test_generate_text_maps_errors(monkeypatch):
    async def unauthorized(_client, *, url, headers, payload):
        return DummyResponse(status_code=403, text="API key not valid")

    monkeypatch.setattr(gemini, "_gemini_post_json", unauthorized)
    with pytest.raises(AuthenticationError):
        await _client().generate_text("x")

    async def empty(_client, *, url, headers, payload):
        return DummyResponse(data={"candidates": []})

    monkeypatch.setattr(gemini, "_gemini_post_json", empty)
    with pytest.raises(DecodingError):
        await _client().generate_text("x")


@pytest.mark.asyncio
async def test_generate_text_without_key_is_configuration_error():
    with pytest.raises(ConfigurationError):
        await _client(Settings(gemini_api_key="YOUR_GEMINI_API_KEY")).generate_text("x")


@pytest.mark.asyncio
async def test_analyze_image_sends_downscaled_jpeg(monkeypatch):
    seen = {}

    async def fake_post(_client, *, url, headers, payload):
        seen["parts"] = payload["contents"][0]["parts"]
        return gemini_text_response("An orange square.")

    monkeypatch.setattr(gemini, "_gemini_post_json", fake_post)
    description = await _client().analyze_image(_png(2000, 1000))

    assert description == "An orange square."
    inline = seen["parts"][1]["inline_data"]
    assert inline["mime_type"] == "image/jpeg"
    sent = Image.open(io.BytesIO(base64.b64decode(inline["data"])))
    assert sent.size == (768, 384)


@pytest.mark.asyncio
async def test_analyze_image_returns_none_on_failure(sample_image_bytes):
    # no_network makes the request fail with a transport error.
    assert await _client().analyze_image(sample_image_bytes) is None


@pytest.mark.asyncio
async def test_analyze_images_chunks_and_keeps_order(monkeypatch):
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    async def fake_post(_client, *, url, headers, payload):
        data = base64.b64decode(payload["contents"][0]["parts"][1]["inline_data"]["data"])
        width = Image.open(io.BytesIO(data)).size[0]
        # Later images answer sooner, so completion order differs from input order.
        await asyncio.sleep((20 - width) / 1000)
        if width == 13:
            return DummyResponse(status_code=500, text="boom")
        return gemini_text_response(f"image {width}")

    monkeypatch.setattr(gemini, "_gemini_post_json", fake_post)
    client = _client(Settings(gemini_api_key="test-key", analysis_chunk_delay_s=0.5), sleep=record_sleep)

    images = [_png(10 + i, 10) for i in range(7)]
    results = await client.analyze_images(images)

    assert results == ["image 10", "image 11", "image 12", None, "image 14", "image 15", "image 16"]
    # 7 images in chunks of 3 -> 3 chunks -> 2 pauses.
    assert sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_evaluate_swiped_image_falls_back_when_analysis_fails(sample_image_bytes):
    result = await _client().evaluate_swiped_image(sample_image_bytes, "liked")
    assert result.direction == SwipeDirection.LIKED
    assert "Detailed analysis is not available" in result.analysis_text


@pytest.mark.asyncio
async def test_evaluate_swiped_image_uses_model_text(monkeypatch, sample_image_bytes):
    async def fake_post(_client, *, url, headers, payload):
        assert 'rated this image as "disliked"' in payload["contents"][0]["parts"][0]["text"]
        return gemini_text_response("Too dark and cluttered.")

    monkeypatch.setattr(gemini, "_gemini_post_json", fake_post)
    result = await _client().evaluate_swiped_image(sample_image_bytes, SwipeDirection.DISLIKED)
    assert result.analysis_text == "Too dark and cluttered."


@pytest.mark.asyncio
async def test_analyze_user_preferences_parses_sections(monkeypatch):
    seen = {}

    async def fake_post(_client, *, url, headers, payload):
        seen["prompt"] = payload["contents"][0]["parts"][0]["text"]
        return gemini_text_response(PREFERENCE_RESPONSE)

    monkeypatch.setattr(gemini, "_gemini_post_json", fake_post)
    evaluations = [
        EvaluationResult(SwipeDirection.LIKED, "pastel anime girl"),
        EvaluationResult(SwipeDirection.LIKED, "soft watercolor cat"),
        EvaluationResult(SwipeDirection.DISLIKED, "grim industrial scene"),
    ]
    analysis = await _client().analyze_user_preferences(evaluations)

    assert "- pastel anime girl" in seen["prompt"]
    assert "- grim industrial scene" in seen["prompt"]
    assert analysis.preferred_features[0] == "Soft pastel colors"
    assert analysis.avoided_elements == ["Dark, gritty scenes"]
    assert analysis.total_evaluations == 3
    assert analysis.like_count == 2
    assert analysis.to_dict()["like_rate"] == pytest.approx(66.7)
    assert "Dreamy and cute." in analysis.aesthetic_profile


@pytest.mark.asyncio
async def test_analyze_user_preferences_requires_evaluations():
    with pytest.raises(ValueError):
        await _client().analyze_user_preferences([])


def test_optimize_image_passes_small_images_through(sample_image_bytes):
    data, mime = optimize_image_for_api(sample_image_bytes)
    assert data == sample_image_bytes
    assert mime == "image/png"


def test_optimize_image_flattens_large_transparent_png():
    buf = io.BytesIO()
    Image.new("RGBA", (1600, 800), (0, 0, 0, 0)).save(buf, format="PNG")
    data, mime = optimize_image_for_api(buf.getvalue())
    assert mime == "image/jpeg"
    out = Image.open(io.BytesIO(data))
    assert out.size == (768, 384)
    assert out.getpixel((10, 10)) == (255, 255, 255)


def test_optimize_image_passes_undecodable_bytes_through():
    data, mime = optimize_image_for_api(b"definitely not an image")
    assert data == b"definitely not an image"
    assert mime == "image/jpeg"


def test_optimize_image_rejects_empty_input():
    with pytest.raises(ValueError):
        optimize_image_for_api(b"")


@pytest.mark.parametrize("data", [
    {"candidates": ["x"]},
    {"candidates": "x"},
    {"candidates": [{"content": "x"}]},
    {"candidates": [{"content": {"parts": "x"}}]},
    ["x"],
])
def test_extract_candidate_text_ignores_wrong_shapes(data):
    assert extract_candidate_text(data) == ""


@pytest.mark.asyncio
async def test_malformed_candidates_fall_back_to_keyword_prompt(monkeypatch):
    async def fake_post(_client, *, url, headers, payload):
        return DummyResponse(data={"candidates": ["oops"]})

    monkeypatch.setattr(gemini, "_gemini_post_json", fake_post)
    with pytest.raises(DecodingError):
        await _client().generate_text("x")

    result = await PromptSynthesizer(_client()).synthesize(["a pastel anime illustration of a cat"])
    assert result.source == "keywords"
    assert "pastel" in result.prompt


def _analysis():
    return UserPreferenceAnalysis(
        preferred_features=["Soft pastel colors", "Gentle lighting"],
        avoided_elements=["Dark, gritty scenes"],
        recommendations=["Add subtle sparkles"],
        aesthetic_profile="Dreamy and cute.",
        total_evaluations=3,
        like_count=2,
    )


@pytest.mark.asyncio
async def test_optimize_prompt_rewrites_towards_preferences(monkeypatch):
    seen = {}

    async def fake_post(_client, *, url, headers, payload):
        seen["prompt"] = payload["contents"][0]["parts"][0]["text"]
        return gemini_text_response('"a pastel cat, soft light"\n')

    monkeypatch.setattr(gemini, "_gemini_post_json", fake_post)
    optimized = await _client().optimize_prompt("a cat", _analysis())

    assert optimized == "a pastel cat, soft light"
    assert 'Original prompt: "a cat"' in seen["prompt"]
    assert "Soft pastel colors, Gentle lighting" in seen["prompt"]
    assert "Dark, gritty scenes" in seen["prompt"]
    assert "Add subtle sparkles" in seen["prompt"]


@pytest.mark.asyncio
async def test_optimize_prompt_rejects_blank_input_and_empty_output(monkeypatch):
    with pytest.raises(ValueError):
        await _client().optimize_prompt("   ", _analysis())

    async def quotes_only(_client, *, url, headers, payload):
        return gemini_text_response('""')

    monkeypatch.setattr(gemini, "_gemini_post_json", quotes_only)
    with pytest.raises(DecodingError):
        await _client().optimize_prompt("a cat", _analysis())
