import pytest

from services.cascade import ReplicateBackend, VertexBackend
from services.config import DEFAULT_MODELS, Settings
from services.errors import NetworkError, QuotaExceededError
from services.generation import DIRECT_PROMPT_RATIONALE, ImageGenerationService, create_services
from services.models import InputShape
from services.procedural import ProceduralImageSynthesizer
from services.prompt_synthesis import GENERIC_PROMPTS, NO_PREFERENCE_RATIONALE, PromptSynthesizer
from services.rate_guard import RejectingRateGuard

NATIVE = next(m for m in DEFAULT_MODELS if m.input_shape == InputShape.NATIVE_CLOUD)
SIMPLE = next(m for m in DEFAULT_MODELS if m.input_shape == InputShape.SIMPLE_TEXT)
FLAG_ONLY = next(m for m in DEFAULT_MODELS if m.input_shape == InputShape.FLAG_ONLY)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeVertex:
    def __init__(self, result=b"vertex-image"):
        self.result = result
        self.requests = []

    async def submit(self, request):
        self.requests.append(request)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeReplicate:
    def __init__(self, result=b"replicate-image"):
        self.result = result
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeTextClient:
    def __init__(self, response):
        self.response = response
        self.prompts = []

    async def generate_text(self, prompt):
        self.prompts.append(prompt)
        return self.response


async def no_sleep(_seconds):
    return None


def _service(*, settings=None, vertex=None, replicate=None, text_client=None, quota=None):
    settings = settings or Settings(backend_retry_backoff_s=0.0)
    return ImageGenerationService(
        settings,
        synthesizer=PromptSynthesizer(text_client),
        vertex=vertex,
        replicate=replicate,
        procedural=ProceduralImageSynthesizer(size=64),
        quota=quota or RejectingRateGuard(100, 3600.0),
        sleep=no_sleep,
    )


@pytest.mark.asyncio
async def test_swipes_to_image_through_native_backend():
    vertex = FakeVertex()
    service = _service(
        vertex=vertex,
        text_client=FakeTextClient("PROMPT: pastel anime cat\nNEGATIVE: blurry\nREASON: Soft anime art."),
    )
    swipes = {"1": ("liked", "a pastel anime illustration of a cat"), "2": ("disliked", "a car")}

    result = await service.generate_from_swipes(swipes, NATIVE)

    assert result.image == b"vertex-image"
    assert result.backend == "vertex"
    assert result.prompt.startswith("pastel anime cat")
    assert result.rationale.startswith("Soft anime art.")
    assert "Generated by vertex." in result.rationale
    assert vertex.requests[0].negative_prompt == "blurry"


@pytest.mark.asyncio
async def test_no_likes_uses_generic_prompt_and_still_returns_image():
    service = _service()
    result = await service.generate_from_swipes({"1": ("disliked", "a car")}, NATIVE)

    assert result.prompt == GENERIC_PROMPTS[InputShape.NATIVE_CLOUD]
    assert result.rationale.startswith(NO_PREFERENCE_RATIONALE)
    assert result.backend == "procedural"
    assert result.mime_type == "image/png"
    assert result.image[:8] == b"\x89PNG\r\n\x1a\n"


@pytest.mark.asyncio
async def test_all_remote_backends_failing_falls_back_to_procedural():
    vertex = FakeVertex(NetworkError("reset", backend="vertex"))
    replicate = FakeReplicate(NetworkError("reset", backend="replicate"))
    service = _service(vertex=vertex, replicate=replicate)

    result = await service.generate_directly("a quiet harbour at dusk", SIMPLE)

    assert result.backend == "procedural"
    assert len(vertex.requests) == 3
    assert len(replicate.requests) == 3
    assert result.rationale.startswith(DIRECT_PROMPT_RATIONALE)
    assert "vertex failed (network" in result.rationale
    assert [a["backend"] for a in result.attempts] == ["vertex", "replicate", "procedural"]


@pytest.mark.asyncio
async def test_native_model_falls_back_to_default_async_model():
    replicate = FakeReplicate()
    service = _service(vertex=FakeVertex(NetworkError("reset")), replicate=replicate)

    result = await service.generate_directly("a lighthouse", NATIVE)

    assert result.backend == "replicate"
    assert replicate.requests[0].model == SIMPLE


def test_native_first_ordering_by_default():
    service = _service(vertex=FakeVertex(), replicate=FakeReplicate())
    stages = service.build_backends(SIMPLE)
    assert [type(s) for s in stages] == [VertexBackend, ReplicateBackend]
    assert stages[0].timeout_s == 30.0
    assert stages[1].model == SIMPLE


def test_caller_primary_ordering_when_native_first_disabled():
    settings = Settings(native_first=False)
    service = _service(settings=settings, vertex=FakeVertex(), replicate=FakeReplicate())
    assert [s.name for s in service.build_backends(SIMPLE)] == ["replicate", "vertex"]
    assert [s.name for s in service.build_backends(NATIVE)] == ["vertex", "replicate"]


@pytest.mark.asyncio
async def test_blank_direct_prompt_is_rejected():
    with pytest.raises(ValueError):
        await _service().generate_directly("   ", SIMPLE)


@pytest.mark.asyncio
async def test_flag_only_model_accepts_blank_prompt():
    replicate = FakeReplicate()
    result = await _service(replicate=replicate).generate_directly("", FLAG_ONLY)
    assert result.backend == "replicate"
    assert result.prompt == GENERIC_PROMPTS[InputShape.FLAG_ONLY]


@pytest.mark.asyncio
async def test_generation_quota_rejects_call_over_limit_then_resets():
    clock = FakeClock()
    service = _service(quota=RejectingRateGuard(2, 3600.0, name="generation", clock=clock))

    await service.generate_directly("first", SIMPLE)
    await service.generate_directly("second", SIMPLE)
    with pytest.raises(QuotaExceededError) as excinfo:
        await service.generate_directly("third", SIMPLE)
    assert excinfo.value.retry_after == pytest.approx(3600.0)

    clock.now += 3600.0
    result = await service.generate_directly("fourth", SIMPLE)
    assert result.prompt == "fourth"


@pytest.mark.asyncio
async def test_exhausted_quota_rejects_swipes_before_prompt_synthesis():
    text_client = FakeTextClient("PROMPT: pastel anime cat")
    quota = RejectingRateGuard(1, 3600.0, name="generation", clock=FakeClock())
    service = _service(text_client=text_client, quota=quota)

    await service.generate_directly("first", SIMPLE)
    with pytest.raises(QuotaExceededError):
        await service.generate_from_swipes({"1": ("liked", "a pastel cat")}, SIMPLE)
    assert text_client.prompts == []


@pytest.mark.asyncio
async def test_swipe_generation_spends_one_quota_slot():
    text_client = FakeTextClient("PROMPT: pastel anime cat")
    quota = RejectingRateGuard(3, 3600.0, name="generation", clock=FakeClock())
    service = _service(text_client=text_client, quota=quota)

    result = await service.generate_from_swipes({"1": ("liked", "a pastel cat")}, SIMPLE)
    assert result.prompt.startswith("pastel anime cat")
    assert len(text_client.prompts) == 1
    assert quota.remaining == 2


@pytest.mark.asyncio
async def test_factory_wires_unconfigured_backends_to_procedural():
    services = create_services(Settings(procedural_size=64, backend_retry_backoff_s=0.0))
    result = await services.generation.generate_directly("a red barn", SIMPLE)
    assert result.backend == "procedural"
    assert [a["failure_kind"] for a in result.attempts[:2]] == ["configuration", "configuration"]
