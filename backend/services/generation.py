import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from services.cascade import Backend, GenerationCascade, ReplicateBackend, VertexBackend
from services.config import Settings, default_async_model, default_model
from services.gemini import GeminiClient
from services.image_normalize import sniff_mime
from services.models import AspectRatio, GenerationRequest, GenerationResult, InputShape, ModelDescriptor
from services.preferences import EvaluationResult, extract_liked_descriptions
from services.procedural import ProceduralImageSynthesizer
from services.prompt_synthesis import GENERIC_PROMPTS, PromptSynthesizer, SynthesizedPrompt
from services.rate_guard import RejectingRateGuard
from services.replicate import ReplicateClient
from services.vertex import VertexImagenClient

logger = logging.getLogger(__name__)

DIRECT_PROMPT_RATIONALE = "User-entered prompt."


class ImageGenerationService:
    """
    Swipe results in, image out.

    Quota check -> preference extraction -> prompt synthesis -> fallback cascade.
    The returned GenerationResult always carries an image, a non-empty prompt and a
    rationale that explains both the prompt and which backend produced the image.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        synthesizer: PromptSynthesizer,
        vertex: Optional[VertexImagenClient],
        replicate: Optional[ReplicateClient],
        procedural: ProceduralImageSynthesizer,
        quota: RejectingRateGuard,
        sleep=asyncio.sleep,
    ):
        self.settings = settings
        self.synthesizer = synthesizer
        self.vertex = vertex
        self.replicate = replicate
        self.procedural = procedural
        self.quota = quota
        self._sleep = sleep

    @property
    def catalog(self):
        return self.settings.catalog

    def resolve_model(self, model: Optional[ModelDescriptor]) -> ModelDescriptor:
        resolved = model or default_model(self.catalog)
        if resolved is None:
            raise ValueError("No generation model selected")
        return resolved

    def build_backends(self, model: ModelDescriptor) -> List[Backend]:
        """
        Cloud stages for one request; the procedural stage is appended by the cascade.

        Native-first mode always tries Vertex first and treats the caller's choice as the
        fallback target. Otherwise the caller's backend leads and the other one follows.
        """
        native = None
        if self.vertex is not None and any(m.is_native for m in self.catalog):
            native = VertexBackend(self.vertex, timeout_s=self.settings.native_timeout_s)

        async_stage = None
        if self.replicate is not None:
            target = model if not model.is_native else default_async_model(self.catalog)
            if target is not None:
                async_stage = ReplicateBackend(self.replicate, target)

        if self.settings.native_first or model.is_native:
            ordered = [native, async_stage]
        else:
            ordered = [async_stage, native]
        return [stage for stage in ordered if stage is not None]

    async def generate(
        self,
        prompt: str,
        model: Optional[ModelDescriptor] = None,
        *,
        rationale: Optional[str] = None,
        negative_prompt: Optional[str] = None,
        aspect_ratio: AspectRatio = AspectRatio.SQUARE,
        check_quota: bool = True,
    ) -> GenerationResult:
        model = self.resolve_model(model)
        if check_quota:
            self.quota.acquire()

        request = GenerationRequest(
            prompt=prompt,
            model=model,
            negative_prompt=negative_prompt,
            aspect_ratio=aspect_ratio,
        )
        cascade = GenerationCascade(
            self.build_backends(model),
            self.procedural,
            max_attempts=self.settings.backend_max_attempts,
            backoff_s=self.settings.backend_retry_backoff_s,
            sleep=self._sleep,
        )
        outcome = await cascade.run(request)
        logger.info(f"Generation finished via {outcome.backend} (model={model.name}, fallback={outcome.used_fallback})")

        parts = [p for p in (rationale, outcome.provenance()) if p]
        return GenerationResult(
            image=outcome.image,
            prompt=request.prompt,
            rationale=" ".join(parts),
            backend=outcome.backend,
            mime_type=sniff_mime(outcome.image),
            attempts=[a.to_dict() for a in outcome.attempts],
        )

    async def synthesize_prompt(
        self,
        swipes=None,
        evaluations: Optional[Iterable[EvaluationResult]] = None,
        model: Optional[ModelDescriptor] = None,
    ) -> SynthesizedPrompt:
        model = self.resolve_model(model)
        liked = extract_liked_descriptions(swipes, evaluations)
        logger.info(f"Synthesizing prompt from {len(liked)} liked descriptions")
        return await self.synthesizer.synthesize(liked, model.input_shape)

    async def generate_from_swipes(
        self,
        swipes=None,
        model: Optional[ModelDescriptor] = None,
        evaluations: Optional[Iterable[EvaluationResult]] = None,
    ) -> GenerationResult:
        model = self.resolve_model(model)
        # Quota first: a rejected call must not spend a language model request.
        self.quota.acquire()
        synthesized = await self.synthesize_prompt(swipes, evaluations, model)
        return await self.generate(
            synthesized.prompt,
            model,
            rationale=synthesized.rationale,
            negative_prompt=synthesized.negative_prompt,
            check_quota=False,
        )

    async def generate_directly(self, prompt: str, model: Optional[ModelDescriptor] = None) -> GenerationResult:
        model = self.resolve_model(model)
        text = (prompt or "").strip()
        if not text:
            if model.input_shape != InputShape.FLAG_ONLY:
                raise ValueError("Prompt must not be empty")
            text = GENERIC_PROMPTS[InputShape.FLAG_ONLY]
        return await self.generate(text, model, rationale=DIRECT_PROMPT_RATIONALE)


@dataclass
class Services:
    settings: Settings
    gemini: GeminiClient
    generation: ImageGenerationService


def create_services(settings: Settings) -> Services:
    """Wire every component from one Settings object."""
    gemini = GeminiClient(settings)
    generation = ImageGenerationService(
        settings,
        synthesizer=PromptSynthesizer(gemini),
        vertex=VertexImagenClient(settings),
        replicate=ReplicateClient(settings),
        procedural=ProceduralImageSynthesizer(settings.procedural_size),
        quota=RejectingRateGuard(settings.generation_max_per_hour, 3600.0, name="generation"),
    )
    return Services(settings=settings, gemini=gemini, generation=generation)
