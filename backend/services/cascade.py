import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from services.errors import (
    GenerationFailedError,
    GenerationTimeoutError,
    ImageGenerationError,
    NetworkError,
)
from services.models import GenerationRequest
from services.procedural import ProceduralImageSynthesizer

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class BackendAttempt:
    """Lifecycle of one backend within one cascade run."""

    backend: str
    state: AttemptState = AttemptState.NOT_STARTED
    failure_kind: Optional[str] = None
    error: Optional[str] = None
    calls: int = 0

    def start(self) -> None:
        self.state = AttemptState.IN_FLIGHT
        self.calls += 1

    def succeed(self) -> None:
        self.state = AttemptState.SUCCEEDED

    def fail(self, exc: ImageGenerationError) -> None:
        self.state = AttemptState.FAILED
        self.failure_kind = exc.kind
        self.error = str(exc)

    def to_dict(self) -> dict:
        return {
            "backend": self.backend,
            "state": self.state.value,
            "failure_kind": self.failure_kind,
            "error": self.error,
            "calls": self.calls,
        }


@dataclass
class CascadeOutcome:
    image: bytes
    backend: str
    attempts: List[BackendAttempt] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return any(a.state == AttemptState.FAILED for a in self.attempts)

    def provenance(self) -> str:
        failed = [a for a in self.attempts if a.state == AttemptState.FAILED]
        if not failed:
            return f"Generated by {self.backend}."
        reasons = "; ".join(f"{a.backend} failed ({a.failure_kind}: {a.error})" for a in failed)
        return f"Generated by {self.backend} as a fallback because {reasons}."


async def race_with_timeout(operation: Awaitable, timeout_s: float, *, label: str = "operation"):
    """
    Run `operation` against a timer. Whichever finishes first wins and the other is cancelled.
    Raises GenerationTimeoutError when the timer wins.
    """
    op_task = asyncio.ensure_future(operation)
    timer = asyncio.ensure_future(asyncio.sleep(timeout_s))
    try:
        done, _pending = await asyncio.wait({op_task, timer}, return_when=asyncio.FIRST_COMPLETED)
        if op_task in done:
            return op_task.result()
        raise GenerationTimeoutError(f"{label} exceeded {timeout_s:.0f}s", backend=label)
    finally:
        timer.cancel()
        if not op_task.done():
            op_task.cancel()
            await asyncio.gather(op_task, return_exceptions=True)


class Backend:
    """One cascade stage. Subclasses implement `generate` and may set a wall-clock `timeout_s`."""

    name = "backend"
    timeout_s: Optional[float] = None

    async def generate(self, request: GenerationRequest) -> bytes:
        raise NotImplementedError


class VertexBackend(Backend):
    name = "vertex"

    def __init__(self, client, timeout_s: Optional[float] = 30.0):
        self.client = client
        self.timeout_s = timeout_s

    async def generate(self, request: GenerationRequest) -> bytes:
        return await self.client.submit(request)


class ReplicateBackend(Backend):
    name = "replicate"

    def __init__(self, client, model=None):
        self.client = client
        self.model = model

    async def generate(self, request: GenerationRequest) -> bytes:
        if self.model is not None and request.model != self.model:
            request = replace(request, model=self.model)
        return await self.client.generate(request)


class GenerationCascade:
    """
    Try each backend in order and stop at the first success; the local procedural
    synthesizer closes the chain.

    Per backend: network errors are retried up to `max_attempts` calls with linear
    backoff (backoff_s * attempt); authentication, configuration, timeout, decoding and
    upstream failures end that backend immediately.
    """

    def __init__(
        self,
        backends: Sequence[Backend],
        local: ProceduralImageSynthesizer,
        *,
        max_attempts: int = 3,
        backoff_s: float = 1.0,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.backends = list(backends)
        self.local = local
        self.max_attempts = max(1, max_attempts)
        self.backoff_s = backoff_s
        self._sleep = sleep

    async def _call(self, backend: Backend, request: GenerationRequest) -> bytes:
        if backend.timeout_s:
            return await race_with_timeout(backend.generate(request), backend.timeout_s, label=backend.name)
        return await backend.generate(request)

    async def _try_backend(self, backend: Backend, request: GenerationRequest, attempt: BackendAttempt) -> Optional[bytes]:
        while True:
            attempt.start()
            logger.info(f"Generation attempt {attempt.calls}/{self.max_attempts} on {backend.name}")
            try:
                image = await self._call(backend, request)
            except NetworkError as e:
                if attempt.calls < self.max_attempts:
                    delay = self.backoff_s * attempt.calls
                    logger.warning(f"{backend.name} network failure ({e}); retrying in {delay:.1f}s")
                    await self._sleep(delay)
                    continue
                attempt.fail(e)
            except ImageGenerationError as e:
                attempt.fail(e)
            else:
                attempt.succeed()
                return image
            logger.warning(f"{backend.name} failed ({attempt.failure_kind}): {attempt.error}")
            return None

    async def run(self, request: GenerationRequest) -> CascadeOutcome:
        attempts: List[BackendAttempt] = []
        for backend in self.backends:
            attempt = BackendAttempt(backend.name)
            attempts.append(attempt)
            image = await self._try_backend(backend, request, attempt)
            if image is not None:
                return CascadeOutcome(image=image, backend=backend.name, attempts=attempts)

        local_attempt = BackendAttempt("procedural")
        attempts.append(local_attempt)
        local_attempt.start()
        logger.info("All remote backends failed or were skipped; using procedural synthesis")
        try:
            image = self.local.synthesize(request.prompt)
        except Exception as e:
            local_attempt.state = AttemptState.FAILED
            local_attempt.error = str(e)
            raise GenerationFailedError(f"Every generation stage failed, last error: {e}") from e
        local_attempt.succeed()
        return CascadeOutcome(image=image, backend="procedural", attempts=attempts)
