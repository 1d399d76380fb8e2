import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from services.config import Settings, require_credential
from services.errors import (
    AuthenticationError,
    DecodingError,
    GenerationTimeoutError,
    NetworkError,
    UpstreamGenerationError,
    classify_status,
)
from services.models import GenerationRequest, InputShape

logger = logging.getLogger(__name__)

BACKEND = "replicate"
PENDING_STATUSES = {"starting", "processing"}


@dataclass
class PredictionJob:
    id: str
    status: str
    get_url: Optional[str] = None
    output: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.status in PENDING_STATUSES

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "PredictionJob":
        if not isinstance(data, dict) or not data.get("id") or not data.get("status"):
            raise DecodingError(f"Unexpected prediction payload: {str(data)[:200]}", backend=BACKEND)
        urls = data.get("urls") or {}
        if not isinstance(urls, dict) or not isinstance(urls.get("get") or "", str):
            raise DecodingError(f"Unexpected prediction urls: {str(urls)[:200]}", backend=BACKEND)
        output = data.get("output") or []
        if isinstance(output, str):
            output = [output]
        if not isinstance(output, list):
            raise DecodingError(f"Unexpected prediction output: {str(output)[:200]}", backend=BACKEND)
        return cls(
            id=str(data["id"]),
            status=str(data["status"]),
            get_url=urls.get("get"),
            output=[str(item) for item in output if item],
            error=data.get("error"),
        )


async def _replicate_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: Dict[str, str],
    payload: Optional[Dict[str, Any]] = None,
) -> httpx.Response:
    return await client.request(method, url, headers=headers, json=payload)


async def _download_bytes(client: httpx.AsyncClient, url: str) -> httpx.Response:
    return await client.get(url, follow_redirects=True)


def build_input(request: GenerationRequest) -> Dict[str, Any]:
    """Model-specific `input` object for a prediction."""
    shape = request.model.input_shape
    if shape == InputShape.FLAG_ONLY:
        return {"prompt_conjunction": True}
    if shape == InputShape.STRUCTURED_IMAGEN:
        data: Dict[str, Any] = {
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio.value,
            "num_outputs": 1,
            "output_format": "png",
            "output_quality": 90,
        }
        if request.negative_prompt:
            data["negative_prompt"] = request.negative_prompt
        return data
    return {"prompt": request.prompt, "width": 1024, "height": 1024, "num_outputs": 1}


class ReplicateClient:
    """
    Asynchronous job backend: POST creates a prediction, its `urls.get` is polled once per
    interval while the status is starting/processing, and the first output URL is downloaded.
    """

    def __init__(self, settings: Settings, *, sleep=asyncio.sleep):
        self.settings = settings
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        api_key = require_credential(self.settings.replicate_api_key, "REPLICATE_API_TOKEN", backend=BACKEND)
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _call(self, client: httpx.AsyncClient, method: str, url: str, payload=None) -> httpx.Response:
        try:
            return await _replicate_request(client, method, url, headers=self._headers(), payload=payload)
        except httpx.HTTPError as e:
            raise NetworkError(f"Replicate {method} failed: {e}", backend=BACKEND) from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise DecodingError(f"Replicate returned non-JSON body: {e}", backend=BACKEND) from e

    async def submit(self, request: GenerationRequest, client: httpx.AsyncClient) -> PredictionJob:
        payload = {"version": request.model.version_id, "input": build_input(request)}
        response = await self._call(client, "POST", f"{self.settings.replicate_base_url}/predictions", payload)
        if not 200 <= response.status_code < 300:
            logger.error(f"Replicate submit error: {response.status_code} - {response.text[:300]}")
            raise classify_status(response.status_code, response.text, backend=BACKEND)
        job = PredictionJob.from_response(self._json(response))
        logger.info(f"Replicate prediction {job.id} created ({job.status})")
        return job

    async def poll(self, job: PredictionJob, client: httpx.AsyncClient) -> Optional[PredictionJob]:
        """One status check. Returns None for a non-200 poll so the caller simply tries again."""
        if not job.get_url:
            raise DecodingError("Prediction has no status URL", backend=BACKEND)
        response = await self._call(client, "GET", job.get_url)
        if response.status_code in (401, 403):
            raise AuthenticationError(f"HTTP {response.status_code} while polling", backend=BACKEND,
                                      status_code=response.status_code)
        if response.status_code != 200:
            logger.warning(f"Replicate poll for {job.id} returned {response.status_code}, retrying")
            return None
        return PredictionJob.from_response(self._json(response))

    async def wait(self, job: PredictionJob, client: httpx.AsyncClient) -> PredictionJob:
        max_attempts = self.settings.replicate_max_poll_attempts
        attempts = 0
        while job.pending and attempts < max_attempts:
            attempts += 1
            logger.debug(f"Replicate {job.id}: {job.status} (poll {attempts}/{max_attempts})")
            await self._sleep(self.settings.replicate_poll_interval_s)
            polled = await self.poll(job, client)
            if polled is not None:
                job = polled

        if job.pending:
            raise GenerationTimeoutError(
                f"Prediction {job.id} still {job.status} after {max_attempts} polls", backend=BACKEND
            )
        if job.status == "failed":
            raise UpstreamGenerationError(job.error or "Prediction failed", backend=BACKEND)
        if job.status == "canceled":
            raise UpstreamGenerationError("Prediction was canceled", backend=BACKEND)
        if job.status != "succeeded":
            raise DecodingError(f"Unknown prediction status: {job.status}", backend=BACKEND)
        return job

    async def download(self, job: PredictionJob, client: httpx.AsyncClient) -> bytes:
        if not job.output:
            raise DecodingError(f"Prediction {job.id} succeeded without output URLs", backend=BACKEND)
        url = job.output[0]
        logger.info(f"Downloading Replicate output: {url}")
        try:
            response = await _download_bytes(client, url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Output download failed: {e}", backend=BACKEND) from e
        if response.status_code != 200:
            raise classify_status(response.status_code, response.text, backend=BACKEND)
        if not response.content:
            raise DecodingError("Downloaded output is empty", backend=BACKEND)
        return response.content

    async def generate(self, request: GenerationRequest) -> bytes:
        # Fail fast on missing/placeholder keys before opening a connection.
        self._headers()
        async with httpx.AsyncClient(timeout=60.0) as client:
            job = await self.submit(request, client)
            job = await self.wait(job, client)
            return await self.download(job, client)
