import base64
import binascii
import logging
from typing import Any, Dict, Optional

import httpx

from services.auth import AccessTokenProvider
from services.config import Settings, require_credential
from services.errors import DecodingError, NetworkError, classify_status
from services.models import GenerationRequest

logger = logging.getLogger(__name__)

BACKEND = "vertex"
DEFAULT_IMAGEN_MODEL = "imagen-3.0-generate-001"


async def _vertex_post_json(
    client: httpx.AsyncClient,
    *,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
) -> httpx.Response:
    return await client.post(url, headers=headers, json=payload)


def build_predict_payload(request: GenerationRequest) -> Dict[str, Any]:
    instance: Dict[str, Any] = {
        "prompt": request.prompt,
        "aspectRatio": request.aspect_ratio.value,
        "outputFormat": request.output_format.value,
        "sampleCount": 1,
    }
    if request.negative_prompt:
        instance["negativePrompt"] = request.negative_prompt
    return {
        "instances": [instance],
        "parameters": {
            "sampleCount": 1,
            "outputImageType": request.output_format.value,
            "language": "auto",
        },
    }


def decode_prediction(data: Dict[str, Any]) -> bytes:
    if not isinstance(data, dict):
        raise DecodingError(f"Unexpected Vertex AI response: {str(data)[:200]}", backend=BACKEND)
    predictions = data.get("predictions") or []
    if not isinstance(predictions, list) or not predictions:
        raise DecodingError("Vertex AI returned no predictions", backend=BACKEND)
    prediction = predictions[0]
    if not isinstance(prediction, dict):
        raise DecodingError(f"Unexpected prediction entry: {str(prediction)[:200]}", backend=BACKEND)
    encoded = prediction.get("bytesBase64Encoded")
    if not encoded or not isinstance(encoded, str):
        raise DecodingError("Vertex AI prediction has no image bytes", backend=BACKEND)
    try:
        image = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodingError(f"Invalid base64 image data: {e}", backend=BACKEND) from e
    if not image:
        raise DecodingError("Decoded image is empty", backend=BACKEND)
    return image


class VertexImagenClient:
    """
    Synchronous native cloud backend: one authenticated POST to the Imagen `:predict`
    endpoint, image bytes come back base64-encoded in the response.
    """

    def __init__(self, settings: Settings, token_provider: Optional[AccessTokenProvider] = None):
        self.settings = settings
        self.token_provider = token_provider or AccessTokenProvider(settings)

    def predict_url(self, model_name: str) -> str:
        return f"{self.settings.vertex_endpoint}{model_name}:predict"

    async def submit(self, request: GenerationRequest) -> bytes:
        # Project settings are validated before the token so no network call happens without them.
        require_credential(self.settings.vertex_project_id, "VERTEX_PROJECT_ID", backend=BACKEND)
        token = await self.token_provider.get_token()

        model_name = request.model.version_id if request.model.is_native else DEFAULT_IMAGEN_MODEL
        url = self.predict_url(model_name)
        logger.info(f"Calling Vertex AI Imagen: {url}")

        try:
            async with httpx.AsyncClient(timeout=self.settings.native_timeout_s + 5) as client:
                response = await _vertex_post_json(
                    client,
                    url=url,
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {token}",
                    },
                    payload=build_predict_payload(request),
                )
        except httpx.HTTPError as e:
            raise NetworkError(f"Vertex AI request failed: {e}", backend=BACKEND) from e

        if response.status_code != 200:
            logger.error(f"Vertex AI error: {response.status_code} - {response.text[:300]}")
            raise classify_status(response.status_code, response.text, backend=BACKEND)

        try:
            data = response.json()
        except ValueError as e:
            raise DecodingError(f"Vertex AI returned non-JSON body: {e}", backend=BACKEND) from e

        image = decode_prediction(data)
        logger.info(f"Vertex AI Imagen returned {len(image)} bytes")
        return image
