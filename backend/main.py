from fastapi import FastAPI, UploadFile, File, HTTPException, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from typing import List, Optional
import uvicorn
import os
import sys
import base64
import json
import logging
import uuid
from pathlib import Path
from dotenv import load_dotenv

# Add current directory to path to find services module
sys.path.insert(0, str(Path(__file__).parent))

from services.config import Settings, find_model
from services.errors import ConfigurationError, ImageGenerationError, QuotaExceededError
from services.generation import create_services
from services.models import GenerationResult
from services.preferences import EvaluationSession, SwipeDirection, SwipeOutcome

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = Settings.from_env()
services = create_services(settings)
session = EvaluationSession()

app = FastAPI(title="YourWorld Image API")
app.state.settings = settings
app.state.services = services
app.state.session = session

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-Id"],
)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp", "image/heic", "image/heif"}
MAX_ANALYZE_IMAGES = 10


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


def _services(request: Request):
    return request.app.state.services


def _session(request: Request) -> EvaluationSession:
    return request.app.state.session


async def read_image_upload(file: UploadFile, max_size: int) -> bytes:
    """Validate type and size of an uploaded image and return its bytes."""
    if file.content_type and file.content_type.lower() not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid file type: {file.content_type}")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail=f"Empty upload: {file.filename or 'image'}")
    if len(data) > max_size:
        raise HTTPException(
            status_code=413,
            detail=f"Image too large. Maximum size: {max_size / (1024 * 1024):.1f}MB"
        )
    return data


def resolve_model_param(request: Request, model: Optional[str]):
    catalog = request.app.state.settings.catalog
    descriptor = find_model(catalog, model)
    if descriptor is None:
        raise HTTPException(status_code=400, detail=f"Unknown model: {model}")
    return descriptor


def parse_swipe_results(raw: Optional[str]) -> List[SwipeOutcome]:
    """
    `swipe_results` is JSON: either a list of {image_id, direction, description} objects
    or an object mapping image id -> {direction, description}.
    """
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid swipe_results JSON: {e}")

    if isinstance(data, dict):
        items = [dict(value, image_id=key) if isinstance(value, dict) else {"image_id": key, "direction": value}
                 for key, value in data.items()]
    elif isinstance(data, list):
        items = data
    else:
        raise HTTPException(status_code=400, detail="swipe_results must be a list or an object")

    outcomes = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise HTTPException(status_code=400, detail=f"swipe_results[{index}] must be an object")
        try:
            direction = SwipeDirection.parse(item.get("direction", item.get("liked")))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        outcomes.append(SwipeOutcome(
            image_id=str(item.get("image_id") or item.get("id") or index),
            direction=direction,
            analysis_text=item.get("description") or item.get("analysis_text"),
        ))
    return outcomes


def result_payload(result: GenerationResult) -> dict:
    encoded = base64.b64encode(result.image).decode("utf-8")
    return {
        "image_url": f"data:{result.mime_type};base64,{encoded}",
        "prompt": result.prompt,
        "rationale": result.rationale,
        "backend": result.backend,
        "attempts": result.attempts,
    }


def raise_for_generation_error(e: Exception, action: str):
    if isinstance(e, QuotaExceededError):
        headers = {"Retry-After": str(int(e.retry_after or 0) + 1)}
        raise HTTPException(status_code=429, detail=str(e), headers=headers)
    if isinstance(e, ValueError):
        raise HTTPException(status_code=422, detail=str(e))
    logger.error(f"Error in {action}: {e}", exc_info=True)
    raise HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


@app.get("/")
async def root():
    return {"message": "YourWorld Image API is running"}


@app.get("/api/models")
async def list_models(request: Request):
    catalog = request.app.state.settings.catalog
    default = find_model(catalog, None)
    return {
        "models": [m.to_dict() for m in catalog],
        "default": default.name if default else None,
    }


@app.post("/api/analyze-images")
async def analyze_images(request: Request, images: List[UploadFile] = File(...)):
    """Describe up to 10 images. Failed analyses come back as null."""
    if len(images) > MAX_ANALYZE_IMAGES:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_ANALYZE_IMAGES} images allowed")
    max_size = request.app.state.settings.max_file_size
    payloads = [await read_image_upload(img, max_size) for img in images]

    logger.info(f"Analyzing {len(payloads)} images")
    descriptions = await _services(request).gemini.analyze_images(payloads)
    return {
        "descriptions": [
            {"filename": img.filename, "description": desc}
            for img, desc in zip(images, descriptions)
        ]
    }


@app.post("/api/evaluate")
async def evaluate_image(
    request: Request,
    image: UploadFile = File(...),
    direction: str = Form(...),
    image_id: Optional[str] = Form(None),
):
    try:
        parsed = SwipeDirection.parse(direction)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    data = await read_image_upload(image, request.app.state.settings.max_file_size)

    evaluation = await _services(request).gemini.evaluate_swiped_image(data, parsed)
    evaluation = _session(request).record_evaluation(evaluation)
    if image_id:
        # The evaluation already carries the analysis text.
        _session(request).record_swipe(SwipeOutcome(image_id, parsed))
    logger.info(f"Recorded {parsed.value} evaluation {evaluation.id}")
    return {"evaluation": evaluation.to_dict()}


@app.post("/api/generate-from-swipes")
async def generate_from_swipes(
    request: Request,
    swipe_results: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
):
    """
    Generate an image from swipe feedback. Without `swipe_results` the session's
    recorded swipes and evaluations are used.
    """
    descriptor = resolve_model_param(request, model)
    swipes = parse_swipe_results(swipe_results)
    evaluations = None
    if not swipes:
        swipes = _session(request).swipes
        evaluations = _session(request).evaluations
    try:
        result = await _services(request).generation.generate_from_swipes(swipes, descriptor, evaluations)
    except (ImageGenerationError, ValueError) as e:
        raise_for_generation_error(e, "generate image from swipes")
    return result_payload(result)


@app.post("/api/generate")
async def generate_image(
    request: Request,
    prompt: str = Form(""),
    model: Optional[str] = Form(None),
):
    descriptor = resolve_model_param(request, model)
    try:
        result = await _services(request).generation.generate_directly(prompt, descriptor)
    except (ImageGenerationError, ValueError) as e:
        raise_for_generation_error(e, "generate image")
    return result_payload(result)


@app.post("/api/preferences")
async def analyze_preferences(request: Request):
    evaluations = _session(request).evaluations
    if not evaluations:
        raise HTTPException(status_code=400, detail="No evaluations recorded yet")
    try:
        analysis = await _services(request).gemini.analyze_user_preferences(evaluations)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ImageGenerationError as e:
        logger.error(f"Error in preference analysis: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail=str(e))
    return {"analysis": analysis.to_dict()}


@app.post("/api/optimize-prompt")
async def optimize_prompt(request: Request, prompt: str = Form(...)):
    """Rewrite a user prompt towards the preferences learned from the session's evaluations."""
    if not prompt.strip():
        raise HTTPException(status_code=422, detail="Prompt must not be empty")
    evaluations = _session(request).evaluations
    if not evaluations:
        raise HTTPException(status_code=400, detail="No evaluations recorded yet")
    gemini_client = _services(request).gemini
    try:
        analysis = await gemini_client.analyze_user_preferences(evaluations)
        optimized = await gemini_client.optimize_prompt(prompt, analysis)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ImageGenerationError as e:
        logger.error(f"Error in prompt optimization: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail=str(e))
    return {"prompt": prompt, "optimized_prompt": optimized, "analysis": analysis.to_dict()}


@app.post("/api/session/reset")
async def reset_session(request: Request):
    _session(request).reset()
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        timeout_keep_alive=600,  # long-running generation requests
        timeout_graceful_shutdown=30
    )
