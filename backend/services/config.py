import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from services.errors import ConfigurationError
from services.models import InputShape, ModelDescriptor


def _env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if not value:
        return default
    return float(value)


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if not value:
        return default
    return int(value)


def _env_list(key: str, default: Sequence[str] | None = None) -> List[str]:
    value = os.getenv(key)
    if not value:
        return list(default or [])
    return [item.strip() for item in value.split(",") if item.strip()]


# Values like "YOUR_GEMINI_API_KEY" or "YOUR_MANUAL_ACCESS_TOKEN_HERE" are template leftovers.
_PLACEHOLDER_RE = re.compile(r"^(YOUR[_\-].*|.*_HERE|CHANGE[_\-]?ME|<.*>)$", re.IGNORECASE)


def is_placeholder(value: Optional[str]) -> bool:
    """True when a credential is absent, blank, or an obvious template placeholder."""
    if value is None:
        return True
    stripped = value.strip()
    if not stripped:
        return True
    return bool(_PLACEHOLDER_RE.match(stripped))


def require_credential(value: Optional[str], name: str, *, backend: Optional[str] = None) -> str:
    if is_placeholder(value):
        raise ConfigurationError(f"{name} is not configured", backend=backend)
    return value.strip()


DEFAULT_MODELS: Tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        name="Google Imagen 3",
        backend_id="vertex-ai-imagen3",
        version_id="imagen-3.0-generate-001",
        input_shape=InputShape.NATIVE_CLOUD,
    ),
    ModelDescriptor(
        name="Google Imagen 3 Fast",
        backend_id="vertex-ai-imagen3-fast",
        version_id="imagen-3.0-fast-generate-001",
        input_shape=InputShape.NATIVE_CLOUD,
    ),
    ModelDescriptor(
        name="Miaomiao Harem",
        backend_id="aisha-ai-official/miaomiao-harem-illustrious-v1",
        version_id="d74eab7842eca403256b37c4276e0c19b83aa124cc5d102d15d9327a6d14ad02",
        input_shape=InputShape.SIMPLE_TEXT,
    ),
    ModelDescriptor(
        name="SD 3.5 Medium",
        backend_id="stability-ai/stable-diffusion-3.5-medium",
        version_id="17deaafb14e6c18aa88e57bf02149da2b23c2f2c3d02cf9d6ad3cc59b6c44327",
        input_shape=InputShape.SIMPLE_TEXT,
    ),
    ModelDescriptor(
        name="SD 3.5 Large",
        backend_id="stability-ai/stable-diffusion-3.5-large",
        version_id="a9b41e4dfe8ade1b0b1ea088e0e3b69bcd58a89f1a2b6ab74b39b46dd3aa9c6d",
        input_shape=InputShape.SIMPLE_TEXT,
    ),
    ModelDescriptor(
        name="Ninjitsu Art",
        backend_id="ninjitsu-ai/ninjitsu-art",
        version_id="9ce0d5a5e5b1b1b7b6a0e1b0c1b0c1b0c1b0c1b0c1b0c1b0c1b0c1b0c1b0c1b0",
        input_shape=InputShape.FLAG_ONLY,
    ),
)


def default_model(catalog: Sequence[ModelDescriptor] = DEFAULT_MODELS) -> Optional[ModelDescriptor]:
    """Native cloud first, then the first simple-text model, then whatever is left."""
    for shape in (InputShape.NATIVE_CLOUD, InputShape.SIMPLE_TEXT):
        for model in catalog:
            if model.input_shape == shape:
                return model
    return catalog[0] if catalog else None


def default_async_model(catalog: Sequence[ModelDescriptor] = DEFAULT_MODELS) -> Optional[ModelDescriptor]:
    """Fallback target on the job-based backend when the caller picked a native model."""
    for shape in (InputShape.SIMPLE_TEXT, InputShape.STRUCTURED_IMAGEN):
        for model in catalog:
            if model.input_shape == shape:
                return model
    return None


def find_model(catalog: Sequence[ModelDescriptor], key: Optional[str]) -> Optional[ModelDescriptor]:
    """Look a model up by display name, backend id or full identifier (case-insensitive)."""
    if not key:
        return default_model(catalog)
    needle = key.strip().lower()
    for model in catalog:
        if needle in (model.name.lower(), model.backend_id.lower(), model.full_identifier.lower()):
            return model
    return None


@dataclass(frozen=True)
class Settings:
    """
    Immutable runtime configuration. Built once (usually via `Settings.from_env()`)
    and handed to every component at construction.
    """

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash-latest"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/models"
    gemini_timeout_s: float = 30.0

    replicate_api_key: Optional[str] = None
    replicate_base_url: str = "https://api.replicate.com/v1"
    replicate_max_poll_attempts: int = 60
    replicate_poll_interval_s: float = 1.0

    vertex_project_id: Optional[str] = None
    vertex_location: str = "us-central1"
    vertex_access_token: Optional[str] = None
    vertex_use_adc: bool = False
    google_refresh_token: Optional[str] = None
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    native_first: bool = True
    native_timeout_s: float = 30.0
    backend_max_attempts: int = 3
    backend_retry_backoff_s: float = 1.0

    analysis_max_per_minute: int = 60
    generation_max_per_hour: int = 30
    analysis_concurrency: int = 3
    analysis_chunk_delay_s: float = 0.5

    procedural_size: int = 1024

    allowed_origins: Tuple[str, ...] = field(
        default=(
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        )
    )
    max_file_size: int = 10 * 1024 * 1024
    catalog: Tuple[ModelDescriptor, ...] = DEFAULT_MODELS

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
            gemini_timeout_s=_env_float("GEMINI_TIMEOUT_S", cls.gemini_timeout_s),
            replicate_api_key=os.getenv("REPLICATE_API_TOKEN"),
            replicate_max_poll_attempts=_env_int("REPLICATE_MAX_POLL_ATTEMPTS", cls.replicate_max_poll_attempts),
            replicate_poll_interval_s=_env_float("REPLICATE_POLL_INTERVAL_S", cls.replicate_poll_interval_s),
            vertex_project_id=os.getenv("VERTEX_PROJECT_ID"),
            vertex_location=os.getenv("VERTEX_LOCATION", cls.vertex_location),
            vertex_access_token=os.getenv("VERTEX_ACCESS_TOKEN"),
            vertex_use_adc=_env_bool("VERTEX_USE_ADC", False),
            google_refresh_token=os.getenv("GOOGLE_REFRESH_TOKEN"),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            native_first=_env_bool("GENERATION_NATIVE_FIRST", True),
            native_timeout_s=_env_float("NATIVE_TIMEOUT_S", cls.native_timeout_s),
            backend_max_attempts=_env_int("BACKEND_MAX_ATTEMPTS", cls.backend_max_attempts),
            backend_retry_backoff_s=_env_float("BACKEND_RETRY_BACKOFF_S", cls.backend_retry_backoff_s),
            analysis_max_per_minute=_env_int("ANALYSIS_MAX_PER_MINUTE", cls.analysis_max_per_minute),
            generation_max_per_hour=_env_int("GENERATION_MAX_PER_HOUR", cls.generation_max_per_hour),
            analysis_concurrency=_env_int("ANALYSIS_CONCURRENCY", cls.analysis_concurrency),
            analysis_chunk_delay_s=_env_float("ANALYSIS_CHUNK_DELAY_S", cls.analysis_chunk_delay_s),
            allowed_origins=tuple(_env_list("ALLOWED_ORIGINS", cls.allowed_origins)),
            max_file_size=_env_int("MAX_FILE_SIZE", cls.max_file_size),
        )

    @property
    def vertex_endpoint(self) -> str:
        return (
            f"https://{self.vertex_location}-aiplatform.googleapis.com/v1/projects/"
            f"{self.vertex_project_id}/locations/{self.vertex_location}/publishers/google/models/"
        )

    @property
    def has_gemini(self) -> bool:
        return not is_placeholder(self.gemini_api_key)

    @property
    def has_replicate(self) -> bool:
        return not is_placeholder(self.replicate_api_key)
