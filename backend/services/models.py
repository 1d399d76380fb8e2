from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class InputShape(str, Enum):
    """Request shape a backend expects for one model."""

    SIMPLE_TEXT = "simple_text"
    STRUCTURED_IMAGEN = "structured_imagen"
    NATIVE_CLOUD = "native_cloud"
    FLAG_ONLY = "flag_only"


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    PORTRAIT = "3:4"
    LANDSCAPE = "4:3"
    WIDE_PORTRAIT = "9:16"
    WIDE_LANDSCAPE = "16:9"


class OutputFormat(str, Enum):
    PNG = "PNG"
    JPEG = "JPEG"


@dataclass(frozen=True)
class ModelDescriptor:
    name: str
    backend_id: str
    version_id: str
    input_shape: InputShape

    @property
    def is_native(self) -> bool:
        return self.input_shape == InputShape.NATIVE_CLOUD

    @property
    def full_identifier(self) -> str:
        return f"{self.backend_id}:{self.version_id}"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "backend_id": self.backend_id,
            "version_id": self.version_id,
            "input_shape": self.input_shape.value,
        }


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    model: ModelDescriptor
    negative_prompt: Optional[str] = None
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    output_format: OutputFormat = OutputFormat.PNG

    def __post_init__(self):
        if not (self.prompt or "").strip():
            raise ValueError("GenerationRequest.prompt must be non-empty")


@dataclass
class GenerationResult:
    """
    Returned to the caller, who owns `image` from then on.
    `image` holds encoded image bytes (PNG/JPEG) as produced by the winning backend.
    """

    image: bytes
    prompt: str
    rationale: Optional[str] = None
    backend: str = ""
    mime_type: str = "image/png"
    attempts: list = field(default_factory=list)
