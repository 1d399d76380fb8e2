"""
Local procedural image synthesis.

Last stage of the generation cascade: no network, no external state, no failure path.
The prompt picks a palette and a motif by keyword, the layout is randomized.
"""
import io
import logging
import math
import random
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]

WATERMARK = "DEMO"
MAX_PROMPT_CHARS = 60


@dataclass(frozen=True)
class Style:
    name: str
    keywords: Tuple[str, ...]
    top: Color
    bottom: Color
    accents: Tuple[Color, ...]
    motif: str


STYLES: Tuple[Style, ...] = (
    Style(
        name="pastel",
        keywords=("anime", "cute", "kawaii", "pastel", "manga", "sweet"),
        top=(255, 209, 230),
        bottom=(196, 222, 255),
        accents=((255, 255, 255), (255, 182, 217), (214, 196, 255)),
        motif="star_bursts",
    ),
    Style(
        name="nature",
        keywords=("nature", "forest", "tree", "garden", "mountain", "leaf", "green"),
        top=(168, 224, 170),
        bottom=(34, 102, 60),
        accents=((220, 245, 200), (90, 170, 100), (250, 240, 190)),
        motif="wave_lines",
    ),
    Style(
        name="night",
        keywords=("night", "mysterious", "dark", "moon", "galaxy", "space", "mystic"),
        top=(20, 12, 48),
        bottom=(88, 40, 128),
        accents=((255, 255, 230), (180, 140, 255), (120, 200, 255)),
        motif="light_bursts",
    ),
)

WARM = Style(
    name="warm",
    keywords=(),
    top=(255, 196, 120),
    bottom=(214, 84, 72),
    accents=((255, 240, 200), (255, 150, 90), (180, 60, 80)),
    motif="geometric_shapes",
)


def classify_prompt(prompt: str) -> Style:
    lowered = (prompt or "").lower()
    for style in STYLES:
        if any(keyword in lowered for keyword in style.keywords):
            return style
    return WARM


def _lerp(a: Color, b: Color, t: float) -> Color:
    return tuple(int(a[i] + (b[i] - a[i]) * t) for i in range(3))


def _with_alpha(color: Color, alpha: int) -> Tuple[int, int, int, int]:
    return color[0], color[1], color[2], alpha


class ProceduralImageSynthesizer:
    def __init__(self, size: int = 1024, rng: Optional[random.Random] = None):
        self.size = max(64, int(size))
        self._rng = rng or random.Random()

    def synthesize(self, prompt: str) -> bytes:
        """Render a PNG placeholder for `prompt`."""
        style = classify_prompt(prompt)
        logger.info(f"Procedural synthesis with style={style.name} motif={style.motif}")

        image = self._gradient(style)
        overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        getattr(self, f"_draw_{style.motif}")(draw, style.accents)
        image = Image.alpha_composite(image, overlay)

        self._draw_caption(image, prompt)

        out = io.BytesIO()
        image.convert("RGB").save(out, format="PNG")
        return out.getvalue()

    def _gradient(self, style: Style) -> Image.Image:
        image = Image.new("RGBA", (self.size, self.size))
        draw = ImageDraw.Draw(image)
        for y in range(self.size):
            draw.line([(0, y), (self.size, y)], fill=_with_alpha(_lerp(style.top, style.bottom, y / self.size), 255))
        return image

    def _point(self) -> Tuple[int, int]:
        return self._rng.randint(0, self.size), self._rng.randint(0, self.size)

    def _draw_star_bursts(self, draw: ImageDraw.ImageDraw, accents: Sequence[Color]) -> None:
        for _ in range(24):
            cx, cy = self._point()
            outer = self._rng.randint(self.size // 60, self.size // 18)
            inner = outer * 0.45
            points = []
            for k in range(10):
                radius = outer if k % 2 == 0 else inner
                angle = math.pi / 5 * k - math.pi / 2
                points.append((cx + radius * math.cos(angle), cy + radius * math.sin(angle)))
            draw.polygon(points, fill=_with_alpha(self._rng.choice(accents), self._rng.randint(120, 220)))

    def _draw_wave_lines(self, draw: ImageDraw.ImageDraw, accents: Sequence[Color]) -> None:
        for _ in range(12):
            base = self._rng.randint(0, self.size)
            amplitude = self._rng.randint(self.size // 60, self.size // 14)
            period = self._rng.uniform(self.size / 6, self.size / 2)
            phase = self._rng.uniform(0, 2 * math.pi)
            points = [
                (x, base + amplitude * math.sin(2 * math.pi * x / period + phase))
                for x in range(0, self.size + 8, 8)
            ]
            draw.line(points, fill=_with_alpha(self._rng.choice(accents), 150), width=max(2, self.size // 170))

    def _draw_light_bursts(self, draw: ImageDraw.ImageDraw, accents: Sequence[Color]) -> None:
        for _ in range(140):
            x, y = self._point()
            r = self._rng.randint(1, max(2, self.size // 300))
            draw.ellipse((x - r, y - r, x + r, y + r), fill=_with_alpha(accents[0], self._rng.randint(140, 255)))
        for _ in range(4):
            cx, cy = self._point()
            for step in range(6, 0, -1):
                r = step * self.size // 40
                color = _with_alpha(self._rng.choice(accents[1:]), 18)
                draw.ellipse((cx - r, cy - r, cx + r, cy + r), fill=color)

    def _draw_geometric_shapes(self, draw: ImageDraw.ImageDraw, accents: Sequence[Color]) -> None:
        for _ in range(18):
            x, y = self._point()
            s = self._rng.randint(self.size // 30, self.size // 8)
            color = _with_alpha(self._rng.choice(accents), self._rng.randint(90, 180))
            shape = self._rng.choice(("circle", "square", "triangle"))
            if shape == "circle":
                draw.ellipse((x - s, y - s, x + s, y + s), fill=color)
            elif shape == "square":
                draw.rectangle((x - s, y - s, x + s, y + s), fill=color)
            else:
                draw.polygon([(x, y - s), (x + s, y + s), (x - s, y + s)], fill=color)

    def _draw_caption(self, image: Image.Image, prompt: str) -> None:
        text = " ".join((prompt or "").split())
        if len(text) > MAX_PROMPT_CHARS:
            text = text[: MAX_PROMPT_CHARS - 3].rstrip() + "..."
        # The bitmap default font only covers latin-1.
        text = text.encode("latin-1", "replace").decode("latin-1")
        font = ImageFont.load_default()
        draw = ImageDraw.Draw(image)
        band_top = int(self.size * 0.86)
        draw.rectangle((0, band_top, self.size, self.size), fill=(16, 16, 24, 255))
        if text:
            draw.text((self.size // 32, band_top + self.size // 40), text, fill=(255, 255, 255, 255), font=font)
        draw.text((self.size - self.size // 8, self.size // 32), WATERMARK, fill=(255, 255, 255, 200), font=font)
