# backend/stickerforge/text_fit.py
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from PIL import ImageFont

LINE_HEIGHT_FACTOR = 1.2

# measure(text, font_size) -> rendered width in pixels
Measure = Callable[[str, int], float]


@dataclass(frozen=True)
class TextLayout:
    font_size: int
    lines: Tuple[str, ...]
    line_height: float
    block_height: float
    # (x, y): horizontal center and top edge of the line block
    anchor_position: Tuple[float, float] = (0.0, 0.0)


class FontCache:
    """Loads a font once per size. Uses font_path when given, otherwise the
    scalable font bundled with Pillow."""

    def __init__(self, font_path: Optional[str] = None):
        self.font_path = font_path
        self._fonts: Dict[int, ImageFont.FreeTypeFont] = {}

    def get(self, size: int) -> ImageFont.FreeTypeFont:
        font = self._fonts.get(size)
        if font is None:
            if self.font_path:
                font = ImageFont.truetype(self.font_path, size)
            else:
                font = ImageFont.load_default(size=size)
            self._fonts[size] = font
        return font

    def measure(self, text: str, size: int) -> float:
        return float(self.get(size).getlength(text))


def wrap_words(text: str, font_size: int, max_width: float, measure: Measure) -> List[str]:
    """Greedy word wrap: a word joins the current line only while the joined
    line stays strictly narrower than max_width."""
    words = text.split()
    if not words:
        return []
    lines: List[str] = []
    current = words[0]
    for word in words[1:]:
        candidate = f"{current} {word}"
        if measure(candidate, font_size) < max_width:
            current = candidate
        else:
            lines.append(current)
            current = word
    lines.append(current)
    return lines


def block_top(anchor: str, canvas_size: int, padding: int, block_height: float) -> float:
    if anchor == "top":
        return float(padding)
    if anchor == "center":
        return (canvas_size - block_height) / 2
    if anchor == "bottom":
        return canvas_size - padding - block_height
    raise ValueError(f"unknown text anchor: {anchor!r}")


class TextFitter:
    """Chooses the largest font size whose wrapped text block fits within
    max_block_fraction of the canvas height.

    Sizes are tried from font_size_max down to font_size_min in steps of
    font_size_step. If none fits, the wrapping at font_size_min is returned
    and the block is allowed to overflow. Same inputs always give the same
    layout.
    """

    def __init__(
        self,
        measure: Measure,
        canvas_size: int = 512,
        padding: int = 20,
        font_size_max: int = 48,
        font_size_min: int = 24,
        font_size_step: int = 4,
        max_block_fraction: float = 0.5,
    ):
        if font_size_step <= 0:
            raise ValueError("font_size_step must be positive")
        if font_size_min > font_size_max:
            raise ValueError("font_size_min must not exceed font_size_max")
        self.measure = measure
        self.canvas_size = canvas_size
        self.padding = padding
        self.font_size_max = font_size_max
        self.font_size_min = font_size_min
        self.font_size_step = font_size_step
        self.max_block_fraction = max_block_fraction

    @property
    def max_width(self) -> int:
        return self.canvas_size - 2 * self.padding

    def candidate_sizes(self) -> List[int]:
        return list(range(self.font_size_max, self.font_size_min - 1, -self.font_size_step))

    def fit(self, text: str, anchor: str = "bottom") -> TextLayout:
        limit = self.max_block_fraction * self.canvas_size
        chosen: Optional[Tuple[int, List[str]]] = None
        for size in self.candidate_sizes():
            lines = wrap_words(text, size, self.max_width, self.measure)
            if len(lines) * size * LINE_HEIGHT_FACTOR <= limit:
                chosen = (size, lines)
                break
        if chosen is None:
            # best effort: smallest size, even if the block overflows
            size = self.font_size_min
            chosen = (size, wrap_words(text, size, self.max_width, self.measure))

        size, lines = chosen
        line_height = size * LINE_HEIGHT_FACTOR
        block_height = len(lines) * line_height
        top = block_top(anchor, self.canvas_size, self.padding, block_height)
        return TextLayout(
            font_size=size,
            lines=tuple(lines),
            line_height=line_height,
            block_height=block_height,
            anchor_position=(self.canvas_size / 2, top),
        )
