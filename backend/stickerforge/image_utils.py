# backend/stickerforge/image_utils.py
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from PIL import Image, ImageDraw, ImageOps, UnidentifiedImageError

from .config import Settings
from .errors import PipelineError
from .text_fit import FontCache, TextFitter, TextLayout

# sticker format and extension expected by the distribution service
STICKER_FORMAT = "WEBP"
STICKER_EXT = ".webp"


@dataclass
class StickerArtifact:
    path: str
    label: str
    tag: Optional[str] = None


@dataclass
class StageOutcome:
    """Result of one pipeline stage: either an output path or the error."""
    stage: str
    path: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def temp_path(directory: str, stage: str, source_path: str, ext: Optional[str] = None) -> str:
    """Collision-resistant file name: stage tag + monotonic clock + random suffix."""
    stem, source_ext = os.path.splitext(os.path.basename(source_path))
    name = f"{stage}_{time.monotonic_ns()}_{uuid.uuid4().hex[:8]}_{stem}{ext or source_ext or '.png'}"
    return os.path.join(directory, name)


def remove_files(paths: Iterable[Optional[str]], logger: Optional[logging.Logger] = None) -> None:
    """Delete files, ignoring ones that are already gone."""
    log = logger or logging.getLogger(__name__)
    for path in paths:
        if not path:
            continue
        try:
            os.remove(path)
            log.debug("Cleaned up file: %s", path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Failed to clean up file %s: %s", path, e)


class CompositionPipeline:
    """resize -> text overlay -> encode, one sticker per variation.

    Stateless across calls; each call only owns the files it creates inside
    work_dir.
    """

    def __init__(self, settings: Settings, work_dir: Optional[str] = None,
                 fitter: Optional[TextFitter] = None, logger: Optional[logging.Logger] = None):
        self.settings = settings
        self.work_dir = work_dir or settings.storage_dir
        os.makedirs(self.work_dir, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)
        self.fonts = FontCache(settings.font_path)
        self.fitter = fitter or TextFitter(
            measure=self.fonts.measure,
            canvas_size=settings.sticker_size,
            padding=settings.text_padding,
            font_size_max=settings.font_size_max,
            font_size_min=settings.font_size_min,
            font_size_step=settings.font_size_step,
            max_block_fraction=settings.text_max_block_fraction,
        )

    # --- stages ---

    def resize(self, source_path: str) -> str:
        """Crop-to-fill into an exact size x size square."""
        size = self.settings.sticker_size
        output_path = temp_path(self.work_dir, "resized", source_path, ".png")
        try:
            with Image.open(source_path) as im:
                im.load()
                fitted = ImageOps.fit(
                    _normalize_mode(im), (size, size),
                    method=Image.Resampling.LANCZOS, centering=(0.5, 0.5),
                )
        except (UnidentifiedImageError, OSError) as e:
            raise PipelineError(f"cannot decode image {source_path}: {e}", stage="resize") from e
        self._save(fitted, output_path, "PNG", stage="resize")
        return output_path

    def layout(self, text: str) -> TextLayout:
        return self.fitter.fit(text, anchor=self.settings.text_position)

    def overlay(self, image_path: str, text: str) -> str:
        """Draw the fitted text block: outline pass, then fill pass, per line."""
        s = self.settings
        output_path = temp_path(self.work_dir, "text", image_path, ".png")
        try:
            with Image.open(image_path) as im:
                canvas = Image.new("RGBA", (s.sticker_size, s.sticker_size), (0, 0, 0, 0))
                canvas.paste(_normalize_mode(im).convert("RGBA").resize((s.sticker_size, s.sticker_size)))
        except (UnidentifiedImageError, OSError) as e:
            raise PipelineError(f"cannot decode image {image_path}: {e}", stage="overlay") from e

        layout = self.layout(text)
        if layout.lines:
            try:
                font = self.fonts.get(layout.font_size)
            except OSError as e:
                raise PipelineError(f"cannot load font: {e}", stage="overlay") from e
            draw = ImageDraw.Draw(canvas)
            x, top = layout.anchor_position
            for i, line in enumerate(layout.lines):
                y = top + i * layout.line_height
                draw.text((x, y), line, font=font, anchor="ma", fill=s.text_stroke_color,
                          stroke_width=s.text_stroke_width, stroke_fill=s.text_stroke_color)
                draw.text((x, y), line, font=font, anchor="ma", fill=s.text_fill_color)
        self._save(canvas, output_path, "PNG", stage="overlay")
        return output_path

    def encode(self, image_path: str) -> str:
        output_path = temp_path(self.work_dir, "sticker", image_path, STICKER_EXT)
        try:
            with Image.open(image_path) as im:
                im.load()
                encoded = im.copy()
        except (UnidentifiedImageError, OSError) as e:
            raise PipelineError(f"cannot decode image {image_path}: {e}", stage="encode") from e
        self._save(encoded, output_path, STICKER_FORMAT, stage="encode", quality=self.settings.sticker_quality)
        return output_path

    def _save(self, image: Image.Image, path: str, fmt: str, stage: str, **params) -> None:
        try:
            image.save(path, format=fmt, **params)
        except (OSError, ValueError) as e:
            remove_files([path], self.logger)
            raise PipelineError(f"cannot write {fmt} image {path}: {e}", stage=stage) from e

    def run_stage(self, stage: str, func: Callable[..., str], *args) -> StageOutcome:
        try:
            return StageOutcome(stage=stage, path=func(*args))
        except PipelineError as e:
            return StageOutcome(stage=stage, error=e)
        except Exception as e:
            self.logger.exception("Unexpected error in %s stage", stage)
            return StageOutcome(stage=stage, error=PipelineError(str(e), stage=stage))

    # --- batch ---

    def process_stickers(self, variation_paths: Sequence[str], labels: Sequence[str]) -> List[StickerArtifact]:
        """Build one sticker per (variation, label) pair, in order.

        All or nothing: if any stage fails, every file this call produced
        (intermediates and finished stickers) is deleted and PipelineError is
        raised. The variation files themselves belong to the caller.
        """
        if len(variation_paths) != len(labels):
            raise PipelineError(
                f"got {len(variation_paths)} variations for {len(labels)} labels", stage="process")

        self.logger.info("Processing %d stickers...", len(labels))
        artifacts: List[StickerArtifact] = []
        for index, (variation, label) in enumerate(zip(variation_paths, labels), start=1):
            self.logger.debug('Processing sticker %d: adding text "%s"', index, label)
            current = variation
            for stage, func, args in (
                ("resize", self.resize, ()),
                ("overlay", self.overlay, (label,)),
                ("encode", self.encode, ()),
            ):
                outcome = self.run_stage(stage, func, current, *args)
                if current != variation:
                    remove_files([current], self.logger)
                if not outcome.ok:
                    self.logger.error("Error processing sticker %d at %s: %s", index, stage, outcome.error)
                    remove_files([a.path for a in artifacts], self.logger)
                    raise outcome.error
                current = outcome.path
            artifacts.append(StickerArtifact(path=current, label=label))
            self.logger.debug("Processed sticker %d saved to %s", index, current)

        self.logger.info("Successfully processed %d stickers", len(artifacts))
        return artifacts


def _normalize_mode(im: Image.Image) -> Image.Image:
    # palette / greyscale inputs are drawn in RGBA so colored text survives
    if im.mode in ("RGB", "RGBA"):
        return im
    return im.convert("RGBA")
