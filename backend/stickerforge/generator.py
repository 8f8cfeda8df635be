# backend/stickerforge/generator.py
import logging
import os
import shutil
from typing import List, Optional, Protocol

from .errors import ValidationError
from .image_utils import remove_files, temp_path


class VariationGenerator(Protocol):
    def generate_variations(self, source_path: str, count: int) -> List[str]:
        """Return `count` new raster files derived from source_path, owned by the caller."""
        ...


class CopyVariationGenerator:
    """Text overlay mode: every variation is a byte-identical copy of the
    source, the label printed later is what makes stickers differ."""

    def __init__(self, work_dir: str, logger: Optional[logging.Logger] = None):
        self.work_dir = work_dir
        os.makedirs(self.work_dir, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    def generate_variations(self, source_path: str, count: int) -> List[str]:
        if not os.path.isfile(source_path) or not os.access(source_path, os.R_OK):
            raise ValidationError(f"source image is missing or unreadable: {source_path}")

        self.logger.info("Generating %d variations (copy mode)...", count)
        paths: List[str] = []
        try:
            for i in range(count):
                output_path = temp_path(self.work_dir, f"variation{i}", source_path)
                shutil.copyfile(source_path, output_path)
                paths.append(output_path)
                self.logger.debug("Created copy %d for overlay: %s", i + 1, output_path)
        except OSError as e:
            remove_files(paths, self.logger)
            raise ValidationError(f"cannot copy source image {source_path}: {e}") from e

        self.logger.info("Prepared %d images for text overlay", len(paths))
        return paths
