"""
Mosaic compositing by radial-alpha weighted averaging

Every source image gets a radial weight mask (full weight at the centre,
none at the blend radius), is warped onto the spherical canvas, and is
added into an accumulation buffer holding the weighted colour sum and the
weight sum. Normalising the buffer yields the weighted average colour.
"""

import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple
import logging

from panomosaic.core.warp import canvas_shape, compute_spherical_field, warp_image
from panomosaic.utils.memory_manager import MemoryManager

logger = logging.getLogger(__name__)

# Weights live in the 0-255 range of an 8-bit alpha channel
MAX_WEIGHT = 255.0

DEFAULT_BLEND_RADIUS = 200.0


class ImagePosition:
    """A colour image (no alpha channel) and its rotation into the mosaic"""

    def __init__(self, image: np.ndarray, transform: np.ndarray, name: Optional[str] = None):
        self.image = image
        self.transform = np.asarray(transform, dtype=np.float64)
        self.name = name

    def __repr__(self) -> str:
        return f"ImagePosition(name={self.name!r}, shape={self.image.shape})"


def radial_alpha_mask(height: int, width: int, blend_radius: float) -> np.ndarray:
    """
    Radial weight mask: 255 * max(0, 1 - (dx^2 + dy^2) / r^2).

    (dx, dy) is the pixel offset from (width/2, height/2).
    """
    if blend_radius <= 0:
        raise ValueError(f"Blend radius must be positive, got {blend_radius}")
    dy = np.arange(height, dtype=np.float64) - 0.5 * height
    dx = np.arange(width, dtype=np.float64) - 0.5 * width
    dist_sq = dy[:, np.newaxis] ** 2 + dx[np.newaxis, :] ** 2
    alpha = MAX_WEIGHT * np.maximum(0.0, 1.0 - dist_sq / blend_radius ** 2)
    return alpha.astype(np.float32)


def add_alpha_channel(image: np.ndarray) -> np.ndarray:
    """Return a float32 copy of a colour image with an alpha channel of 255 appended"""
    color = np.asarray(image, dtype=np.float32)
    if color.ndim == 2:
        color = color[:, :, np.newaxis]
    if color.ndim != 3:
        raise ValueError(f"Expected an (H, W) or (H, W, C) image, got shape {color.shape}")
    h, w = color.shape[:2]
    alpha = np.full((h, w, 1), MAX_WEIGHT, dtype=np.float32)
    return np.concatenate([color, alpha], axis=2)


def set_image_alpha(image: np.ndarray, blend_radius: float) -> np.ndarray:
    """
    Write the radial weight mask into the last channel of ``image`` in place.

    Colour channels are left untouched.

    Args:
        image: (H, W, C + 1) float image, alpha last
        blend_radius: Distance from the centre at which the weight reaches zero

    Returns:
        The same image
    """
    if image.ndim != 3 or image.shape[2] < 2:
        raise ValueError(f"Image needs colour and alpha channels, got shape {image.shape}")
    h, w = image.shape[:2]
    image[:, :, -1] = radial_alpha_mask(h, w, blend_radius)
    return image


class AccumulationBuffer:
    """Per-pixel running sums of weighted colour and of weight"""

    def __init__(self, height: int, width: int, n_colors: int):
        self.color_sum = np.zeros((height, width, n_colors), dtype=np.float32)
        self.weight_sum = np.zeros((height, width), dtype=np.float32)
        self.images_accumulated = 0

    @classmethod
    def for_canvas(cls, canvas: Tuple[int, int], n_channels: int) -> 'AccumulationBuffer':
        """Buffer for a canvas and images of ``n_channels`` (alpha included)"""
        return cls(canvas[0], canvas[1], n_channels - 1)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.color_sum.shape

    def accumulate(self, image: np.ndarray):
        """
        Add a warped, masked image: colour * (alpha / 255) and alpha.

        Args:
            image: (H, W, C + 1) image in the buffer's frame, alpha last
        """
        h, w, n_colors = self.shape
        if image.shape != (h, w, n_colors + 1):
            raise ValueError(
                f"Image shape {image.shape} does not match buffer {(h, w, n_colors + 1)}"
            )
        alpha = image[:, :, -1].astype(np.float32)
        self.color_sum += image[:, :, :-1] * (alpha / MAX_WEIGHT)[:, :, np.newaxis]
        self.weight_sum += alpha
        self.images_accumulated += 1

    def merge(self, other: 'AccumulationBuffer'):
        """Add the sums of another buffer of the same shape"""
        if other.shape != self.shape:
            raise ValueError(f"Cannot merge buffer {other.shape} into {self.shape}")
        self.color_sum += other.color_sum
        self.weight_sum += other.weight_sum
        self.images_accumulated += other.images_accumulated

    def reset(self):
        self.color_sum.fill(0)
        self.weight_sum.fill(0)
        self.images_accumulated = 0

    def coverage(self) -> np.ndarray:
        """Boolean mask of pixels that received any weight"""
        return self.weight_sum > 0


def normalize_blend(buffer: AccumulationBuffer) -> np.ndarray:
    """
    Turn accumulated sums into colours.

    Covered pixels get color_sum / (weight_sum / 255) and alpha 255.
    Pixels with no weight have no data: colour 0 and alpha 0.

    Returns:
        (H, W, C + 1) float32 image
    """
    h, w, n_colors = buffer.shape
    result = np.zeros((h, w, n_colors + 1), dtype=np.float32)

    covered = buffer.coverage()
    scale = buffer.weight_sum[covered] / MAX_WEIGHT
    result[covered, :n_colors] = buffer.color_sum[covered] / scale[:, np.newaxis]
    result[covered, n_colors] = MAX_WEIGHT
    return result


WarpFieldFn = Callable[[Tuple[int, ...], Tuple[int, ...], float, np.ndarray], object]
WarpFn = Callable[[np.ndarray, object], np.ndarray]


class MosaicBlender:
    """Composite rotated images onto a 360 x 180 degree spherical canvas"""

    def __init__(
        self,
        focal_length: float,
        blend_radius: float = DEFAULT_BLEND_RADIUS,
        warp_field: WarpFieldFn = compute_spherical_field,
        warp: WarpFn = warp_image,
        n_workers: int = 1,
        memory_manager: Optional[MemoryManager] = None
    ):
        """
        Args:
            focal_length: Focal length in pixels; sets the canvas resolution
            blend_radius: Radius of the alpha mask in source pixels
            warp_field: Builds the field mapping the canvas into a source image
            warp: Resamples an image through a field
            n_workers: Threads used for warping and accumulation
            memory_manager: Memory estimator (default: new MemoryManager)
        """
        if blend_radius <= 0:
            raise ValueError(f"Blend radius must be positive, got {blend_radius}")
        if n_workers < 1:
            raise ValueError(f"n_workers must be at least 1, got {n_workers}")

        self.focal_length = focal_length
        self.blend_radius = blend_radius
        self.canvas = canvas_shape(focal_length)
        self.warp_field = warp_field
        self.warp = warp
        self.n_workers = n_workers
        self.memory_manager = memory_manager or MemoryManager()

    def blend(self, image_positions: Sequence[ImagePosition]) -> np.ndarray:
        """
        Composite the images into one canvas.

        Args:
            image_positions: Images with their transforms, in order

        Returns:
            (n_phi, n_theta, C + 1) float32 mosaic; alpha 0 marks uncovered pixels

        Raises:
            MemoryError: If the canvas buffers exceed all available memory
        """
        positions = list(image_positions)
        if not positions:
            raise ValueError("No images to blend")

        n_channels = self._check_shapes(positions) + 1
        n_phi, n_theta = self.canvas
        chunks = [c for c in np.array_split(np.arange(len(positions)), self.n_workers) if len(c)]

        logger.info(f"Blending {len(positions)} images onto {n_theta}x{n_phi} canvas "
                    f"(blend radius {self.blend_radius}, {len(chunks)} worker(s))")

        estimated_mb = self.memory_manager.estimate_canvas_mb(self.canvas, n_channels, len(chunks))
        if not self.memory_manager.estimate_can_process(estimated_mb):
            available_mb = self.memory_manager.get_available_memory()
            if estimated_mb > available_mb:
                raise MemoryError(
                    f"Compositing needs about {estimated_mb:.0f} MB but only "
                    f"{available_mb:.0f} MB is available"
                )

        with self.memory_manager.track_operation("compositing"):
            if len(chunks) == 1:
                buffer = self._accumulate_chunk(positions, chunks[0], n_channels)
            else:
                with ThreadPoolExecutor(max_workers=len(chunks)) as executor:
                    partials = list(executor.map(
                        lambda chunk: self._accumulate_chunk(positions, chunk, n_channels),
                        chunks
                    ))
                # Fixed merge order keeps results reproducible
                buffer = partials[0]
                for partial in partials[1:]:
                    buffer.merge(partial)

        mosaic = normalize_blend(buffer)
        coverage = float(np.mean(buffer.coverage()))
        logger.info(f"Blending complete: {buffer.images_accumulated} images, "
                    f"{coverage:.1%} of canvas covered")
        return mosaic

    def prepare_image(self, position: ImagePosition) -> np.ndarray:
        """Mask one image and warp it onto the canvas"""
        src = set_image_alpha(add_alpha_channel(position.image), self.blend_radius)
        field = self.warp_field(src.shape, self.canvas + (src.shape[2],),
                                self.focal_length, position.transform)
        return self.warp(src, field)

    def _accumulate_chunk(
        self,
        positions: List[ImagePosition],
        indices: np.ndarray,
        n_channels: int
    ) -> AccumulationBuffer:
        buffer = AccumulationBuffer.for_canvas(self.canvas, n_channels)
        for idx in indices:
            position = positions[idx]
            logger.debug(f"Accumulating image {idx + 1}/{len(positions)}"
                         f"{f' ({position.name})' if position.name else ''}")
            buffer.accumulate(self.prepare_image(position))
        return buffer

    def _check_shapes(self, positions: List[ImagePosition]) -> int:
        """Require identical image shapes; return the colour channel count"""
        first = positions[0].image.shape
        for i, position in enumerate(positions[1:], start=1):
            if position.image.shape != first:
                raise ValueError(
                    f"Image {i} has shape {position.image.shape}, expected {first}"
                )
            if position.transform.shape != (3, 3):
                raise ValueError(f"Image {i} transform must be 3x3")
        if positions[0].transform.shape != (3, 3):
            raise ValueError("Image 0 transform must be 3x3")
        return first[2] if len(first) == 3 else 1


def build_mosaic(
    image_positions: Sequence[ImagePosition],
    focal_length: float,
    blend_radius: float = DEFAULT_BLEND_RADIUS,
    **kwargs
) -> np.ndarray:
    """Functional form of MosaicBlender.blend"""
    return MosaicBlender(focal_length, blend_radius, **kwargs).blend(image_positions)
