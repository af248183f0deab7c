"""
Spherical warp of a rotated camera image onto the mosaic canvas

The canvas is an equirectangular unwrap covering 360 x 180 degrees, with
one pixel per 1/f radian. Each canvas pixel is turned into a ray, rotated
into the source camera with that image's Transform, and projected onto the
source image plane. The resulting field drives cv2.remap.
"""

import cv2
import numpy as np
from typing import Tuple
import logging

logger = logging.getLogger(__name__)

# Canvas coordinates that land here are outside every source image
INVALID_COORD = -1.0


def canvas_shape(focal_length: float) -> Tuple[int, int]:
    """
    Size of the spherical canvas for a focal length.

    Returns:
        (n_phi, n_theta) = (round(pi * f), round(2 * pi * f))
    """
    if focal_length <= 0:
        raise ValueError(f"Focal length must be positive, got {focal_length}")
    n_theta = int(2 * np.pi * focal_length + 0.5)
    n_phi = int(np.pi * focal_length + 0.5)
    return n_phi, n_theta


def compute_spherical_field(
    source_shape: Tuple[int, ...],
    target_shape: Tuple[int, ...],
    focal_length: float,
    transform: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute the remap field taking canvas pixels to source pixels.

    Args:
        source_shape: Shape of the source image (height, width, ...)
        target_shape: Shape of the canvas (n_phi, n_theta, ...)
        focal_length: Focal length in pixels
        transform: 3x3 rotation from mosaic frame to camera frame

    Returns:
        Tuple of (map_x, map_y), float32 arrays of the canvas size
    """
    src_h, src_w = source_shape[:2]
    n_phi, n_theta = target_shape[:2]

    theta = (np.arange(n_theta, dtype=np.float64) - 0.5 * n_theta) / focal_length
    phi = (np.arange(n_phi, dtype=np.float64) - 0.5 * n_phi) / focal_length
    theta, phi = np.meshgrid(theta, phi)

    cos_phi = np.cos(phi)
    rays = np.stack([
        np.sin(theta) * cos_phi,
        np.sin(phi),
        np.cos(theta) * cos_phi
    ], axis=-1)

    cam = rays @ np.asarray(transform, dtype=np.float64).T
    z = cam[..., 2]
    in_front = z > 0
    safe_z = np.where(in_front, z, 1.0)

    map_x = focal_length * cam[..., 0] / safe_z + 0.5 * src_w
    map_y = focal_length * cam[..., 1] / safe_z + 0.5 * src_h
    map_x[~in_front] = INVALID_COORD
    map_y[~in_front] = INVALID_COORD

    return map_x.astype(np.float32), map_y.astype(np.float32)


def _remap_channels(
    src: np.ndarray,
    map_x: np.ndarray,
    map_y: np.ndarray,
    border_mode: int
) -> np.ndarray:
    """Bilinear remap of an (H, W, C) float32 image, returning (H', W', C)"""
    n_channels = src.shape[2]

    # cv2.remap handles at most 4 channels at once
    if n_channels <= 4:
        warped = cv2.remap(
            np.ascontiguousarray(src), map_x, map_y,
            interpolation=cv2.INTER_LINEAR,
            borderMode=border_mode,
            borderValue=0
        )
    else:
        planes = [
            cv2.remap(
                np.ascontiguousarray(src[:, :, c]), map_x, map_y,
                interpolation=cv2.INTER_LINEAR,
                borderMode=border_mode,
                borderValue=0
            )
            for c in range(n_channels)
        ]
        warped = np.stack(planes, axis=-1)

    if warped.ndim == 2:
        warped = warped[:, :, np.newaxis]
    return warped


def warp_image(image: np.ndarray, field: Tuple[np.ndarray, np.ndarray]) -> np.ndarray:
    """
    Resample ``image`` through a remap field.

    The last channel is alpha. It gets zeros outside the source, so those
    pixels contribute nothing when accumulated. Colour channels replicate
    the source border instead: near the edge of the footprint, bilinear
    interpolation then never mixes black into a colour that still carries
    weight.
    """
    map_x, map_y = field
    src = np.asarray(image, dtype=np.float32)
    if src.ndim == 2:
        src = src[:, :, np.newaxis]

    alpha = _remap_channels(src[:, :, -1:], map_x, map_y, cv2.BORDER_CONSTANT)
    if src.shape[2] == 1:
        return alpha
    color = _remap_channels(src[:, :, :-1], map_x, map_y, cv2.BORDER_REPLICATE)
    return np.concatenate([color, alpha], axis=2)
