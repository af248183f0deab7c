"""
Panorama building: alignment followed by compositing
"""

import numpy as np
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union
import logging

from panomosaic.core.alignment import DEFAULT_MIN_INLIERS, AlignmentReport, ImageAligner, PairKey
from panomosaic.core.blender import DEFAULT_BLEND_RADIUS, MosaicBlender
from panomosaic.core.features import FeatureMatch, FeatureSet
from panomosaic.core.ransac import DEFAULT_RANSAC_ITERATIONS, DEFAULT_RANSAC_THRESHOLD
from panomosaic.utils.logger import setup_logger
from panomosaic.utils.memory_manager import MemoryManager
from panomosaic.utils.settings import load_settings

logger = logging.getLogger(__name__)


class PanoramaBuilder:
    """Build a spherical mosaic from images and their pairwise feature matches"""

    def __init__(
        self,
        focal_length: float,
        blend_radius: float = DEFAULT_BLEND_RADIUS,
        n_iterations: int = DEFAULT_RANSAC_ITERATIONS,
        threshold: float = DEFAULT_RANSAC_THRESHOLD,
        seed: Optional[int] = None,
        min_inliers: int = DEFAULT_MIN_INLIERS,
        n_workers: int = 1,
        progress_callback: Optional[Callable[[int, str], None]] = None
    ):
        """
        Initialize the builder

        Args:
            focal_length: Focal length in pixels, shared by all images
            blend_radius: Radius of each image's alpha mask, in pixels
            n_iterations: RANSAC iterations per image pair
            threshold: RANSAC inlier distance in pixels
            seed: Seed for reproducible RANSAC sampling
            min_inliers: Minimum inliers for a pair to be trusted
            n_workers: Threads used while compositing
            progress_callback: Called with (percent, message) between stages
        """
        self.progress_callback = progress_callback
        self.memory_manager = MemoryManager()
        self.aligner = ImageAligner(
            focal_length,
            n_iterations=n_iterations,
            threshold=threshold,
            seed=seed,
            min_inliers=min_inliers
        )
        self.blender = MosaicBlender(
            focal_length,
            blend_radius=blend_radius,
            n_workers=n_workers,
            memory_manager=self.memory_manager
        )

    @classmethod
    def from_settings(
        cls,
        source: Optional[Union[str, Path, Dict]] = None,
        progress_callback: Optional[Callable[[int, str], None]] = None
    ) -> 'PanoramaBuilder':
        """Create a builder from a settings file or dict and configure logging"""
        settings = load_settings(source)
        level = logging.getLevelName(str(settings['logging']['level']).upper())
        setup_logger('panomosaic', level)

        alignment = settings['alignment']
        blending = settings['blending']
        return cls(
            focal_length=float(settings['focal_length']),
            blend_radius=float(blending['blend_radius']),
            n_iterations=int(alignment['iterations']),
            threshold=float(alignment['threshold']),
            seed=alignment['seed'],
            min_inliers=int(alignment['min_inliers']),
            n_workers=int(blending['workers']),
            progress_callback=progress_callback
        )

    def _update_progress(self, percent: int, message: str):
        logger.info(message)
        if self.progress_callback:
            self.progress_callback(percent, message)

    def build(
        self,
        images: Sequence[np.ndarray],
        feature_sets: Sequence[FeatureSet],
        pair_matches: Mapping[PairKey, Sequence[FeatureMatch]],
        reference: int = 0,
        names: Optional[Sequence[str]] = None
    ) -> Tuple[np.ndarray, AlignmentReport]:
        """
        Align the images and composite them.

        Images whose alignment fails are left out and listed in the report;
        the reference image is always kept.

        Returns:
            Tuple of (mosaic, alignment report)
        """
        self._update_progress(0, f"Aligning {len(images)} images...")
        report = self.aligner.align(images, feature_sets, pair_matches, reference, names)

        if report.excluded:
            logger.warning(f"{len(report.excluded)} image(s) excluded: {sorted(report.excluded)}")

        self._update_progress(50, f"Blending {len(report.positions)} images...")
        mosaic = self.blender.blend(report.positions)

        self._update_progress(100, "Panorama complete")
        return mosaic, report
