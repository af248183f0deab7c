"""
Rotational alignment of a set of images

Each matched image pair is aligned with RANSAC. Successful pairs form a
graph weighted by inlier count; a maximum spanning tree grown from the
reference image chains the pairwise rotations into one rotation per image.
Pairs that fail and images that end up unreachable are reported and left
out of the mosaic.

The Transform of image i maps a ray in the mosaic frame into camera i.
A pairwise estimate M_ij maps rays of image i onto rays of image j, so
R_j = M_ij @ R_i.
"""

import numpy as np
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import heapq
import logging

from panomosaic.core.blender import ImagePosition
from panomosaic.core.features import FeatureMatch, FeatureSet
from panomosaic.core.motion import MotionModel
from panomosaic.core.ransac import (
    AlignmentResult,
    FailureReason,
    RANSACEstimator,
    DEFAULT_MAX_SAMPLE_ATTEMPTS,
    DEFAULT_RANSAC_ITERATIONS,
    DEFAULT_RANSAC_THRESHOLD,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_INLIERS = 2

PairKey = Tuple[int, int]


@dataclass
class AlignmentReport:
    """Per-image transforms plus what was left out and why"""
    reference: int
    transforms: Dict[int, np.ndarray] = field(default_factory=dict)
    positions: List[ImagePosition] = field(default_factory=list)
    pair_results: Dict[PairKey, AlignmentResult] = field(default_factory=dict)
    excluded: Dict[int, str] = field(default_factory=dict)

    @property
    def aligned_indices(self) -> List[int]:
        return sorted(self.transforms)


class ImageAligner:
    """Estimate one rotation per image from pairwise feature matches"""

    def __init__(
        self,
        focal_length: float,
        n_iterations: int = DEFAULT_RANSAC_ITERATIONS,
        threshold: float = DEFAULT_RANSAC_THRESHOLD,
        seed: Optional[int] = None,
        min_inliers: int = DEFAULT_MIN_INLIERS,
        max_sample_attempts: int = DEFAULT_MAX_SAMPLE_ATTEMPTS
    ):
        """
        Args:
            focal_length: Focal length in pixels, shared by all images
            n_iterations: RANSAC iterations per pair
            threshold: RANSAC inlier distance in pixels
            seed: Seed for reproducible sampling (None = nondeterministic)
            min_inliers: Pairs with fewer inliers are rejected
            max_sample_attempts: Redraws per RANSAC iteration for degenerate samples
        """
        if focal_length <= 0:
            raise ValueError(f"Focal length must be positive, got {focal_length}")
        if min_inliers < 1:
            raise ValueError(f"min_inliers must be at least 1, got {min_inliers}")

        self.focal_length = focal_length
        self.min_inliers = min_inliers
        self.seed = seed
        self.estimator = RANSACEstimator(
            n_iterations=n_iterations,
            threshold=threshold,
            motion_model=MotionModel.ROTATION_3D,
            max_sample_attempts=max_sample_attempts,
            seed=seed
        )
        logger.info(f"Image aligner initialized (f={focal_length}, iterations={n_iterations}, "
                    f"threshold={threshold}, min_inliers={min_inliers})")

    def align_pair(
        self,
        features_i: FeatureSet,
        features_j: FeatureSet,
        matches: Sequence[FeatureMatch],
        width: int,
        height: int,
        rng: Optional[np.random.Generator] = None
    ) -> AlignmentResult:
        """Align one pair, rejecting results with too few inliers"""
        result = self.estimator.estimate(
            features_i, features_j, matches, self.focal_length, width, height, rng=rng
        )
        if result.success and result.num_inliers < self.min_inliers:
            return AlignmentResult.failure(
                FailureReason.TOO_FEW_INLIERS, result.n_matches, result.iterations
            )
        return result

    def align(
        self,
        images: Sequence[np.ndarray],
        feature_sets: Sequence[FeatureSet],
        pair_matches: Mapping[PairKey, Sequence[FeatureMatch]],
        reference: int = 0,
        names: Optional[Sequence[str]] = None
    ) -> AlignmentReport:
        """
        Align all images to the reference image.

        Args:
            images: Source images, all the same size
            feature_sets: Features of each image
            pair_matches: (i, j) -> matches from feature_sets[i] into feature_sets[j]
            reference: Index of the image that defines the mosaic frame
            names: Optional image names for the returned positions

        Returns:
            AlignmentReport with positions of every reachable image, in input order
        """
        n_images = len(images)
        if n_images == 0:
            raise ValueError("No images to align")
        if len(feature_sets) != n_images:
            raise ValueError(f"Got {len(feature_sets)} feature sets for {n_images} images")
        if not 0 <= reference < n_images:
            raise ValueError(f"Reference image {reference} out of range")
        if names is not None and len(names) != n_images:
            raise ValueError(f"Got {len(names)} names for {n_images} images")

        logger.info(f"Aligning {n_images} images from {len(pair_matches)} matched pairs")

        # One generator for the whole call: pairs draw independent samples
        rng = np.random.default_rng(self.seed)
        pair_results: Dict[PairKey, AlignmentResult] = {}

        for (i, j) in sorted(pair_matches):
            if i == j or not (0 <= i < n_images and 0 <= j < n_images):
                raise ValueError(f"Invalid image pair ({i}, {j})")
            height, width = images[i].shape[:2]
            result = self.align_pair(
                feature_sets[i], feature_sets[j], pair_matches[(i, j)], width, height, rng=rng
            )
            pair_results[(i, j)] = result

            if result.success:
                logger.info(f"Pair ({i}, {j}): {result.num_inliers}/{result.n_matches} inliers, "
                            f"rotation={result.rotation_degrees:.2f} deg")
            else:
                logger.warning(f"Pair ({i}, {j}) rejected: {result.reason.value} "
                               f"({result.n_matches} matches)")

        report = AlignmentReport(reference=reference, pair_results=pair_results)
        report.transforms = self._propagate_transforms(pair_results, reference)

        for idx in range(n_images):
            if idx in report.transforms:
                name = names[idx] if names is not None else None
                report.positions.append(ImagePosition(images[idx], report.transforms[idx], name))
                continue
            involved = [key for key in pair_results if idx in key]
            if not involved:
                report.excluded[idx] = "no matches with any other image"
            elif not any(pair_results[key].success for key in involved):
                report.excluded[idx] = "every pairwise alignment failed"
            else:
                report.excluded[idx] = "not connected to the reference image"
            logger.warning(f"Image {idx} excluded from mosaic: {report.excluded[idx]}")

        logger.info(f"Alignment: {len(report.transforms)}/{n_images} images placed")
        return report

    def _propagate_transforms(
        self,
        pair_results: Dict[PairKey, AlignmentResult],
        reference: int
    ) -> Dict[int, np.ndarray]:
        """
        Chain pairwise rotations along a maximum spanning tree.

        Prim's algorithm from the reference image, always taking the
        available edge with the most inliers.
        """
        graph = defaultdict(list)
        for key, result in pair_results.items():
            if not result.success:
                continue
            i, j = key
            graph[i].append((j, result.num_inliers, key))
            graph[j].append((i, result.num_inliers, key))

        transforms = {reference: np.eye(3, dtype=np.float64)}

        # Priority queue: (-inliers, from_node, to_node, pair_key)
        candidates = []
        for neighbor, weight, key in graph.get(reference, []):
            heapq.heappush(candidates, (-weight, reference, neighbor, key))

        while candidates:
            _, from_node, to_node, key = heapq.heappop(candidates)
            if to_node in transforms:
                continue

            pairwise = pair_results[key].transform
            if key == (from_node, to_node):
                step = pairwise
            else:
                # Edge walked backwards: the inverse rotation is the transpose
                step = pairwise.T
            transforms[to_node] = step @ transforms[from_node]
            logger.debug(f"Image {to_node} placed from image {from_node} via pair {key}")

            for neighbor, weight, next_key in graph.get(to_node, []):
                if neighbor not in transforms:
                    heapq.heappush(candidates, (-weight, to_node, neighbor, next_key))

        return transforms
