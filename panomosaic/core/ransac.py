"""
RANSAC estimation of the rotation between two images

Repeatedly fits a rotation to a random pair of correspondences, scores it
by the number of correspondences it explains, and refits on the largest
consensus set. Failures are reported through AlignmentResult rather than
raised, so a caller assembling many images can drop a bad pair and go on.
"""

import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import logging

from scipy.spatial.transform import Rotation

from panomosaic.core.features import FeatureSet, FeatureMatch, project_features
from panomosaic.core.motion import (
    MotionModel,
    check_motion_model,
    normalize_rays,
    procrustes_rotation,
)

logger = logging.getLogger(__name__)

# Correspondences needed to pin down a 3D rotation
MIN_SAMPLE_SIZE = 2

DEFAULT_RANSAC_ITERATIONS = 500
DEFAULT_RANSAC_THRESHOLD = 2.0

# Redraws allowed per iteration when the sampled pair is degenerate
DEFAULT_MAX_SAMPLE_ATTEMPTS = 100

# Two unit rays closer to parallel than this cannot fix a rotation
PARALLEL_EPS = 1e-9


class FailureReason(Enum):
    """Why an alignment produced no transform"""
    INSUFFICIENT_MATCHES = 'insufficient_matches'
    DEGENERATE_SAMPLES = 'degenerate_samples'
    NO_CONSENSUS = 'no_consensus'
    TOO_FEW_INLIERS = 'too_few_inliers'


@dataclass
class AlignmentResult:
    """Outcome of a pairwise alignment: a rotation plus its inliers, or a reason"""
    transform: Optional[np.ndarray]
    inliers: List[int] = field(default_factory=list)
    reason: Optional[FailureReason] = None
    n_matches: int = 0
    iterations: int = 0

    @classmethod
    def failure(
        cls,
        reason: FailureReason,
        n_matches: int = 0,
        iterations: int = 0
    ) -> 'AlignmentResult':
        return cls(None, [], reason, n_matches, iterations)

    @property
    def success(self) -> bool:
        return self.reason is None and self.transform is not None

    @property
    def num_inliers(self) -> int:
        return len(self.inliers)

    @property
    def rotation_degrees(self) -> Optional[float]:
        """Rotation angle of the estimated transform, in degrees"""
        if self.transform is None:
            return None
        return float(np.degrees(Rotation.from_matrix(self.transform).magnitude()))


def matched_indices(
    features1: FeatureSet,
    features2: FeatureSet,
    matches: Sequence[FeatureMatch]
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Validate a match list and return its matched (source, target) indices.

    Returns:
        Tuple of (src_idx, dst_idx), source indices ascending
    """
    if len(matches) != len(features1):
        raise ValueError(
            f"Expected one match per feature ({len(features1)}), got {len(matches)}"
        )

    src, dst = [], []
    for i, match in enumerate(matches):
        if not match.is_matched:
            continue
        if match.target >= len(features2):
            raise ValueError(
                f"Match {i} points to feature {match.target}, "
                f"second set has {len(features2)}"
            )
        src.append(i)
        dst.append(match.target)
    return np.array(src, dtype=np.intp), np.array(dst, dtype=np.intp)


def inlier_mask(
    transform: np.ndarray,
    src_rays: np.ndarray,
    dst_rays: np.ndarray,
    focal_length: float,
    threshold: float
) -> np.ndarray:
    """
    Boolean mask of the ray pairs explained by ``transform``.

    Rotated source rays are projected back onto the image plane z = f and
    compared with the target locations. Rays rotated behind the camera never
    count.
    """
    rotated = src_rays @ transform.T
    z = rotated[:, 2]
    in_front = z > 0
    safe_z = np.where(in_front, z, 1.0)
    projected = focal_length * rotated[:, :2] / safe_z[:, np.newaxis]
    dist = np.linalg.norm(projected - dst_rays[:, :2], axis=1)
    return in_front & (dist < threshold)


def count_inliers(
    features1: FeatureSet,
    features2: FeatureSet,
    matches: Sequence[FeatureMatch],
    focal_length: float,
    width: int,
    height: int,
    transform: np.ndarray,
    threshold: float
) -> Tuple[int, List[int]]:
    """
    Count features of features1 that ``transform`` maps within ``threshold``
    of their match in features2.

    Returns:
        Tuple of (count, inlier indices into features1 in ascending order)
    """
    src_idx, dst_idx = matched_indices(features1, features2, matches)
    if len(src_idx) == 0:
        return 0, []
    rays1 = project_features(features1, focal_length, width, height)
    rays2 = project_features(features2, focal_length, width, height)
    mask = inlier_mask(transform, rays1[src_idx], rays2[dst_idx], focal_length, threshold)
    inliers = src_idx[mask].tolist()
    return len(inliers), inliers


def _is_parallel(a: np.ndarray, b: np.ndarray) -> bool:
    return np.linalg.norm(np.cross(a, b)) < PARALLEL_EPS


class RANSACEstimator:
    """Robust rotation estimation between two feature sets"""

    def __init__(
        self,
        n_iterations: int = DEFAULT_RANSAC_ITERATIONS,
        threshold: float = DEFAULT_RANSAC_THRESHOLD,
        motion_model: MotionModel = MotionModel.ROTATION_3D,
        max_sample_attempts: int = DEFAULT_MAX_SAMPLE_ATTEMPTS,
        seed: Optional[int] = None
    ):
        """
        Args:
            n_iterations: Number of minimal samples to try
            threshold: Inlier distance on the image plane, in pixels
            motion_model: Motion model to estimate
            max_sample_attempts: Redraws per iteration for degenerate samples
            seed: Seed for the per-call random generator (None = fresh entropy)
        """
        if n_iterations < 1:
            raise ValueError(f"n_iterations must be positive, got {n_iterations}")
        if threshold <= 0:
            raise ValueError(f"threshold must be positive, got {threshold}")
        if max_sample_attempts < 1:
            raise ValueError(f"max_sample_attempts must be positive, got {max_sample_attempts}")
        check_motion_model(motion_model)

        self.n_iterations = n_iterations
        self.threshold = threshold
        self.motion_model = motion_model
        self.max_sample_attempts = max_sample_attempts
        self.seed = seed

    def estimate(
        self,
        features1: FeatureSet,
        features2: FeatureSet,
        matches: Sequence[FeatureMatch],
        focal_length: float,
        width: int,
        height: int,
        rng: Optional[np.random.Generator] = None
    ) -> AlignmentResult:
        """
        Estimate the rotation taking rays of features1 onto features2.

        Args:
            features1, features2: Feature sets of the two images
            matches: One FeatureMatch per feature of features1
            focal_length: Focal length in pixels
            width, height: Image size in pixels
            rng: Random generator to draw samples from (default: seeded from self.seed)

        Returns:
            AlignmentResult; check ``success`` before using ``transform``
        """
        src_idx, dst_idx = matched_indices(features1, features2, matches)
        n_matches = len(src_idx)

        if n_matches < MIN_SAMPLE_SIZE:
            logger.warning(f"RANSAC needs at least {MIN_SAMPLE_SIZE} matches, got {n_matches}")
            return AlignmentResult.failure(FailureReason.INSUFFICIENT_MATCHES, n_matches)

        if rng is None:
            rng = np.random.default_rng(self.seed)

        src_rays = project_features(features1, focal_length, width, height)[src_idx]
        dst_rays = project_features(features2, focal_length, width, height)[dst_idx]
        unit_src = normalize_rays(src_rays)
        unit_dst = normalize_rays(dst_rays)

        best_count = 0
        best_mask = None
        n_candidates = 0

        for iteration in range(self.n_iterations):
            sample = self._draw_sample(rng, unit_src, unit_dst)
            if sample is None:
                logger.debug(f"Iteration {iteration}: no usable sample after "
                             f"{self.max_sample_attempts} draws")
                continue
            n_candidates += 1

            candidate = procrustes_rotation(src_rays[sample], dst_rays[sample])
            mask = inlier_mask(candidate, src_rays, dst_rays, focal_length, self.threshold)
            count = int(np.count_nonzero(mask))

            if count > best_count:
                best_count = count
                best_mask = mask
                logger.debug(f"Iteration {iteration}: {count}/{n_matches} inliers")

        if n_candidates == 0:
            logger.warning("RANSAC found no non-degenerate sample")
            return AlignmentResult.failure(
                FailureReason.DEGENERATE_SAMPLES, n_matches, self.n_iterations
            )
        if best_count == 0:
            logger.warning(f"RANSAC found no consensus among {n_matches} matches")
            return AlignmentResult.failure(
                FailureReason.NO_CONSENSUS, n_matches, self.n_iterations
            )

        # Final model comes from all inliers, not the minimal sample
        transform = procrustes_rotation(src_rays[best_mask], dst_rays[best_mask])
        result = AlignmentResult(
            transform=transform,
            inliers=src_idx[best_mask].tolist(),
            n_matches=n_matches,
            iterations=self.n_iterations
        )
        logger.info(f"RANSAC: {result.num_inliers}/{n_matches} inliers, "
                    f"rotation={result.rotation_degrees:.2f} deg")
        return result

    def _draw_sample(
        self,
        rng: np.random.Generator,
        unit_src: np.ndarray,
        unit_dst: np.ndarray
    ) -> Optional[np.ndarray]:
        """Pick two distinct correspondences whose rays are not parallel"""
        n = len(unit_src)
        for _ in range(self.max_sample_attempts):
            sample = rng.choice(n, size=MIN_SAMPLE_SIZE, replace=False)
            a, b = sample
            if _is_parallel(unit_src[a], unit_src[b]) or _is_parallel(unit_dst[a], unit_dst[b]):
                continue
            return sample
        return None


def estimate_alignment(
    features1: FeatureSet,
    features2: FeatureSet,
    matches: Sequence[FeatureMatch],
    motion_model: MotionModel,
    focal_length: float,
    width: int,
    height: int,
    n_iterations: int = DEFAULT_RANSAC_ITERATIONS,
    threshold: float = DEFAULT_RANSAC_THRESHOLD,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None
) -> AlignmentResult:
    """Functional form of RANSACEstimator.estimate"""
    estimator = RANSACEstimator(
        n_iterations=n_iterations,
        threshold=threshold,
        motion_model=motion_model,
        seed=seed
    )
    return estimator.estimate(features1, features2, matches, focal_length, width, height, rng=rng)
