"""
Rigid motion solver: best-fit rotation between two sets of rays

Uses the closed-form orthogonal Procrustes solution (SVD of the
cross-covariance matrix). Exact for any inlier set, including the
two-correspondence minimal sample used by RANSAC.
"""

import numpy as np
from enum import Enum
from typing import List, Sequence, Tuple
import logging

from panomosaic.core.features import FeatureSet, FeatureMatch, project_features

logger = logging.getLogger(__name__)


class MotionModel(Enum):
    """Motion models understood by the solver"""
    ROTATION_3D = 'rotation_3d'


def check_motion_model(motion_model: MotionModel):
    """Raise if the motion model is not supported"""
    if motion_model is not MotionModel.ROTATION_3D:
        raise ValueError(f"Unsupported motion model: {motion_model}")


def normalize_rays(rays: np.ndarray) -> np.ndarray:
    """Scale each row of an (N, 3) array to unit length"""
    norms = np.linalg.norm(rays, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return rays / norms


def procrustes_rotation(src_rays: np.ndarray, dst_rays: np.ndarray) -> np.ndarray:
    """
    Rotation M minimising sum |M @ src - dst|^2.

    Rays are used as given, so a correspondence weighs in proportion to the
    product of its two ray lengths.

    Args:
        src_rays: Nx3 rays in the first image
        dst_rays: Nx3 corresponding rays in the second image

    Returns:
        3x3 rotation matrix (det = +1). Identity for an empty input.
    """
    if len(src_rays) == 0:
        logger.debug("Procrustes fit on an empty set, returning identity")
        return np.eye(3, dtype=np.float64)

    src = np.asarray(src_rays, dtype=np.float64)
    dst = np.asarray(dst_rays, dtype=np.float64)

    # Cross-covariance: sum of outer products p1 (x) p2
    A = src.T @ dst
    U, _, Vt = np.linalg.svd(A)
    V = Vt.T

    # Sign of the last axis keeps the result a proper rotation
    d = np.sign(np.linalg.det(V @ U.T))
    if d == 0:
        d = 1.0
    D = np.diag([1.0, 1.0, d])
    return V @ D @ U.T


def matched_rays(
    features1: FeatureSet,
    features2: FeatureSet,
    matches: Sequence[FeatureMatch],
    focal_length: float,
    width: int,
    height: int,
    indices: Sequence[int]
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gather the ray pairs for the given source indices.

    Returns:
        Tuple of (src_rays, dst_rays), both Kx3
    """
    indices = list(indices)
    unmatched = [i for i in indices if not matches[i].is_matched]
    if unmatched:
        raise ValueError(f"Inlier indices without a match: {unmatched}")

    rays1 = project_features(features1, focal_length, width, height)
    rays2 = project_features(features2, focal_length, width, height)
    src_idx = np.array(indices, dtype=np.intp)
    dst_idx = np.array([matches[i].target for i in indices], dtype=np.intp)
    return rays1[src_idx], rays2[dst_idx]


def least_squares_fit(
    features1: FeatureSet,
    features2: FeatureSet,
    matches: Sequence[FeatureMatch],
    focal_length: float,
    width: int,
    height: int,
    inliers: List[int],
    motion_model: MotionModel = MotionModel.ROTATION_3D
) -> np.ndarray:
    """
    Compute the rotation from features1 to features2 using only the inliers.

    Args:
        features1, features2: Source feature sets
        matches: Correspondences, one per feature of features1
        focal_length: Focal length in pixels
        width, height: Image size in pixels
        inliers: Indices into features1 to use
        motion_model: Motion model to fit

    Returns:
        3x3 rotation matrix. An empty inlier set gives the identity, which
        callers must not treat as an estimate.
    """
    check_motion_model(motion_model)
    src, dst = matched_rays(features1, features2, matches, focal_length, width, height, inliers)
    return procrustes_rotation(src, dst)
