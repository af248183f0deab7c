"""Shared synthetic data for the test suite"""

import numpy as np
import pytest

from panomosaic.core.features import FeatureMatch, FeatureSet


def rotation_y(degrees: float) -> np.ndarray:
    """Rotation about the vertical (image y) axis"""
    a = np.radians(degrees)
    c, s = np.cos(a), np.sin(a)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def project_to_image(rays: np.ndarray, focal_length: float, width: int, height: int) -> np.ndarray:
    """Inverse of the point projector for rays in front of the camera"""
    return focal_length * rays[:, :2] / rays[:, 2:3] + np.array([0.5 * width, 0.5 * height])


class SyntheticPair:
    """Two feature sets related by a known rotation, with optional outliers"""

    def __init__(self, features1, features2, matches, true_indices, outlier_indices):
        self.features1 = features1
        self.features2 = features2
        self.matches = matches
        self.true_indices = true_indices
        self.outlier_indices = outlier_indices


def make_pair(
    rotation: np.ndarray,
    n_inliers: int,
    n_outliers: int = 0,
    focal_length: float = 100.0,
    width: int = 100,
    height: int = 100,
    noise: float = 0.0,
    seed: int = 0
) -> SyntheticPair:
    """
    Points in image 1 and their images under ``rotation`` in image 2.

    Inliers come first; outliers get their image-2 location pushed 15-30 px
    away from the true projection. Uniform noise in [-noise, noise] is added
    to inlier locations in image 2.
    """
    rng = np.random.default_rng(seed)
    n_total = n_inliers + n_outliers
    pts1, pts2 = [], []

    while len(pts1) < n_total:
        p1 = rng.uniform([5.0, 5.0], [width - 5.0, height - 5.0])
        ray = np.array([p1[0] - 0.5 * width, p1[1] - 0.5 * height, focal_length])
        rotated = rotation @ ray
        if rotated[2] <= 0:
            continue
        p2 = project_to_image(rotated[np.newaxis, :], focal_length, width, height)[0]
        if not (0 <= p2[0] < width and 0 <= p2[1] < height):
            continue
        pts1.append(p1)
        pts2.append(p2)

    pts1 = np.array(pts1)
    pts2 = np.array(pts2)

    if noise > 0:
        pts2[:n_inliers] += rng.uniform(-noise, noise, size=(n_inliers, 2))

    for k in range(n_inliers, n_total):
        angle = rng.uniform(0, 2 * np.pi)
        offset = rng.uniform(15.0, 30.0)
        pts2[k] += offset * np.array([np.cos(angle), np.sin(angle)])

    matches = [FeatureMatch(i) for i in range(n_total)]
    return SyntheticPair(
        FeatureSet.from_points(pts1),
        FeatureSet.from_points(pts2),
        matches,
        list(range(n_inliers)),
        list(range(n_inliers, n_total)),
    )


@pytest.fixture
def synthetic_pair():
    """Factory fixture for SyntheticPair instances"""
    return make_pair


@pytest.fixture
def rot_y():
    return rotation_y
