import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from panomosaic.core.alignment import ImageAligner
from panomosaic.core.features import FeatureMatch, FeatureSet
from panomosaic.core.ransac import FailureReason

F = 100.0
SIZE = 100


def camera(pan: float, tilt: float = 0.0) -> np.ndarray:
    """Rotation from the mosaic frame into a camera panned/tilted by the given degrees"""
    return Rotation.from_euler('yx', [pan, tilt], degrees=True).as_matrix()


class Scene:
    """Accumulates per-image feature lists and per-pair matches"""

    def __init__(self, n_images: int):
        self.points = [[] for _ in range(n_images)]
        self.pair_matches = {}

    def connect(self, i, j, rotation_i, rotation_j, n=20, n_outliers=0, seed=0):
        rng = np.random.default_rng(seed)
        pairwise = rotation_j @ rotation_i.T
        links = []
        while len(links) < n + n_outliers:
            p_i = rng.uniform(5, SIZE - 5, size=2)
            ray = np.array([p_i[0] - SIZE / 2, p_i[1] - SIZE / 2, F])
            q = pairwise @ ray
            if q[2] <= 0:
                continue
            p_j = F * q[:2] / q[2] + SIZE / 2
            if not np.all((p_j >= 0) & (p_j < SIZE)):
                continue
            if len(links) >= n:
                p_j = p_j + rng.uniform(15, 30) * np.array([1.0, -1.0])
            links.append((len(self.points[i]), len(self.points[j])))
            self.points[i].append(p_i)
            self.points[j].append(p_j)
        self.pair_matches[(i, j)] = links

    def build(self):
        feature_sets = [FeatureSet.from_points(np.array(p).reshape(-1, 2)) for p in self.points]
        pair_matches = {}
        for key, links in self.pair_matches.items():
            i, j = key
            matches = [FeatureMatch(None) for _ in range(len(feature_sets[i]))]
            for src, dst in links:
                matches[src] = FeatureMatch(dst)
            pair_matches[key] = matches
        images = [np.zeros((SIZE, SIZE, 3), dtype=np.uint8) for _ in feature_sets]
        return images, feature_sets, pair_matches


def test_chain_of_pairs_gives_absolute_rotations():
    cameras = [camera(0), camera(15, 3), camera(28, -2)]
    scene = Scene(3)
    scene.connect(0, 1, cameras[0], cameras[1], n_outliers=4, seed=1)
    scene.connect(1, 2, cameras[1], cameras[2], n_outliers=4, seed=2)
    images, feature_sets, pair_matches = scene.build()

    report = ImageAligner(F, n_iterations=200, threshold=1.0, seed=0).align(
        images, feature_sets, pair_matches, names=['a', 'b', 'c']
    )

    assert report.excluded == {}
    assert report.aligned_indices == [0, 1, 2]
    assert [p.name for p in report.positions] == ['a', 'b', 'c']
    for idx, expected in enumerate(cameras):
        np.testing.assert_allclose(report.transforms[idx], expected, atol=1e-6)
    assert all(r.num_inliers == 20 for r in report.pair_results.values())


def test_backward_edges_use_inverse_rotation():
    cameras = [camera(0), camera(-12), camera(-24, 4)]
    scene = Scene(3)
    scene.connect(1, 0, cameras[1], cameras[0], seed=3)
    scene.connect(2, 1, cameras[2], cameras[1], seed=4)
    images, feature_sets, pair_matches = scene.build()

    report = ImageAligner(F, n_iterations=100, threshold=1.0, seed=0).align(
        images, feature_sets, pair_matches
    )

    for idx, expected in enumerate(cameras):
        np.testing.assert_allclose(report.transforms[idx], expected, atol=1e-6)


def test_reference_image_defines_the_frame():
    cameras = [camera(0), camera(20)]
    scene = Scene(2)
    scene.connect(0, 1, cameras[0], cameras[1], seed=5)
    images, feature_sets, pair_matches = scene.build()

    report = ImageAligner(F, n_iterations=50, seed=0).align(
        images, feature_sets, pair_matches, reference=1
    )

    np.testing.assert_allclose(report.transforms[1], np.eye(3))
    np.testing.assert_allclose(report.transforms[0], cameras[1].T, atol=1e-6)


def test_spanning_tree_prefers_strongest_pair():
    cameras = [camera(0), camera(10), camera(20)]
    scene = Scene(3)
    scene.connect(0, 1, cameras[0], cameras[1], n=30, seed=6)
    scene.connect(1, 2, cameras[1], cameras[2], n=30, seed=7)
    # Weak direct link with a wrong rotation
    scene.connect(0, 2, cameras[0], camera(35), n=5, seed=8)
    images, feature_sets, pair_matches = scene.build()

    report = ImageAligner(F, n_iterations=100, threshold=1.0, seed=0).align(
        images, feature_sets, pair_matches
    )

    np.testing.assert_allclose(report.transforms[2], cameras[2], atol=1e-6)


def test_failed_and_unreachable_images_are_reported():
    cameras = [camera(0), camera(10), camera(20), camera(40), camera(50), camera(60)]
    scene = Scene(6)
    scene.connect(0, 1, cameras[0], cameras[1], seed=9)
    scene.connect(1, 2, cameras[1], cameras[2], n=1, seed=10)
    scene.connect(3, 4, cameras[3], cameras[4], seed=11)
    images, feature_sets, pair_matches = scene.build()

    report = ImageAligner(F, n_iterations=50, seed=0).align(images, feature_sets, pair_matches)

    assert report.aligned_indices == [0, 1]
    assert report.pair_results[(1, 2)].reason is FailureReason.INSUFFICIENT_MATCHES
    assert report.excluded == {
        2: "every pairwise alignment failed",
        3: "not connected to the reference image",
        4: "not connected to the reference image",
        5: "no matches with any other image",
    }


def test_min_inliers_rejects_weak_pairs():
    scene = Scene(2)
    scene.connect(0, 1, camera(0), camera(10), n=4, seed=12)
    images, feature_sets, pair_matches = scene.build()

    report = ImageAligner(F, n_iterations=50, seed=0, min_inliers=5).align(
        images, feature_sets, pair_matches
    )

    assert report.pair_results[(0, 1)].reason is FailureReason.TOO_FEW_INLIERS
    assert 1 in report.excluded


def test_invalid_inputs():
    images = [np.zeros((SIZE, SIZE, 3))] * 2
    feature_sets = [FeatureSet(), FeatureSet()]
    aligner = ImageAligner(F, n_iterations=5, seed=0)

    with pytest.raises(ValueError):
        aligner.align([], [], {})
    with pytest.raises(ValueError):
        aligner.align(images, feature_sets[:1], {})
    with pytest.raises(ValueError):
        aligner.align(images, feature_sets, {}, reference=2)
    with pytest.raises(ValueError):
        aligner.align(images, feature_sets, {(0, 0): []})
    with pytest.raises(ValueError):
        ImageAligner(0.0)
