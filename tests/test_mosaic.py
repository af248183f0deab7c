import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from panomosaic.core.blender import MAX_WEIGHT, ImagePosition, MosaicBlender, build_mosaic
from panomosaic.core.warp import canvas_shape, compute_spherical_field, warp_image
from panomosaic.utils.memory_manager import MemoryManager

F = 100.0


def random_image(seed: int, shape=(100, 100, 3)) -> np.ndarray:
    return np.random.default_rng(seed).integers(0, 256, size=shape, dtype=np.uint8)


def panned(degrees: float) -> np.ndarray:
    return Rotation.from_euler('y', degrees, degrees=True).as_matrix()


def test_mosaic_has_canvas_shape_and_alpha():
    mosaic = build_mosaic([ImagePosition(random_image(0), np.eye(3))], F, blend_radius=40.0)

    assert mosaic.shape == canvas_shape(F) + (4,)
    assert mosaic.dtype == np.float32
    assert set(np.unique(mosaic[:, :, 3])) <= {0.0, MAX_WEIGHT}
    assert mosaic[157, 314, 3] == MAX_WEIGHT
    assert np.all(mosaic[:, 0] == 0)


def test_constant_image_is_reproduced():
    image = np.full((100, 100, 3), [40, 120, 220], dtype=np.uint8)

    mosaic = build_mosaic([ImagePosition(image, np.eye(3))] * 3, F, blend_radius=40.0)

    covered = mosaic[:, :, 3] > 0
    assert covered.sum() > 1000
    np.testing.assert_allclose(mosaic[covered, :3], np.broadcast_to([40, 120, 220], (covered.sum(), 3)),
                               atol=1e-3)


@pytest.mark.parametrize("copies", [1, 2])
def test_blend_radius_beyond_image_keeps_edge_colours(copies):
    # Radius larger than the half-diagonal: weight is still high at the image border
    image = np.full((100, 100, 3), [40, 120, 220], dtype=np.uint8)

    mosaic = build_mosaic([ImagePosition(image, np.eye(3))] * copies, F, blend_radius=200.0)

    covered = mosaic[:, :, 3] > 0
    assert covered.sum() > 5000
    np.testing.assert_allclose(mosaic[covered, :3], np.broadcast_to([40, 120, 220], (covered.sum(), 3)),
                               rtol=1e-4)


@pytest.mark.parametrize("copies", [2, 5])
def test_copies_blend_to_single_image(copies):
    position = ImagePosition(random_image(1), panned(12.0))

    single = build_mosaic([position], F, blend_radius=60.0)
    repeated = build_mosaic([position] * copies, F, blend_radius=60.0)

    np.testing.assert_allclose(repeated, single, rtol=1e-5, atol=1e-3)


def test_image_order_does_not_matter():
    positions = [ImagePosition(random_image(i), panned(angle))
                 for i, angle in enumerate([-20.0, 0.0, 15.0, 30.0])]

    forward = build_mosaic(positions, F, blend_radius=70.0)
    backward = build_mosaic(positions[::-1], F, blend_radius=70.0)

    np.testing.assert_allclose(backward, forward, rtol=1e-5, atol=1e-2)


def test_parallel_workers_match_sequential():
    positions = [ImagePosition(random_image(i), panned(angle))
                 for i, angle in enumerate([-25.0, -5.0, 10.0, 28.0, 45.0])]

    sequential = MosaicBlender(F, blend_radius=70.0).blend(positions)
    parallel = MosaicBlender(F, blend_radius=70.0, n_workers=3).blend(positions)

    np.testing.assert_allclose(parallel, sequential, rtol=1e-5, atol=1e-2)


def test_panning_extends_coverage():
    image = random_image(2)

    one = build_mosaic([ImagePosition(image, np.eye(3))], F, blend_radius=60.0)
    two = build_mosaic([ImagePosition(image, np.eye(3)), ImagePosition(image, panned(60.0))],
                       F, blend_radius=60.0)

    assert (two[:, :, 3] > 0).sum() > 1.5 * (one[:, :, 3] > 0).sum()


def test_source_images_are_not_modified():
    image = random_image(3)
    original = image.copy()

    build_mosaic([ImagePosition(image, np.eye(3))], F, blend_radius=40.0)

    np.testing.assert_array_equal(image, original)


def test_inconsistent_or_empty_input_is_rejected():
    blender = MosaicBlender(F, blend_radius=40.0)

    with pytest.raises(ValueError):
        blender.blend([])
    with pytest.raises(ValueError):
        blender.blend([ImagePosition(random_image(0), np.eye(3)),
                       ImagePosition(random_image(1, shape=(80, 100, 3)), np.eye(3))])
    with pytest.raises(ValueError):
        blender.blend([ImagePosition(random_image(0), np.eye(2))])
    with pytest.raises(ValueError):
        MosaicBlender(F, blend_radius=0.0)
    with pytest.raises(ValueError):
        MosaicBlender(F, n_workers=0)


def test_injected_warp_collaborators_are_used():
    calls = []

    def field(source_shape, target_shape, focal_length, transform):
        calls.append((source_shape, target_shape, focal_length))
        return compute_spherical_field(source_shape, target_shape, focal_length, transform)

    def warp(image, fmap):
        calls.append('warp')
        return warp_image(image, fmap)

    blender = MosaicBlender(F, blend_radius=40.0, warp_field=field, warp=warp)
    blender.blend([ImagePosition(random_image(0, shape=(100, 100)), np.eye(3))])

    assert calls == [((100, 100, 2), canvas_shape(F) + (2,), F), 'warp']


class FixedMemory(MemoryManager):
    """Reports a fixed amount of available memory"""

    def __init__(self, available_mb: float):
        super().__init__()
        self.available_mb = available_mb

    def get_available_memory(self) -> float:
        return self.available_mb


def test_canvas_larger_than_available_memory_is_refused():
    blender = MosaicBlender(F, blend_radius=40.0, memory_manager=FixedMemory(1.0))

    with pytest.raises(MemoryError):
        blender.blend([ImagePosition(random_image(0), np.eye(3))])


def test_canvas_above_safe_share_still_blends(caplog):
    needed = MemoryManager.estimate_canvas_mb(canvas_shape(F), 4, 1)
    blender = MosaicBlender(F, blend_radius=40.0, memory_manager=FixedMemory(needed * 1.1))

    mosaic = blender.blend([ImagePosition(random_image(0), np.eye(3))])

    assert mosaic.shape == canvas_shape(F) + (4,)
    assert "may exceed" in caplog.text
