"""
panomosaic - rotational alignment and spherical compositing for panoramas

Main components:
- RANSAC + orthogonal Procrustes estimation of the rotation between two images
- Spanning-tree chaining of pairwise rotations into per-image transforms
- Radial-alpha weighted blending onto a 360 x 180 degree canvas

Example usage:
    from panomosaic import PanoramaBuilder

    builder = PanoramaBuilder(focal_length=600, blend_radius=250, seed=0)
    mosaic, report = builder.build(images, feature_sets, pair_matches)
"""

__version__ = '0.1.0'

from panomosaic.core.features import (
    Feature,
    FeatureMatch,
    FeatureSet,
    matches_from_ids,
    project_point,
    project_features,
)
from panomosaic.core.motion import MotionModel, least_squares_fit, procrustes_rotation
from panomosaic.core.ransac import (
    AlignmentResult,
    FailureReason,
    RANSACEstimator,
    count_inliers,
    estimate_alignment,
)
from panomosaic.core.blender import (
    AccumulationBuffer,
    ImagePosition,
    MosaicBlender,
    build_mosaic,
    normalize_blend,
    set_image_alpha,
)
from panomosaic.core.warp import canvas_shape, compute_spherical_field, warp_image
from panomosaic.core.alignment import AlignmentReport, ImageAligner
from panomosaic.core.stitcher import PanoramaBuilder

__all__ = [
    'Feature',
    'FeatureMatch',
    'FeatureSet',
    'matches_from_ids',
    'project_point',
    'project_features',
    'MotionModel',
    'least_squares_fit',
    'procrustes_rotation',
    'AlignmentResult',
    'FailureReason',
    'RANSACEstimator',
    'count_inliers',
    'estimate_alignment',
    'AccumulationBuffer',
    'ImagePosition',
    'MosaicBlender',
    'build_mosaic',
    'normalize_blend',
    'set_image_alpha',
    'canvas_shape',
    'compute_spherical_field',
    'warp_image',
    'AlignmentReport',
    'ImageAligner',
    'PanoramaBuilder',
]
