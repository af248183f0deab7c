"""
Feature containers and the image-plane to ray projector

Features and matches come from an upstream detector/matcher. Source data
numbers feature ids from 1 and uses -1 for "no id" / "unmatched"; here every
index is 0-based and absence is an explicit None.
"""

import numpy as np
from typing import List, Dict, Iterable, Iterator, Optional, Sequence

NO_ID = -1


class Feature:
    """A 2D feature location with an optional stable identifier"""

    def __init__(self, x: float, y: float, id: Optional[int] = None):
        self.x = float(x)
        self.y = float(y)
        self.id = id

    @classmethod
    def from_one_based(cls, x: float, y: float, id: int = NO_ID) -> 'Feature':
        """Create from source data where ids start at 1 and -1 means no id"""
        if id == NO_ID:
            return cls(x, y, None)
        if id < 1:
            raise ValueError(f"Invalid 1-based feature id: {id}")
        return cls(x, y, id - 1)

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {'x': self.x, 'y': self.y, 'id': self.id}

    @classmethod
    def from_dict(cls, data: Dict) -> 'Feature':
        """Create from dictionary"""
        return cls(data['x'], data['y'], data.get('id'))

    def __repr__(self) -> str:
        return f"Feature(x={self.x:.2f}, y={self.y:.2f}, id={self.id})"


class FeatureMatch:
    """
    Association from one feature of the first set to the second set.

    ``target`` is a 0-based index into the second feature set, or None when
    the feature has no correspondence.
    """

    def __init__(self, target: Optional[int] = None, distance: float = 0.0):
        if target is not None and target < 0:
            raise ValueError(f"Match target must be a non-negative index, got {target}")
        self.target = target
        self.distance = float(distance)

    @property
    def is_matched(self) -> bool:
        return self.target is not None

    @classmethod
    def from_one_based(cls, id: int, distance: float = 0.0) -> 'FeatureMatch':
        """Create from a 1-based match id, where -1 means unmatched"""
        if id == NO_ID:
            return cls(None, distance)
        if id < 1:
            raise ValueError(f"Invalid 1-based match id: {id}")
        return cls(id - 1, distance)

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {'target': self.target, 'distance': self.distance}

    @classmethod
    def from_dict(cls, data: Dict) -> 'FeatureMatch':
        """Create from dictionary"""
        return cls(data.get('target'), data.get('distance', 0.0))

    def __repr__(self) -> str:
        return f"FeatureMatch(target={self.target}, distance={self.distance:.3f})"


def matches_from_ids(ids: Iterable[int]) -> List[FeatureMatch]:
    """Convert raw 1-based match ids (-1 = unmatched) to FeatureMatch objects"""
    return [FeatureMatch.from_one_based(int(i)) for i in ids]


class FeatureSet:
    """Ordered features of one image, indexed by position"""

    def __init__(self, features: Optional[Iterable[Feature]] = None):
        self._features: List[Feature] = list(features or [])

    @classmethod
    def from_points(cls, points: Sequence[Sequence[float]]) -> 'FeatureSet':
        """Build a set from an (N, 2) array-like, using positions as ids"""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return cls(Feature(x, y, i) for i, (x, y) in enumerate(points))

    def positions(self) -> np.ndarray:
        """Return an (N, 2) float64 array of feature locations"""
        if not self._features:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([(f.x, f.y) for f in self._features], dtype=np.float64)

    def __len__(self) -> int:
        return len(self._features)

    def __getitem__(self, index: int) -> Feature:
        return self._features[index]

    def __iter__(self) -> Iterator[Feature]:
        return iter(self._features)


def project_point(feature: Feature, focal_length: float, width: int, height: int) -> np.ndarray:
    """
    Map an image-plane location to a 3D ray.

    The image plane sits at distance ``focal_length`` from the projection
    centre, with the image centre on the optical axis.

    Args:
        feature: Feature to project
        focal_length: Focal length in pixels
        width: Image width in pixels
        height: Image height in pixels

    Returns:
        Ray (x - width/2, y - height/2, f) as a float64 array
    """
    return np.array(
        [feature.x - 0.5 * width, feature.y - 0.5 * height, focal_length],
        dtype=np.float64
    )


def project_features(
    features: FeatureSet,
    focal_length: float,
    width: int,
    height: int
) -> np.ndarray:
    """Vectorised project_point for a whole set; returns an (N, 3) array"""
    positions = features.positions()
    rays = np.empty((len(positions), 3), dtype=np.float64)
    rays[:, 0] = positions[:, 0] - 0.5 * width
    rays[:, 1] = positions[:, 1] - 0.5 * height
    rays[:, 2] = focal_length
    return rays
