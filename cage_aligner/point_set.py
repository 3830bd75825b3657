"""
Point sets.

A point set is an ordered collection of 3D coordinates belonging to one
structure: either the atoms of a cage molecule or a sampled point cloud of
its void space. Each point can carry a weight (atomic mass for molecules,
1 for point clouds) and a label (atom type), which is passed through
untouched by every transform.
"""

import re
import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional, Sequence


# Element symbol to atomic mass
ATOMIC_MASSES = {
    'H': 1.008, 'He': 4.003, 'Li': 6.941, 'Be': 9.012, 'B': 10.81, 'C': 12.01,
    'N': 14.01, 'O': 16.00, 'F': 19.00, 'Ne': 20.18, 'Na': 22.99, 'Mg': 24.31,
    'Al': 26.98, 'Si': 28.09, 'P': 30.97, 'S': 32.07, 'Cl': 35.45, 'Ar': 39.95,
    'K': 39.10, 'Ca': 40.08, 'Zn': 65.38, 'Br': 79.90, 'I': 126.9
}

# Weighted centroid tolerance for a point set to count as centered
CENTERING_TOL = 1e-4


def get_atomic_mass(label: str) -> float:
    """Get atomic mass for an atom label such as 'C', 'N3' or 'Cl_1'."""
    symbol = re.sub(r'[^A-Za-z].*$', '', label.strip())
    if not symbol:
        return 12.01
    symbol = symbol[0].upper() + symbol[1:].lower()
    return ATOMIC_MASSES.get(symbol, 12.01)  # Default to carbon


def _frozen(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class PointSet:
    """
    Immutable set of 3D points identified by a structure ID.

    Every transform returns a new PointSet; the arrays of an existing one
    are read-only.
    """
    structure_id: str
    coords: np.ndarray
    weights: Optional[np.ndarray] = None
    labels: List[str] = field(default_factory=list)

    def __post_init__(self):
        coords = np.asarray(self.coords, dtype=np.float64)
        if coords.ndim != 2 or coords.shape[1] != 3:
            raise ValueError(
                f"{self.structure_id}: coordinates must have shape (n, 3), "
                f"got {coords.shape}"
            )
        n = coords.shape[0]

        if self.weights is None:
            weights = np.ones(n)
        else:
            weights = np.asarray(self.weights, dtype=np.float64)
        if weights.shape != (n,):
            raise ValueError(f"{self.structure_id}: expected {n} weights, got {weights.shape}")
        if np.any(weights < 0) or (n > 0 and weights.sum() <= 0):
            raise ValueError(f"{self.structure_id}: weights must be non-negative with positive sum")

        labels = list(self.labels) if self.labels else [''] * n
        if len(labels) != n:
            raise ValueError(f"{self.structure_id}: expected {n} labels, got {len(labels)}")

        # frozen dataclass, so bypass __setattr__
        object.__setattr__(self, 'coords', _frozen(coords))
        object.__setattr__(self, 'weights', _frozen(weights))
        object.__setattr__(self, 'labels', labels)

    @classmethod
    def from_atoms(cls, structure_id: str, labels: Sequence[str],
                   coords: np.ndarray) -> 'PointSet':
        """Build a molecular point set weighted by atomic masses."""
        masses = np.array([get_atomic_mass(label) for label in labels])
        return cls(structure_id, coords, masses, list(labels))

    @property
    def n_points(self) -> int:
        return self.coords.shape[0]

    def center_of_mass(self) -> np.ndarray:
        """Weighted centroid of the points."""
        return self.weights @ self.coords / self.weights.sum()

    def is_centered(self, tol: float = CENTERING_TOL) -> bool:
        return bool(np.linalg.norm(self.center_of_mass()) <= tol)

    def _replace_coords(self, coords: np.ndarray) -> 'PointSet':
        return PointSet(self.structure_id, coords, self.weights, self.labels)

    def centered(self) -> 'PointSet':
        """Translate the weighted centroid to the origin."""
        return self._replace_coords(self.coords - self.center_of_mass())

    def translated(self, t: np.ndarray) -> 'PointSet':
        """Shift every point by t."""
        return self._replace_coords(self.coords + np.asarray(t))

    def rotated(self, R: np.ndarray) -> 'PointSet':
        """Rotate every point about the origin: x -> R x."""
        return self._replace_coords(self.coords @ np.asarray(R).T)

    def transformed(self, R: np.ndarray, t: np.ndarray) -> 'PointSet':
        """Apply the rigid transform x -> R x + t."""
        return self._replace_coords(self.coords @ np.asarray(R).T + np.asarray(t))

    def subsampled(self, max_points: Optional[int]) -> 'PointSet':
        """
        Keep at most `max_points` points, evenly strided over the input order.

        Deterministic, so two clouds of equal size subsample to equal size.
        """
        if max_points is None or self.n_points <= max_points:
            return self
        if max_points < 1:
            raise ValueError("max_points must be at least 1")
        idx = np.linspace(0, self.n_points - 1, max_points).round().astype(int)
        return PointSet(self.structure_id, self.coords[idx], self.weights[idx],
                        [self.labels[i] for i in idx])

    def rmsd(self, other: 'PointSet') -> float:
        """RMSD against another point set with the same point order."""
        if self.n_points != other.n_points:
            raise ValueError("Point sets must have same length")
        diff = self.coords - other.coords
        return float(np.sqrt(np.mean(np.sum(diff**2, axis=1))))
