"""
Principal-axis alignment.

Rotates a centered point set so its principal axes of inertia line up with
the coordinate axes: the axis with the largest moment becomes x, the
smallest becomes z. When two moments nearly coincide the principal frame
is not unique (any rotation inside the degenerate plane is just as good),
so the result is flagged as ambiguous and the scheduler falls back to
point set registration for that structure.
"""

import numpy as np
from dataclasses import dataclass

from .exceptions import DegenerateInertia, InertiaError, NotCentered
from .point_set import CENTERING_TOL, PointSet


# Relative gap below which two principal moments count as equal
DEGENERACY_RTOL = 0.01

SYMMETRY_TOL = 1e-8
ORTHONORMALITY_TOL = 1e-8
DIAGONAL_TOL = 1e-6


@dataclass(frozen=True)
class InertiaFrame:
    """Principal-axis frame of one point set."""
    structure_id: str
    tensor: np.ndarray
    eigenvalues: np.ndarray   # descending
    eigenvectors: np.ndarray  # columns, matching eigenvalues
    ambiguous: bool
    aligned: PointSet

    @property
    def rotation(self) -> np.ndarray:
        """Rotation taking the input coordinates into the principal frame."""
        return self.eigenvectors.T

    def check_degeneracy(self) -> None:
        """Raise DegenerateInertia if the principal frame is not unique."""
        if self.ambiguous:
            l1, l2, l3 = self.eigenvalues
            raise DegenerateInertia(
                f"{self.structure_id}: principal moments "
                f"{l1:.4g}, {l2:.4g}, {l3:.4g} are (nearly) degenerate"
            )


def calculate_inertia_tensor(point_set: PointSet) -> np.ndarray:
    """
    Calculate the inertia tensor of a centered point set about the origin.

    Parameters
    ----------
    point_set : PointSet
        Point set whose weighted centroid is at the origin.

    Returns
    -------
    np.ndarray
        Symmetric 3x3 inertia tensor.
    """
    if not point_set.is_centered(CENTERING_TOL):
        com = point_set.center_of_mass()
        raise NotCentered(
            f"{point_set.structure_id}: center of mass {com} is not at the origin"
        )

    r = point_set.coords
    m = point_set.weights
    r2 = np.sum(m[:, None] * r**2, axis=0)  # per-axis second moments

    I = -np.einsum('n,ni,nj->ij', m, r, r)
    # Diagonal: sum of squares of the two other coordinates
    I[0, 0] = r2[1] + r2[2]
    I[1, 1] = r2[0] + r2[2]
    I[2, 2] = r2[0] + r2[1]

    check_symmetric(point_set.structure_id, I)
    # Remove rounding asymmetry before diagonalizing
    return (I + I.T) / 2


def check_symmetric(structure_id: str, I: np.ndarray) -> None:
    """Raise InertiaError unless I is symmetric to within SYMMETRY_TOL (scaled)."""
    scale = max(np.abs(I).max(), 1.0)
    if not np.abs(I - I.T).max() <= SYMMETRY_TOL * scale:
        raise InertiaError(f"{structure_id}: inertia tensor is not symmetric")


def is_degenerate(eigenvalues: np.ndarray, rtol: float = DEGENERACY_RTOL) -> bool:
    """Whether two neighbouring moments (sorted descending) agree within rtol."""
    l1, l2, l3 = eigenvalues
    if l1 <= 0:
        # A single point (or nothing at all) has no preferred axes
        return True
    return bool(abs(l1 - l2) <= rtol * max(abs(l1), abs(l2)) or
                abs(l2 - l3) <= rtol * max(abs(l2), abs(l3)))


def _check_frame(structure_id: str, I: np.ndarray, eigenvalues: np.ndarray,
                 V: np.ndarray) -> None:
    """Sanity checks on the diagonalization of I."""
    scale = max(np.abs(I).max(), 1.0)

    if not np.all(np.isfinite(V)) or \
            np.abs(V.T @ V - np.eye(3)).max() > ORTHONORMALITY_TOL:
        raise InertiaError(f"{structure_id}: principal axes are not orthonormal")

    # Rotated tensor must be diagonal with the sorted moments on the diagonal
    rotated = V.T @ I @ V
    off_diagonal = rotated - np.diag(np.diag(rotated))
    if np.abs(off_diagonal).max() > DIAGONAL_TOL * scale or \
            np.abs(np.diag(rotated) - eigenvalues).max() > DIAGONAL_TOL * scale:
        raise InertiaError(f"{structure_id}: rotated inertia tensor is not diagonal")


def principal_axes_alignment(point_set: PointSet) -> InertiaFrame:
    """
    Align a centered point set to its principal axes of inertia.

    Parameters
    ----------
    point_set : PointSet
        Centered point set (weighted centroid within 1e-4 of the origin).

    Returns
    -------
    InertiaFrame
        Moments (largest first), principal axes, ambiguity flag, and the
        rotated point set.

    Raises
    ------
    NotCentered
        If the input is not centered.
    InertiaError
        If the diagonalization fails its sanity checks.
    """
    I = calculate_inertia_tensor(point_set)

    try:
        eigenvalues, eigenvectors = np.linalg.eigh(I)
    except np.linalg.LinAlgError as e:
        raise InertiaError(f"{point_set.structure_id}: {e}") from e

    # Sort by eigenvalue, largest first
    idx = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[idx]
    eigenvectors = eigenvectors[:, idx]

    # Ensure right-handed coordinate system
    if np.linalg.det(eigenvectors) < 0:
        eigenvectors[:, 2] = -eigenvectors[:, 2]

    _check_frame(point_set.structure_id, I, eigenvalues, eigenvectors)

    eigenvalues.setflags(write=False)
    eigenvectors.setflags(write=False)
    I.setflags(write=False)

    return InertiaFrame(
        structure_id=point_set.structure_id,
        tensor=I,
        eigenvalues=eigenvalues,
        eigenvectors=eigenvectors,
        ambiguous=is_degenerate(eigenvalues),
        aligned=point_set.rotated(eigenvectors.T),
    )


def align_to_principal_axes(point_set: PointSet) -> InertiaFrame:
    """Center a point set, then align it to its principal axes."""
    return principal_axes_alignment(point_set.centered())

