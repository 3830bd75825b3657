"""
Tests for principal-axis alignment.
"""

import numpy as np
import pytest
from cage_aligner.exceptions import DegenerateInertia, InertiaError, NotCentered
from cage_aligner.inertia import (
    align_to_principal_axes, calculate_inertia_tensor, check_symmetric, is_degenerate,
    principal_axes_alignment
)
from cage_aligner.point_set import PointSet


def box(a, b, c, structure_id="box"):
    """Eight unit-weight corners of an a x b x c box, centered."""
    corners = [[sx * a, sy * b, sz * c] for sx in (-1, 1) for sy in (-1, 1) for sz in (-1, 1)]
    return PointSet(structure_id, np.array(corners, dtype=float))


def random_cloud(seed=0, n=40):
    rng = np.random.default_rng(seed)
    coords = rng.normal(size=(n, 3)) * [3.0, 2.0, 1.0]
    weights = rng.uniform(1.0, 16.0, size=n)
    return PointSet("cloud", coords, weights).centered()


def rotation_about(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    K = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + np.sin(angle) * K + (1 - np.cos(angle)) * K @ K


class TestInertiaTensor:
    def test_plus_shape(self):
        m = 12.01
        p = PointSet.from_atoms("plus", ['C'] * 4, np.array([
            [1.0, 0.0, 0.0], [-1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, -1.0, 0.0]
        ]))
        I = calculate_inertia_tensor(p)
        assert np.allclose(I, np.diag([2 * m, 2 * m, 4 * m]))

    def test_symmetric(self):
        I = calculate_inertia_tensor(random_cloud())
        assert np.allclose(I, I.T, atol=1e-8)

    def test_asymmetric_tensor_rejected(self):
        I = np.diag([3.0, 2.0, 1.0])
        check_symmetric("ok", I)

        I[0, 1] = 1e-3
        with pytest.raises(InertiaError, match="not symmetric"):
            check_symmetric("skewed", I)
        with pytest.raises(InertiaError):
            check_symmetric("nan", np.full((3, 3), np.nan))

    def test_off_diagonal_sign(self):
        p = PointSet("d", np.array([[1.0, 1.0, 0.0], [-1.0, -1.0, 0.0]]))
        I = calculate_inertia_tensor(p)
        assert np.isclose(I[0, 1], -2.0)
        assert np.isclose(I[2, 2], 4.0)

    def test_requires_centered(self):
        p = PointSet("off", np.array([[1.0, 0.0, 0.0], [2.0, 0.0, 0.0]]))
        with pytest.raises(NotCentered):
            calculate_inertia_tensor(p)
        with pytest.raises(NotCentered):
            principal_axes_alignment(p)


class TestPrincipalAxes:
    def test_eigenvalues_descending(self):
        frame = principal_axes_alignment(random_cloud())
        l1, l2, l3 = frame.eigenvalues
        assert l1 >= l2 >= l3

    def test_rotation_is_proper(self):
        for seed in range(5):
            R = principal_axes_alignment(random_cloud(seed)).rotation
            assert np.abs(R @ R.T - np.eye(3)).max() < 1e-8
            assert np.isclose(np.linalg.det(R), 1.0)

    def test_rotated_tensor_is_diagonal(self):
        frame = principal_axes_alignment(random_cloud(3))
        I = calculate_inertia_tensor(frame.aligned)
        off_diagonal = I - np.diag(np.diag(I))
        assert np.abs(off_diagonal).max() < 1e-6
        assert np.allclose(np.diag(I), frame.eigenvalues, atol=1e-6)

    def test_largest_moment_along_x(self):
        # Long along z, so the moment about z is the smallest
        frame = principal_axes_alignment(box(1.0, 2.0, 3.0))
        spread = np.abs(frame.aligned.coords).max(axis=0)
        assert np.allclose(spread, [1.0, 2.0, 3.0])

    def test_recovers_rotated_box(self):
        R0 = rotation_about([1, 2, 3], 0.7)
        frame = principal_axes_alignment(box(1.0, 2.0, 3.0).rotated(R0))
        assert np.allclose(np.abs(frame.aligned.coords), np.abs(box(1.0, 2.0, 3.0).coords),
                           atol=1e-8)
        assert not frame.ambiguous

    def test_align_to_principal_axes_centers(self):
        p = box(1.0, 2.0, 3.0).translated([5.0, -1.0, 2.0])
        frame = align_to_principal_axes(p)
        assert frame.aligned.is_centered()
        assert not frame.ambiguous

    def test_labels_pass_through(self):
        p = PointSet.from_atoms("m", ['C', 'N', 'O', 'H'], np.array([
            [0.0, 0.0, 0.0], [1.2, 0.0, 0.0], [0.0, 1.5, 0.0], [0.0, 0.0, 0.9]
        ]))
        frame = align_to_principal_axes(p)
        assert frame.aligned.labels == ['C', 'N', 'O', 'H']
        assert np.allclose(frame.aligned.weights, p.weights)


class TestDegeneracy:
    def test_square_prism_is_ambiguous(self):
        frame = principal_axes_alignment(box(2.0, 2.0, 1.0))
        assert frame.ambiguous
        with pytest.raises(DegenerateInertia):
            frame.check_degeneracy()

    def test_near_degenerate_is_ambiguous(self):
        # Moments 40 and 39.68 differ by less than 1%
        assert principal_axes_alignment(box(2.0, 1.99, 1.0)).ambiguous

    def test_distinct_moments(self):
        frame = principal_axes_alignment(box(3.0, 2.0, 1.0))
        assert not frame.ambiguous
        frame.check_degeneracy()

    def test_single_point(self):
        assert principal_axes_alignment(PointSet("atom", np.zeros((1, 3)))).ambiguous

    def test_is_degenerate(self):
        assert is_degenerate(np.array([3.0, 2.995, 1.0]))
        assert is_degenerate(np.array([3.0, 1.0, 0.999]))
        assert not is_degenerate(np.array([3.0, 2.0, 1.0]))

    def test_invariant_under_reordering(self):
        rng = np.random.default_rng(1)
        for p in [box(2.0, 2.0, 1.0), box(3.0, 2.0, 1.0), random_cloud(2)]:
            order = rng.permutation(p.n_points)
            shuffled = PointSet(p.structure_id, p.coords[order], p.weights[order])
            a = principal_axes_alignment(p)
            b = principal_axes_alignment(shuffled)
            assert a.ambiguous == b.ambiguous
            assert np.allclose(a.eigenvalues, b.eigenvalues)

    def test_invariant_under_axis_flips(self):
        # Mirroring an axis flips an eigenvector sign but keeps the moments
        for p in [box(2.0, 2.0, 1.0), random_cloud(4)]:
            flipped = PointSet(p.structure_id, p.coords * [1.0, -1.0, 1.0], p.weights)
            a = principal_axes_alignment(p)
            b = principal_axes_alignment(flipped)
            assert a.ambiguous == b.ambiguous
            assert np.allclose(a.eigenvalues, b.eigenvalues)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
