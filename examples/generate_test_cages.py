#!/usr/bin/env python3
"""
Generate a small synthetic cage collection for demonstration.

These are not real cage molecules: each "cage" is a handful of carbon
atoms on a distorted or symmetric scaffold, randomly rotated, plus a
fixed-size point cloud sampled around it (a stand-in for a porosity
point cloud). The square-prism cages have two equal principal moments,
so their inertia frame is ambiguous and they get aligned by registration.

Run this script to create test files:
    python generate_test_cages.py
"""

import os
import numpy as np

N_CLOUD_POINTS = 200


def write_xyz(filename, labels, coords, title=""):
    """Write an XYZ file."""
    with open(filename, 'w') as f:
        f.write(f"{len(labels)}\n")
        f.write(f"{title}\n")
        for label, (x, y, z) in zip(labels, coords):
            f.write(f"{label:2s} {x:12.6f} {y:12.6f} {z:12.6f}\n")


def random_rotation(rng):
    """Uniformly random rotation matrix (QR of a Gaussian matrix)."""
    Q, R = np.linalg.qr(rng.normal(size=(3, 3)))
    Q = Q @ np.diag(np.sign(np.diag(R)))
    if np.linalg.det(Q) < 0:
        Q[:, 2] = -Q[:, 2]
    return Q


def box_scaffold(a, b, c):
    """Eight corners of an a x b x c box."""
    return np.array([[sx * a, sy * b, sz * c]
                     for sx in (-1, 1) for sy in (-1, 1) for sz in (-1, 1)], dtype=float)


def sample_cloud(coords, rng, n_points=N_CLOUD_POINTS, spread=0.6):
    """Points scattered around the atoms, a fixed number per structure."""
    idx = np.arange(n_points) % len(coords)
    return coords[idx] + rng.normal(scale=spread, size=(n_points, 3))


def main():
    rng = np.random.default_rng(42)

    # Boxes with three distinct side lengths have a unique inertia frame;
    # square prisms (two equal sides) do not.
    scaffolds = {
        "cage_A": box_scaffold(3.0, 2.0, 1.2),
        "cage_B": box_scaffold(3.1, 2.0, 1.1),
        "cage_C": box_scaffold(2.5, 2.5, 1.5),
        "cage_D": box_scaffold(2.6, 2.6, 1.4),
    }

    os.makedirs("cages", exist_ok=True)
    os.makedirs("clouds", exist_ok=True)
    with open("all_cages.txt", 'w') as f:
        for name, scaffold in scaffolds.items():
            R = random_rotation(rng)
            shift = rng.uniform(-5, 5, size=3)
            coords = scaffold @ R.T + shift
            cloud = sample_cloud(coords, rng)

            write_xyz(f"cages/{name}.xyz", ["C"] * len(coords), coords, name)
            write_xyz(f"clouds/{name}.xyz", ["He"] * len(cloud), cloud,
                      f"{name} porosity point cloud")
            f.write(f"{name}\n")

    print("Created test cages:")
    print("  - cages/cage_*.xyz    (atoms)")
    print("  - clouds/cage_*.xyz   (point clouds)")
    print("  - all_cages.txt")
    print()
    print("Test with:")
    print("  cage-align collection --structures cages/ --clouds clouds/ "
          "--ids all_cages.txt -o aligned/")


if __name__ == "__main__":
    main()
