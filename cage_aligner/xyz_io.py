"""
XYZ file I/O.

Cage coordinates and porosity point clouds both come as plain .xyz files:
a point count, a comment line, then one `label x y z` record per point.
Coordinates are in Angstrom and are read and written unchanged. Labels
are atom types for cages and a dummy label for point clouds; they are
passed through untouched.
"""

import os
import numpy as np
from typing import List, Optional

from .point_set import PointSet, get_atomic_mass


def read_xyz(filename: str, structure_id: Optional[str] = None,
             weighted: bool = False) -> PointSet:
    """
    Read an XYZ file.

    Parameters
    ----------
    filename : str
        Path to the .xyz file.
    structure_id : str, optional
        ID of the structure (defaults to the file name without extension).
    weighted : bool
        Weight points by the atomic mass of their label (molecules) instead
        of uniformly (point clouds).

    Returns
    -------
    PointSet
        The points in file order.
    """
    if structure_id is None:
        structure_id = os.path.splitext(os.path.basename(filename))[0]

    with open(filename, 'r') as f:
        lines = f.readlines()

    try:
        n_points = int(lines[0].split()[0])
    except (IndexError, ValueError):
        raise ValueError(f"{filename}: first line must hold the number of points")

    if len(lines) < 2 + n_points:
        raise ValueError(f"{filename}: expected {n_points} points, "
                         f"found {max(len(lines) - 2, 0)} lines")

    labels = []
    coords = np.zeros((n_points, 3))
    for i in range(n_points):
        parts = lines[2 + i].split()
        if len(parts) < 4:
            raise ValueError(f"{filename}, line {3 + i}: expected 'label x y z'")
        labels.append(parts[0])
        coords[i] = [float(parts[1]), float(parts[2]), float(parts[3])]

    weights = None
    if weighted:
        weights = np.array([get_atomic_mass(label) for label in labels])
    return PointSet(structure_id, coords, weights, labels)


def write_xyz(filename: str, point_set: PointSet, title: Optional[str] = None) -> None:
    """
    Write a point set to XYZ file format.

    Parameters
    ----------
    filename : str
        Output filename.
    point_set : PointSet
        Points to write; empty labels are written as 'X'.
    title : str, optional
        Comment line (defaults to the structure ID).
    """
    if title is None:
        title = point_set.structure_id

    with open(filename, 'w') as f:
        f.write(f"{point_set.n_points}\n")
        f.write(f"{title}\n")
        for label, coords in zip(point_set.labels, point_set.coords):
            f.write(f"{label or 'X':2s} {coords[0]:12.6f} "
                    f"{coords[1]:12.6f} {coords[2]:12.6f}\n")


def read_structure_list(filename: str) -> List[str]:
    """Read structure IDs, one per line; blank lines and # comments are skipped."""
    ids = []
    with open(filename, 'r') as f:
        for line in f:
            line = line.split('#', 1)[0].strip()
            if line:
                ids.append(line)
    return ids
