"""
Cage Aligner - Consistent alignment of porous cage structures.

Aligns a collection of cage molecules (or their porosity point clouds) into
one common frame: principal axes of inertia where they are unambiguous,
rigid Coherent Point Drift registration for the rest.
"""

__version__ = "1.0.0"
__author__ = "Cage Aligner Contributors"

from .point_set import PointSet
from .inertia import InertiaFrame, principal_axes_alignment, align_to_principal_axes
from .registration import (
    RegistrationConfig, RegistrationResult, RigidRegistration, rigid_point_set_registration
)
from .cache import DirectoryCache, MemoryCache, RegistrationCache
from .scheduler import AlignmentScheduler, AlignmentState, SchedulerConfig, select_best
from .driver import CageAligner, align_pair, align_collection
from .xyz_io import read_xyz, write_xyz
from .exceptions import (
    AlignmentError, DegenerateInertia, DimensionMismatch, InertiaError, InvalidRotation,
    MissingOrStaleCacheRecord, NoProgress, NotCentered, RegistrationError
)

__all__ = [
    "PointSet",
    "InertiaFrame",
    "principal_axes_alignment",
    "align_to_principal_axes",
    "RegistrationConfig",
    "RegistrationResult",
    "RigidRegistration",
    "rigid_point_set_registration",
    "RegistrationCache",
    "MemoryCache",
    "DirectoryCache",
    "AlignmentScheduler",
    "AlignmentState",
    "SchedulerConfig",
    "select_best",
    "CageAligner",
    "align_pair",
    "align_collection",
    "read_xyz",
    "write_xyz",
    "AlignmentError",
    "DegenerateInertia",
    "DimensionMismatch",
    "InertiaError",
    "InvalidRotation",
    "MissingOrStaleCacheRecord",
    "NoProgress",
    "NotCentered",
    "RegistrationError",
]
