"""
Exceptions raised by the alignment engine.
"""

from typing import List


class AlignmentError(Exception):
    """Base class for all alignment failures."""


class InertiaError(AlignmentError):
    """The inertia tensor or its diagonalization failed a sanity check."""


class NotCentered(InertiaError):
    """A point set was expected to have its weighted centroid at the origin."""


class DegenerateInertia(AlignmentError):
    """
    Two principal moments coincide, so the principal-axis frame is not unique.

    Not fatal. The scheduler uses it to route a structure to registration
    instead of trusting its inertia alignment.
    """


class RegistrationError(AlignmentError):
    """A single pairwise registration failed."""


class DimensionMismatch(RegistrationError):
    """Reference and moving point sets hold a different number of points."""


class InvalidRotation(RegistrationError):
    """The estimated rotation is not a proper rotation (numerical breakdown)."""


class MissingOrStaleCacheRecord(AlignmentError):
    """A cached registration result is absent or does not match its key."""


class NoProgress(AlignmentError):
    """Every candidate registration of a scheduler round failed."""

    def __init__(self, unaligned: List[str]):
        self.unaligned = list(unaligned)
        super().__init__(
            "no usable registration in this round; could not align: "
            + ", ".join(self.unaligned)
        )
