"""
Greedy alignment of a whole collection.

Every structure is first prepared: centered on its center of mass and
rotated into its principal-axis frame (its registration cloud moves with
it). Phase 1 seeds the aligned pool with every structure whose
principal-axis frame is unambiguous. Phase 2 then grows the pool one
structure per round: every (unaligned, aligned) pair of prepared clouds is
registered, the pair with the lowest objective over the whole candidate
set wins, and its mover is rotated into the common frame and committed.

Registrations are always between prepared clouds, so a result does not
depend on when its reference was committed and can be cached or computed
by a separate job. The common-frame rotation of a mover is the rotation
already applied to its reference, composed with the registered one.

Committed structures are rotated about the origin only; the translation
found by registration is dropped. Prepared coordinates are centered, so
committed coordinates stay centered (checked on every commit).
"""

import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .exceptions import (
    DegenerateInertia, InertiaError, MissingOrStaleCacheRecord, NoProgress,
    NotCentered, RegistrationError
)
from .inertia import InertiaFrame, align_to_principal_axes
from .point_set import PointSet
from .registration import RegistrationConfig, RegistrationResult, rigid_point_set_registration

# (mover cloud, reference cloud) -> result
PairAligner = Callable[[PointSet, PointSet], RegistrationResult]


@dataclass(frozen=True)
class SchedulerConfig:
    """
    Settings for aligning a collection.

    Parameters
    ----------
    registration : RegistrationConfig
        EM settings for every pairwise registration.
    max_workers : int, optional
        Worker threads for the inertia and registration pools.
    max_points : int, optional
        Cap on the size of registration clouds (evenly subsampled).
    cache_only : bool
        Only use cached registrations; never run EM.
    verbose : bool
        Print progress.
    """
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)
    max_workers: Optional[int] = None
    max_points: Optional[int] = None
    cache_only: bool = False
    verbose: bool = True

    def __post_init__(self):
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.max_points is not None and self.max_points < 1:
            raise ValueError("max_points must be at least 1")


@dataclass(frozen=True)
class PreparedStructure:
    """A structure and its registration cloud, centered and in principal axes."""
    coordinates: PointSet
    cloud: PointSet
    frame: Optional[InertiaFrame]

    @property
    def structure_id(self) -> str:
        return self.coordinates.structure_id

    @property
    def ambiguous(self) -> bool:
        return self.frame is None or self.frame.ambiguous


def prepare_structure(structure: PointSet, cloud: Optional[PointSet] = None,
                      max_points: Optional[int] = None,
                      verbose: bool = True) -> PreparedStructure:
    """
    Center a structure and rotate it into its principal-axis frame.

    The cloud (the structure itself if omitted) is moved the same way and
    subsampled to `max_points`. If the inertia frame fails its sanity
    checks, the structure is only centered and `frame` is None.
    """
    if cloud is None:
        cloud = structure
    cloud = cloud.translated(-structure.center_of_mass()).subsampled(max_points)

    try:
        frame = align_to_principal_axes(structure)
    except InertiaError as e:
        if verbose:
            print(f"  Inertia alignment failed: {e}")
        return PreparedStructure(structure.centered(), cloud, None)

    # Ambiguous frames still rotate, they just do not count as aligned
    return PreparedStructure(frame.aligned, cloud.rotated(frame.rotation), frame)


@dataclass
class RoundRecord:
    """What happened in one growth round."""
    round: int
    mover_id: str
    reference_id: str
    objective: float
    variance: float
    stop_reason: str
    n_candidates: int
    n_failed: int


@dataclass
class ScheduleReport:
    """Summary of a scheduler run."""
    seeds: List[str] = field(default_factory=list)
    identity_seed: bool = False
    ambiguous: List[str] = field(default_factory=list)
    rounds: List[RoundRecord] = field(default_factory=list)
    unaligned: List[str] = field(default_factory=list)


class AlignmentState:
    """
    Aligned flag and current coordinates of every structure.

    The only mutation is `commit`, which flips one structure to aligned.
    """

    def __init__(self, point_sets: Iterable[PointSet]):
        self._coords: Dict[str, PointSet] = {}
        self._aligned: Dict[str, bool] = {}
        for point_set in point_sets:
            if point_set.structure_id in self._coords:
                raise ValueError(f"duplicate structure ID {point_set.structure_id}")
            self._coords[point_set.structure_id] = point_set
            self._aligned[point_set.structure_id] = False

    def __len__(self) -> int:
        return len(self._coords)

    def __contains__(self, structure_id: str) -> bool:
        return structure_id in self._coords

    def is_aligned(self, structure_id: str) -> bool:
        return self._aligned[structure_id]

    def coordinates(self, structure_id: str) -> PointSet:
        return self._coords[structure_id]

    def aligned_ids(self) -> List[str]:
        return [sid for sid, aligned in self._aligned.items() if aligned]

    def unaligned_ids(self) -> List[str]:
        return [sid for sid, aligned in self._aligned.items() if not aligned]

    @property
    def n_aligned(self) -> int:
        return sum(self._aligned.values())

    @property
    def is_complete(self) -> bool:
        return all(self._aligned.values())

    def commit(self, coordinates: PointSet) -> None:
        """Mark a structure aligned and replace its coordinates."""
        structure_id = coordinates.structure_id
        if structure_id not in self._coords:
            raise KeyError(f"unknown structure {structure_id}")
        if self._aligned[structure_id]:
            raise ValueError(f"{structure_id} is already aligned")
        self._coords[structure_id] = coordinates
        self._aligned[structure_id] = True

    def snapshot(self) -> Dict[str, PointSet]:
        """Current coordinates of every structure, in input order."""
        return dict(self._coords)


def select_best(results: Sequence[RegistrationResult]) -> RegistrationResult:
    """
    Pick the result with the lowest objective.

    Ties go to the earliest result, so the choice follows enumeration order.
    """
    if not results:
        raise ValueError("no registration results to choose from")
    return min(results, key=lambda result: result.objective)


class AlignmentScheduler:
    """
    Align a collection of structures into one frame.

    Parameters
    ----------
    structures : sequence of PointSet
        The structures to align.
    clouds : dict, optional
        Registration point cloud per structure ID, in the same frame as the
        structure. Structures without a cloud register their own points.
    config : SchedulerConfig, optional
    align_pair : callable, optional
        Registers a mover cloud onto a reference cloud. Defaults to running
        EM with `config.registration`.
    """

    def __init__(self, structures: Sequence[PointSet],
                 clouds: Optional[Dict[str, PointSet]] = None,
                 config: Optional[SchedulerConfig] = None,
                 align_pair: Optional[PairAligner] = None):
        self.config = config or SchedulerConfig()
        self.structures = list(structures)
        self.clouds = dict(clouds or {})
        self.align_pair = align_pair or self._register
        self.report = ScheduleReport()
        self.prepared: Dict[str, PreparedStructure] = {}
        self.state: Optional[AlignmentState] = None
        # Rotation from each aligned structure's prepared frame to the common frame
        self._rotations: Dict[str, np.ndarray] = {}

    def _register(self, mover: PointSet, reference: PointSet) -> RegistrationResult:
        return rigid_point_set_registration(reference, mover, self.config.registration)

    def _log(self, message: str) -> None:
        if self.config.verbose:
            print(message)

    def _commit(self, structure_id: str, rotation: np.ndarray) -> None:
        coordinates = self.prepared[structure_id].coordinates.rotated(rotation)
        if not coordinates.is_centered():
            raise NotCentered(
                f"{structure_id}: committed coordinates left the origin "
                f"(center of mass {coordinates.center_of_mass()})"
            )
        self.state.commit(coordinates)
        self._rotations[structure_id] = np.asarray(rotation)

    def prepare(self) -> Dict[str, PreparedStructure]:
        """Prepare every structure in a worker pool."""
        def work(structure):
            return prepare_structure(structure, self.clouds.get(structure.structure_id),
                                     self.config.max_points, self.config.verbose)

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            prepared = list(executor.map(work, self.structures))

        self.prepared = {p.structure_id: p for p in prepared}
        self.state = AlignmentState(p.coordinates for p in prepared)
        return self.prepared

    def seed(self) -> List[str]:
        """
        Phase 1: commit every structure with an unambiguous inertia frame.

        If there is none, the first structure is seeded as it is.
        """
        if self.state is None:
            self.prepare()

        for sid, prepared in self.prepared.items():
            if prepared.frame is None:
                self.report.ambiguous.append(sid)
                continue
            try:
                prepared.frame.check_degeneracy()
            except DegenerateInertia as e:
                self._log(f"  {e}; aligning by registration")
                self.report.ambiguous.append(sid)
                continue
            self._commit(sid, np.eye(3))
            self.report.seeds.append(sid)

        if not self.report.seeds and self.structures:
            first = self.structures[0].structure_id
            self._log(f"  No unambiguous inertia frame; seeding with {first} as is")
            self._commit(first, np.eye(3))
            self.report.seeds.append(first)
            self.report.identity_seed = True

        self._log(f"Seeded {len(self.report.seeds)} of {len(self.state)} structures "
                  f"by principal axes: {', '.join(self.report.seeds) or '-'}")
        return list(self.report.seeds)

    def evaluate_candidates(self) -> List[RegistrationResult]:
        """
        Register every (unaligned, aligned) pair in a worker pool.

        Pairs whose registration fails are left out. Results are in
        enumeration order: movers outermost, both in input order.
        """
        pairs = [(y, x) for y in self.state.unaligned_ids() for x in self.state.aligned_ids()]

        results = []
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = [
                executor.submit(self.align_pair, self.prepared[y].cloud, self.prepared[x].cloud)
                for y, x in pairs
            ]
            for (y, x), future in zip(pairs, futures):
                try:
                    results.append(future.result())
                except (RegistrationError, MissingOrStaleCacheRecord) as e:
                    self._log(f"  Skipping {y} -> {x}: {e}")
        return results

    def grow(self) -> RoundRecord:
        """Phase 2, one round: commit the best-fitting unaligned structure."""
        n_candidates = len(self.state.unaligned_ids()) * len(self.state.aligned_ids())
        results = self.evaluate_candidates()
        if not results:
            self.report.unaligned = self.state.unaligned_ids()
            self._log(f"Could not align: {', '.join(self.report.unaligned)}")
            raise NoProgress(self.report.unaligned)

        best = select_best(results)
        self._commit(best.mover_id, self._rotations[best.reference_id] @ best.rotation)

        record = RoundRecord(
            round=len(self.report.rounds) + 1,
            mover_id=best.mover_id,
            reference_id=best.reference_id,
            objective=best.objective,
            variance=best.variance,
            stop_reason=best.stop_reason,
            n_candidates=n_candidates,
            n_failed=n_candidates - len(results),
        )
        self.report.rounds.append(record)
        self._log(f"Round {record.round}: {best.mover_id} -> {best.reference_id} "
                  f"objective={best.objective:.4f} sigma2={best.variance:.4g} "
                  f"({best.stop_reason}); {self.state.n_aligned}/{len(self.state)} aligned")
        return record

    def run(self) -> Dict[str, PointSet]:
        """Align the whole collection and return the final coordinates."""
        self.seed()

        while not self.state.is_complete:
            self.grow()

        self.report.unaligned = self.state.unaligned_ids()
        self._log(f"Never aligned: {', '.join(self.report.unaligned) or 'none'}")
        return self.state.snapshot()
