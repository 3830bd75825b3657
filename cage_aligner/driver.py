"""
Entry points for aligning pairs and whole collections.

`CageAligner` holds a collection of structures (and optionally their
porosity point clouds) plus a registration cache. Pairwise results are
looked up in the cache before any EM is run, so results produced by
separate per-pair jobs can be collected into one scheduler run.
"""

from typing import Dict, Iterable, Optional, Sequence

from .cache import MemoryCache, RegistrationCache
from .exceptions import MissingOrStaleCacheRecord
from .point_set import PointSet
from .registration import RegistrationConfig, RegistrationResult, rigid_point_set_registration
from .scheduler import AlignmentScheduler, PreparedStructure, SchedulerConfig, prepare_structure


class CageAligner:
    """
    A collection of structures to align.

    Parameters
    ----------
    point_sets : sequence of PointSet
        Structure coordinates, one per structure ID.
    cache : RegistrationCache, optional
        Where pairwise results are stored (in memory if omitted).
    clouds : dict, optional
        Registration point cloud per structure ID. Structures without one
        are registered on their own coordinates.
    """

    def __init__(self, point_sets: Sequence[PointSet],
                 cache: Optional[RegistrationCache] = None,
                 clouds: Optional[Dict[str, PointSet]] = None):
        self.point_sets = {p.structure_id: p for p in point_sets}
        if len(self.point_sets) != len(point_sets):
            raise ValueError("structure IDs must be unique")
        self.cache = cache if cache is not None else MemoryCache()
        self.clouds = dict(clouds or {})
        self.report = None

    def prepare(self, structure_id: str, max_points: Optional[int] = None,
                verbose: bool = True) -> PreparedStructure:
        """Structure and registration cloud, centered and in principal axes."""
        return prepare_structure(self.point_sets[structure_id],
                                 self.clouds.get(structure_id), max_points, verbose)

    def lookup(self, mover: PointSet, reference: PointSet,
               config: RegistrationConfig, cache_only: bool = False,
               verbose: bool = True) -> RegistrationResult:
        """
        Registration of `mover` onto `reference`, from the cache if possible.

        A stale cache record is recomputed (and reported if `verbose`).
        With `cache_only`, a missing or stale record raises
        MissingOrStaleCacheRecord.
        """
        key = (mover.structure_id, reference.structure_id, reference.n_points)
        try:
            result = self.cache.get(key)
        except MissingOrStaleCacheRecord as e:
            if cache_only:
                raise
            if verbose:
                print(f"  {e}; recomputing")
            result = None

        if result is None:
            if cache_only:
                raise MissingOrStaleCacheRecord(
                    f"no cached registration of {key[0]} onto {key[1]} ({key[2]} points)"
                )
            result = rigid_point_set_registration(reference, mover, config)
            self.cache.put(result)
        return result

    def align_pair(self, mover_id: str, reference_id: str,
                   config: Optional[RegistrationConfig] = None,
                   cache_only: bool = False,
                   max_points: Optional[int] = None,
                   verbose: bool = True) -> RegistrationResult:
        """
        Register the cloud of `mover_id` onto the cloud of `reference_id`.

        Both clouds are first prepared the way the scheduler prepares them
        (centered, principal axes, at most `max_points` points), so the
        result can be reused by `align_collection`.

        Raises DimensionMismatch or InvalidRotation if the registration
        fails, and MissingOrStaleCacheRecord on a cache miss with
        `cache_only`.
        """
        config = config or RegistrationConfig()
        mover = self.prepare(mover_id, max_points, verbose).cloud
        reference = self.prepare(reference_id, max_points, verbose).cloud
        return self.lookup(mover, reference, config, cache_only, verbose)

    def align_collection(self, ids: Optional[Iterable[str]] = None,
                         config: Optional[SchedulerConfig] = None) -> Dict[str, PointSet]:
        """
        Align every structure in `ids` (all of them by default) into one frame.

        Returns the aligned, centered coordinates keyed by structure ID.
        Raises NoProgress if some structures cannot be aligned.
        """
        config = config or SchedulerConfig()
        ids = list(self.point_sets) if ids is None else list(ids)
        missing = [sid for sid in ids if sid not in self.point_sets]
        if missing:
            raise KeyError(f"unknown structures: {', '.join(missing)}")

        def align_pair(mover: PointSet, reference: PointSet) -> RegistrationResult:
            return self.lookup(mover, reference, config.registration, config.cache_only,
                               config.verbose)

        scheduler = AlignmentScheduler(
            [self.point_sets[sid] for sid in ids],
            clouds={sid: self.clouds[sid] for sid in ids if sid in self.clouds},
            config=config,
            align_pair=align_pair,
        )
        self.report = scheduler.report
        return scheduler.run()


def align_pair(mover: PointSet, reference: PointSet,
               config: Optional[RegistrationConfig] = None,
               cache: Optional[RegistrationCache] = None) -> RegistrationResult:
    """
    Register one structure onto another in their principal-axis frames.

    Goes through `cache` if given.
    """
    aligner = CageAligner([mover, reference], cache=cache)
    return aligner.align_pair(mover.structure_id, reference.structure_id, config)


def align_collection(point_sets: Sequence[PointSet],
                     config: Optional[SchedulerConfig] = None,
                     cache: Optional[RegistrationCache] = None,
                     clouds: Optional[Dict[str, PointSet]] = None) -> Dict[str, PointSet]:
    """Align a collection of point sets into one frame."""
    return CageAligner(point_sets, cache=cache, clouds=clouds).align_collection(config=config)
