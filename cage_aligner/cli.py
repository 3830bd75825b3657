"""
Command-line interface for cage alignment.
"""

import argparse
import os
import sys
import time
from typing import Dict, List, Optional

from .cache import DirectoryCache, MemoryCache
from .driver import CageAligner
from .exceptions import AlignmentError
from .point_set import PointSet
from .registration import RegistrationConfig, RegistrationResult
from .scheduler import SchedulerConfig
from .xyz_io import read_structure_list, read_xyz, write_xyz


def load_collection(structure_dir: str, ids: Optional[List[str]] = None,
                    cloud_dir: Optional[str] = None):
    """
    Read structures (mass weighted) and optional porosity clouds.

    Without `ids`, every .xyz file in `structure_dir` is loaded, sorted by name.
    """
    if ids is None:
        ids = sorted(os.path.splitext(name)[0] for name in os.listdir(structure_dir)
                     if name.endswith('.xyz'))

    structures = []
    clouds: Dict[str, PointSet] = {}
    for sid in ids:
        path = os.path.join(structure_dir, f"{sid}.xyz")
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Structure file not found: {path}")
        structures.append(read_xyz(path, sid, weighted=True))

        if cloud_dir is not None:
            cloud_path = os.path.join(cloud_dir, f"{sid}.xyz")
            if not os.path.isfile(cloud_path):
                raise FileNotFoundError(f"Point cloud not found: {cloud_path}")
            clouds[sid] = read_xyz(cloud_path, sid)
    return structures, clouds


def run_pair(mover_id: str, reference_id: str, structure_dir: str, cache_dir: str,
             cloud_dir: Optional[str] = None,
             config: Optional[RegistrationConfig] = None,
             max_points: Optional[int] = None,
             verbose: bool = True) -> RegistrationResult:
    """
    Register one structure onto another and store the result in `cache_dir`.

    This is the unit of work of a batch run: one job per ordered pair, all
    writing into the same cache directory, collected later with
    `cage-align collection --cache-only`.
    """
    structures, clouds = load_collection(structure_dir, [mover_id, reference_id], cloud_dir)
    aligner = CageAligner(structures, cache=DirectoryCache(cache_dir), clouds=clouds)

    if verbose:
        print(f"Aligning {mover_id} to {reference_id}")

    result = aligner.align_pair(mover_id, reference_id, config, max_points=max_points,
                                verbose=verbose)

    if verbose:
        print(f"  # pts in point clouds: {result.point_count}")
        print(f"  {result.stop_reason} after {result.iterations} EM steps")
        print(f"  sigma2={result.variance:.6g} objective={result.objective:.6g}")
        print(f"  Saved to {aligner.cache.path(result.key)}")
    return result


def run_collection(structure_dir: str, output_dir: str,
                   cloud_dir: Optional[str] = None,
                   ids_file: Optional[str] = None,
                   cache_dir: Optional[str] = None,
                   config: Optional[SchedulerConfig] = None) -> Dict[str, PointSet]:
    """
    Align a whole collection and write one aligned .xyz file per structure.

    Parameters
    ----------
    structure_dir : str
        Directory of <id>.xyz structure files.
    output_dir : str
        Where aligned structures and the report are written.
    cloud_dir : str, optional
        Directory of <id>.xyz porosity point clouds to register instead
        of the atoms.
    ids_file : str, optional
        Structure IDs to align, one per line (default: every file).
    cache_dir : str, optional
        Directory cache of pairwise results (in memory if omitted).
    config : SchedulerConfig, optional

    Returns
    -------
    dict
        Aligned coordinates keyed by structure ID.
    """
    config = config or SchedulerConfig()
    verbose = config.verbose
    os.makedirs(output_dir, exist_ok=True)

    ids = read_structure_list(ids_file) if ids_file else None
    structures, clouds = load_collection(structure_dir, ids, cloud_dir)
    cache = DirectoryCache(cache_dir) if cache_dir else MemoryCache()

    if verbose:
        print("=" * 70)
        print("CAGE ALIGNER")
        print("=" * 70)
        print(f"\nStructures: {structure_dir} ({len(structures)} structures)")
        if cloud_dir:
            print(f"Clouds:     {cloud_dir}")
        print(f"Output:     {output_dir}\n")

    aligner = CageAligner(structures, cache=cache, clouds=clouds)
    start_time = time.time()
    aligned = aligner.align_collection(config=config)
    elapsed = time.time() - start_time
    report = aligner.report

    for sid, point_set in aligned.items():
        write_xyz(os.path.join(output_dir, f"{sid}.xyz"), point_set, f"Aligned: {sid}")

    report_file = os.path.join(output_dir, "alignment_report.txt")
    with open(report_file, 'w') as f:
        f.write("CAGE ALIGNMENT REPORT\n")
        f.write("=" * 70 + "\n\n")
        f.write(f"Structures: {len(aligned)}\n")
        f.write(f"Seeded by principal axes: {', '.join(report.seeds) or '-'}\n")
        if report.identity_seed:
            f.write("(no unambiguous inertia frame; first structure seeded as is)\n")
        f.write(f"Ambiguous inertia frames: {', '.join(report.ambiguous) or '-'}\n\n")
        f.write("ROUNDS\n")
        f.write("-" * 70 + "\n")
        for record in report.rounds:
            f.write(f"{record.round:4d} {record.mover_id} -> {record.reference_id} "
                    f"objective={record.objective:.6f} sigma2={record.variance:.6g} "
                    f"({record.stop_reason}, {record.n_failed}/{record.n_candidates} failed)\n")
        f.write(f"\nNever aligned: {', '.join(report.unaligned) or 'none'}\n")

    if verbose:
        print(f"\nAlignment complete in {elapsed:.1f} seconds")
        print(f"  {len(aligned)} aligned structures written to {output_dir}")
        print(f"  {report_file}")

    return aligned


def add_registration_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-w", "--outlier-weight", type=float, default=0.0,
                        help="Weight of the uniform outlier component (default: 0.0)")
    parser.add_argument("--variance-tol", type=float, default=0.1,
                        help="Stop when sigma^2 drops below this (default: 0.1)")
    parser.add_argument("--objective-tol", type=float, default=1.0,
                        help="Stop when the objective improves by less (default: 1.0)")
    parser.add_argument("-m", "--max-iters", type=int, default=25,
                        help="Max EM steps per registration (default: 25)")
    parser.add_argument("--max-points", type=int, default=None,
                        help="Subsample registration clouds to at most N points")
    parser.add_argument("--clouds", default=None,
                        help="Directory of <id>.xyz porosity point clouds")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Suppress progress output")


def registration_config(args) -> RegistrationConfig:
    return RegistrationConfig(
        outlier_weight=args.outlier_weight,
        variance_tolerance=args.variance_tol,
        objective_tolerance=args.objective_tol,
        max_iterations=args.max_iters,
    )


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog="cage-align",
        description="Align porous cage structures into one common frame.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s pair cage_1 cage_2 --structures cages/ --clouds clouds/ --cache cpd_results/
  %(prog)s collection --structures cages/ --clouds clouds/ --cache cpd_results/ -o aligned/

Structures are first aligned to their principal axes of inertia; the ones
with an ambiguous frame are then aligned one by one by rigid point set
registration onto the best-fitting aligned structure.
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    pair = subparsers.add_parser("pair", help="Register one structure onto another")
    pair.add_argument("mover", help="ID of the structure to rotate")
    pair.add_argument("reference", help="ID of the structure to align it to")
    pair.add_argument("--structures", required=True,
                      help="Directory of <id>.xyz structure files")
    pair.add_argument("--cache", default="cpd_results",
                      help="Directory to store the result in (default: cpd_results)")
    add_registration_args(pair)

    collection = subparsers.add_parser("collection", help="Align a whole collection")
    collection.add_argument("--structures", required=True,
                            help="Directory of <id>.xyz structure files")
    collection.add_argument("--ids", default=None,
                            help="File listing the structure IDs to align")
    collection.add_argument("--cache", default=None,
                            help="Directory of cached pairwise results")
    collection.add_argument("--cache-only", action="store_true",
                            help="Only use cached results, never run registrations")
    collection.add_argument("-o", "--output", default="aligned_cages",
                            help="Output directory (default: aligned_cages)")
    collection.add_argument("-j", "--workers", type=int, default=None,
                            help="Worker threads (default: executor default)")
    add_registration_args(collection)

    args = parser.parse_args(argv)

    if not os.path.isdir(args.structures):
        print(f"Error: Structure directory not found: {args.structures}")
        sys.exit(1)
    if args.clouds is not None and not os.path.isdir(args.clouds):
        print(f"Error: Point cloud directory not found: {args.clouds}")
        sys.exit(1)

    try:
        if args.command == "pair":
            run_pair(args.mover, args.reference, args.structures, args.cache,
                     cloud_dir=args.clouds,
                     config=registration_config(args),
                     max_points=args.max_points,
                     verbose=not args.quiet)
        else:
            if args.cache_only and args.cache is None:
                print("Error: --cache-only needs --cache")
                sys.exit(1)
            config = SchedulerConfig(
                registration=registration_config(args),
                max_workers=args.workers,
                max_points=args.max_points,
                cache_only=args.cache_only,
                verbose=not args.quiet,
            )
            run_collection(args.structures, args.output,
                           cloud_dir=args.clouds,
                           ids_file=args.ids,
                           cache_dir=args.cache,
                           config=config)

    except (AlignmentError, OSError, ValueError, KeyError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
