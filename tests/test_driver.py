"""
Tests for the pair/collection entry points and the command-line interface.
"""

import os
import numpy as np
import pytest
from cage_aligner import cli
from cage_aligner.cache import DirectoryCache, MemoryCache
from cage_aligner.driver import CageAligner, align_collection, align_pair
from cage_aligner.exceptions import DimensionMismatch, MissingOrStaleCacheRecord, NoProgress
from cage_aligner.point_set import PointSet
from cage_aligner.registration import RegistrationConfig, RegistrationResult
from cage_aligner.scheduler import SchedulerConfig
from cage_aligner.xyz_io import read_xyz, write_xyz


def rotation_about(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    K = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + np.sin(angle) * K + (1 - np.cos(angle)) * K @ K


def collection(n=3, seed=5):
    """Randomly placed copies of a near-square prism (ambiguous inertia frame)."""
    corners = np.array([[sx * 2.0, sy * 1.99, sz * 1.0]
                        for sx in (-1, 1) for sy in (-1, 1) for sz in (-1, 1)])
    rng = np.random.default_rng(seed)
    structures = []
    for i in range(n):
        R = rotation_about(rng.normal(size=3), rng.uniform(0, np.pi))
        coords = corners @ R.T + rng.uniform(-3, 3, size=3)
        structures.append(PointSet.from_atoms(f"cage_{i}", ['C'] * 8, coords))
    return structures


REGISTRATION = RegistrationConfig(variance_tolerance=1e-6, max_iterations=100)
QUIET = SchedulerConfig(registration=REGISTRATION, verbose=False)


class TestAlignPair:
    def test_result_is_cached(self):
        cache = MemoryCache()
        aligner = CageAligner(collection(), cache=cache)
        result = aligner.align_pair("cage_1", "cage_0", REGISTRATION)
        assert result.key == ("cage_1", "cage_0", 8)
        assert cache.get(result.key) is result
        assert aligner.align_pair("cage_1", "cage_0", REGISTRATION) is result

    def test_cache_only_miss(self):
        aligner = CageAligner(collection())
        with pytest.raises(MissingOrStaleCacheRecord):
            aligner.align_pair("cage_1", "cage_0", REGISTRATION, cache_only=True)

    def test_stale_record_is_recomputed(self, tmp_path):
        cache = DirectoryCache(str(tmp_path))
        aligner = CageAligner(collection(), cache=cache)
        result = aligner.align_pair("cage_1", "cage_0", REGISTRATION)

        # Misname the record: it claims to be for another pair
        os.rename(cache.path(result.key), cache.path(("cage_2", "cage_0", 8)))
        with pytest.raises(MissingOrStaleCacheRecord):
            aligner.align_pair("cage_2", "cage_0", REGISTRATION, cache_only=True)

        fresh = aligner.align_pair("cage_2", "cage_0", REGISTRATION)
        assert fresh.mover_id == "cage_2"
        assert cache.get(("cage_2", "cage_0", 8)).mover_id == "cage_2"

    def test_stale_record_report_follows_verbose(self, tmp_path, capsys):
        cache = DirectoryCache(str(tmp_path))
        aligner = CageAligner(collection(), cache=cache)
        result = aligner.align_pair("cage_1", "cage_0", REGISTRATION)
        os.rename(cache.path(result.key), cache.path(("cage_2", "cage_0", 8)))
        capsys.readouterr()

        aligner.align_pair("cage_2", "cage_0", REGISTRATION, verbose=False)
        assert capsys.readouterr().out == ""

        os.rename(cache.path(("cage_2", "cage_0", 8)), cache.path(("cage_0", "cage_1", 8)))
        aligner.align_pair("cage_0", "cage_1", REGISTRATION)
        assert "recomputing" in capsys.readouterr().out

    def test_dimension_mismatch(self):
        structures = collection(2)
        clouds = {"cage_0": PointSet("cage_0", np.random.default_rng(0).normal(size=(12, 3)))}
        aligner = CageAligner(structures, clouds=clouds)
        with pytest.raises(DimensionMismatch):
            aligner.align_pair("cage_1", "cage_0")

    def test_module_level(self):
        a, b = collection(2)
        result = align_pair(b, a, REGISTRATION)
        assert isinstance(result, RegistrationResult)
        assert result.variance <= 1e-6

    def test_duplicate_ids(self):
        a, _ = collection(2)
        with pytest.raises(ValueError):
            CageAligner([a, a])


class TestAlignCollection:
    def test_all_aligned(self):
        aligner = CageAligner(collection(4))
        aligned = aligner.align_collection(config=QUIET)
        assert list(aligned) == ["cage_0", "cage_1", "cage_2", "cage_3"]
        assert len(aligner.report.rounds) == 4 - len(aligner.report.seeds)
        assert aligner.report.unaligned == []
        for point_set in aligned.values():
            assert point_set.is_centered()
            assert point_set.labels == ['C'] * 8

    def test_subset(self):
        aligner = CageAligner(collection(4))
        aligned = aligner.align_collection(["cage_3", "cage_1"], QUIET)
        assert list(aligned) == ["cage_3", "cage_1"]
        with pytest.raises(KeyError):
            aligner.align_collection(["cage_9"], QUIET)

    def test_collect_cached_results(self, tmp_path):
        structures = collection(3)
        first = align_collection(structures, QUIET, cache=DirectoryCache(str(tmp_path)))

        # A second run needs nothing but the cache
        config = SchedulerConfig(registration=REGISTRATION, cache_only=True, verbose=False)
        second = align_collection(structures, config, cache=DirectoryCache(str(tmp_path)))
        for sid in first:
            assert np.allclose(first[sid].coords, second[sid].coords)

    def test_cache_only_without_results(self, tmp_path):
        config = SchedulerConfig(registration=REGISTRATION, cache_only=True, verbose=False)
        with pytest.raises(NoProgress) as excinfo:
            align_collection(collection(3), config, cache=DirectoryCache(str(tmp_path)))
        assert excinfo.value.unaligned == ["cage_1", "cage_2"]

    def test_with_clouds(self):
        structures = collection(3)
        rng = np.random.default_rng(2)
        offsets = rng.normal(scale=0.3, size=(40, 3))
        clouds = {}
        for s in structures:
            idx = np.arange(40) % s.n_points
            clouds[s.structure_id] = PointSet(s.structure_id, s.coords[idx] + offsets)
        aligned = align_collection(structures, QUIET, clouds=clouds)

        # Clouds are only registered; the structures are what comes out
        assert len(aligned) == 3
        for point_set in aligned.values():
            assert point_set.n_points == 8
            assert point_set.is_centered()


class TestCLI:
    def write_collection(self, tmp_path):
        structure_dir = tmp_path / "cages"
        structure_dir.mkdir()
        for s in collection(3):
            write_xyz(str(structure_dir / f"{s.structure_id}.xyz"), s)
        return structure_dir

    def test_collection(self, tmp_path):
        structure_dir = self.write_collection(tmp_path)
        out = tmp_path / "aligned"
        cli.main(["collection", "--structures", str(structure_dir), "-o", str(out),
                  "--variance-tol", "1e-6", "--objective-tol", "1e-3", "-m", "100", "-q"])

        for i in range(3):
            aligned = read_xyz(str(out / f"cage_{i}.xyz"))
            assert aligned.n_points == 8
        report = (out / "alignment_report.txt").read_text()
        assert "Never aligned: none" in report

    def test_pair_then_collect(self, tmp_path):
        structure_dir = self.write_collection(tmp_path)
        cache_dir = tmp_path / "cpd_results"
        for mover in ["cage_1", "cage_2"]:
            for reference in ["cage_0", "cage_1", "cage_2"]:
                if mover != reference:
                    cli.main(["pair", mover, reference, "--structures", str(structure_dir),
                              "--cache", str(cache_dir), "--variance-tol", "1e-6", "-q"])
        assert os.path.isfile(cache_dir / "align_cage%5F1_to_cage%5F0_8.npz")

        out = tmp_path / "aligned"
        cli.main(["collection", "--structures", str(structure_dir), "-o", str(out),
                  "--cache", str(cache_dir), "--cache-only", "-q"])
        assert os.path.isfile(out / "cage_2.xyz")

    def test_ids_file(self, tmp_path):
        structure_dir = self.write_collection(tmp_path)
        ids = tmp_path / "all_cages.txt"
        ids.write_text("cage_2\ncage_0\n")
        out = tmp_path / "aligned"
        cli.main(["collection", "--structures", str(structure_dir), "--ids", str(ids),
                  "-o", str(out), "-q"])
        assert sorted(os.listdir(out)) == ["alignment_report.txt", "cage_0.xyz", "cage_2.xyz"]

    def test_missing_directory(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["collection", "--structures", str(tmp_path / "nope"), "-q"])
        assert excinfo.value.code == 1
        assert "Error:" in capsys.readouterr().out

    def test_missing_structure(self, tmp_path, capsys):
        structure_dir = self.write_collection(tmp_path)
        with pytest.raises(SystemExit):
            cli.main(["pair", "cage_0", "cage_9", "--structures", str(structure_dir),
                      "--cache", str(tmp_path / "c"), "-q"])
        assert "Structure file not found" in capsys.readouterr().out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
