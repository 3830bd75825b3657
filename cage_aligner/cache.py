"""
Storage for pairwise registration results.

Registering every (mover, reference) pair is the expensive part of
aligning a collection, and pairs are often computed by separate jobs. The
scheduler therefore goes through a small key-value interface, keyed by
(mover_id, reference_id, point_count), and does not care where results
live. Results are deterministic for identical inputs, so concurrent
writes of the same key are harmless: last write wins.
"""

import os
import tempfile
import threading
import numpy as np
from typing import Dict, Optional, Tuple
from urllib.parse import quote

from .exceptions import MissingOrStaleCacheRecord
from .registration import RegistrationResult

CacheKey = Tuple[str, str, int]


def _escape(structure_id: str) -> str:
    """Structure ID as a file name part that cannot contain the `_to_` separator."""
    return quote(structure_id, safe="").replace("_", "%5F")


class RegistrationCache:
    """Interface for registration result stores."""

    def get(self, key: CacheKey) -> Optional[RegistrationResult]:
        """Return the stored result for `key`, or None if there is none."""
        raise NotImplementedError

    def put(self, result: RegistrationResult) -> None:
        """Store a result under `result.key`, replacing any previous one."""
        raise NotImplementedError


class MemoryCache(RegistrationCache):
    """In-process cache shared by the worker threads of one run."""

    def __init__(self):
        self._results: Dict[CacheKey, RegistrationResult] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[RegistrationResult]:
        with self._lock:
            return self._results.get(tuple(key))

    def put(self, result: RegistrationResult) -> None:
        with self._lock:
            self._results[result.key] = result

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)


class DirectoryCache(RegistrationCache):
    """
    One .npz file per pair in a directory.

    Files are named align_<mover>_to_<reference>_<n>.npz. IDs are
    percent-encoded in file names, underscores included, so every key has
    its own file. Each file also stores the IDs and point count it was
    written for, and a read checks them against the requested key.
    """

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def path(self, key: CacheKey) -> str:
        mover_id, reference_id, point_count = key
        return os.path.join(self.directory, f"align_{_escape(mover_id)}_to_"
                                            f"{_escape(reference_id)}_{int(point_count)}.npz")

    def get(self, key: CacheKey) -> Optional[RegistrationResult]:
        """
        Load the result for `key`.

        Returns None when no file exists. Raises MissingOrStaleCacheRecord
        when the file is unreadable or was written for a different pair.
        """
        path = self.path(key)
        if not os.path.isfile(path):
            return None

        mover_id, reference_id, point_count = key
        try:
            with np.load(path) as data:
                record = {name: data[name] for name in data.files}
            stored_key = (str(record['mover_id']), str(record['reference_id']),
                          int(record['point_count']))
            result = RegistrationResult(
                mover_id=stored_key[0],
                reference_id=stored_key[1],
                point_count=stored_key[2],
                rotation=np.asarray(record['rotation'], dtype=np.float64).reshape(3, 3),
                translation=np.asarray(record.get('translation', np.zeros(3)),
                                       dtype=np.float64).reshape(3),
                variance=float(record['variance']),
                objective=float(record['objective']),
                iterations=int(record.get('iterations', 0)),
                stop_reason=str(record.get('stop_reason', '')),
            )
        except (OSError, KeyError, ValueError) as e:
            raise MissingOrStaleCacheRecord(f"cannot read {path}: {e}") from e

        if stored_key != (mover_id, reference_id, int(point_count)):
            raise MissingOrStaleCacheRecord(
                f"{path} holds {stored_key[0]} -> {stored_key[1]} "
                f"({stored_key[2]} points), expected {mover_id} -> {reference_id} "
                f"({point_count} points)"
            )
        return result

    def put(self, result: RegistrationResult) -> None:
        path = self.path(result.key)

        # Write next to the target, then rename into place
        fd, tmp_path = tempfile.mkstemp(suffix='.npz', dir=self.directory)
        try:
            with os.fdopen(fd, 'wb') as f:
                np.savez(f,
                         mover_id=result.mover_id,
                         reference_id=result.reference_id,
                         point_count=result.point_count,
                         rotation=result.rotation.reshape(9),
                         translation=result.translation,
                         variance=result.variance,
                         objective=result.objective,
                         iterations=result.iterations,
                         stop_reason=result.stop_reason)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
