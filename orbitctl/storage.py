"""Persistent environment cache storage using a JSON file."""

import json
import logging
import os
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Set
from pydantic import ValidationError
from .models import EnvironmentCache

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

# Fixed namespace for the persisted registry state
STORAGE_KEY = "orbit-services"


class Storage:
    """File-based storage for per-environment service caches with locking.

    Only the ``environments`` field of the registry is written. Provisioning
    and deletion tracking is session state and never reaches disk.

    Several processes may share one file (a long-running ``watch`` and
    one-off commands), so every save is a locked read-merge-write. Pending
    jobs another process added since this instance last read or wrote the
    file are kept; jobs this instance knew about and dropped stay dropped.
    """

    def __init__(self, data_dir: str = ".orbitctl"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.state_file = self.data_dir / f"{STORAGE_KEY}.json"
        self.lock_file = self.data_dir / f"{STORAGE_KEY}.lock"
        # Job ids per environment as of the last read or write
        self._known_jobs: Dict[int, Set[str]] = {}

        with self._locked():
            if not self.state_file.exists():
                self._write_json(self.state_file, {"environments": {}})

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold an exclusive lock on the state file for a read-modify-write."""
        fd = os.open(str(self.lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            try:
                if sys.platform == "win32":
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            except OSError:
                pass
            os.close(fd)

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        with tempfile.NamedTemporaryFile(
            "w", dir=file_path.parent, prefix=f"{file_path.stem}.", suffix=".tmp", delete=False,
        ) as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(f.name, file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file, treating a missing or corrupt file as empty."""
        if not file_path.exists():
            return {}
        try:
            with open(file_path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable state file {file_path}: {e}")
            return {}

    def _load(self) -> Dict[int, EnvironmentCache]:
        data = self._read_json(self.state_file)
        if not isinstance(data, dict) or not isinstance(data.get("environments"), dict):
            return {}

        environments: Dict[int, EnvironmentCache] = {}
        for env_id, cache_data in data["environments"].items():
            try:
                environments[int(env_id)] = EnvironmentCache.model_validate(cache_data)
            except (ValueError, ValidationError) as e:
                logger.warning(f"Dropping invalid cache for environment {env_id}: {e}")
        return environments

    def _remember(self, environments: Dict[int, EnvironmentCache]) -> None:
        self._known_jobs = {
            env_id: set(cache.pending_jobs) for env_id, cache in environments.items()
        }

    def load_environments(self) -> Dict[int, EnvironmentCache]:
        """Load every persisted environment cache."""
        with self._locked():
            environments = self._load()
        self._remember(environments)
        return environments

    def save_environments(self, environments: Dict[int, EnvironmentCache]) -> None:
        """Merge ``environments`` with the file and persist the result.

        The merge is applied to ``environments`` in place, so the caller
        also sees jobs and environments written by other processes. A newer
        service snapshot on disk wins over an older one in memory.
        """
        with self._locked():
            on_disk = self._load()
            for env_id, disk_cache in on_disk.items():
                cache = environments.get(env_id)
                if cache is None:
                    environments[env_id] = disk_cache
                    continue

                known = self._known_jobs.get(env_id, set())
                for job_id, job in disk_cache.pending_jobs.items():
                    if job_id not in cache.pending_jobs and job_id not in known:
                        cache.pending_jobs[job_id] = job

                if disk_cache.last_updated is not None and (
                    cache.last_updated is None or disk_cache.last_updated > cache.last_updated
                ):
                    cache.services = disk_cache.services
                    cache.last_updated = disk_cache.last_updated

            payload = {
                "environments": {
                    str(env_id): cache.model_dump(mode="json")
                    for env_id, cache in environments.items()
                }
            }
            self._write_json(self.state_file, payload)
        self._remember(environments)

    def clear(self) -> None:
        """Forget all persisted environment caches."""
        with self._locked():
            self._write_json(self.state_file, {"environments": {}})
        self._known_jobs = {}
