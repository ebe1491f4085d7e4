"""
File-backed TTL cache for registry lookups, plus the locking and atomic
write helpers shared with the deploy file rewriter.

Each key lives in its own JSON file under the cache directory. Entries are
never purged here; stale ones are simply overwritten by the next lookup.
"""

import json
import logging
import os
import platform
import re
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Callable, Dict, Optional

from settings import Settings
from version_utils import UNKNOWN

# Platform-specific imports and constant
IS_WINDOWS = platform.system() == 'Windows'
if not IS_WINDOWS:
    import fcntl
else:
    import msvcrt

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r'[^A-Za-z0-9.-]')


@contextmanager
def file_lock(file_path: Path):
    """Context manager for an exclusive lock tied to file_path."""
    lock_file = file_path.with_name(file_path.name + '.lock')
    fp = open(lock_file, 'w')
    try:
        if IS_WINDOWS:
            while True:
                try:
                    msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
                    break
                except IOError:
                    time.sleep(0.1)
        else:
            fcntl.flock(fp, fcntl.LOCK_EX)
        yield
    finally:
        if IS_WINDOWS:
            try:
                msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)
            except (OSError, IOError):
                pass
        else:
            fcntl.flock(fp, fcntl.LOCK_UN)
        fp.close()
        try:
            lock_file.unlink()
        except (OSError, FileNotFoundError):
            pass


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to a temp file next to path, then rename over it."""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f'.{path.name}.', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            os.chmod(tmp_name, path.stat().st_mode & 0o777)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _escape_key_part(part: str) -> str:
    return _UNSAFE_KEY_CHARS.sub(
        lambda m: ''.join(f'%{b:02X}' for b in m.group().encode('utf-8')), part)


def cache_key(kind: str, namespace: str, repository: str, tag: Optional[str] = None) -> str:
    """Build a filesystem-safe cache key.

    Underscores only separate parts; inside a part anything outside
    [A-Za-z0-9.-] is percent-encoded, so no two inputs share a key.

    e.g. ('dockerhub', 'library', 'redis') -> 'dockerhub_library_redis'
         ('ghcr', 'owner', 'app', '1.2.0') -> 'ghcr_owner_app_1.2.0.sha256'
         ('ghcr', 'owner/sub', 'app') -> 'ghcr_owner%2Fsub_app'
    """
    parts = [kind, namespace, repository]
    if tag is not None:
        parts.append(f"{tag}.sha256")
    return '_'.join(_escape_key_part(part) for part in parts)


@dataclass
class CacheEntry:
    """A cached lookup result."""
    key: str
    value: str
    written_at: float


class CacheStore:
    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self.cache_dir = settings.cache_dir
        self.ttl = settings.cache_ttl
        self.negative_ttl = settings.effective_negative_ttl
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.cache"

    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return CacheEntry(**data)
        except (OSError, json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cache entry {path}: {e}")
            return None

    def get(self, key: str) -> Optional[str]:
        """Return the cached value, or None on a miss or expired entry."""
        entry = self._read_entry(key)
        if entry is None:
            return None

        ttl = self.negative_ttl if entry.value == UNKNOWN else self.ttl
        age = self._clock() - entry.written_at
        if age >= ttl:
            logger.debug(f"Cache entry {key} expired ({age:.0f}s old)")
            return None

        logger.debug(f"Cache hit for {key}")
        return entry.value

    def put(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous entry.

        An OSError while writing is logged and the entry is dropped.
        """
        entry = CacheEntry(key=key, value=value, written_at=self._clock())
        path = self._path(key)

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            with self._key_lock(key):
                with file_lock(path):
                    atomic_write_text(path, json.dumps(asdict(entry)))
        except OSError as e:
            logger.warning(f"Could not write cache entry {path}: {e}")
