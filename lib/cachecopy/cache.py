#!/usr/bin/env python
#
# Copyright (c) 2024-2025, Ryan Galloway (ryan@rsgalloway.com)
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are met:
#
#  - Redistributions of source code must retain the above copyright notice,
#    this list of conditions and the following disclaimer.
#
#  - Redistributions in binary form must reproduce the above copyright notice,
#    this list of conditions and the following disclaimer in the documentation
#    and/or other materials provided with the distribution.
#
#  - Neither the name of the software nor the names of its contributors
#    may be used to endorse or promote products derived from this software
#    without specific prior written permission.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
# AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
# IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE
# ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE
# LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR
# CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF
# SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS
# INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN
# CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
# ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
# POSSIBILITY OF SUCH DAMAGE.
#

__doc__ = """
Contains the persistent file fingerprint cache and its staleness eviction.

One cache file exists per (source, destination) pair. It holds a JSON object
mapping POSIX relative paths to their last known fingerprint:

    {"dir/b.txt": {"Size": 5, "Hash": 1234567890, "ModTime": 1700000000}}
"""

import hashlib
import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set

from cachecopy import config, util
from cachecopy.logger import log

# xxHash64 digests are unsigned 64-bit integers
HASH_LIMIT = 1 << 64


class RWLock:
    """Readers-writer lock: many concurrent readers, one exclusive writer.
    Waiting writers block new readers so writers are not starved."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


@dataclass(frozen=True)
class CacheEntry:
    """Last known state of one source file."""

    size: int
    hash: int
    mod_time: int

    def to_dict(self) -> dict:
        return {
            config.CACHE_FIELD_SIZE: self.size,
            config.CACHE_FIELD_HASH: self.hash,
            config.CACHE_FIELD_MODTIME: self.mod_time,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CacheEntry":
        """Builds an entry from its serialized form.

        :param d: dict with Size, Hash and ModTime keys.
        :raises ValueError: if a field is missing or not an integer.
        """
        try:
            values = [
                d[config.CACHE_FIELD_SIZE],
                d[config.CACHE_FIELD_HASH],
                d.get(config.CACHE_FIELD_MODTIME, 0),
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"malformed cache entry: {d!r}") from e
        for v in values:
            if isinstance(v, bool) or not isinstance(v, int):
                raise ValueError(f"malformed cache entry: {d!r}")
        size, hash, mod_time = values
        if size < 0 or mod_time < 0 or not 0 <= hash < HASH_LIMIT:
            raise ValueError(f"cache entry out of range: {d!r}")
        return cls(*values)


def _base_name(path: str) -> str:
    """Returns the last component of path, accepting either separator."""
    name = util.sanitize_path(path).rsplit("/", 1)[-1]
    return name.replace(":", "_").replace(" ", "_") or "root"


def cache_file_for(src: str, dst: str, cache_dir: str = config.CACHE_DIR) -> str:
    """Derives the cache file location for a (source, destination) pair. The
    name is human readable and carries a short digest of both absolute paths,
    so the same pair always maps to the same file and different pairs do not
    collide:

        .cache_cache_copy/photos_to_backup_1a2b3c4d.json

    :param src: source directory.
    :param dst: destination directory.
    :param cache_dir: directory holding cache files.
    :return: path to the cache file.
    """
    abs_src = os.path.abspath(src)
    abs_dst = os.path.abspath(dst)
    digest = hashlib.sha256(f"{abs_src}|{abs_dst}".encode("utf-8")).hexdigest()
    digest = digest[: config.CACHE_HASH_LEN]
    name = f"{_base_name(abs_src)}_to_{_base_name(abs_dst)}_{digest}"
    return os.path.join(cache_dir, name + config.CACHE_EXT)


class FingerprintCache:
    """Thread-safe mapping of relative path -> CacheEntry backed by a JSON
    file. Lookups may run concurrently, mutations are exclusive."""

    def __init__(self, path: str, load: bool = True):
        """Initializes the cache, loading it from path by default.

        :param path: path to the backing cache file.
        :param load: read the backing file now.
        """
        self.path = path
        self._data: Dict[str, CacheEntry] = {}
        self._lock = RWLock()
        self._save_lock = threading.Lock()
        if load:
            self.load()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._data)

    def __contains__(self, rel_path: str) -> bool:
        with self._lock.read():
            return rel_path in self._data

    def __repr__(self) -> str:
        return f"<FingerprintCache {self.path} ({len(self)} entries)>"

    def load(self) -> None:
        """Reads the backing file. A missing file leaves the cache empty, a
        malformed file is logged and leaves the cache empty, and individual
        entries that fail to parse are dropped.
        """
        data: Dict[str, CacheEntry] = {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            log.debug("no cache file found: %s", self.path)
            raw = {}
        except (OSError, ValueError) as e:
            log.warning("ignoring unreadable cache file %s: %s", self.path, e)
            raw = {}

        if not isinstance(raw, dict):
            log.warning("ignoring malformed cache file %s", self.path)
            raw = {}

        for rel_path, value in raw.items():
            try:
                data[rel_path] = CacheEntry.from_dict(value)
            except ValueError as e:
                log.debug("skipping cache entry %s: %s", rel_path, e)

        with self._lock.write():
            self._data = data

    def save(self) -> None:
        """Writes a full snapshot of the cache to the backing file, replacing
        it atomically. Safe to call from any thread at any time.

        :raises OSError: if the file cannot be written.
        """
        with self._save_lock:
            with self._lock.read():
                snapshot = {k: v.to_dict() for k, v in self._data.items()}

            cache_dir = os.path.dirname(self.path) or "."
            util.ensure_dir(cache_dir)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=cache_dir,
                prefix=".tmp_",
                suffix=config.CACHE_EXT,
                delete=False,
            ) as tf:
                tmp_path = tf.name
                try:
                    json.dump(snapshot, tf, separators=(",", ":"))
                    tf.flush()
                    os.fsync(tf.fileno())
                except BaseException:
                    tf.close()
                    os.unlink(tmp_path)
                    raise
            try:
                os.replace(tmp_path, self.path)
            except OSError:
                os.unlink(tmp_path)
                raise

    def delete(self) -> bool:
        """Removes the backing file, leaving the in-memory entries alone.

        :return: True if a file was removed.
        """
        with self._save_lock:
            try:
                os.remove(self.path)
                return True
            except FileNotFoundError:
                return False

    def get(self, rel_path: str) -> Optional[CacheEntry]:
        """Returns the entry for rel_path, or None."""
        with self._lock.read():
            return self._data.get(rel_path)

    def put(self, rel_path: str, size: int, hash: int, mod_time: int) -> bool:
        """Inserts or overwrites the entry for rel_path.

        :return: True if an entry already existed.
        """
        with self._lock.write():
            existed = rel_path in self._data
            self._data[rel_path] = CacheEntry(size, hash, mod_time)
            return existed

    def remove(self, rel_path: str) -> bool:
        """Removes the entry for rel_path.

        :return: True if an entry was removed.
        """
        with self._lock.write():
            return self._data.pop(rel_path, None) is not None

    def remove_tree(self, rel_dir: str) -> List[str]:
        """Removes the entry for rel_dir and every entry beneath it.

        :return: list of removed keys.
        """
        rel_dir = util.sanitize_path(rel_dir)
        prefix = rel_dir + "/"
        with self._lock.write():
            removed = [
                k for k in self._data if k == rel_dir or k.startswith(prefix)
            ]
            for k in removed:
                del self._data[k]
        return removed

    def clear(self) -> None:
        """Removes all entries."""
        with self._lock.write():
            self._data = {}

    def keys(self) -> Set[str]:
        """Returns a copy of all relative paths in the cache."""
        with self._lock.read():
            return set(self._data)

    def items(self) -> Dict[str, CacheEntry]:
        """Returns a copy of the mapping."""
        with self._lock.read():
            return dict(self._data)

    def prune_missing(self, source_root: str) -> List[str]:
        """Removes every entry whose path no longer exists under source_root.

        :param source_root: source directory the keys are relative to.
        :return: list of removed keys.
        """
        with self._lock.write():
            removed = [
                k
                for k in self._data
                if not os.path.exists(os.path.join(source_root, k))
            ]
            for k in removed:
                del self._data[k]
        return removed


def evict_missing(cache: FingerprintCache, source_root: str) -> List[str]:
    """Removes cache rows for source files that no longer exist.

    :param cache: the cache to clean.
    :param source_root: source directory.
    :return: list of evicted keys.
    """
    removed = cache.prune_missing(source_root)
    for key in removed:
        log.debug("removing stale cache entry: %s", key)
    return removed


def _expired(entry: CacheEntry, now: int, max_age_seconds: int) -> bool:
    return entry.mod_time > 0 and now - entry.mod_time > max_age_seconds


def evict_expired(
    cache: FingerprintCache, max_age_days: int, now: Optional[int] = None
) -> List[str]:
    """Removes cache rows older than max_age_days. Rows with a zero mod time
    never expire.

    :param cache: the cache to clean.
    :param max_age_days: maximum age of a row in days.
    :param now: current unix time (defaults to the wall clock).
    :return: list of evicted keys.
    """
    now = int(time.time()) if now is None else now
    max_age = max_age_days * config.SECONDS_PER_DAY
    removed = []
    for key, entry in cache.items().items():
        if _expired(entry, now, max_age):
            cache.remove(key)
            removed.append(key)
    return removed


def discard_if_stale(
    cache: FingerprintCache,
    max_age_days: int,
    had_entries: bool,
    now: Optional[int] = None,
) -> bool:
    """Deletes the backing file when the cache held entries before eviction
    and no remaining row has a mod time inside max_age_days.

    :param cache: the cache to check.
    :param max_age_days: maximum age of a row in days.
    :param had_entries: whether the cache was non-empty before eviction.
    :param now: current unix time (defaults to the wall clock).
    :return: True if the backing file was discarded.
    """
    if not had_entries:
        return False
    now = int(time.time()) if now is None else now
    max_age = max_age_days * config.SECONDS_PER_DAY
    for entry in cache.items().values():
        if entry.mod_time > 0 and now - entry.mod_time <= max_age:
            return False
    log.info(
        "all cache entries older than %d days, deleting cache file: %s",
        max_age_days,
        cache.path,
    )
    cache.delete()
    return True
