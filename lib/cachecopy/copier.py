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
Contains the concurrent copy orchestrator. A fixed pool of worker threads
drains a queue that is filled with every relative path up front; each worker
decides, copies and records fingerprints using its own transfer buffer.
"""

import concurrent.futures as cf
import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

import xxhash

from cachecopy import config, util
from cachecopy.cache import FingerprintCache
from cachecopy.decide import decide
from cachecopy.logger import log
from cachecopy.transfer import TransferError, transfer

# per-file outcomes
COPIED = "copied"
SKIPPED = "skipped"
FAILED = "failed"
HALTED = "halted"

MB = float(1 << 20)


class CopyError(Exception):
    """Raised after a run was halted by a fatal error."""

    pass


@dataclass
class CopyStats:
    """Counters for one copy run."""

    copied: int = 0
    skipped: int = 0
    failed: int = 0
    copied_bytes: int = 0
    total_bytes: int = 0


def total_size(src_root: str, file_list: Iterable[str]) -> int:
    """Returns the summed size of every file in file_list that can be
    stat'ed under src_root.
    """
    total = 0
    for rel_path in file_list:
        try:
            total += os.stat(os.path.join(src_root, rel_path)).st_size
        except OSError:
            pass
    return total


class Copier:
    """Copies a list of relative paths from src_root to dst_root, skipping
    files the fingerprint cache proves unchanged.

    Sinks:

        emit(line)                  per-file diagnostic lines
        progress(copied, total)     throttled progress updates
        fatal(line)                 called once per fatal error, after the
                                    cache has been saved
    """

    def __init__(
        self,
        src_root: str,
        dst_root: str,
        cache: FingerprintCache,
        workers: int = config.WORKERS,
        buffer_size: int = config.BUFFER_SIZE,
        no_cache: bool = False,
        validate: bool = False,
        verbose: int = config.VERBOSE_QUIET,
        emit: Callable[[str], None] = log.info,
        progress: Optional[Callable[[int, int], None]] = None,
        fatal: Callable[[str], None] = log.error,
    ):
        if workers < 1:
            raise ValueError(f"workers must be positive: {workers}")
        if buffer_size < 1:
            raise ValueError(f"buffer size must be positive: {buffer_size}")
        self.src_root = src_root
        self.dst_root = dst_root
        self.cache = cache
        self.workers = workers
        self.buffer_size = buffer_size
        self.no_cache = no_cache
        self.validate = validate
        self.verbose = verbose
        self.emit = emit
        self.progress = progress
        self.fatal = fatal

        self._halt = threading.Event()
        self._fatal_message: Optional[str] = None
        self._progress_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = CopyStats()

    @property
    def halted(self) -> bool:
        return self._halt.is_set()

    def run(self, file_list: List[str], total_bytes: Optional[int] = None) -> CopyStats:
        """Processes every path in file_list and saves the cache.

        :param file_list: paths relative to the source root.
        :param total_bytes: summed source size, computed if omitted.
        :raises CopyError: if a fatal error halted the run.
        :return: copy statistics.
        """
        if total_bytes is None:
            total_bytes = total_size(self.src_root, file_list)
        self._stats = CopyStats(total_bytes=total_bytes)

        jobs: queue.Queue = queue.Queue(maxsize=max(1, len(file_list)))
        for rel_path in file_list:
            jobs.put_nowait(rel_path)

        with cf.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="cachecopy"
        ) as ex:
            futures = [ex.submit(self._worker, jobs) for _ in range(self.workers)]
            for fut in cf.as_completed(futures):
                fut.result()

        self._save()

        stats = self._stats
        log.debug(
            "copied=%d skipped=%d failed=%d bytes=%d/%d",
            stats.copied,
            stats.skipped,
            stats.failed,
            stats.copied_bytes,
            stats.total_bytes,
        )
        if self._fatal_message is not None:
            raise CopyError(self._fatal_message)
        return stats

    def _worker(self, jobs: queue.Queue) -> None:
        """Drains jobs until the queue is empty or the run is halted."""
        buf = bytearray(self.buffer_size)
        last_update = time.monotonic()
        try:
            while not self._halt.is_set():
                try:
                    rel_path = jobs.get_nowait()
                except queue.Empty:
                    break
                result, size = self._process(rel_path, buf)
                if result == HALTED:
                    self._count(FAILED)
                    return
                self._count(result)
                if result in (COPIED, SKIPPED):
                    last_update = self._advance(size, last_update)
        finally:
            self._save()

    def _count(self, result: str) -> None:
        with self._stats_lock:
            if result == COPIED:
                self._stats.copied += 1
            elif result == SKIPPED:
                self._stats.skipped += 1
            else:
                self._stats.failed += 1

    def _advance(self, size: int, last_update: float) -> float:
        """Adds size to the shared byte counter and reports progress at most
        once per interval, and always when the total is reached.

        :return: time of this worker's last progress report.
        """
        with self._progress_lock:
            self._stats.copied_bytes += size
            copied = self._stats.copied_bytes
            now = time.monotonic()
            done = copied == self._stats.total_bytes
            if self.progress and (
                done or now - last_update > config.PROGRESS_INTERVAL
            ):
                last_update = now
                self.progress(copied, self._stats.total_bytes)
        return last_update

    def _save(self) -> None:
        try:
            self.cache.save()
        except OSError as e:
            log.error("failed to save cache %s: %s", self.cache.path, e)

    def _halt_run(self, message: str) -> str:
        """Saves the cache, reports message through the fatal sink and stops
        workers from taking new files."""
        self._save()
        with self._stats_lock:
            if self._fatal_message is None:
                self._fatal_message = message
        self._halt.set()
        self.fatal(message)
        return HALTED

    def _announce(self, copying: bool, src_path: str, size: int) -> None:
        """Emits the per-file copy/skip line for the current verbosity."""
        if self.verbose >= config.VERBOSE_FILES:
            large = ""
        elif self.verbose == config.VERBOSE_LARGE and size > config.LARGE_FILE_SIZE:
            large = "large "
        else:
            return
        if copying:
            self.emit("copying %sfile: %s (%.2f MB)" % (large, src_path, size / MB))
        else:
            self.emit(
                "skipping %sfile (cached): %s (%.2f MB)" % (large, src_path, size / MB)
            )

    def _process(self, rel_path: str, buf: bytearray) -> Tuple[str, int]:
        """Decides, copies and records one file.

        :return: tuple of (outcome, source size).
        """
        src_path = os.path.join(self.src_root, rel_path)
        dst_path = os.path.join(self.dst_root, rel_path)

        try:
            size = os.stat(src_path).st_size
        except OSError as e:
            self.emit(f"failed to stat {src_path}: {e}")
            return FAILED, 0

        decision = decide(
            rel_path,
            src_path,
            dst_path,
            size,
            self.cache,
            no_cache=self.no_cache,
            validate=self.validate,
            verbose=self.verbose,
            emit=self.emit,
        )

        if decision.refresh:
            self.cache.put(rel_path, size, decision.hash, int(time.time()))
            if self.verbose >= config.VERBOSE_DEBUG:
                self.emit(f"[cache] updated after validation: {rel_path}")

        self._announce(decision.copy, src_path, size)
        if not decision.copy:
            return SKIPPED, size

        dst_dir = os.path.dirname(dst_path)
        try:
            util.ensure_dir(dst_dir)
        except OSError as e:
            return self._halt_run(f"failed to create directory {dst_dir}: {e}"), size

        if os.path.lexists(dst_path):
            try:
                os.remove(dst_path)
            except OSError as e:
                return (
                    self._halt_run(
                        f"failed to remove old destination file {dst_path}: {e}"
                    ),
                    size,
                )

        hasher = None if self.no_cache else xxhash.xxh64()
        try:
            copied = transfer(src_path, dst_path, buf, hasher)
        except TransferError as e:
            return (
                self._halt_run(f"failed to copy {src_path} to {dst_path}: {e}"),
                size,
            )

        if hasher is not None:
            existed = self.cache.put(
                rel_path, copied, hasher.intdigest(), int(time.time())
            )
            if self.verbose >= config.VERBOSE_DEBUG:
                action = "updated" if existed else "added new"
                self.emit(
                    f"[cache] {action} cache entry: {rel_path} "
                    f"(size={copied}, hash={hasher.intdigest()})"
                )
            self._save()

        return COPIED, size


def copy_files(
    file_list: List[str],
    src_root: str,
    dst_root: str,
    cache: FingerprintCache,
    total_bytes: Optional[int] = None,
    **kwargs,
) -> CopyStats:
    """Copies file_list from src_root to dst_root with a pool of workers.
    Keyword arguments are passed to Copier.

    :raises CopyError: if a fatal error halted the run.
    :return: copy statistics.
    """
    copier = Copier(src_root, dst_root, cache, **kwargs)
    return copier.run(file_list, total_bytes=total_bytes)
