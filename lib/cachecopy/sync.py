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
Contains the mirror step and the sync driver that runs a complete
cache-validated copy of one source tree into one destination tree.
"""

import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from cachecopy import config, util
from cachecopy.cache import (
    FingerprintCache,
    cache_file_for,
    discard_if_stale,
    evict_expired,
    evict_missing,
)
from cachecopy.copier import CopyStats, copy_files, total_size
from cachecopy.logger import log


class MirrorError(Exception):
    """Raised when an extra destination entry cannot be deleted."""

    pass


@dataclass
class Options:
    """Settings for one sync run."""

    workers: int = config.WORKERS
    buffer_size: int = config.BUFFER_SIZE
    no_cache: bool = False
    validate: bool = False
    mirror: bool = False
    clear_cache: bool = False
    auto_clean: bool = config.AUTO_CLEAN
    max_cache_age: int = config.MAX_CACHE_AGE
    verbose: int = config.VERBOSE_QUIET
    cache_dir: str = config.CACHE_DIR
    show_progress: bool = True


def resolve_destination(src: str, dst: str) -> str:
    """Returns the destination root for src. A source ending with a path
    separator has its contents copied into dst, otherwise the source
    directory itself is copied as a subdirectory of dst:

        photos/  backup  ->  backup
        photos   backup  ->  backup/photos

    :param src: source directory as given by the user.
    :param dst: destination directory as given by the user.
    :return: destination root.
    """
    if util.has_trailing_sep(src):
        return dst
    return os.path.join(dst, os.path.basename(os.path.normpath(src)))


def delete_extra_files(src_root: str, dst_root: str, cache: FingerprintCache) -> int:
    """Deletes files and directories under dst_root that have no counterpart
    under src_root, and removes their cache entries. Files are deleted during
    the walk, directories after it.

    :param src_root: source directory.
    :param dst_root: destination directory.
    :param cache: fingerprint cache for the pair.
    :raises MirrorError: on the first entry that cannot be deleted.
    :return: number of deleted files and directories.
    """
    deleted = 0
    extra_dirs: List[Tuple[str, str]] = []

    def _raise(err: OSError):
        raise MirrorError(f"failed to walk {err.filename}: {err}") from err

    for root, dirs, files in os.walk(dst_root, onerror=_raise):
        rel_root = Path(os.path.relpath(root, dst_root))

        for dname in list(dirs):
            rel = (rel_root / dname).as_posix()
            if not os.path.exists(os.path.join(src_root, rel)):
                path = os.path.join(root, dname)
                log.info("marking directory for deletion: %s", path)
                extra_dirs.append((path, rel))
                dirs.remove(dname)

        for fname in files:
            rel = (rel_root / fname).as_posix()
            if os.path.exists(os.path.join(src_root, rel)):
                continue
            path = os.path.join(root, fname)
            log.info("deleting extra file: %s", path)
            try:
                os.remove(path)
            except OSError as e:
                raise MirrorError(f"failed to delete file {path}: {e}") from e
            cache.remove(rel)
            deleted += 1

    for path, rel in extra_dirs:
        try:
            if os.path.islink(path):
                os.remove(path)
            else:
                shutil.rmtree(path)
        except OSError as e:
            raise MirrorError(f"failed to delete directory {path}: {e}") from e
        cache.remove_tree(rel)
        cache.save()
        deleted += 1

    return deleted


def clean_cache(cache: FingerprintCache, src_root: str, options: Options) -> None:
    """Drops cache rows for source files that no longer exist, when auto
    clean is enabled, and saves the cache if anything was removed.
    """
    if options.auto_clean:
        stale = evict_missing(cache, src_root)
        if stale:
            if options.verbose >= config.VERBOSE_LARGE:
                log.info("auto-cleaned %d stale cache entries", len(stale))
            cache.save()


def expire_cache(cache: FingerprintCache, options: Options) -> bool:
    """Evicts rows older than options.max_cache_age days.

    :return: True if the cache file was discarded.
    """
    had_entries = len(cache) > 0
    now = int(time.time())
    expired = evict_expired(cache, options.max_cache_age, now=now)
    if expired:
        log.debug("expired %d cache entries", len(expired))
    cache.save()
    return discard_if_stale(cache, options.max_cache_age, had_entries, now=now)


def open_cache(src_root: str, dst_root: str, options: Options) -> FingerprintCache:
    """Loads the cache for the pair, deleting it first if requested.

    :raises OSError: if the cache file cannot be deleted.
    """
    cache_path = cache_file_for(src_root, dst_root, options.cache_dir)
    log.info("using cache file: %s", cache_path)

    if options.clear_cache:
        try:
            os.remove(cache_path)
            log.info("cache deleted: %s", cache_path)
        except FileNotFoundError:
            pass

    return FingerprintCache(cache_path)


def sync(
    src_root: str,
    dst_root: str,
    options: Optional[Options] = None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> CopyStats:
    """Copies src_root into dst_root, skipping unchanged files.

    Order of operations:

        1. clear and load the cache
        2. drop cache rows for missing sources (auto clean)
        3. delete extra destination entries (mirror)
        4. expire old cache rows
        5. walk the source and create destination directories
        6. copy files with a pool of workers

    :param src_root: source directory.
    :param dst_root: destination root (see resolve_destination).
    :param options: run settings.
    :param progress: optional progress sink, defaults to a tqdm bar.
    :raises MirrorError: if mirroring fails.
    :raises CopyError: if a fatal copy error halts the run.
    :return: copy statistics.
    """
    options = options or Options()
    t0 = time.time()

    if not os.path.isdir(src_root):
        raise SystemExit(f"source does not exist: {src_root}")

    cache = open_cache(src_root, dst_root, options)
    clean_cache(cache, src_root, options)

    if options.mirror:
        util.ensure_dir(dst_root)
        try:
            deleted = delete_extra_files(src_root, dst_root, cache)
        finally:
            cache.save()
        log.debug("mirror deleted %d entries", deleted)

    expire_cache(cache, options)

    try:
        dirs, files = util.walk_tree(src_root)
    except OSError as e:
        cache.save()
        raise SystemExit(f"error gathering file list: {e}")

    total_bytes = total_size(src_root, files)

    for rel_dir in dirs:
        dst_dir = os.path.join(dst_root, rel_dir)
        try:
            util.ensure_dir(dst_dir)
        except OSError as e:
            log.error("failed to create directory %s: %s", dst_dir, e)

    total_buffer = options.workers * options.buffer_size
    if total_buffer > config.BUFFER_WARN_TOTAL:
        log.warning(
            "total buffer allocation is %.2f GB (%d workers x %s)",
            total_buffer / float(1 << 30),
            options.workers,
            util.human_size(options.buffer_size),
        )
        log.warning(
            "consider reducing --workers or --buffer-size to avoid running out of memory"
        )
    log.info("using %d worker(s)", options.workers)
    log.info(
        "using buffer size: %s (%d bytes)",
        util.human_size(options.buffer_size),
        options.buffer_size,
    )
    if options.validate:
        log.info("[validate] validation mode enabled, all files will be verified")

    with tqdm(
        total=total_bytes,
        desc=f"[copying {src_root}]",
        unit="B",
        unit_scale=True,
        unit_divisor=1024,
        leave=True,
        disable=not options.show_progress or progress is not None,
    ) as pbar, logging_redirect_tqdm(loggers=[log]):

        def _progress(copied: int, total: int) -> None:
            pbar.update(copied - pbar.n)

        stats = copy_files(
            files,
            src_root,
            dst_root,
            cache,
            total_bytes=total_bytes,
            workers=options.workers,
            buffer_size=options.buffer_size,
            no_cache=options.no_cache,
            validate=options.validate,
            verbose=options.verbose,
            progress=progress or _progress,
        )

    cache.save()

    if options.validate:
        log.info("[validate] validation completed successfully for all files")
    log.info(
        "copy process completed in %.2fs: copied=%d skipped=%d failed=%d",
        time.time() - t0,
        stats.copied,
        stats.skipped,
        stats.failed,
    )
    return stats
