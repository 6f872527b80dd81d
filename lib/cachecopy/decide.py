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
Contains the copy decision engine, which decides per file whether the
destination must be (re)written and why.

Modes:

    normal      trust the cache, but re-hash the source to confirm it
    no-cache    always copy
    validate    ignore the cache and compare source and destination bytes
"""

import os
import stat
from dataclasses import dataclass
from typing import Callable, Optional

from cachecopy import config
from cachecopy.cache import FingerprintCache
from cachecopy.transfer import TransferError, file_hash

# decision reasons
REASON_CACHED = "cached"
REASON_VALIDATED = "validated"
REASON_NO_CACHE = "no-cache"
REASON_NOT_CACHED = "not-cached"
REASON_SIZE_CHANGED = "size-changed"
REASON_HASH_CHANGED = "hash-changed"
REASON_HASH_FAILED = "hash-failed"
REASON_DEST_MISSING = "dest-missing"
REASON_SIZE_MISMATCH = "size-mismatch"
REASON_HASH_MISMATCH = "hash-mismatch"


@dataclass
class Decision:
    """Outcome of a copy decision. When refresh is set the cache entry for
    the file should be re-recorded with hash."""

    copy: bool
    reason: str
    hash: Optional[int] = None
    refresh: bool = False


def _dest_size(dst_path: str) -> Optional[int]:
    """Returns the size of dst_path if it is a regular file, else None."""
    try:
        st = os.stat(dst_path)
    except OSError:
        return None
    return st.st_size if stat.S_ISREG(st.st_mode) else None


def _noop(line: str) -> None:
    pass


def decide_cached(
    rel_path: str,
    src_path: str,
    dst_path: str,
    src_size: int,
    cache: FingerprintCache,
    verbose: int = 0,
    emit: Callable[[str], None] = _noop,
) -> Decision:
    """Normal mode: skip only if the cache entry matches the current source
    size and a fresh hash of the source, and the destination is a regular
    file. A failure to hash the source falls through to a copy.
    """
    entry = cache.get(rel_path)
    if entry is None:
        if verbose >= config.VERBOSE_DEBUG:
            emit(f"[cache] no entry for {rel_path}")
        return Decision(True, REASON_NOT_CACHED)

    if entry.size != src_size:
        if verbose >= config.VERBOSE_DEBUG:
            emit(f"[cache] {rel_path}: cached size={entry.size}, current size={src_size}")
        return Decision(True, REASON_SIZE_CHANGED)

    try:
        current = file_hash(src_path)
    except TransferError as e:
        emit(f"cannot hash {src_path}, copying: {e.cause or e}")
        return Decision(True, REASON_HASH_FAILED)

    if verbose >= config.VERBOSE_DEBUG:
        emit(f"[cache] {rel_path}: cached hash={entry.hash}, current hash={current}")
        emit(f"[cache] {rel_path}: destination exists={os.path.exists(dst_path)}")

    if entry.hash != current:
        return Decision(True, REASON_HASH_CHANGED, hash=current)

    if _dest_size(dst_path) is None:
        return Decision(True, REASON_DEST_MISSING, hash=current)

    return Decision(False, REASON_CACHED, hash=current)


def decide_validate(
    rel_path: str,
    src_path: str,
    dst_path: str,
    src_size: int,
    verbose: int = 0,
    emit: Callable[[str], None] = _noop,
) -> Decision:
    """Validate mode: compare the destination against the source by size and
    then by hash of both files, ignoring the cache.
    """
    if verbose >= config.VERBOSE_FILES:
        emit(f"[validate] starting validation for: {rel_path}")

    dst_size = _dest_size(dst_path)
    if dst_size is None:
        if verbose >= config.VERBOSE_FILES:
            emit(f"[validate] mismatch, destination file missing: {rel_path}")
        return Decision(True, REASON_DEST_MISSING)

    if dst_size != src_size:
        emit(f"[validate] mismatch, size differs for {rel_path}")
        emit(f"[validate]   source size: {src_size} bytes")
        emit(f"[validate]   destination size: {dst_size} bytes")
        return Decision(True, REASON_SIZE_MISMATCH)

    if verbose >= config.VERBOSE_DEBUG:
        emit(f"[validate] size match, calculating hashes for: {rel_path}")

    try:
        src_hash = file_hash(src_path)
    except TransferError as e:
        emit(f"[validate] cannot calculate source hash for {rel_path}: {e.cause or e}")
        return Decision(True, REASON_HASH_FAILED)
    try:
        dst_hash = file_hash(dst_path)
    except TransferError as e:
        emit(
            f"[validate] cannot calculate destination hash for {rel_path}: {e.cause or e}"
        )
        return Decision(True, REASON_HASH_FAILED, hash=src_hash)

    if src_hash != dst_hash:
        emit(f"[validate] mismatch, hash differs for {rel_path}")
        emit(f"[validate]   source hash: {src_hash}")
        emit(f"[validate]   destination hash: {dst_hash}")
        return Decision(True, REASON_HASH_MISMATCH, hash=src_hash)

    if verbose >= config.VERBOSE_FILES:
        emit(
            f"[validate] file validated: {rel_path} (size: {src_size}, hash: {src_hash})"
        )
    elif verbose == config.VERBOSE_LARGE:
        emit(f"[validate] file validated: {rel_path}")
    return Decision(False, REASON_VALIDATED, hash=src_hash, refresh=True)


def decide(
    rel_path: str,
    src_path: str,
    dst_path: str,
    src_size: int,
    cache: FingerprintCache,
    no_cache: bool = False,
    validate: bool = False,
    verbose: int = 0,
    emit: Callable[[str], None] = _noop,
) -> Decision:
    """Decides whether rel_path must be copied. Validate mode takes
    precedence over no-cache mode for the decision itself; no-cache only
    disables cache lookups and updates.

    :param rel_path: path relative to the source root.
    :param src_path: absolute source path.
    :param dst_path: absolute destination path.
    :param src_size: current size of the source file.
    :param cache: fingerprint cache.
    :param no_cache: bypass the cache and always copy.
    :param validate: compare actual file contents.
    :param verbose: verbosity level (0-3).
    :param emit: sink for diagnostic lines.
    :return: the decision.
    """
    if validate:
        decision = decide_validate(
            rel_path, src_path, dst_path, src_size, verbose=verbose, emit=emit
        )
        if no_cache:
            decision.refresh = False
        return decision
    if no_cache:
        return Decision(True, REASON_NO_CACHE)
    return decide_cached(
        rel_path, src_path, dst_path, src_size, cache, verbose=verbose, emit=emit
    )
