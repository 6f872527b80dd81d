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
Contains the file transfer primitive: buffered copy with retry on transient
errors, durable flush, and xxHash64 content fingerprints.
"""

import contextlib
import errno
import os
import time
from typing import BinaryIO, Callable, Optional, Tuple, TypeVar

import xxhash

from cachecopy import config, util

T = TypeVar("T")

# os-level conditions that are worth retrying
TRANSIENT_ERRNOS = frozenset([errno.EINTR, errno.EAGAIN, errno.EIO, errno.EBUSY])

# buffer size used when hashing without a caller supplied buffer
HASH_CHUNK_SIZE = 1024 * 1024


class TransferError(IOError):
    """Raised when a file cannot be opened, created, read, written, flushed
    or closed."""

    def __init__(self, message: str, path: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.path = path
        self.cause = cause


def is_transient(error: BaseException) -> bool:
    """Returns True if error is an OSError with a transient errno."""
    return isinstance(error, OSError) and error.errno in TRANSIENT_ERRNOS


def retry(
    operation: Callable[[], T],
    attempts: int,
    delay: float,
    is_retryable: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Calls operation until it succeeds, sleeping delay seconds between
    attempts. Errors rejected by is_retryable, and the error from the last
    attempt, are raised unchanged.

    :param operation: callable taking no arguments.
    :param attempts: maximum number of calls.
    :param delay: seconds to sleep between calls.
    :param is_retryable: predicate deciding if an error may be retried.
    :return: the result of operation.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as e:
            if attempt >= attempts or not is_retryable(e):
                raise
            time.sleep(delay)


def open_with_retry(path: str, attempts: int = config.OPEN_RETRIES) -> BinaryIO:
    """Opens path for binary reading, retrying transient failures.

    :raises OSError: after the last attempt, or on any other error.
    """
    return retry(lambda: open(path, "rb"), attempts, config.OPEN_RETRY_DELAY)


def create_with_retry(path: str, attempts: int = config.OPEN_RETRIES) -> BinaryIO:
    """Creates or truncates path for binary writing, retrying transient
    failures.

    :raises OSError: after the last attempt, or on any other error.
    """
    return retry(lambda: open(path, "wb"), attempts, config.OPEN_RETRY_DELAY)


def sync_with_retry(f: BinaryIO, attempts: int = config.SYNC_RETRIES) -> None:
    """Flushes f and forces its contents to durable storage.

    :raises OSError: if every attempt fails.
    """

    def _sync():
        f.flush()
        os.fsync(f.fileno())

    retry(_sync, attempts, config.SYNC_RETRY_DELAY, lambda e: isinstance(e, OSError))


def compute_fingerprint(
    path: str, buffer: Optional[bytearray] = None
) -> Tuple[int, int]:
    """Streams the full contents of path through xxHash64.

    :param path: file to fingerprint.
    :param buffer: optional reusable read buffer.
    :raises TransferError: if the file cannot be opened or read.
    :return: tuple of (bytes read, 64-bit hash).
    """
    if buffer is None:
        buffer = bytearray(HASH_CHUNK_SIZE)
    view = memoryview(buffer)
    h = xxhash.xxh64()
    size = 0
    try:
        with open(path, "rb") as f:
            while True:
                n = f.readinto(view)
                if not n:
                    break
                h.update(view[:n])
                size += n
    except OSError as e:
        raise TransferError(f"failed to hash {path}: {e}", path, e) from e
    return size, h.intdigest()


def file_hash(path: str) -> int:
    """Returns the xxHash64 digest of the file at path."""
    return compute_fingerprint(path)[1]


def transfer(
    src: str,
    dst: str,
    buffer: bytearray,
    hasher: Optional["xxhash.xxh64"] = None,
) -> int:
    """Copies src to dst through buffer, truncating any existing dst, and
    syncs dst to disk before closing it.

    :param src: source file path.
    :param dst: destination file path.
    :param buffer: reusable copy buffer.
    :param hasher: optional hash object fed with every byte copied.
    :raises TransferError: on any open, create, read, write, sync or close
        failure.
    :return: number of bytes copied.
    """
    parent = os.path.dirname(dst)
    if parent:
        try:
            util.ensure_dir(parent)
        except OSError as e:
            raise TransferError(
                f"failed to create directory {parent}: {e}", parent, e
            ) from e

    try:
        infile = open_with_retry(src)
    except OSError as e:
        raise TransferError(f"failed to open source file {src}: {e}", src, e) from e

    with infile:
        try:
            outfile = create_with_retry(dst)
        except OSError as e:
            raise TransferError(
                f"failed to create destination file {dst}: {e}", dst, e
            ) from e

        view = memoryview(buffer)
        copied = 0
        try:
            while True:
                try:
                    n = infile.readinto(view)
                except OSError as e:
                    raise TransferError(f"failed to read {src}: {e}", src, e) from e
                if not n:
                    break
                chunk = view[:n]
                try:
                    outfile.write(chunk)
                except OSError as e:
                    raise TransferError(f"failed to write {dst}: {e}", dst, e) from e
                if hasher is not None:
                    hasher.update(chunk)
                copied += n

            try:
                sync_with_retry(outfile)
            except OSError as e:
                raise TransferError(
                    f"error syncing destination file {dst}: {e}", dst, e
                ) from e
        except BaseException:
            # keep the original error
            with contextlib.suppress(OSError):
                outfile.close()
            raise

        try:
            outfile.close()
        except OSError as e:
            raise TransferError(
                f"error closing destination file {dst}: {e}", dst, e
            ) from e

    return copied
