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
Contains tests for the decide module.
"""

import os

import pytest

from cachecopy import config, decide
from cachecopy.cache import FingerprintCache
from cachecopy.transfer import file_hash


@pytest.fixture
def pair(tmp_path):
    """Returns (src_path, dst_path, cache) with an identical source and
    destination file and a matching cache entry."""
    src = tmp_path / "src" / "a.txt"
    dst = tmp_path / "dst" / "a.txt"
    src.parent.mkdir()
    dst.parent.mkdir()
    src.write_bytes(b"hello")
    dst.write_bytes(b"hello")
    cache = FingerprintCache(str(tmp_path / "cache.json"), load=False)
    cache.put("a.txt", 5, file_hash(str(src)), 1)
    return str(src), str(dst), cache


def _decide(pair, **kwargs):
    src, dst, cache = pair
    return decide.decide("a.txt", src, dst, os.stat(src).st_size, cache, **kwargs)


def test_cached_skip(pair):
    """Test that a matching entry and an existing destination skip."""
    d = _decide(pair)
    assert d.copy is False
    assert d.reason == decide.REASON_CACHED
    assert d.refresh is False


def test_cached_no_entry(pair):
    src, dst, cache = pair
    cache.clear()
    d = _decide(pair)
    assert d.copy is True
    assert d.reason == decide.REASON_NOT_CACHED


def test_cached_size_changed(pair):
    src, dst, cache = pair
    with open(src, "wb") as f:
        f.write(b"hello world")
    d = _decide(pair)
    assert (d.copy, d.reason) == (True, decide.REASON_SIZE_CHANGED)


def test_cached_same_size_content_change(pair):
    """Test that a same-size edit is caught by the source re-hash."""
    src, dst, cache = pair
    with open(src, "wb") as f:
        f.write(b"HELLO")
    d = _decide(pair)
    assert (d.copy, d.reason) == (True, decide.REASON_HASH_CHANGED)
    assert d.hash == file_hash(src)


def test_cached_destination_missing(pair):
    src, dst, cache = pair
    os.remove(dst)
    d = _decide(pair)
    assert (d.copy, d.reason) == (True, decide.REASON_DEST_MISSING)


def test_cached_destination_is_directory(pair):
    src, dst, cache = pair
    os.remove(dst)
    os.mkdir(dst)
    assert _decide(pair).copy is True


def test_cached_hash_failure_copies(pair, mocker):
    """Test that an unreadable source falls through to a copy."""
    src, dst, cache = pair
    mocker.patch(
        "cachecopy.decide.file_hash",
        side_effect=decide.TransferError("boom", src, OSError("boom")),
    )
    lines = []
    d = _decide(pair, emit=lines.append)
    assert (d.copy, d.reason) == (True, decide.REASON_HASH_FAILED)
    assert lines and lines[0].startswith("cannot hash")


def test_cached_debug_lines(pair):
    lines = []
    _decide(pair, verbose=config.VERBOSE_DEBUG, emit=lines.append)
    assert any(line.startswith("[cache] a.txt: cached hash=") for line in lines)


def test_no_cache_always_copies(pair):
    d = _decide(pair, no_cache=True)
    assert (d.copy, d.reason) == (True, decide.REASON_NO_CACHE)


def test_validate_match_refreshes(pair):
    """Test that a validated destination is skipped and its entry refreshed,
    even without a prior cache entry."""
    src, dst, cache = pair
    cache.clear()
    d = _decide(pair, validate=True)
    assert d.copy is False
    assert d.reason == decide.REASON_VALIDATED
    assert d.refresh is True
    assert d.hash == file_hash(src)


def test_validate_ignores_stale_cache(pair):
    """Test that a cache entry cannot hide a corrupted destination."""
    src, dst, cache = pair
    with open(dst, "wb") as f:
        f.write(b"HELLO")
    assert _decide(pair).copy is False
    d = _decide(pair, validate=True)
    assert (d.copy, d.reason) == (True, decide.REASON_HASH_MISMATCH)


def test_validate_size_mismatch(pair):
    src, dst, cache = pair
    with open(dst, "wb") as f:
        f.write(b"hi")
    lines = []
    d = _decide(pair, validate=True, emit=lines.append)
    assert (d.copy, d.reason) == (True, decide.REASON_SIZE_MISMATCH)
    assert "[validate]   destination size: 2 bytes" in lines


def test_validate_destination_missing(pair):
    src, dst, cache = pair
    os.remove(dst)
    d = _decide(pair, validate=True)
    assert (d.copy, d.reason) == (True, decide.REASON_DEST_MISSING)


def test_validate_with_no_cache_does_not_refresh(pair):
    d = _decide(pair, validate=True, no_cache=True)
    assert d.copy is False
    assert d.refresh is False
