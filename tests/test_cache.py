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
Contains tests for the cache module.
"""

import json
import os
import threading
import time

import pytest

from cachecopy import cache, config
from cachecopy.cache import CacheEntry, FingerprintCache
from cachecopy.logger import log

DAY = config.SECONDS_PER_DAY


@pytest.fixture
def logcap(caplog):
    """Attaches caplog to the package logger, which does not propagate."""
    log.addHandler(caplog.handler)
    yield caplog
    log.removeHandler(caplog.handler)


@pytest.fixture
def cache_path(tmp_path):
    return str(tmp_path / "caches" / "pair.json")


def test_load_missing_file_is_empty(cache_path):
    c = FingerprintCache(cache_path)
    assert len(c) == 0
    assert not os.path.exists(cache_path)


def test_load_malformed_file_is_empty(cache_path, logcap):
    os.makedirs(os.path.dirname(cache_path))
    with open(cache_path, "w") as f:
        f.write("{not json")
    c = FingerprintCache(cache_path)
    assert len(c) == 0
    assert "ignoring unreadable cache file" in logcap.text


def test_load_skips_bad_entries(cache_path):
    os.makedirs(os.path.dirname(cache_path))
    raw = {
        "good.txt": {"Size": 5, "Hash": 42, "ModTime": 100},
        "no_hash.txt": {"Size": 5},
        "wrong_type.txt": {"Size": "5", "Hash": 1, "ModTime": 1},
        "not_a_dict.txt": 17,
        "negative_hash.txt": {"Size": 5, "Hash": -1, "ModTime": 1},
        "huge_hash.txt": {"Size": 5, "Hash": 2**64, "ModTime": 1},
        "negative_size.txt": {"Size": -5, "Hash": 1, "ModTime": 1},
    }
    with open(cache_path, "w") as f:
        json.dump(raw, f)
    c = FingerprintCache(cache_path)
    assert c.keys() == {"good.txt"}
    assert c.get("good.txt") == CacheEntry(5, 42, 100)


def test_load_top_level_list_is_empty(cache_path):
    os.makedirs(os.path.dirname(cache_path))
    with open(cache_path, "w") as f:
        f.write("[1, 2, 3]")
    assert len(FingerprintCache(cache_path)) == 0


def test_save_and_load_round_trip(cache_path):
    """Full 64-bit hashes must survive a save and reload."""
    c = FingerprintCache(cache_path)
    c.put("a.txt", 5, 2**64 - 1, 1700000000)
    c.put("dir/b.txt", 0, 0, 0)
    c.save()

    with open(cache_path) as f:
        raw = json.load(f)
    assert raw["a.txt"] == {"Size": 5, "Hash": 2**64 - 1, "ModTime": 1700000000}

    reloaded = FingerprintCache(cache_path)
    assert reloaded.items() == c.items()


def test_save_replaces_file_and_leaves_no_temp_files(cache_path):
    c = FingerprintCache(cache_path)
    c.put("a.txt", 1, 1, 1)
    c.save()
    c.remove("a.txt")
    c.save()
    assert FingerprintCache(cache_path).keys() == set()
    assert os.listdir(os.path.dirname(cache_path)) == ["pair.json"]


def test_put_get_remove_clear(cache_path):
    c = FingerprintCache(cache_path)
    assert c.get("x") is None
    assert c.put("x", 1, 2, 3) is False
    assert c.put("x", 4, 5, 6) is True
    assert c.get("x") == CacheEntry(4, 5, 6)
    assert "x" in c
    assert c.remove("x") is True
    assert c.remove("x") is False
    c.put("y", 1, 1, 1)
    c.clear()
    assert len(c) == 0


def test_remove_tree(cache_path):
    c = FingerprintCache(cache_path)
    for key in ("dir/a", "dir/sub/b", "dirx/c", "other"):
        c.put(key, 1, 1, 1)
    removed = c.remove_tree("dir")
    assert sorted(removed) == ["dir/a", "dir/sub/b"]
    assert c.keys() == {"dirx/c", "other"}


def test_prune_missing(tmp_path, cache_path):
    src = tmp_path / "src"
    (src / "dir").mkdir(parents=True)
    (src / "dir" / "kept.txt").write_text("x")

    c = FingerprintCache(cache_path)
    c.put("dir/kept.txt", 1, 1, 1)
    c.put("dir/gone.txt", 1, 1, 1)

    assert cache.evict_missing(c, str(src)) == ["dir/gone.txt"]
    assert c.keys() == {"dir/kept.txt"}
    assert cache.evict_missing(c, str(src)) == []


def test_delete_removes_backing_file(cache_path):
    c = FingerprintCache(cache_path)
    c.put("a", 1, 1, 1)
    c.save()
    assert c.delete() is True
    assert not os.path.exists(cache_path)
    assert c.delete() is False
    assert len(c) == 1


def test_cache_file_for_is_deterministic(tmp_path):
    a = cache.cache_file_for("/data/photos", "/mnt/backup", cache_dir="cc")
    b = cache.cache_file_for("/data/photos/", "/mnt/backup//", cache_dir="cc")
    assert a == b
    assert os.path.dirname(a) == "cc"
    name = os.path.basename(a)
    assert name.startswith("photos_to_backup_")
    assert name.endswith(".json")
    assert len(name) == len("photos_to_backup_") + config.CACHE_HASH_LEN + 5


def test_cache_file_for_distinct_pairs():
    a = cache.cache_file_for("/one/data", "/backup/data")
    b = cache.cache_file_for("/two/data", "/backup/data")
    c = cache.cache_file_for("/backup/data", "/one/data")
    assert len({a, b, c}) == 3


def test_cache_file_for_relative_paths_are_made_absolute(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    rel = cache.cache_file_for("src", "dst")
    cwd = os.getcwd()
    absolute = cache.cache_file_for(os.path.join(cwd, "src"), os.path.join(cwd, "dst"))
    assert rel == absolute


def test_cache_file_for_sanitizes_names():
    name = os.path.basename(cache.cache_file_for("/tmp/my photos", "/tmp/c:dst"))
    assert name.startswith("my_photos_to_c_dst_")
    assert " " not in name


def test_base_name_accepts_both_separators():
    assert cache._base_name("C:\\Users\\me\\data\\") == "data"
    assert cache._base_name("/home/me/data/") == "data"
    assert cache._base_name("/") == "root"


def test_evict_expired_threshold():
    """An entry older than the threshold is evicted, a younger one kept."""
    c = FingerprintCache("unused.json", load=False)
    now = int(time.time())
    age = 30
    c.put("old", 1, 1, now - (age + 1) * DAY)
    c.put("young", 1, 1, now - (age - 1) * DAY)
    c.put("forever", 1, 1, 0)

    assert cache.evict_expired(c, age, now=now) == ["old"]
    assert c.keys() == {"young", "forever"}
    assert cache.evict_expired(c, age, now=now) == []


def test_discard_if_stale_deletes_file_when_nothing_fresh(cache_path):
    now = int(time.time())
    c = FingerprintCache(cache_path)
    c.put("old", 1, 1, now - 10 * DAY)
    c.save()

    cache.evict_expired(c, 5, now=now)
    assert cache.discard_if_stale(c, 5, had_entries=True, now=now) is True
    assert not os.path.exists(cache_path)


def test_discard_if_stale_keeps_file_with_fresh_entry(cache_path):
    now = int(time.time())
    c = FingerprintCache(cache_path)
    c.put("fresh", 1, 1, now)
    c.save()
    assert cache.discard_if_stale(c, 5, had_entries=True, now=now) is False
    assert os.path.exists(cache_path)


def test_discard_if_stale_ignores_empty_cache(cache_path):
    c = FingerprintCache(cache_path)
    c.save()
    assert cache.discard_if_stale(c, 5, had_entries=False) is False
    assert os.path.exists(cache_path)


def test_concurrent_puts_and_saves(cache_path):
    c = FingerprintCache(cache_path)

    def _writer(n):
        for i in range(200):
            c.put(f"w{n}/{i}", i, i, i)
            if i % 50 == 0:
                c.save()
            assert c.get(f"w{n}/{i}") is not None

    threads = [threading.Thread(target=_writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    c.save()

    assert len(c) == 8 * 200
    assert len(FingerprintCache(cache_path)) == 8 * 200


def test_rwlock_readers_share_writers_exclude():
    lock = cache.RWLock()
    lock.acquire_read()
    lock.acquire_read()
    acquired = threading.Event()

    def _write():
        with lock.write():
            acquired.set()

    t = threading.Thread(target=_write)
    t.start()
    assert not acquired.wait(0.1)
    lock.release_read()
    assert not acquired.wait(0.1)
    lock.release_read()
    assert acquired.wait(2)
    t.join()


def test_entry_from_dict_range():
    """Test that hashes must fit in 64 unsigned bits and sizes be positive."""
    assert CacheEntry.from_dict({"Size": 0, "Hash": 2**64 - 1}) == CacheEntry(
        0, 2**64 - 1, 0
    )
    for bad in (
        {"Size": 1, "Hash": -1, "ModTime": 1},
        {"Size": 1, "Hash": 2**64, "ModTime": 1},
        {"Size": -1, "Hash": 1, "ModTime": 1},
        {"Size": 1, "Hash": 1, "ModTime": -1},
    ):
        with pytest.raises(ValueError):
            CacheEntry.from_dict(bad)
