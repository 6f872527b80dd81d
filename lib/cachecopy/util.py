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
Contains utility functions and classes.
"""

import os
import re
from pathlib import Path
from typing import List, Tuple, Union

from cachecopy.logger import log

# "4MB", "256 kb", "1048576"
SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")
SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KB": 1024,
    "MB": 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
}


class SizeError(ValueError):
    """Raised when a size string cannot be parsed."""

    pass


def parse_size(s: str) -> int:
    """Parses a string like "4MB", "256KB", or "1048576" into bytes.

    :param s: size string.
    :raises SizeError: if the string is malformed or the unit is unknown.
    :return: size in bytes.
    """
    m = SIZE_PATTERN.match(str(s))
    if not m:
        raise SizeError(f"invalid size format: {s}")
    number, unit = m.groups()
    multiplier = SIZE_UNITS.get(unit.upper())
    if multiplier is None:
        raise SizeError(f"unknown size unit: {unit}")
    return int(number) * multiplier


def human_size(n: int) -> str:
    """Converts a size in bytes to a human-readable string.

    :param n: size in bytes.
    :return: e.g. "4.00 MB".
    """
    if n >= 1024 * 1024:
        return "%.2f MB" % (n / (1024 * 1024))
    elif n >= 1024:
        return "%.2f KB" % (n / 1024)
    return "%d bytes" % n


def sanitize_path(path: str) -> str:
    """Sanitizes a path by changing separators to forward slashes and removing
    trailing slashes.

    :param path: file system path.
    :returns: sanitized path.
    """
    return path.replace("\\", "/").rstrip("/") if path else path


def ensure_dir(p: Union[str, Path]) -> None:
    """Ensure that directory p exists.

    :param p: Directory path to ensure
    """
    os.makedirs(p, exist_ok=True)


def has_trailing_sep(path: str) -> bool:
    """Returns True if path ends with a path separator of this platform."""
    seps = (os.sep, os.altsep) if os.altsep else (os.sep,)
    return path.endswith(seps)


def walk_tree(root: Union[str, Path]) -> Tuple[List[str], List[str]]:
    """Walks root and returns the relative directory paths and relative file
    paths beneath it, both sorted and POSIX-style. The root directory itself
    is returned as ".". Symbolic links to directories are not followed.

    :param root: directory to walk.
    :raises OSError: if a directory cannot be listed.
    :return: tuple of (dirs, files).
    """
    dirs: List[str] = []
    files: List[str] = []

    def _raise(err: OSError):
        raise err

    for dirname, subdirs, names in os.walk(root, onerror=_raise):
        rel_root = Path(os.path.relpath(dirname, root))
        dirs.append(rel_root.as_posix())
        for d in list(subdirs):
            if os.path.islink(os.path.join(dirname, d)):
                log.debug("not following directory link: %s", rel_root / d)
                subdirs.remove(d)
        for name in names:
            files.append((rel_root / name).as_posix())

    return sorted(dirs), sorted(files)
