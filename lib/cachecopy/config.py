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
Contains default config and settings.
"""

import os

# cache file settings (relative to the working directory)
CACHE_DIR = os.getenv("CACHECOPY_CACHE_DIR", ".cache_cache_copy")
CACHE_EXT = ".json"
CACHE_HASH_LEN = 8
CACHE_FIELD_SIZE = "Size"
CACHE_FIELD_HASH = "Hash"
CACHE_FIELD_MODTIME = "ModTime"

# copy settings
BUFFER_SIZE = 4 * 1024 * 1024
BUFFER_WARN_TOTAL = 2 * 1024 * 1024 * 1024
WORKERS = os.cpu_count() or 1
MAX_CACHE_AGE = int(os.getenv("CACHECOPY_MAX_CACHE_AGE", 90))
AUTO_CLEAN = os.getenv("CACHECOPY_AUTO_CLEAN", "1") not in ("0", "false", "no")
LARGE_FILE_SIZE = 1000 * 1024 * 1024
SECONDS_PER_DAY = 24 * 60 * 60

# retry settings
OPEN_RETRIES = 5
OPEN_RETRY_DELAY = 0.2
SYNC_RETRIES = 3
SYNC_RETRY_DELAY = 0.5

# minimum seconds between progress callbacks per worker
PROGRESS_INTERVAL = 0.1

# verbosity levels
VERBOSE_QUIET = 0
VERBOSE_LARGE = 1
VERBOSE_FILES = 2
VERBOSE_DEBUG = 3

# logging settings
LOG_NAME = "cachecopy"
LOG_PATH = os.getenv("CACHECOPY_LOG_PATH")
LOG_LEVEL_DEFAULT = "INFO"
LOG_LEVEL = os.getenv("LOG_LEVEL", LOG_LEVEL_DEFAULT)
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 5
