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
Command line interface for cachecopy: cache-validated directory copy.

Usage:

    $ cachecopy SRC DST [OPTIONS]

If SRC ends with a path separator the contents of SRC are copied into DST,
otherwise SRC itself is copied as a subdirectory of DST. Cache files are kept
in .cache_cache_copy/ under the working directory, one per SRC/DST pair.
"""

import argparse
import os
import sys
from typing import List, Optional

from cachecopy import config, util
from cachecopy.copier import CopyError
from cachecopy.logger import log, setup_logging
from cachecopy.sync import MirrorError, Options, resolve_destination, sync


def build_parser(prog: str = "cachecopy") -> argparse.ArgumentParser:
    """Builds the argument parser."""
    from cachecopy import __version__

    parser = argparse.ArgumentParser(
        prog=prog,
        description=__doc__,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "src",
        metavar="SRC",
        help="source directory (trailing separator copies its contents)",
    )
    parser.add_argument(
        "dst",
        metavar="DST",
        help="destination directory",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=config.WORKERS,
        help="number of concurrent copy workers (default: number of CPUs)",
    )
    parser.add_argument(
        "--buffer-size",
        type=util.parse_size,
        default=str(config.BUFFER_SIZE),
        metavar="SIZE",
        help="copy buffer size per worker, e.g. 4MB, 256KB, 1048576 (default: 4MB)",
    )
    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="delete the cache file before starting (forces a fresh copy)",
    )
    parser.add_argument(
        "--mirror",
        action="store_true",
        help="delete files in the destination that are not in the source",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="disable the cache and always copy all files",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="ignore the cache and compare size and hash of source and destination",
    )
    parser.add_argument(
        "--max-cache-age",
        type=int,
        default=config.MAX_CACHE_AGE,
        metavar="DAYS",
        help="remove cache entries older than DAYS (default: %d)"
        % config.MAX_CACHE_AGE,
    )
    parser.add_argument(
        "--no-auto-clean",
        dest="auto_clean",
        action="store_false",
        default=config.AUTO_CLEAN,
        help="keep cache entries for source files that no longer exist",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        type=int,
        default=config.VERBOSE_QUIET,
        choices=range(4),
        metavar="LEVEL",
        help="0=quiet, 1=large files, 2=all files, 3=cache debugging",
    )
    parser.add_argument(
        "--log-path",
        default=config.LOG_PATH,
        metavar="PATH",
        help="also write log output to PATH",
    )
    parser.add_argument(
        "--no-progress",
        dest="progress",
        action="store_false",
        help="do not show a progress bar",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"cachecopy {__version__}",
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    if args.workers < 1:
        parser.error("--workers must be a positive integer")
    if args.buffer_size < 1:
        parser.error("--buffer-size must be positive")
    return args


def run(args: argparse.Namespace) -> int:
    """Run a sync based on parsed arguments."""

    dst_root = resolve_destination(args.src, args.dst)
    src_root = os.path.normpath(args.src)

    options = Options(
        workers=args.workers,
        buffer_size=args.buffer_size,
        no_cache=args.no_cache,
        validate=args.validate,
        mirror=args.mirror,
        clear_cache=args.clear_cache,
        auto_clean=args.auto_clean,
        max_cache_age=args.max_cache_age,
        verbose=args.verbose,
        show_progress=args.progress,
    )

    try:
        sync(src_root, dst_root, options)

    except KeyboardInterrupt:
        log.error("canceled")
        return 2

    except MirrorError as e:
        log.error("error deleting extra files: %s", e)
        return 1

    except CopyError:
        # already reported through the fatal sink
        return 1

    except OSError as e:
        log.error("sync failed: %s", e)
        return 1

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""

    args = parse_args(argv)

    # set up logging handlers
    setup_logging(log_path=args.log_path)

    command = " ".join(sys.argv if argv is None else ["cachecopy"] + list(argv))
    log.info("command: %s", command)

    return run(args)


if __name__ == "__main__":
    sys.exit(main())
