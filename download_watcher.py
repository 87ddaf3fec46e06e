"""
Download completion detection for browser-driven exports.

The browser writes the export into a shared directory asynchronously. A file
counts as complete once a name appears that was not present before the export
was triggered and that does not carry an in-progress suffix.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterable, Set, Tuple, Union

# Chrome, Firefox and generic temp markers for downloads still being written.
PARTIAL_DOWNLOAD_SUFFIXES: Tuple[str, ...] = (".crdownload", ".part", ".tmp")

DEFAULT_POLL_INTERVAL = 0.25


class DownloadTimeoutError(TimeoutError):
    """No completed download appeared within the allowed time."""

    def __init__(self, elapsed: float, timeout: float):
        self.elapsed = elapsed
        self.timeout = timeout
        super().__init__(f"Download timed out after {elapsed:.1f}s (limit {timeout:.1f}s)")


def snapshot_files(directory: Union[str, Path]) -> Set[str]:
    """Return the names of every entry currently in `directory`."""
    return set(os.listdir(directory))


def is_partial_download(name: str, partial_suffixes: Iterable[str] = PARTIAL_DOWNLOAD_SUFFIXES) -> bool:
    return any(name.endswith(suffix) for suffix in partial_suffixes)


def wait_for_new_download(
    directory: Union[str, Path],
    before: Set[str],
    timeout: float,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    partial_suffixes: Tuple[str, ...] = PARTIAL_DOWNLOAD_SUFFIXES,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """
    Poll `directory` until a new, fully written file shows up.

    Args:
        directory: Folder the browser downloads into.
        before: Entry names captured before the export was triggered.
        timeout: Maximum number of seconds to wait.
        poll_interval: Delay between directory listings.
        partial_suffixes: Name endings that mark an unfinished download.
        clock: Monotonic time source (injectable for tests).
        sleep: Sleep function (injectable for tests).

    Returns:
        Path of the first qualifying entry seen on a poll pass.

    Raises:
        DownloadTimeoutError: if nothing qualifies before `timeout` elapses.
    """
    directory = Path(directory)
    start = clock()
    polls = 0

    while clock() - start < timeout:
        polls += 1
        for name in os.listdir(directory):
            if name in before:
                continue
            if is_partial_download(name, partial_suffixes):
                logging.debug("Download still in progress: %s", name)
                continue
            logging.info("Detected completed download %s after %d poll(s)", name, polls)
            return directory / name
        sleep(poll_interval)

    raise DownloadTimeoutError(clock() - start, timeout)
