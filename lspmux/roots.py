"""Project root resolution.

A root finder takes ``(file, cwd)`` and returns the directory a server
instance should be scoped to, or ``None`` when the file must not get a
server (no marker found, or the language wants to handle it itself).
"""

from __future__ import annotations

import os
from typing import Callable, Iterable

RootFinder = Callable[[str, str], "str | None"]


def find_nearest_file(start_dir: str, targets: Iterable[str], stop_dir: str) -> str | None:
    """Walk from *start_dir* up to *stop_dir* looking for any of *targets*.

    A *start_dir* outside *stop_dir* is searched up to the filesystem root.

    Returns:
        The path of the first marker found, nearest directory first.
    """
    targets = tuple(targets)
    current = os.path.abspath(start_dir)
    stop = os.path.abspath(stop_dir)
    while True:
        for target in targets:
            candidate = os.path.join(current, target)
            if os.path.exists(candidate):
                return candidate
        if current == stop:
            break
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return None


def find_root(file: str, cwd: str, markers: Iterable[str]) -> str | None:
    """Return the directory of the nearest marker above *file*.

    The search stays inside *cwd* first and only then continues up to the
    filesystem root.
    """
    markers = tuple(markers)
    start_dir = os.path.dirname(os.path.abspath(file))
    found = find_nearest_file(start_dir, markers, cwd)
    if found is None:
        fs_root = os.path.abspath(os.sep)
        found = find_nearest_file(start_dir, markers, fs_root)
    return os.path.dirname(found) if found else None


def marker_root(*markers: str, exclude: Iterable[str] = ()) -> RootFinder:
    """Build a root finder for *markers*.

    If any *exclude* marker is found first, the finder returns ``None`` so the
    file is left to a different server.
    """
    excluded = tuple(exclude)

    def finder(file: str, cwd: str) -> str | None:
        if excluded and find_nearest_file(
            os.path.dirname(os.path.abspath(file)), excluded, cwd
        ):
            return None
        return find_root(file, cwd, markers)

    return finder


def cwd_root(file: str, cwd: str) -> str | None:
    """Scope the server to the working directory."""
    return os.path.abspath(cwd)
