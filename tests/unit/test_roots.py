"""Unit tests for roots.py."""

from __future__ import annotations

import os

import pytest

from lspmux.roots import cwd_root, find_nearest_file, find_root, marker_root


@pytest.mark.unit
def test_nearest_marker_wins(temp_workspace):
    outer = temp_workspace / "outer"
    inner = outer / "packages" / "inner"
    (inner / "src").mkdir(parents=True)
    (outer / "package.json").write_text("{}")
    (inner / "package.json").write_text("{}")
    file = inner / "src" / "index.ts"

    assert find_root(str(file), str(temp_workspace), ["package.json"]) == str(inner)


@pytest.mark.unit
def test_first_listed_marker_checked_per_directory(temp_workspace):
    (temp_workspace / "a").mkdir()
    (temp_workspace / "a" / "setup.py").write_text("")
    (temp_workspace / "pyproject.toml").write_text("")

    found = find_nearest_file(str(temp_workspace / "a"), ["pyproject.toml", "setup.py"], str(temp_workspace))

    assert found == str(temp_workspace / "a" / "setup.py")


@pytest.mark.unit
def test_no_marker_returns_none(temp_workspace):
    file = temp_workspace / "loose.ts"

    assert find_root(str(file), str(temp_workspace), ["lspmux-marker-that-does-not-exist.json"]) is None


@pytest.mark.unit
def test_search_continues_above_cwd(temp_workspace):
    (temp_workspace / "package.json").write_text("{}")
    cwd = temp_workspace / "sub"
    cwd.mkdir()

    assert find_root(str(cwd / "a.ts"), str(cwd), ["package.json"]) == str(temp_workspace)


@pytest.mark.unit
def test_stop_dir_limits_walk(temp_workspace):
    (temp_workspace / "package.json").write_text("{}")
    sub = temp_workspace / "sub"
    sub.mkdir()

    assert find_nearest_file(str(sub), ["package.json"], str(sub)) is None


@pytest.mark.unit
def test_marker_root_exclusion(temp_workspace):
    (temp_workspace / "package.json").write_text("{}")
    (temp_workspace / "deno.json").write_text("{}")
    finder = marker_root("package.json", exclude=("deno.json",))

    assert finder(str(temp_workspace / "main.ts"), str(temp_workspace)) is None


@pytest.mark.unit
def test_marker_root_without_exclusion_match(temp_workspace):
    (temp_workspace / "package.json").write_text("{}")
    finder = marker_root("package.json", exclude=("deno.json",))

    assert finder(str(temp_workspace / "main.ts"), str(temp_workspace)) == str(temp_workspace)


@pytest.mark.unit
def test_cwd_root(temp_workspace):
    assert cwd_root("/anything/README.md", str(temp_workspace)) == os.path.abspath(temp_workspace)
