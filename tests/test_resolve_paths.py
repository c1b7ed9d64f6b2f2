from __future__ import annotations

from pathlib import Path

import pytest

from shadow_watch import IgnoreMatcher, PathNotFound, WatchRoot, resolve_paths


@pytest.fixture()
def tree(data_dir: Path) -> Path:
    (data_dir / "a.txt").write_text("a", encoding="utf-8")
    (data_dir / "sub" / "deep").mkdir(parents=True)
    (data_dir / "sub" / "deep" / "b.txt").write_text("b", encoding="utf-8")
    (data_dir / "other").mkdir()
    return data_dir


def _paths(roots: list[WatchRoot]) -> list[Path]:
    return [r.path for r in roots]


def test_recursive_resolution_lists_every_directory(tree: Path) -> None:
    paths = _paths(resolve_paths([str(tree)], recurse=True))

    assert set(paths) == {tree, tree / "sub", tree / "sub" / "deep", tree / "other"}
    assert paths.index(tree / "sub") < paths.index(tree / "sub" / "deep")
    assert paths[0] == tree


def test_no_recurse_returns_only_the_root(tree: Path) -> None:
    roots = resolve_paths([str(tree)], recurse=False)

    assert roots == [WatchRoot(tree, recursive=False)]


def test_recursive_is_superset_of_non_recursive(tree: Path) -> None:
    with_recursion = set(_paths(resolve_paths([str(tree)], recurse=True)))
    without = set(_paths(resolve_paths([str(tree)], recurse=False)))

    assert without <= with_recursion


def test_file_argument_is_watched_directly(tree: Path) -> None:
    target = tree / "a.txt"

    assert _paths(resolve_paths([str(target)])) == [target]


def test_missing_path_raises(tmp_path: Path) -> None:
    with pytest.raises(PathNotFound):
        resolve_paths([str(tmp_path / "nope")])


def test_missing_path_discards_earlier_results(tree: Path, tmp_path: Path) -> None:
    with pytest.raises(PathNotFound):
        resolve_paths([str(tree), str(tmp_path / "nope")])


def test_empty_arguments_are_skipped() -> None:
    assert resolve_paths(["", ""]) == []


def test_relative_arguments_become_absolute(tree: Path, monkeypatch) -> None:
    monkeypatch.chdir(tree.parent)

    roots = resolve_paths(["data"], recurse=False)

    assert roots[0].path.resolve() == tree.resolve()
    assert roots[0].path.is_absolute()


def test_ignored_directories_are_not_descended(tree: Path) -> None:
    ignore = IgnoreMatcher([tree], ["other/", "deep/"])

    paths = set(_paths(resolve_paths([str(tree)], ignore=ignore)))

    assert paths == {tree, tree / "sub"}
