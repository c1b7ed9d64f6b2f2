from __future__ import annotations

from pathlib import Path

import pytest

from shadow_watch import (
    LAYOUT_ABSOLUTE,
    LAYOUT_RELATIVE,
    ConfigError,
    IgnoreMatcher,
    build_mapper,
    map_to_mirror,
)


class TestMapToMirror:
    def test_rooted_platform_prepends_mirror(self):
        assert map_to_mirror("/data/a.txt", "/backup", platform="linux") == "/backup/data/a.txt"

    def test_trailing_separator_on_mirror_is_ignored(self):
        assert map_to_mirror("/data/a.txt", "/backup/", platform="darwin") == "/backup/data/a.txt"

    def test_drive_letter_is_replaced(self):
        assert map_to_mirror("D:\\data\\a.txt", "E:\\backup", platform="win32") == "E:\\backup\\data\\a.txt"
        assert map_to_mirror("D:\\data\\a.txt", "E:\\backup\\", platform="win32") == "E:\\backup\\data\\a.txt"

    def test_is_deterministic(self):
        first = map_to_mirror("/data/sub/x.bin", "/backup", platform="linux")
        second = map_to_mirror("/data/sub/x.bin", "/backup", platform="linux")

        assert first == second

    def test_relative_source_is_rejected(self):
        with pytest.raises(ValueError):
            map_to_mirror("data/a.txt", "/backup", platform="linux")

    def test_windows_path_without_drive_is_rejected(self):
        with pytest.raises(ValueError):
            map_to_mirror("\\\\server\\share\\a.txt", "E:\\backup", platform="win32")


class TestBuildMapper:
    def test_absolute_layout(self, tmp_path: Path):
        mapper = build_mapper(LAYOUT_ABSOLUTE, platform="linux")

        assert mapper(Path("/data/a.txt"), tmp_path) == Path(f"{tmp_path}/data/a.txt")

    def test_relative_layout_keeps_structure_under_root(self, data_dir: Path, backup_dir: Path):
        mapper = build_mapper(LAYOUT_RELATIVE, [data_dir])

        assert mapper(data_dir / "a.txt", backup_dir) == backup_dir / "a.txt"
        assert mapper(data_dir / "sub" / "b.txt", backup_dir) == backup_dir / "sub" / "b.txt"

    def test_relative_layout_for_file_root_uses_parent(self, data_dir: Path, backup_dir: Path):
        target = data_dir / "a.txt"
        target.write_text("a", encoding="utf-8")
        mapper = build_mapper(LAYOUT_RELATIVE, [target])

        assert mapper(target, backup_dir) == backup_dir / "a.txt"

    def test_relative_layout_rejects_outside_paths(self, data_dir: Path, backup_dir: Path, tmp_path: Path):
        mapper = build_mapper(LAYOUT_RELATIVE, [data_dir])

        with pytest.raises(ValueError):
            mapper(tmp_path / "elsewhere.txt", backup_dir)

    def test_relative_layout_needs_roots(self):
        with pytest.raises(ConfigError):
            build_mapper(LAYOUT_RELATIVE, [])

    def test_unknown_layout(self):
        with pytest.raises(ConfigError):
            build_mapper("flat")


class TestIgnoreMatcher:
    def test_matches_relative_to_root(self, data_dir: Path):
        ignore = IgnoreMatcher([data_dir], ["*.tmp", "build/"])

        assert ignore.is_ignored(data_dir / "x.tmp", is_dir=False) is True
        assert ignore.is_ignored(data_dir / "sub" / "x.tmp", is_dir=False) is True
        assert ignore.is_ignored(data_dir / "build", is_dir=True) is True
        assert ignore.is_ignored(data_dir / "build" / "out.o", is_dir=False) is True
        assert ignore.is_ignored(data_dir / "x.txt", is_dir=False) is False

    def test_root_itself_and_outside_paths_are_not_ignored(self, data_dir: Path, tmp_path: Path):
        ignore = IgnoreMatcher([data_dir], ["*"])

        assert ignore.is_ignored(data_dir, is_dir=True) is False
        assert ignore.is_ignored(tmp_path / "outside.txt", is_dir=False) is False
