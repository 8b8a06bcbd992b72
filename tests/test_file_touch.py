import pytest

from build_start_perf.errors import FileNotFoundForReload
from build_start_perf.file_touch import RELOAD_SENTINEL, resolve_reload_file, sentinel_write


def test_no_file_means_no_reload():
    assert resolve_reload_file(None) is None
    assert resolve_reload_file("") is None


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundForReload) as excinfo:
        resolve_reload_file(tmp_path / "nope.js")
    assert isinstance(excinfo.value, FileNotFoundError)
    assert "skipping reload test" in str(excinfo.value)


def test_directory_is_not_a_reload_target(tmp_path):
    with pytest.raises(FileNotFoundForReload):
        resolve_reload_file(tmp_path)


def test_sentinel_is_appended_then_removed(tmp_path):
    target = tmp_path / "app.js"
    target.write_bytes(b"let x = 1;")

    with sentinel_write(resolve_reload_file(str(target))) as original:
        assert original == b"let x = 1;"
        assert target.read_bytes() == b"let x = 1;" + RELOAD_SENTINEL

    assert target.read_bytes() == b"let x = 1;"


def test_original_restored_after_error(tmp_path):
    target = tmp_path / "app.js"
    target.write_bytes(b"\xef\xbb\xbfconst a = 1;\r\n")

    with pytest.raises(ValueError):
        with sentinel_write(target):
            raise ValueError("boom")

    assert target.read_bytes() == b"\xef\xbb\xbfconst a = 1;\r\n"
