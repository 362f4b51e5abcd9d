"""Tests for webstack.paths module."""

import pathlib

import pytest

from webstack.paths import Paths


def test_paths_root_with_webstack_root_set(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that Paths.root returns WEBSTACK_ROOT when set."""
    test_path = "/custom/stacks/path"
    monkeypatch.setenv("WEBSTACK_ROOT", test_path)

    paths = Paths()
    assert paths.root == pathlib.Path(test_path)


def test_paths_root_without_webstack_root_raises_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that Paths.root raises RuntimeError when WEBSTACK_ROOT not set."""
    monkeypatch.delenv("WEBSTACK_ROOT", raising=False)

    paths = Paths()
    with pytest.raises(RuntimeError, match="WEBSTACK_ROOT environment variable not set"):
        _ = paths.root


def test_paths_stacks(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that stacks property works with WEBSTACK_ROOT."""
    test_path = "/custom/stacks"
    monkeypatch.setenv("WEBSTACK_ROOT", test_path)

    paths = Paths()
    assert paths.stacks == pathlib.Path(test_path) / "__stacks__"


def test_paths_cache_with_webstack_cache_set(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that Paths.cache returns WEBSTACK_CACHE when set."""
    test_cache_path = "/custom/cache"
    monkeypatch.setenv("WEBSTACK_CACHE", test_cache_path)

    paths = Paths()
    assert paths.cache == pathlib.Path(test_cache_path)
    assert paths.workspaces == pathlib.Path(test_cache_path) / "workspaces"


def test_paths_cache_default(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
    """Test that Paths.cache uses default when WEBSTACK_CACHE not set."""
    monkeypatch.delenv("WEBSTACK_CACHE", raising=False)

    # Mock the top() function by setting WEBSTACK_TOP
    test_top = str(tmp_path / "project")
    monkeypatch.setenv("WEBSTACK_TOP", test_top)

    paths = Paths()
    assert paths.cache == pathlib.Path(test_top) / ".local"
