from __future__ import annotations

from pathlib import Path

import pytest

from profile_engine.errors import InvalidProfileNameError
from profile_engine.paths_and_safety import (
    DATA_ROOT_ENV_VAR,
    default_data_root,
    ensure_store_directories,
    profile_document_path,
    resolve_store_paths,
    validate_profile_name,
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in (DATA_ROOT_ENV_VAR, "LOCALAPPDATA", "APPDATA", "XDG_DATA_HOME"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_default_data_root_prefers_override(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv(DATA_ROOT_ENV_VAR, str(tmp_path / "override"))
    clean_env.setenv("LOCALAPPDATA", str(tmp_path / "Local"))

    assert default_data_root() == tmp_path / "override"


def test_default_data_root_prefers_local_appdata(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("LOCALAPPDATA", str(tmp_path / "Local"))
    clean_env.setenv("APPDATA", str(tmp_path / "Roaming"))

    assert default_data_root() == tmp_path / "Local" / "appprof"


def test_default_data_root_falls_back_to_roaming(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("APPDATA", str(tmp_path / "Roaming"))

    assert default_data_root() == tmp_path / "Roaming" / "appprof"


def test_default_data_root_uses_xdg(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))

    assert default_data_root() == tmp_path / "xdg" / "appprof"


def test_resolve_store_paths_creates_nothing(tmp_path: Path) -> None:
    paths = resolve_store_paths(tmp_path / "root")

    assert paths.profiles_root == (tmp_path / "root" / "profiles").resolve()
    assert not paths.data_root.exists()

    ensure_store_directories(paths)
    assert paths.profiles_root.is_dir()
    assert paths.runs_root.is_dir()
    assert paths.locks_root.is_dir()


@pytest.mark.parametrize("name", ["work", "Work_2", "gaming.night", "a-b"])
def test_safe_names_are_accepted(name: str) -> None:
    assert validate_profile_name(name) == name


@pytest.mark.parametrize("name", ["", ".", "..", "../x", "a\\b", "with space", "nul\x00", "work\n"])
def test_unsafe_names_are_rejected(name: str) -> None:
    with pytest.raises(InvalidProfileNameError):
        validate_profile_name(name)


def test_profile_document_path_stays_under_profiles_root(tmp_path: Path) -> None:
    paths = resolve_store_paths(tmp_path)

    assert profile_document_path(paths, "work") == paths.profiles_root / "work.json"
    with pytest.raises(InvalidProfileNameError):
        profile_document_path(paths, "../settings")
