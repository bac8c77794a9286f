"""Tests for Godot executable resolution."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

from godot_mcp_doctor.godot_runtime import (
    DISABLED_SENTINELS,
    GodotPathDetectionError,
    GodotResolver,
    ValidityCache,
    detect_godot_version,
    discover_executables,
    run_version_probe,
)

LINUX_BUILD = "Godot_v4.3-stable_linux.x86_64"


class FakeProbe:
    """Version probe that accepts a fixed set of paths and counts calls."""

    def __init__(self, *valid: str) -> None:
        self.valid = set(valid)
        self.calls: list[str] = []

    async def __call__(self, path: str, timeout: float) -> bool:
        self.calls.append(path)
        return path in self.valid


def _executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("binary", encoding="utf-8")
    return path


def _resolver(probe: FakeProbe, tmp_path: Path, env: dict[str, str] | None = None) -> GodotResolver:
    return GodotResolver(
        ValidityCache(probe),
        env=env if env is not None else {},
        platform="linux",
        cwd=tmp_path,
    )


@pytest.mark.asyncio
async def test_explicit_path_wins(tmp_path: Path) -> None:
    """A valid explicit path is used before the environment."""
    explicit = _executable(tmp_path / "bin" / "godot4")
    env_path = _executable(tmp_path / "other" / "godot")
    probe = FakeProbe(str(explicit), str(env_path))

    resolved = await _resolver(probe, tmp_path, {"GODOT_PATH": str(env_path)}).resolve(str(explicit))

    assert resolved.path == str(explicit)
    assert resolved.origin == "config"
    assert resolved.valid is True
    assert probe.calls == [str(explicit)]


@pytest.mark.asyncio
async def test_env_path_used_when_explicit_missing(tmp_path: Path) -> None:
    """``GODOT_PATH`` is tried next and recorded as the origin."""
    env_path = _executable(tmp_path / "godot")
    probe = FakeProbe(str(env_path))

    resolved = await _resolver(probe, tmp_path, {"GODOT_PATH": str(env_path)}).resolve(
        str(tmp_path / "missing")
    )

    assert resolved.origin == "env"
    assert [candidate.origin for candidate in resolved.attempted] == ["config", "env"]
    assert resolved.attempted[0].valid is False


@pytest.mark.asyncio
async def test_empty_env_disables_detection(tmp_path: Path) -> None:
    """An empty ``GODOT_PATH`` returns the disabled sentinel without probing."""
    probe = FakeProbe()

    resolved = await _resolver(probe, tmp_path, {"GODOT_PATH": "  "}).resolve(strict=True)

    assert resolved.path == DISABLED_SENTINELS["linux"]
    assert resolved.origin == "env"
    assert resolved.valid is False
    assert resolved.disabled is True
    assert probe.calls == []


@pytest.mark.asyncio
async def test_strict_mode_raises_with_attempts(tmp_path: Path) -> None:
    """Strict resolution fails loudly and lists every candidate tried."""
    probe = FakeProbe()

    with pytest.raises(GodotPathDetectionError) as excinfo:
        await _resolver(probe, tmp_path).resolve(strict=True)

    assert "GODOT_PATH" in str(excinfo.value)
    attempted = excinfo.value.attempted
    assert attempted[0].origin == "auto:path"
    assert attempted[0].normalized_path == "godot"
    assert all(not candidate.valid for candidate in attempted)


@pytest.mark.asyncio
async def test_lenient_mode_returns_default(tmp_path: Path) -> None:
    """Lenient resolution falls back to the platform default."""
    resolved = await _resolver(FakeProbe(), tmp_path).resolve()

    assert resolved.path == "/usr/bin/godot"
    assert resolved.origin == "default"
    assert resolved.valid is False
    assert resolved.disabled is False


@pytest.mark.asyncio
async def test_bundled_build_is_discovered(tmp_path: Path) -> None:
    """Builds unpacked under ``.tmp/godot`` in the working directory are found."""
    build = _executable(tmp_path / ".tmp" / "godot" / LINUX_BUILD)
    probe = FakeProbe(str(build))

    resolved = await _resolver(probe, tmp_path).resolve(strict=True)

    assert resolved.path == str(build)
    assert resolved.origin == "auto:cwd:.tmp"


@pytest.mark.asyncio
async def test_candidates_are_probed_once(tmp_path: Path) -> None:
    """Duplicate candidates and repeated lookups reuse cached results."""
    path = _executable(tmp_path / "godot-bin")
    probe = FakeProbe(str(path))
    cache = ValidityCache(probe)
    resolver = GodotResolver(cache, env={"GODOT_PATH": str(path)}, platform="linux", cwd=tmp_path)

    first = await resolver.resolve(str(path))
    second = await resolver.resolve(str(path))

    assert first.path == second.path == str(path)
    assert probe.calls == [str(path)]
    assert str(path) in cache


@pytest.mark.asyncio
async def test_missing_file_is_invalid_without_probe(tmp_path: Path) -> None:
    """Paths that do not exist never reach the version probe."""
    probe = FakeProbe()
    cache = ValidityCache(probe)

    assert await cache.is_valid(str(tmp_path / "nope")) is False
    assert await cache.is_valid("") is False
    assert probe.calls == []


def test_iter_candidates_order(tmp_path: Path) -> None:
    """PATH lookup comes first, then the platform install locations."""
    resolver = _resolver(FakeProbe(), tmp_path, {"HOME": "/home/dev"})

    candidates = list(resolver.iter_candidates())

    assert candidates[:5] == [
        ("auto:path", "godot"),
        ("auto:platform", "/usr/bin/godot"),
        ("auto:platform", "/usr/local/bin/godot"),
        ("auto:platform", "/snap/bin/godot"),
        ("auto:platform", "/home/dev/.local/bin/godot"),
    ]


def test_windows_candidates_include_program_files(tmp_path: Path) -> None:
    """Windows discovery checks Program Files before the user profile."""
    resolver = GodotResolver(
        ValidityCache(FakeProbe()),
        env={"USERPROFILE": "C:\\Users\\dev"},
        platform="win32",
        cwd=tmp_path,
    )

    candidates = [path for _, path in resolver.iter_candidates()]

    assert candidates[1] == "C:\\Program Files\\Godot\\Godot.exe"
    assert "C:\\Users\\dev\\Godot\\Godot.exe" in candidates
    assert resolver.disabled_sentinel() == DISABLED_SENTINELS["win32"]


def test_discover_executables_respects_depth(tmp_path: Path) -> None:
    """Only files within the depth limit are returned, in sorted order."""
    import re

    _executable(tmp_path / "b" / "Godot")
    _executable(tmp_path / "a" / "Godot")
    _executable(tmp_path / "a" / "deep" / "Godot")

    pattern = re.compile(r"^Godot$")

    assert discover_executables(tmp_path, pattern, 1) == [tmp_path / "a" / "Godot", tmp_path / "b" / "Godot"]
    assert len(discover_executables(tmp_path, pattern, 2)) == 3
    assert discover_executables(tmp_path / "missing", pattern, 2) == []


@pytest.mark.asyncio
async def test_run_version_probe_missing_binary(tmp_path: Path) -> None:
    """A binary that cannot be executed is reported invalid."""
    assert await run_version_probe(str(tmp_path / "absent"), 1.0) is False


@pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")
@pytest.mark.asyncio
async def test_detect_godot_version_reads_first_line(tmp_path: Path) -> None:
    """The first line of ``--version`` output is returned."""
    script = tmp_path / "godot"
    script.write_text("#!/bin/sh\necho 4.3.stable.official\necho extra\n", encoding="utf-8")
    script.chmod(0o755)

    assert await detect_godot_version(str(script), timeout=5.0) == "4.3.stable.official"
    assert await run_version_probe(str(script), 5.0) is True
