"""Locate and validate a usable Godot executable."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .wsl import is_wsl, normalize_godot_path_for_host

LOGGER = logging.getLogger(__name__)

GODOT_PATH_ENV = "GODOT_PATH"

DISABLED_SENTINELS: Mapping[str, str] = {
    "win32": "C:\\__godot_disabled__\\Godot.exe",
    "darwin": "/__godot_disabled__/Godot.app/Contents/MacOS/Godot",
    "linux": "/__godot_disabled__/godot",
}
LENIENT_DEFAULTS: Mapping[str, str] = {
    "win32": "C:\\Program Files\\Godot\\Godot.exe",
    "darwin": "/Applications/Godot.app/Contents/MacOS/Godot",
    "linux": "/usr/bin/godot",
}

WINDOWS_EXE_PATTERNS = (
    re.compile(r"^Godot_v.*_win(64|32)(_console)?\.exe$", re.IGNORECASE),
    re.compile(r"^Godot(_console)?\.exe$", re.IGNORECASE),
)
WINDOWS_PORTABLE_PATTERNS = (
    re.compile(r"^Godot_v.*_win(64|32)(_console)?\.exe$", re.IGNORECASE),
    re.compile(r"^Godot.*(_console)?\.exe$", re.IGNORECASE),
)
LINUX_BINARY_PATTERNS = (
    re.compile(r"^Godot_v.*_linux\.(x86_64|x86_32|arm64|arm32)(_console)?$", re.IGNORECASE),
    re.compile(r"^Godot(\.x86_64|\.x86_32|\.arm64|\.arm32)?$", re.IGNORECASE),
)

VersionProbe = Callable[[str, float], Awaitable[bool]]


class GodotPathDetectionError(RuntimeError):
    """Raised in strict mode when no candidate executable validates."""

    def __init__(self, message: str, attempted: tuple[ExecutableCandidate, ...]) -> None:
        """Store the full candidate list for diagnostics."""
        super().__init__(message)
        self.attempted = attempted


@dataclass(slots=True, frozen=True)
class ExecutableCandidate:
    """A single executable path considered during resolution."""

    origin: str
    raw_candidate: str
    normalized_path: str
    valid: bool

    def to_dict(self) -> dict[str, object]:
        """Return the JSON shape used in doctor details."""
        return {
            "origin": self.origin,
            "rawCandidate": self.raw_candidate,
            "candidate": self.normalized_path,
            "valid": self.valid,
        }


@dataclass(slots=True, frozen=True)
class ResolvedExecutable:
    """Outcome of :meth:`GodotResolver.resolve`."""

    path: str
    origin: str
    valid: bool
    attempted: tuple[ExecutableCandidate, ...] = ()

    @property
    def disabled(self) -> bool:
        """Return ``True`` when discovery was switched off via an empty ``GODOT_PATH``."""
        return self.path in DISABLED_SENTINELS.values()


def _platform_key(platform: str) -> str:
    if platform == "win32" or platform == "darwin":
        return platform
    return "linux"


async def run_version_probe(path: str, timeout: float) -> bool:
    """Return ``True`` when ``<path> --version`` exits cleanly within *timeout*."""
    try:
        process = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        LOGGER.debug("Cannot execute %s: %s", path, exc)
        return False
    try:
        returncode = await asyncio.wait_for(process.wait(), timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        LOGGER.debug("%s --version timed out after %.1fs", path, timeout)
        return False
    return returncode == 0


async def detect_godot_version(path: str, timeout: float = 10.0) -> str | None:
    """Return the first line printed by ``<path> --version``."""
    resolved = normalize_godot_path_for_host(path)
    try:
        process = await asyncio.create_subprocess_exec(
            resolved,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError:
        return None
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        return None
    output = (stdout or stderr or b"").decode("utf-8", errors="replace").strip()
    return output.splitlines()[0].strip() if output else None


class ValidityCache:
    """Validation results for executable paths, scoped to one doctor run."""

    def __init__(self, probe: VersionProbe | None = None, *, timeout: float = 10.0) -> None:
        """Create an empty cache backed by *probe*."""
        self._probe = probe or run_version_probe
        self._timeout = timeout
        self._results: dict[str, bool] = {}

    def __contains__(self, path: object) -> bool:
        return path in self._results

    def __len__(self) -> int:
        return len(self._results)

    async def is_valid(self, path: str) -> bool:
        """Return whether *path* exists and answers ``--version``."""
        cached = self._results.get(path)
        if cached is not None:
            return cached
        resolved = normalize_godot_path_for_host(path)
        if not resolved:
            valid = False
        elif resolved != "godot" and not Path(resolved).exists():
            valid = False
        else:
            valid = await self._probe(resolved, self._timeout)
        self._results[path] = valid
        return valid


def discover_executables(root: Path, pattern: re.Pattern[str], max_depth: int) -> list[Path]:
    """Walk *root* (sorted, up to *max_depth* levels) collecting files matching *pattern*."""
    found: list[Path] = []

    def _visit(directory: Path, depth: int) -> None:
        try:
            entries = sorted(directory.iterdir(), key=lambda entry: entry.name)
        except OSError:
            return
        for entry in entries:
            if entry.is_file():
                if pattern.match(entry.name):
                    found.append(entry)
                continue
            if entry.is_dir() and depth < max_depth:
                _visit(entry, depth + 1)

    _visit(root, 0)
    return found


@dataclass(slots=True)
class GodotResolver:
    """Resolve a Godot executable: explicit path, ``GODOT_PATH``, then discovery."""

    cache: ValidityCache
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    platform: str = sys.platform
    cwd: Path = field(default_factory=Path.cwd)

    @property
    def _key(self) -> str:
        return _platform_key(self.platform)

    @property
    def home(self) -> str:
        return self.env.get("HOME") or self.env.get("USERPROFILE") or ""

    def disabled_sentinel(self) -> str:
        """Return the guaranteed-invalid path used when discovery is disabled."""
        return DISABLED_SENTINELS[self._key]

    def lenient_default(self) -> str:
        """Return the best-guess path used when lenient resolution finds nothing."""
        return LENIENT_DEFAULTS[self._key]

    async def resolve(self, explicit: str | None = None, *, strict: bool = False) -> ResolvedExecutable:
        """Return the first valid candidate, a sentinel, or a lenient default.

        Raises :class:`GodotPathDetectionError` in strict mode when every
        candidate fails validation.
        """
        attempted: list[ExecutableCandidate] = []
        seen: set[str] = set()

        async def _try(origin: str, raw: str) -> str | None:
            normalized = _normalize_candidate(raw)
            if not normalized or normalized in seen:
                return None
            seen.add(normalized)
            valid = await self.cache.is_valid(normalized)
            attempted.append(ExecutableCandidate(origin, raw, normalized, valid))
            return normalized if valid else None

        if explicit and explicit.strip():
            found = await _try("config", explicit.strip())
            if found:
                return ResolvedExecutable(found, "config", True, tuple(attempted))

        if GODOT_PATH_ENV in self.env:
            raw_env = self.env[GODOT_PATH_ENV].strip()
            if not raw_env:
                LOGGER.debug("GODOT_PATH is set but empty; auto-detection disabled.")
                return ResolvedExecutable(self.disabled_sentinel(), "env", False, tuple(attempted))
            found = await _try("env", raw_env)
            if found:
                return ResolvedExecutable(found, "env", True, tuple(attempted))

        for origin, candidate in self.iter_candidates():
            found = await _try(origin, candidate)
            if found:
                return ResolvedExecutable(found, origin, True, tuple(attempted))

        message = (
            f"Could not find a valid Godot executable for {self.platform}. "
            f"Set the {GODOT_PATH_ENV} environment variable (or pass --godot-path) to continue."
        )
        if strict:
            raise GodotPathDetectionError(message, tuple(attempted))
        LOGGER.warning("%s Falling back to %s.", message, self.lenient_default())
        return ResolvedExecutable(self.lenient_default(), "default", False, tuple(attempted))

    # ------------------------------------------------------------------
    def iter_candidates(self) -> Iterator[tuple[str, str]]:
        """Yield ``(origin, path)`` pairs for automatic discovery, in priority order."""
        yield "auto:path", "godot"
        yield from self._platform_candidates()
        yield from self._portable_candidates()
        yield from self._bundled_candidates()

    def _platform_candidates(self) -> Iterator[tuple[str, str]]:
        home = self.home
        if self._key == "darwin":
            yield "auto:platform", "/Applications/Godot.app/Contents/MacOS/Godot"
            yield "auto:platform", "/Applications/Godot_4.app/Contents/MacOS/Godot"
            if home:
                yield "auto:platform", f"{home}/Applications/Godot.app/Contents/MacOS/Godot"
                yield "auto:platform", f"{home}/Applications/Godot_4.app/Contents/MacOS/Godot"
                yield (
                    "auto:platform",
                    f"{home}/Library/Application Support/Steam/steamapps/common/"
                    "Godot Engine/Godot.app/Contents/MacOS/Godot",
                )
        elif self._key == "win32":
            for program_files in ("C:\\Program Files", "C:\\Program Files (x86)"):
                yield "auto:platform", f"{program_files}\\Godot\\Godot.exe"
            for program_files in ("C:\\Program Files", "C:\\Program Files (x86)"):
                yield "auto:platform", f"{program_files}\\Godot_4\\Godot.exe"
            profile = self.env.get("USERPROFILE", "")
            if profile:
                yield "auto:user", f"{profile}\\Godot\\Godot.exe"
                for suffix in (
                    "AppData\\Local\\Programs\\Godot",
                    "AppData\\Local\\Programs\\Godot Engine",
                    "AppData\\Local\\Godot",
                    "AppData\\Local\\Godot Engine",
                ):
                    yield "auto:user", f"{profile}\\{suffix}\\Godot.exe"
            local_app_data = self.env.get("LOCALAPPDATA", "")
            if local_app_data:
                for suffix in ("Programs\\Godot", "Programs\\Godot Engine", "Godot", "Godot Engine"):
                    yield "auto:user", f"{local_app_data}\\{suffix}\\Godot.exe"
        else:
            yield "auto:platform", "/usr/bin/godot"
            yield "auto:platform", "/usr/local/bin/godot"
            yield "auto:platform", "/snap/bin/godot"
            if home:
                yield "auto:platform", f"{home}/.local/bin/godot"

    def _portable_candidates(self) -> Iterator[tuple[str, str]]:
        home = self.home
        if self._key == "darwin":
            if home:
                yield "auto:portable", f"{home}/Downloads/Godot.app/Contents/MacOS/Godot"
            return
        if self._key == "win32":
            profile = self.env.get("USERPROFILE", "")
            if not profile:
                return
            roots = [Path(profile) / name for name in ("Downloads", "Desktop", "Documents", "Godot")]
            patterns = WINDOWS_PORTABLE_PATTERNS
        else:
            if not home:
                return
            base = Path(home)
            roots = [base / "Downloads", base / "Desktop", base / "godot", base / ".local/share/godot"]
            patterns = LINUX_BINARY_PATTERNS
        for root in roots:
            for pattern in patterns:
                for path in discover_executables(root, pattern, 1):
                    yield "auto:portable", str(path)

    def _bundled_candidates(self) -> Iterator[tuple[str, str]]:
        if self._key == "win32":
            patterns: tuple[re.Pattern[str], ...] = WINDOWS_EXE_PATTERNS
        elif self._key == "linux":
            patterns = LINUX_BINARY_PATTERNS
            if is_wsl(self.env, self.platform):
                patterns = patterns + WINDOWS_EXE_PATTERNS
        else:
            return

        local_patterns = WINDOWS_EXE_PATTERNS if self._key == "win32" else LINUX_BINARY_PATTERNS
        for pattern in local_patterns:
            for path in discover_executables(self.cwd / ".tmp" / "godot", pattern, 1):
                yield "auto:cwd:.tmp", str(path)
            for path in discover_executables(self.cwd / ".tools" / "godot", pattern, 2):
                yield "auto:cwd:.tools", str(path)

        roots = [("auto:bundle:cwd", self.cwd)]
        if self.cwd.parent != self.cwd:
            roots.append(("auto:bundle:parent", self.cwd.parent))
        for origin, root in roots:
            try:
                entries = sorted(root.iterdir(), key=lambda entry: entry.name)
            except OSError:
                continue
            for entry in entries:
                if not entry.name.startswith("Godot_") or not entry.is_dir():
                    continue
                for pattern in patterns:
                    for path in discover_executables(entry, pattern, 2):
                        yield origin, str(path)


def _normalize_candidate(raw: str) -> str:
    trimmed = raw.strip()
    if not trimmed or trimmed == "godot":
        return trimmed
    if re.match(r"^[a-zA-Z]:[\\/]", trimmed):
        return trimmed
    return os.path.normpath(trimmed)


__all__ = [
    "DISABLED_SENTINELS",
    "ExecutableCandidate",
    "GODOT_PATH_ENV",
    "GodotPathDetectionError",
    "GodotResolver",
    "LENIENT_DEFAULTS",
    "ResolvedExecutable",
    "ValidityCache",
    "detect_godot_version",
    "discover_executables",
    "run_version_probe",
]
