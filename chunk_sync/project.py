"""
Project root detection and namespace naming.
"""
import logging
from pathlib import Path
from typing import Tuple

import xxhash

logger = logging.getLogger(__name__)

# Files / directories whose presence marks a project root
PROJECT_MARKERS = [
    # Version control
    ".git", ".hg", ".svn", "_darcs", ".bzr",
    # Language / package managers
    "Cargo.toml", "package.json", "tsconfig.json", "deno.json", "deno.jsonc",
    "pyproject.toml", "setup.py", "requirements.txt", "Pipfile", "poetry.lock",
    "environment.yml", "go.mod", "Gemfile", "composer.json",
    "stack.yaml", "cabal.project", "yarn.lock", "pnpm-lock.yaml", "bun.lockb",
    "pubspec.yaml", "mix.exs", "rebar.config", "deps.edn", "project.clj",
    "build.sbt", "Package.swift", "Podfile", "Cartfile",
    # Build systems
    "pom.xml", "build.gradle", "build.gradle.kts", "build.xml", "CMakeLists.txt",
    "Makefile", "meson.build", "configure.ac", "Dockerfile", "docker-compose.yml",
    # Docs sites
    "mkdocs.yml", "_config.yml", "hugo.toml", "hugo.yaml",
]


def validate_directory(path) -> Path:
    """Resolve a directory path, raising if it is missing or not a directory."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Directory '{path}' does not exist")
    if not p.is_dir():
        raise NotADirectoryError(f"'{path}' exists but is not a directory")
    return p.resolve()


def find_project_root(path) -> Path:
    """
    Walk up from `path` to the first directory containing a project marker.

    Falls back to the resolved `path` itself when no marker is found.
    """
    start = Path(path).resolve()
    current = start if start.is_dir() else start.parent
    for candidate in [current, *current.parents]:
        for marker in PROJECT_MARKERS:
            if (candidate / marker).exists():
                logger.debug(f"Project root {candidate} (found {marker})")
                return candidate
    return current


def namespace_for(root: Path, provider: str = "voyage", prefix: str = "tg") -> str:
    """Stable namespace name for a project root."""
    digest = xxhash.xxh3_64_intdigest(str(root).encode("utf-8"))
    return f"{prefix}_{provider}_{digest:x}"


def namespace_and_dir(path, provider: str = "voyage", prefix: str = "tg") -> Tuple[str, Path]:
    """Return (namespace, project root) for a path inside a project."""
    root = find_project_root(path)
    return namespace_for(root, provider, prefix), root
