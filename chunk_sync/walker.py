"""
Source file enumeration.

Walks a directory tree the way a code-search tool does: ignore files
(.gitignore, .ignore, .rgignore) are honoured at every level, VCS metadata
is never entered, and only files of a supported language are yielded.
Binary / oversized / empty files are filtered when the file is read.
"""
import logging
import os
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import pathspec

from .errors import FileReadError
from .languages import LanguageSpec, detect_language, resolve_allow_list
from .schemas import ChunkOptions

logger = logging.getLogger(__name__)

# Directories that are never walked
VCS_DIRS = {".git", ".hg", ".svn", ".jj"}

IGNORE_FILES = (".gitignore", ".ignore", ".rgignore")

BINARY_SNIFF_BYTES = 8192


def _load_ignore_spec(directory: str) -> Optional[pathspec.PathSpec]:
    """Combine the ignore files of one directory into a single PathSpec."""
    patterns: List[str] = []
    for name in IGNORE_FILES:
        ignore_path = os.path.join(directory, name)
        if not os.path.isfile(ignore_path):
            continue
        try:
            with open(ignore_path, "r", encoding="utf-8", errors="replace") as f:
                patterns.extend(f.read().splitlines())
        except OSError as e:
            logger.warning(f"Could not read {ignore_path}: {e}")
    if not patterns:
        return None
    return pathspec.PathSpec.from_lines("gitwildmatch", patterns)


def _is_ignored(abs_path: str, is_dir: bool, specs: List[Tuple[str, pathspec.PathSpec]]) -> bool:
    for base, spec in specs:
        rel = os.path.relpath(abs_path, base).replace(os.sep, "/")
        if is_dir:
            rel += "/"
        if spec.match_file(rel):
            return True
    return False


def iter_source_files(root, options: Optional[ChunkOptions] = None) -> Iterator[Tuple[Path, LanguageSpec]]:
    """
    Yield (absolute path, language) for every supported file under root.

    Args:
        root: Directory (or single file) to enumerate
        options: Chunking options (hidden files, ignore files, allow-list)

    Yields:
        Tuples of file path and its LanguageSpec, in a stable order
    """
    options = options or ChunkOptions()
    allowed = resolve_allow_list(options.languages)
    root = Path(root).resolve()

    if root.is_file():
        spec = detect_language(root, allowed)
        if spec is not None:
            yield root, spec
        return

    extra = pathspec.PathSpec.from_lines("gitwildmatch", options.exclude) if options.exclude else None
    base_specs: List[Tuple[str, pathspec.PathSpec]] = [(str(root), extra)] if extra else []
    # directory -> (base, spec) pairs that apply inside it
    active: dict = {}

    for dirpath, dirnames, filenames in os.walk(root):
        parent_specs = active.get(os.path.dirname(dirpath), base_specs)
        specs = list(parent_specs)
        if options.respect_ignore_files:
            local = _load_ignore_spec(dirpath)
            if local is not None:
                specs.append((dirpath, local))
        active[dirpath] = specs

        kept = []
        for d in sorted(dirnames):
            if d in VCS_DIRS:
                continue
            if not options.include_hidden and d.startswith("."):
                continue
            if _is_ignored(os.path.join(dirpath, d), True, specs):
                logger.debug(f"Ignoring directory {os.path.join(dirpath, d)}")
                continue
            kept.append(d)
        # prune in-place so os.walk does not descend
        dirnames[:] = kept

        for fname in sorted(filenames):
            if not options.include_hidden and fname.startswith("."):
                continue
            spec = detect_language(fname, allowed)
            if spec is None:
                continue
            full = os.path.join(dirpath, fname)
            if _is_ignored(full, False, specs):
                continue
            yield Path(full), spec


def relative_path(path: Path, root: Path) -> str:
    """
    Root-relative POSIX path used as the chunk identity path.

    Only the directory part is resolved, so a symlinked file keeps the path
    it was found under even when its target lies outside the root (or does
    not exist).

    Raises:
        ValueError: path is not under root
    """
    root = root.resolve()
    if root.is_file():
        root = root.parent
    path = Path(path).absolute()
    return (path.parent.resolve() / path.name).relative_to(root).as_posix()


def read_source(path: Path, max_bytes: int) -> Optional[bytes]:
    """
    Read a source file for chunking.

    Returns None for files that are skipped silently (empty, oversized,
    binary). Raises FileReadError when the file cannot be read or is not
    valid UTF-8.
    """
    try:
        size = path.stat().st_size
        if size == 0 or size > max_bytes:
            logger.debug(f"Skipping {path} ({size} bytes)")
            return None
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise FileReadError(str(path), str(e)) from e

    if b"\x00" in data[:BINARY_SNIFF_BYTES]:
        logger.debug(f"Skipping binary file {path}")
        return None
    try:
        data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FileReadError(str(path), f"not valid UTF-8 ({e.reason} at byte {e.start})") from e
    return data
