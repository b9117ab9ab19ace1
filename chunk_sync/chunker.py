"""
Syntax-aware chunker.

Parses each supported file with tree-sitter and emits one Chunk per
function-like construct. Comments (and attributes / decorators) directly
above a construct are captured in its content and hash, but the chunk's
start_line stays on the construct itself, so editing a doc comment changes
the hash without changing the chunk's identity.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from tqdm import tqdm
from tree_sitter import Node

from .errors import FileReadError, ParseError
from .languages import LanguageSpec, detect_language, new_parser
from .schemas import Chunk, ChunkFileResult, ChunkOptions, ChunkReport, hash_bytes
from .walker import iter_source_files, read_source, relative_path

logger = logging.getLogger(__name__)

# Blank lines allowed between a comment block and the construct it documents
COMMENT_GAP_LINES = 1

HEADING_KINDS = {"atx_heading", "setext_heading"}

# Markdown blocks that are prefixed with their nearest heading
HEADED_KINDS = {"paragraph", "list"}


def _start_row(node: Node) -> int:
    return node.start_point[0]


def _end_row(node: Node) -> int:
    """Last row a node occupies; a node ending at column 0 ends on the previous row."""
    row, column = node.end_point[0], node.end_point[1]
    if column == 0 and row > node.start_point[0]:
        row -= 1
    return row


def find_function_nodes(root: Node, spec: LanguageSpec) -> Iterator[Node]:
    """
    Yield function-like nodes in document order.

    Constructs nested inside another function-like construct are not yielded
    (they travel with their enclosing function). Container kinds such as Rust
    impl blocks are yielded and still searched for methods.
    """
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type in spec.function_kinds:
            yield node
            if node.type in spec.nesting_kinds:
                continue
        # reversed so children are visited in source order
        stack.extend(reversed(node.children))


def _anchor(node: Node, spec: LanguageSpec) -> Node:
    """The node whose previous siblings are scanned for comments (decorator wrappers)."""
    anchor = node
    while anchor.parent is not None and anchor.parent.type in spec.wrapper_kinds:
        anchor = anchor.parent
    return anchor


def attached_start_byte(node: Node, spec: LanguageSpec) -> int:
    """
    First byte of the construct including its leading comments.

    Walks previous siblings while they are comments or attributes separated
    from the already-attached block by at most COMMENT_GAP_LINES blank lines.
    Any other sibling ends the scan.
    """
    anchor = _anchor(node, spec)
    start_byte = anchor.start_byte
    boundary_row = _start_row(anchor)

    sibling = anchor.prev_sibling
    while sibling is not None:
        if sibling.type not in spec.comment_kinds and sibling.type not in spec.attribute_kinds:
            break
        if boundary_row - _end_row(sibling) - 1 > COMMENT_GAP_LINES:
            break
        start_byte = sibling.start_byte
        boundary_row = _start_row(sibling)
        sibling = sibling.prev_sibling
    return start_byte


def _in_list(node: Node) -> bool:
    parent = node.parent
    while parent is not None:
        if parent.type == "list":
            return True
        parent = parent.parent
    return False


def nearest_heading(node: Node) -> Optional[Node]:
    """Closest heading above a markdown node, searching outward through its sections."""
    row = _start_row(node)
    context = node.parent
    while context is not None:
        best = None
        for child in context.children:
            if child.type in HEADING_KINDS and _start_row(child) < row:
                best = child
        if best is not None:
            return best
        if context.type == "document":
            break
        context = context.parent
    return None


def function_name(node: Node, source: bytes) -> Optional[str]:
    """Name of a construct: its name field, a C declarator chain, or an impl's type."""
    named = node.child_by_field_name("name")
    if named is None:
        declarator = node.child_by_field_name("declarator")
        while declarator is not None and declarator.child_by_field_name("declarator") is not None:
            declarator = declarator.child_by_field_name("declarator")
        named = declarator
    if named is None:
        named = node.child_by_field_name("type")
    if named is None:
        return None
    return source[named.start_byte:named.end_byte].decode("utf-8", errors="replace")


def captured_bytes(node: Node, source: bytes, spec: LanguageSpec) -> Optional[bytes]:
    """
    Bytes that make up a chunk's content (and hash).

    Returns None when the node is not emitted on its own (markdown
    paragraphs and nested lists inside a list, which the outer list chunk
    already covers).
    """
    if spec.heading_context:
        body = source[node.start_byte:block_end_byte(node, source)]
        if node.type in HEADED_KINDS:
            if _in_list(node):
                return None
            heading = nearest_heading(node)
            if heading is None:
                return body
            heading_text = source[heading.start_byte:heading.end_byte].rstrip(b"\r\n")
            return heading_text + b"\n" + body
        return body
    return source[attached_start_byte(node, spec):node.end_byte]


def block_end_byte(node: Node, source: bytes) -> int:
    """End of a markdown block without the blank lines the grammar folds into it."""
    body = source[node.start_byte:node.end_byte]
    trimmed = body.rstrip()
    if not trimmed:
        return node.end_byte
    return node.start_byte + len(trimmed)


def _chunk_end_row(node: Node, source: bytes, spec: LanguageSpec) -> int:
    if not spec.heading_context:
        return _end_row(node)
    end = block_end_byte(node, source)
    if end <= node.start_byte:
        return _end_row(node)
    return source.count(b"\n", 0, end - 1)


def parse_source(source: bytes, path: str, spec: LanguageSpec) -> Node:
    """Parse source bytes, raising ParseError if the grammar is unusable."""
    try:
        parser = new_parser(spec)
        tree = parser.parse(source)
    except Exception as e:
        raise ParseError(path, f"{spec.name} parser failed: {e}") from e
    if tree is None:
        raise ParseError(path, f"{spec.name} parser returned no tree")
    if tree.root_node.has_error:
        logger.debug(f"{path}: syntax errors present, extracting recoverable constructs")
    return tree.root_node


def extract_chunks(source: bytes, path: str, spec: LanguageSpec, include_content: bool = True) -> List[Chunk]:
    """
    Extract chunks from one file's source.

    Args:
        source: UTF-8 source bytes
        path: Root-relative path stored on each chunk
        spec: Language of the file
        include_content: False for hash-only mode (content is hashed, not kept)

    Returns:
        Chunks in document order
    """
    root = parse_source(source, path, spec)
    chunks = []
    for node in find_function_nodes(root, spec):
        data = captured_bytes(node, source, spec)
        if data is None:
            continue
        chunks.append(Chunk(
            path=path,
            start_line=_start_row(node) + 1,
            end_line=_chunk_end_row(node, source, spec) + 1,
            language=spec.name,
            function_name=None if spec.heading_context else function_name(node, source),
            content=data.decode("utf-8", errors="replace") if include_content else None,
            content_hash=hash_bytes(data),
        ))
    return chunks


def chunk_file(path, root, spec: Optional[LanguageSpec] = None, options: Optional[ChunkOptions] = None) -> ChunkFileResult:
    """
    Chunk a single file.

    Raises:
        FileReadError: The file could not be read or is not UTF-8
        ParseError: The file's grammar could not parse it
    """
    options = options or ChunkOptions()
    path = Path(path)
    try:
        rel = relative_path(path, Path(root))
    except ValueError as e:
        raise FileReadError(str(path), f"not under {root}") from e
    spec = spec or detect_language(path)
    if spec is None:
        raise ParseError(rel, "unsupported file type")

    t0 = time.perf_counter()
    source = read_source(path, options.max_file_bytes)
    read_ms = (time.perf_counter() - t0) * 1000
    if source is None:
        return ChunkFileResult(path=rel, read_time_ms=read_ms)

    t1 = time.perf_counter()
    chunks = extract_chunks(source, rel, spec, include_content=not options.hash_only)
    parse_ms = (time.perf_counter() - t1) * 1000

    return ChunkFileResult(
        path=rel,
        chunks=chunks,
        file_size=len(source),
        read_time_ms=read_ms,
        parse_time_ms=parse_ms,
    )


def _chunk_one(path: Path, root: Path, spec: LanguageSpec, options: ChunkOptions) -> Tuple[str, Optional[ChunkFileResult], Optional[Exception]]:
    try:
        return str(path), chunk_file(path, root, spec, options), None
    except (ParseError, FileReadError) as e:
        return str(path), None, e
    except Exception as e:
        logger.error(f"Unexpected error chunking {path}: {e!r}")
        return str(path), None, e


def chunk_files(root, options: Optional[ChunkOptions] = None, report: Optional[ChunkReport] = None) -> List[Chunk]:
    """
    Chunk every supported file under root.

    Files are parsed in parallel. A file that cannot be read or parsed is
    logged, recorded in `report` and skipped; the pass continues.

    Args:
        root: Directory (or single file) to chunk
        options: Chunking options
        report: Optional ChunkReport filled with counters and warnings

    Returns:
        All chunks sorted by (path, start_line, end_line)
    """
    options = options or ChunkOptions()
    report = report if report is not None else ChunkReport()
    root = Path(root)
    files = list(iter_source_files(root, options))
    report.files_seen += len(files)
    logger.debug(f"Found {len(files)} source files under {root}")

    chunks: List[Chunk] = []
    if not files:
        return chunks

    with ThreadPoolExecutor(max_workers=options.workers) as executor:
        futures = [
            executor.submit(_chunk_one, path, root, spec, options)
            for path, spec in files
        ]
        completed = as_completed(futures)
        if options.show_progress:
            completed = tqdm(completed, total=len(futures), desc="Chunking", unit="file")

        for future in completed:
            path, result, error = future.result()
            if error is not None:
                logger.warning(f"Skipping {path}: {error}")
                report.warnings[path] = str(error)
                continue
            if result.chunks:
                report.files_chunked += 1
            report.read_time_ms += result.read_time_ms
            report.parse_time_ms += result.parse_time_ms
            chunks.extend(result.chunks)

    chunks.sort(key=lambda c: c.key)
    report.chunks += len(chunks)
    return chunks


def hash_chunk_files(root, options: Optional[ChunkOptions] = None, report: Optional[ChunkReport] = None) -> List[Chunk]:
    """Like chunk_files, but chunks carry only identity and hash (no content)."""
    options = (options or ChunkOptions()).model_copy(update={"hash_only": True})
    return chunk_files(root, options, report)
