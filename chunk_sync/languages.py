"""
Language registry: maps a language tag to its grammar and the node kinds
that make up a chunk.

Adding a language means adding one LanguageSpec to LANGUAGES. Grammars are
loaded from tree-sitter-language-pack.
"""
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import PurePath
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from tree_sitter import Language, Parser
from tree_sitter_language_pack import get_language

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LanguageSpec:
    """How to find chunks in one language."""

    name: str
    grammar: str
    extensions: Tuple[str, ...]
    function_kinds: FrozenSet[str]
    comment_kinds: FrozenSet[str] = frozenset({"comment"})
    # Function kinds that may hold other function kinds (impl blocks, lists)
    container_kinds: FrozenSet[str] = frozenset()
    # Annotations that sit between a doc comment and the construct
    attribute_kinds: FrozenSet[str] = frozenset()
    # Nodes that wrap a construct together with its decorators
    wrapper_kinds: FrozenSet[str] = frozenset()
    # Markdown: paragraphs carry the nearest heading instead of comments
    heading_context: bool = False
    filenames: Tuple[str, ...] = field(default=())

    @property
    def nesting_kinds(self) -> FrozenSet[str]:
        """Kinds whose descendants are not emitted as separate chunks."""
        return self.function_kinds - self.container_kinds


_JS_FUNCTIONS = frozenset({
    "function_declaration",
    "generator_function_declaration",
    "function_expression",
    "method_definition",
})

LANGUAGES: Dict[str, LanguageSpec] = {
    spec.name: spec
    for spec in [
        LanguageSpec(
            name="rust",
            grammar="rust",
            extensions=(".rs",),
            function_kinds=frozenset({"function_item", "struct_item", "impl_item"}),
            comment_kinds=frozenset({"line_comment", "block_comment", "doc_comment"}),
            container_kinds=frozenset({"impl_item"}),
            attribute_kinds=frozenset({"attribute_item"}),
        ),
        LanguageSpec(
            name="python",
            grammar="python",
            extensions=(".py", ".pyi"),
            function_kinds=frozenset({"function_definition"}),
            wrapper_kinds=frozenset({"decorated_definition"}),
        ),
        LanguageSpec(
            name="javascript",
            grammar="javascript",
            extensions=(".js", ".jsx", ".mjs", ".cjs"),
            function_kinds=_JS_FUNCTIONS,
        ),
        LanguageSpec(
            name="typescript",
            grammar="typescript",
            extensions=(".ts", ".mts", ".cts"),
            function_kinds=_JS_FUNCTIONS,
        ),
        LanguageSpec(
            name="tsx",
            grammar="tsx",
            extensions=(".tsx",),
            function_kinds=_JS_FUNCTIONS,
        ),
        LanguageSpec(
            name="go",
            grammar="go",
            extensions=(".go",),
            function_kinds=frozenset({"function_declaration", "method_declaration"}),
        ),
        LanguageSpec(
            name="java",
            grammar="java",
            extensions=(".java",),
            function_kinds=frozenset({"method_declaration", "constructor_declaration"}),
            comment_kinds=frozenset({"line_comment", "block_comment"}),
        ),
        LanguageSpec(
            name="c",
            grammar="c",
            extensions=(".c", ".h"),
            function_kinds=frozenset({"function_definition"}),
        ),
        LanguageSpec(
            name="cpp",
            grammar="cpp",
            extensions=(".cpp", ".cc", ".cxx", ".hpp", ".hh", ".hxx"),
            function_kinds=frozenset({"function_definition"}),
        ),
        LanguageSpec(
            name="ruby",
            grammar="ruby",
            extensions=(".rb", ".rake", ".gemspec"),
            function_kinds=frozenset({"method", "singleton_method"}),
            filenames=("Rakefile", "Gemfile"),
        ),
        LanguageSpec(
            name="bash",
            grammar="bash",
            extensions=(".sh", ".bash"),
            function_kinds=frozenset({"function_definition"}),
        ),
        LanguageSpec(
            name="markdown",
            grammar="markdown",
            extensions=(".md", ".markdown"),
            function_kinds=frozenset({"fenced_code_block", "list", "paragraph"}),
            comment_kinds=frozenset(),
            container_kinds=frozenset({"fenced_code_block", "list", "paragraph"}),
            heading_context=True,
        ),
    ]
}

_BY_EXTENSION: Dict[str, LanguageSpec] = {
    ext: spec for spec in LANGUAGES.values() for ext in spec.extensions
}
_BY_FILENAME: Dict[str, LanguageSpec] = {
    name: spec for spec in LANGUAGES.values() for name in spec.filenames
}


def supported_languages() -> List[str]:
    return sorted(LANGUAGES)


def resolve_allow_list(languages: Optional[Iterable[str]]) -> Optional[FrozenSet[str]]:
    """Validate a language allow-list; None means every registered language."""
    if languages is None:
        return None
    wanted = frozenset(lang.lower() for lang in languages)
    unknown = wanted - set(LANGUAGES)
    if unknown:
        raise ValueError(f"Unknown language(s): {', '.join(sorted(unknown))}")
    return wanted


def detect_language(path, allowed: Optional[FrozenSet[str]] = None) -> Optional[LanguageSpec]:
    """Return the LanguageSpec for a path, or None if it is not a supported file."""
    p = PurePath(path)
    spec = _BY_FILENAME.get(p.name) or _BY_EXTENSION.get(p.suffix.lower())
    if spec is None:
        return None
    if allowed is not None and spec.name not in allowed:
        return None
    return spec


@lru_cache(maxsize=None)
def load_language(grammar: str) -> Language:
    """Load (and cache) a grammar. Language objects are immutable and shareable."""
    logger.debug(f"Loading tree-sitter grammar: {grammar}")
    return get_language(grammar)


def new_parser(spec: LanguageSpec) -> Parser:
    """Create a parser for one file. Parsers are never shared between threads."""
    return Parser(load_language(spec.grammar))
