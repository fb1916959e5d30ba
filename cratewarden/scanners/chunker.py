"""Syntax-aware chunking of Rust source files.

Parses a file with the tree-sitter Rust grammar and cuts it into bounded
analysis units ("chunks") at natural boundaries: top-level items such as
functions, structs, enums, traits, impls and modules. Leading attributes and
comments stay attached to the item they decorate, and consecutive small items
are packed together up to the chunk budget.

Oversized items are split where that is syntactically safe:

* ``impl`` / ``trait`` / ``mod`` / ``extern`` bodies at their member items;
* function bodies at statement boundaries, when every statement fits.

Anything else is emitted whole and tagged ``truncated`` rather than dropped.

Usage::

    chunker = RustChunker(max_chunk_chars=12_000)
    for chunk in chunker.parse_and_chunk(source_bytes, "src/lib.rs"):
        print(chunk.label)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import tree_sitter as ts
import tree_sitter_rust as ts_rust

from ..constants import DEFAULT_MAX_CHUNK_CHARS
from ..core.exceptions import ParseFailure
from ..models import Chunk, SourceUnit

logger = logging.getLogger(__name__)

# Nodes that decorate the item following them
_PREFIX_KINDS = frozenset({"attribute_item", "line_comment", "block_comment"})

# Items whose body is a declaration list that can be split member by member
_CONTAINER_KINDS = frozenset({"impl_item", "trait_item", "mod_item", "foreign_mod_item"})


@dataclass
class _Unit:
    """A run of sibling nodes that must stay together (prefixes + item)."""

    nodes: list[ts.Node]

    @property
    def main(self) -> ts.Node:
        return self.nodes[-1]

    @property
    def start_byte(self) -> int:
        return self.nodes[0].start_byte

    @property
    def end_byte(self) -> int:
        return self.nodes[-1].end_byte

    @property
    def size(self) -> int:
        return self.end_byte - self.start_byte


class RustChunker:
    """Parses Rust source and extracts bounded chunks.

    The tree-sitter ``Language`` and ``Parser`` are created lazily on first
    use and reused for the lifetime of the chunker.
    """

    def __init__(self, max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS) -> None:
        if max_chunk_chars < 1:
            raise ValueError("max_chunk_chars must be positive")
        self.max_chunk_chars = max_chunk_chars
        self._parser: ts.Parser | None = None

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _get_parser(self) -> ts.Parser:
        if self._parser is None:
            language = ts.Language(ts_rust.language())
            self._parser = ts.Parser(language=language)
        return self._parser

    def parse(self, source: bytes, path: str) -> SourceUnit:
        """Parse *source* into a ``SourceUnit`` with its syntax tree.

        Raises:
            ParseFailure: If the bytes are not UTF-8 or the tree has
                syntax errors.
        """
        try:
            source.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseFailure(f"{path} is not valid UTF-8: {e}", path=path) from e

        tree = self._get_parser().parse(source)
        if tree.root_node.has_error:
            line = _first_error_line(tree.root_node)
            where = f" near line {line}" if line else ""
            raise ParseFailure(f"syntax error in {path}{where}", path=path)

        return SourceUnit(path=path, raw=source, tree=tree)

    def parse_and_chunk(self, source: bytes, path: str) -> list[Chunk]:
        """Parse a file and return its chunks.

        Raises:
            ParseFailure: If the file cannot be parsed.
        """
        unit = self.parse(source, path)
        unit.chunks = self.chunk(unit)
        logger.debug(f"Chunked {path} into {len(unit.chunks)} chunk(s)")
        return unit.chunks

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------

    def chunk(self, unit: SourceUnit) -> list[Chunk]:
        root = unit.tree.root_node
        return self._pack(unit, _group_units(root.named_children), context=None)

    def _pack(self, unit: SourceUnit, units: list[_Unit], context: str | None) -> list[Chunk]:
        """Greedily pack consecutive units into chunks within the budget."""
        chunks: list[Chunk] = []
        group: list[_Unit] = []

        def flush() -> None:
            if group:
                chunks.append(self._make_chunk(unit, group, context))
                group.clear()

        for item in units:
            if item.size > self.max_chunk_chars:
                flush()
                chunks.extend(self._split_oversized(unit, item))
                continue
            if group and item.end_byte - group[0].start_byte > self.max_chunk_chars:
                flush()
            group.append(item)
        flush()
        return chunks

    def _split_oversized(self, unit: SourceUnit, item: _Unit) -> list[Chunk]:
        main = item.main
        name = _item_name(main, unit.raw)

        if main.type in _CONTAINER_KINDS:
            body = main.child_by_field_name("body")
            members = body.named_children if body is not None else []
            if members:
                context = f"{main.type.removesuffix('_item')} {name}" if name else main.type
                return self._pack(unit, _group_units(members), context=context)

        if main.type == "function_item":
            body = main.child_by_field_name("body")
            statements = body.named_children if body is not None else []
            if len(statements) > 1 and all(
                s.end_byte - s.start_byte <= self.max_chunk_chars for s in statements
            ):
                pieces = self._pack(
                    unit, [_Unit([s]) for s in statements], context=f"fn {name}"
                )
                return [
                    piece.model_copy(update={"kind": "function_fragment", "name": name})
                    for piece in pieces
                ]

        logger.debug(
            f"{unit.path}: {main.type} {name or ''} exceeds {self.max_chunk_chars} chars "
            "and cannot be split safely; emitting as truncated"
        )
        chunk = self._make_chunk(unit, [item], context=None)
        return [chunk.model_copy(update={"truncated": True})]

    def _make_chunk(self, unit: SourceUnit, group: list[_Unit], context: str | None) -> Chunk:
        first = group[0].nodes[0]
        last = group[-1].nodes[-1]
        text = unit.raw[first.start_byte:last.end_byte].decode("utf-8", errors="replace")

        if len(group) == 1:
            kind = group[0].main.type
            name = _item_name(group[0].main, unit.raw)
        else:
            kind = "items"
            name = None
        if context:
            name = f"{context}::{name}" if name else context

        return Chunk(
            path=unit.path,
            start_line=first.start_point.row + 1,
            end_line=last.end_point.row + 1,
            start_byte=first.start_byte,
            end_byte=last.end_byte,
            text=text,
            kind=kind,
            name=name,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _group_units(nodes: list[ts.Node]) -> list[_Unit]:
    """Attach attributes and comments to the item that follows them."""
    units: list[_Unit] = []
    pending: list[ts.Node] = []
    for node in nodes:
        pending.append(node)
        if node.type not in _PREFIX_KINDS:
            units.append(_Unit(pending))
            pending = []
    if pending:
        units.append(_Unit(pending))
    return units


def _item_name(node: ts.Node, source: bytes) -> str | None:
    def text(n: ts.Node | None) -> str | None:
        if n is None:
            return None
        return source[n.start_byte:n.end_byte].decode("utf-8", errors="replace")

    if node.type == "impl_item":
        type_name = text(node.child_by_field_name("type"))
        trait_name = text(node.child_by_field_name("trait"))
        if trait_name and type_name:
            return f"{trait_name} for {type_name}"
        return type_name
    return text(node.child_by_field_name("name"))


def _first_error_line(node: ts.Node) -> int | None:
    """1-based line of the first ERROR or missing node, depth first."""
    if node.type == "ERROR" or node.is_missing:
        return node.start_point.row + 1
    for child in node.children:
        if child.has_error:
            line = _first_error_line(child)
            if line is not None:
                return line
    return None
