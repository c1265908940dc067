"""Per-language grammar tables.

Every supported language is one ``Grammar`` value. All of them expose the same
two capabilities: ``parse`` turns source bytes into a compact ``SyntaxNode``
tree, and ``classify`` maps a node type to the chunk kind it produces. New
languages are added to ``GRAMMARS`` without touching the chunker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import cast

from tree_sitter import Node
from tree_sitter_language_pack import SupportedLanguage, get_parser

from nexus_forge.models import ChunkKind, Position, SyntaxNode

_IDENTIFIER_TYPES = frozenset(
    {
        "identifier",
        "type_identifier",
        "field_identifier",
        "property_identifier",
        "simple_identifier",
        "constant",
        "name",
    }
)

_ERROR_TYPES = frozenset({"ERROR"})


@dataclass(frozen=True)
class Grammar:
    language: str
    ts_language: str
    functions: frozenset[str]
    classes: frozenset[str]
    comments: frozenset[str] = frozenset({"comment"})
    # Nodes that only group declarations (namespaces, export wrappers).
    transparent: frozenset[str] = frozenset()
    # Wrapper node type -> field holding the wrapped declaration.
    wrappers: dict[str, str] = field(default_factory=dict)
    name_fields: tuple[str, ...] = ("name",)

    def classify(self, node_type: str) -> ChunkKind | None:
        if node_type in self.functions:
            return ChunkKind.FUNCTION
        if node_type in self.classes:
            return ChunkKind.CLASS
        return None

    def parse(self, source_bytes: bytes) -> tuple[SyntaxNode, int]:
        """Parse ``source_bytes`` and return ``(root, error_count)``."""
        parser = get_parser(cast(SupportedLanguage, self.ts_language))
        tree = parser.parse(source_bytes)
        root = tree.root_node
        error_count = _count_errors(root) if root.has_error else 0
        children = self._structural_children(root, top_level=True)
        return _to_model(root, children=children), error_count

    def _structural_children(self, node: Node, top_level: bool) -> list[SyntaxNode]:
        out: list[SyntaxNode] = []
        for child in node.named_children:
            ctype = child.type
            if ctype in self.comments:
                if top_level:
                    out.append(_to_model(child))
                continue
            if ctype in self.wrappers:
                inner = child.child_by_field_name(self.wrappers[ctype])
                if inner is not None and self.classify(inner.type) is not None:
                    out.append(
                        _to_model(
                            child,
                            node_type=inner.type,
                            name=self._declaration_name(inner),
                            children=self._structural_children(inner, top_level=False),
                        )
                    )
                    continue
            if self.classify(ctype) is not None:
                out.append(
                    _to_model(
                        child,
                        name=self._declaration_name(child),
                        children=self._structural_children(child, top_level=False),
                    )
                )
            elif ctype in self.transparent:
                out.append(_to_model(child, children=self._structural_children(child, top_level=top_level)))
            else:
                out.extend(self._structural_children(child, top_level=False))
        return out

    def _declaration_name(self, node: Node) -> str | None:
        for field_name in self.name_fields:
            child = node.child_by_field_name(field_name)
            if child is not None:
                return _identifier_text(child)
        for child in node.named_children:
            if child.type in _IDENTIFIER_TYPES:
                return _node_text(child)
        for child in node.named_children:
            inner = child.child_by_field_name("name")
            if inner is not None:
                return _identifier_text(inner)
        return None


def _to_model(
    node: Node,
    node_type: str | None = None,
    name: str | None = None,
    children: list[SyntaxNode] | None = None,
) -> SyntaxNode:
    return SyntaxNode(
        type=node_type or node.type,
        start_byte=node.start_byte,
        end_byte=node.end_byte,
        start_point=Position(row=node.start_point[0], column=node.start_point[1]),
        end_point=Position(row=node.end_point[0], column=node.end_point[1]),
        name=name,
        has_error=node.has_error,
        children=children or None,
    )


def _node_text(node: Node) -> str:
    raw = node.text or b""
    return raw.decode("utf-8", errors="replace")


def _identifier_text(node: Node) -> str:
    if node.type in _IDENTIFIER_TYPES or node.child_count == 0:
        return _node_text(node)
    for field_name in ("declarator", "name", "type"):
        inner = node.child_by_field_name(field_name)
        if inner is not None:
            return _identifier_text(inner)
    for child in node.named_children:
        if child.type in _IDENTIFIER_TYPES:
            return _node_text(child)
    return _node_text(node).split("\n", 1)[0][:80]


def _count_errors(node: Node) -> int:
    count = 1 if node.type in _ERROR_TYPES or node.is_missing else 0
    if node.has_error:
        for child in node.children:
            count += _count_errors(child)
    return count


_JS_FUNCTIONS = frozenset({"function_declaration", "generator_function_declaration", "method_definition"})
_TS_CLASSES = frozenset(
    {
        "class_declaration",
        "abstract_class_declaration",
        "interface_declaration",
        "enum_declaration",
    }
)

GRAMMARS: dict[str, Grammar] = {
    "python": Grammar(
        language="python",
        ts_language="python",
        functions=frozenset({"function_definition"}),
        classes=frozenset({"class_definition"}),
        wrappers={"decorated_definition": "definition"},
    ),
    "rust": Grammar(
        language="rust",
        ts_language="rust",
        functions=frozenset({"function_item", "function_signature_item", "macro_definition"}),
        classes=frozenset({"struct_item", "enum_item", "trait_item", "impl_item", "union_item"}),
        comments=frozenset({"line_comment", "block_comment"}),
        transparent=frozenset({"mod_item", "declaration_list"}),
        name_fields=("name", "type"),
    ),
    "javascript": Grammar(
        language="javascript",
        ts_language="javascript",
        functions=_JS_FUNCTIONS,
        classes=frozenset({"class_declaration"}),
        transparent=frozenset({"export_statement"}),
    ),
    "typescript": Grammar(
        language="typescript",
        ts_language="typescript",
        functions=_JS_FUNCTIONS,
        classes=_TS_CLASSES,
        transparent=frozenset({"export_statement", "internal_module", "statement_block"}),
    ),
    "tsx": Grammar(
        language="tsx",
        ts_language="tsx",
        functions=_JS_FUNCTIONS,
        classes=_TS_CLASSES,
        transparent=frozenset({"export_statement", "internal_module", "statement_block"}),
    ),
    "go": Grammar(
        language="go",
        ts_language="go",
        functions=frozenset({"function_declaration", "method_declaration"}),
        classes=frozenset({"type_declaration"}),
    ),
    "java": Grammar(
        language="java",
        ts_language="java",
        functions=frozenset({"method_declaration", "constructor_declaration"}),
        classes=frozenset(
            {
                "class_declaration",
                "interface_declaration",
                "enum_declaration",
                "record_declaration",
                "annotation_type_declaration",
            }
        ),
        comments=frozenset({"line_comment", "block_comment"}),
    ),
    "csharp": Grammar(
        language="csharp",
        ts_language="csharp",
        functions=frozenset(
            {"method_declaration", "constructor_declaration", "destructor_declaration", "local_function_statement"}
        ),
        classes=frozenset(
            {
                "class_declaration",
                "struct_declaration",
                "interface_declaration",
                "enum_declaration",
                "record_declaration",
            }
        ),
        transparent=frozenset({"namespace_declaration", "file_scoped_namespace_declaration", "declaration_list"}),
    ),
    "ruby": Grammar(
        language="ruby",
        ts_language="ruby",
        functions=frozenset({"method", "singleton_method"}),
        classes=frozenset({"class", "module", "singleton_class"}),
    ),
    "swift": Grammar(
        language="swift",
        ts_language="swift",
        functions=frozenset({"function_declaration", "init_declaration", "deinit_declaration"}),
        classes=frozenset({"class_declaration", "protocol_declaration"}),
        comments=frozenset({"comment", "multiline_comment"}),
    ),
    "kotlin": Grammar(
        language="kotlin",
        ts_language="kotlin",
        functions=frozenset({"function_declaration", "secondary_constructor"}),
        classes=frozenset({"class_declaration", "object_declaration", "companion_object"}),
        comments=frozenset({"comment", "line_comment", "multiline_comment"}),
    ),
    "c": Grammar(
        language="c",
        ts_language="c",
        functions=frozenset({"function_definition"}),
        classes=frozenset(),
        name_fields=("declarator",),
    ),
    "cpp": Grammar(
        language="cpp",
        ts_language="cpp",
        functions=frozenset({"function_definition"}),
        classes=frozenset({"class_specifier"}),
        transparent=frozenset({"namespace_definition", "declaration_list"}),
        name_fields=("name", "declarator"),
    ),
}


def get_grammar(language: str) -> Grammar:
    try:
        return GRAMMARS[language]
    except KeyError:
        raise ValueError(f"No grammar registered for language '{language}'") from None
