"""
Tree-sitter implementation of the AST chunking capability.

Supports: Python, JavaScript, TypeScript, Rust, Go, Java

Chunks are cut at top-level definitions.  Classes (and Rust ``impl`` /
``trait`` blocks, Java classes…) that contain methods are split into a
header chunk plus one chunk per method, each method chunk carrying the
class in its scope chain.  Comments directly above a definition travel
with it.  Any segment longer than ``max_chunk_size`` is split by lines and
its entities are flagged ``is_partial``.

Uses tree-sitter >= 0.22 API with individual language packages.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Optional

from ..models import EntityInfo, ImportInfo, ScopeEntry, SiblingInfo
from .ast import AstChunk, AstChunker, AstChunkOptions, AstContext, detect_language

logger = logging.getLogger(__name__)

SIBLING_WINDOW = 3
MAX_SIGNATURE_LENGTH = 200


# ---------------------------------------------------------------------------
# Language → (tree-sitter Language object) lookup
# ---------------------------------------------------------------------------

def _get_lang_func(grammar: str):
    """Return the tree-sitter language() function for *grammar*, or None."""
    try:
        if grammar == "python":
            import tree_sitter_python as m  # type: ignore
            return m.language
        elif grammar == "javascript":
            import tree_sitter_javascript as m  # type: ignore
            return m.language
        elif grammar == "typescript":
            import tree_sitter_typescript as m  # type: ignore
            return m.language_typescript
        elif grammar == "tsx":
            import tree_sitter_typescript as m  # type: ignore
            return m.language_tsx
        elif grammar == "java":
            import tree_sitter_java as m  # type: ignore
            return m.language
        elif grammar == "go":
            import tree_sitter_go as m  # type: ignore
            return m.language
        elif grammar == "rust":
            import tree_sitter_rust as m  # type: ignore
            return m.language
    except ImportError:
        pass
    return None


# Parsers are not safe to share between threads; builds may run concurrently.
_PARSER_CACHE: dict[str, object] = {}
_PARSER_LOCK = threading.Lock()


def _get_ts_parser(grammar: str):
    """Return a cached tree-sitter Parser for *grammar*, or None."""
    if grammar in _PARSER_CACHE:
        return _PARSER_CACHE[grammar]
    try:
        import tree_sitter as ts  # type: ignore
        func = _get_lang_func(grammar)
        if func is None:
            return None
        parser = ts.Parser(ts.Language(func()))
        _PARSER_CACHE[grammar] = parser
        return parser
    except Exception as exc:
        logger.warning("Cannot create tree-sitter parser for %s: %s", grammar, exc)
        return None


def _grammar_for(file_path: str, language: str) -> str:
    if language == "typescript" and file_path.lower().endswith(".tsx"):
        return "tsx"
    return language


# ---------------------------------------------------------------------------
# Node tables
# ---------------------------------------------------------------------------

_COMMENT_TYPES = {"comment", "line_comment", "block_comment"}

# node type → entity type, for nodes that start a top-level chunk
_DEFINITIONS: dict[str, dict[str, str]] = {
    "python": {
        "function_definition": "function",
        "class_definition": "class",
    },
    "javascript": {
        "function_declaration": "function",
        "generator_function_declaration": "function",
        "class_declaration": "class",
    },
    "typescript": {
        "function_declaration": "function",
        "generator_function_declaration": "function",
        "function_signature": "function",
        "class_declaration": "class",
        "abstract_class_declaration": "class",
        "interface_declaration": "interface",
        "type_alias_declaration": "type",
        "enum_declaration": "enum",
    },
    "rust": {
        "function_item": "function",
        "struct_item": "struct",
        "enum_item": "enum",
        "trait_item": "trait",
        "impl_item": "impl",
        "mod_item": "module",
        "type_item": "type",
        "macro_definition": "macro",
    },
    "go": {
        "function_declaration": "function",
        "method_declaration": "method",
        "type_declaration": "type",
    },
    "java": {
        "class_declaration": "class",
        "interface_declaration": "interface",
        "enum_declaration": "enum",
        "record_declaration": "class",
    },
}

# node types that appear as methods inside a container body
_MEMBERS: dict[str, set[str]] = {
    "python": {"function_definition"},
    "javascript": {"method_definition"},
    "typescript": {"method_definition", "method_signature", "abstract_method_signature"},
    "rust": {"function_item", "function_signature_item"},
    "go": set(),
    "java": {"method_declaration", "constructor_declaration"},
}

# entity types whose body is split into per-method chunks
_CONTAINERS = {"class", "interface", "impl", "trait", "enum"}

# wrapper node type → field holding the wrapped definition
_WRAPPERS = {
    "decorated_definition": "definition",
    "export_statement": "declaration",
}

_IMPORT_TYPES = {
    "import_statement",
    "import_from_statement",
    "future_import_statement",
    "use_declaration",
    "import_declaration",
}

_FUNCTION_VALUES = {"arrow_function", "function_expression", "function", "generator_function"}


# ---------------------------------------------------------------------------
# Node text helpers
# ---------------------------------------------------------------------------

def _text(node) -> str:
    """Decode a tree-sitter Node's text as UTF-8."""
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="replace") if node.text else ""


def _extract_docstring(def_node) -> Optional[str]:
    """
    Return the docstring of a Python function/class node, or None.

    Only the first statement of the body is examined.
    """
    body = def_node.child_by_field_name("body")
    if body is None or body.type != "block":
        return None
    for stmt in body.named_children:
        if stmt.type != "expression_statement":
            return None
        for sub in stmt.named_children:
            if sub.type in ("string", "concatenated_string"):
                raw = _text(sub)
                for q in ('"""', "'''", '"', "'"):
                    if raw.startswith(q) and raw.endswith(q) and len(raw) >= 2 * len(q):
                        return raw[len(q):-len(q)].strip()
                return raw.strip()
        return None
    return None


_COMMENT_MARKERS = re.compile(r"^\s*(?:/\*\*?|\*/|\*|//+|#+)\s?")


def _comment_text(comments: list) -> Optional[str]:
    lines: list[str] = []
    for c in comments:
        for line in _text(c).splitlines():
            line = _COMMENT_MARKERS.sub("", line).rstrip()
            if line.endswith("*/"):
                line = line[:-2].rstrip()
            if line:
                lines.append(line)
    return "\n".join(lines) or None


def _signature(node) -> str:
    """Text of *node* up to its body, whitespace collapsed."""
    raw = node.text or b""
    body = node.child_by_field_name("body")
    if body is not None and body.start_byte > node.start_byte:
        raw = raw[: body.start_byte - node.start_byte]
    else:
        raw = raw.split(b"\n", 1)[0]
    sig = " ".join(raw.decode("utf-8", errors="replace").split())
    sig = sig.rstrip(":{ ").strip()
    if len(sig) > MAX_SIGNATURE_LENGTH:
        sig = sig[: MAX_SIGNATURE_LENGTH - 3] + "..."
    return sig


def _definition_name(node) -> str:
    name_node = node.child_by_field_name("name")
    if name_node is None and node.type == "impl_item":
        name_node = node.child_by_field_name("type")
    if name_node is None and node.type == "type_declaration":
        for child in node.named_children:
            if child.type in ("type_spec", "type_alias"):
                name_node = child.child_by_field_name("name")
                break
    return _text(name_node)


# ---------------------------------------------------------------------------
# Import parsing
# ---------------------------------------------------------------------------

_PY_IMPORT_RE = re.compile(r"^\s*import\s+(.+)$", re.DOTALL)
_PY_FROM_RE = re.compile(r"^\s*from\s+(\S+)\s+import\s+(.+)$", re.DOTALL)
_JS_SOURCE_RE = re.compile(r"""from\s+['"]([^'"]+)['"]""")
_JS_NAMESPACE_RE = re.compile(r"\*\s+as\s+([A-Za-z_$][\w$]*)")
_JS_NAMED_RE = re.compile(r"\{([^}]*)\}")
_JS_DEFAULT_RE = re.compile(r"^\s*(?:type\s+)?([A-Za-z_$][\w$]*)\s*(?:,|$)")
_GO_SPEC_RE = re.compile(r'(?:([\w.]+)\s+)?"([^"]+)"')
_JAVA_IMPORT_RE = re.compile(r"import\s+(?:static\s+)?([\w.]+?)(\.\*)?\s*;")
_AS_RE = re.compile(r"^(.+?)\s+as\s+(\S+)$")


def _split_alias(item: str) -> tuple[str, str]:
    m = _AS_RE.match(item.strip())
    if m:
        return m.group(1).strip(), m.group(2).strip()
    return item.strip(), item.strip()


def _parse_python_import(text: str) -> list[ImportInfo]:
    text = re.sub(r"#.*", "", text)
    m = _PY_FROM_RE.match(text)
    if m:
        module, names = m.group(1), m.group(2)
        names = names.replace("(", " ").replace(")", " ").replace("\\", " ")
        result = []
        for item in names.split(","):
            if not item.strip():
                continue
            if item.strip() == "*":
                result.append(ImportInfo(name=module, source=module, is_namespace=True))
                continue
            orig, alias = _split_alias(item)
            result.append(ImportInfo(name=alias, source=module))
        return result
    m = _PY_IMPORT_RE.match(text)
    if not m:
        return []
    result = []
    for item in m.group(1).split(","):
        if not item.strip():
            continue
        orig, alias = _split_alias(item)
        result.append(ImportInfo(name=alias, source=orig, is_namespace=True))
    return result


def _parse_js_import(text: str) -> list[ImportInfo]:
    m = _JS_SOURCE_RE.search(text)
    if not m:
        return []       # side-effect import
    source = m.group(1)
    clause = text[: m.start()]
    clause = re.sub(r"^\s*import\s+(?:type\s+)?", "", clause)
    result = []
    ns = _JS_NAMESPACE_RE.search(clause)
    if ns:
        result.append(ImportInfo(name=ns.group(1), source=source, is_namespace=True))
        clause = clause[: ns.start()] + clause[ns.end():]
    named = _JS_NAMED_RE.search(clause)
    if named:
        for item in named.group(1).split(","):
            item = re.sub(r"^\s*type\s+", "", item)
            if not item.strip():
                continue
            orig, alias = _split_alias(item)
            result.append(ImportInfo(name=alias, source=source))
        clause = clause[: named.start()] + clause[named.end():]
    default = _JS_DEFAULT_RE.match(clause)
    if default:
        result.insert(0, ImportInfo(name=default.group(1), source=source, is_default=True))
    return result


def _parse_rust_use(text: str) -> list[ImportInfo]:
    text = re.sub(r"^\s*(?:pub(?:\([^)]*\))?\s+)?use\s+", "", text).strip().rstrip(";").strip()
    if "{" in text:
        prefix, _, rest = text.partition("{")
        prefix = prefix.rstrip(":").strip()
        items = rest.replace("{", ",").replace("}", ",").split(",")
    else:
        prefix, _, last = text.rpartition("::")
        items = [last]
    base = prefix.rsplit("::", 1)[-1] if prefix else ""
    result = []
    for item in items:
        item = item.strip()
        if not item:
            continue
        if item == "*":
            result.append(ImportInfo(name=base, source=prefix, is_namespace=True))
            continue
        orig, alias = _split_alias(item)
        if orig == "self":
            result.append(ImportInfo(name=base if alias == "self" else alias,
                                     source=prefix, is_namespace=True))
            continue
        name = alias.rsplit("::", 1)[-1]
        result.append(ImportInfo(name=name, source=prefix or orig))
    return result


def _parse_go_import(text: str) -> list[ImportInfo]:
    result = []
    for alias, path in _GO_SPEC_RE.findall(text):
        if alias == "_":
            continue
        if alias == ".":
            result.append(ImportInfo(name=path.rsplit("/", 1)[-1], source=path, is_namespace=True))
            continue
        result.append(ImportInfo(name=alias or path.rsplit("/", 1)[-1], source=path, is_namespace=True))
    return result


def _parse_java_import(text: str) -> list[ImportInfo]:
    m = _JAVA_IMPORT_RE.search(text)
    if not m:
        return []
    path, star = m.group(1), m.group(2)
    if star:
        return [ImportInfo(name=path.rsplit(".", 1)[-1], source=path, is_namespace=True)]
    source, _, name = path.rpartition(".")
    return [ImportInfo(name=name, source=source)]


_IMPORT_PARSERS = {
    "python": _parse_python_import,
    "javascript": _parse_js_import,
    "typescript": _parse_js_import,
    "rust": _parse_rust_use,
    "go": _parse_go_import,
    "java": _parse_java_import,
}


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------

@dataclass
class _Definition:
    """A definition node with the rows it owns (leading comments included)."""
    node: object
    name: str
    type: str
    signature: str
    docstring: Optional[str]
    start_row: int
    end_row: int


@dataclass
class _Other:
    start_row: int
    end_row: int


@dataclass
class _Segment:
    start_row: int
    end_row: int
    definition: Optional[_Definition] = None
    scope: list[ScopeEntry] = field(default_factory=list)
    siblings: list[SiblingInfo] = field(default_factory=list)


def _describe(node, kinds: dict[str, str]):
    """Return ``(definition_node, name, type)`` if *node* starts a definition."""
    inner = node
    while inner is not None and inner.type in _WRAPPERS:
        inner = inner.child_by_field_name(_WRAPPERS[inner.type])
    if inner is None:
        return None
    kind = kinds.get(inner.type)
    if kind is None:
        if inner.type in ("lexical_declaration", "variable_declaration"):
            for decl in inner.named_children:
                if decl.type != "variable_declarator":
                    continue
                value = decl.child_by_field_name("value")
                if value is not None and value.type in _FUNCTION_VALUES:
                    name = _text(decl.child_by_field_name("name"))
                    if name:
                        return inner, name, "function"
        return None
    name = _definition_name(inner)
    if not name:
        return None
    return inner, name, kind


def _collect(children, kinds: dict[str, str], language: str) -> list:
    """
    Group *children* into ``_Definition`` and ``_Other`` items in source order.

    Comments immediately above a definition (no blank line between) are
    attached to it; any other comment joins the surrounding ``_Other`` run.
    """
    items: list = []
    pending: list = []

    def extend_other(start: int, end: int) -> None:
        if items and isinstance(items[-1], _Other):
            items[-1].end_row = max(items[-1].end_row, end)
        else:
            items.append(_Other(start, end))

    for child in children:
        if not child.is_named:
            continue
        if child.type in _COMMENT_TYPES:
            pending.append(child)
            continue
        described = _describe(child, kinds)
        if described is None:
            start = pending[0].start_point[0] if pending else child.start_point[0]
            pending = []
            extend_other(start, child.end_point[0])
            continue

        inner, name, kind = described
        start = child.start_point[0]
        attached: list = []
        next_row = start
        for comment in reversed(pending):
            if comment.end_point[0] < next_row - 1:
                break
            attached.insert(0, comment)
            next_row = comment.start_point[0]
        detached = pending[: len(pending) - len(attached)]
        if detached:
            extend_other(detached[0].start_point[0], detached[-1].end_point[0])
        pending = []

        docstring = _extract_docstring(inner) if language == "python" else None
        if docstring is None and attached:
            docstring = _comment_text(attached)
        items.append(_Definition(
            node=inner,
            name=name,
            type=kind,
            signature=_signature(inner),
            docstring=docstring,
            start_row=attached[0].start_point[0] if attached else start,
            end_row=child.end_point[0],
        ))

    if pending:
        extend_other(pending[0].start_point[0], pending[-1].end_point[0])
    return items


def _siblings(defs: list[_Definition], index: int) -> list[SiblingInfo]:
    result = []
    for distance in range(1, SIBLING_WINDOW + 1):
        if index - distance >= 0:
            d = defs[index - distance]
            result.append(SiblingInfo(d.name, d.type, "before", distance))
    for distance in range(1, SIBLING_WINDOW + 1):
        if index + distance < len(defs):
            d = defs[index + distance]
            result.append(SiblingInfo(d.name, d.type, "after", distance))
    return result


def _segments(root, language: str) -> list[_Segment]:
    items = _collect(root.children, _DEFINITIONS[language], language)
    top_defs = [i for i in items if isinstance(i, _Definition)]
    member_kinds = {t: "method" for t in _MEMBERS[language]}

    segments: list[_Segment] = []
    for item in items:
        if isinstance(item, _Other):
            segments.append(_Segment(item.start_row, item.end_row))
            continue
        siblings = _siblings(top_defs, top_defs.index(item))
        members: list[_Definition] = []
        body = item.node.child_by_field_name("body")
        if item.type in _CONTAINERS and body is not None and member_kinds:
            members = [
                m for m in _collect(body.children, member_kinds, language)
                if isinstance(m, _Definition)
            ]
        if not members or members[0].start_row <= item.start_row:
            segments.append(_Segment(item.start_row, item.end_row, item, [], siblings))
            continue

        # header: class line(s) up to the first method
        segments.append(_Segment(
            item.start_row, members[0].start_row - 1, item, [], siblings,
        ))
        scope = [ScopeEntry(item.name, item.type, item.signature)]
        for idx, member in enumerate(members):
            end = members[idx + 1].start_row - 1 if idx + 1 < len(members) else item.end_row
            segments.append(_Segment(
                member.start_row, max(end, member.end_row), member,
                list(scope), _siblings(members, idx),
            ))
    return segments


def _split_lines(lines: list[str], start: int, end: int, max_size: int,
                 overlap: int) -> list[tuple[int, int]]:
    """Split rows ``start..end`` into windows of at most *max_size* characters."""
    pieces: list[tuple[int, int]] = []
    row = start
    while row <= end:
        size = 0
        stop = row
        while stop <= end:
            size += len(lines[stop]) + 1
            if size > max_size and stop > row:
                stop -= 1
                break
            stop += 1
        stop = min(stop, end)
        pieces.append((row, stop))
        if stop >= end:
            break
        next_row = stop + 1 - overlap
        row = next_row if next_row > row else stop + 1
    return pieces


# ---------------------------------------------------------------------------
# Contextualized rendering
# ---------------------------------------------------------------------------

def _contextualize(file_path: str, text: str, ctx: AstContext) -> str:
    header = [f"# {file_path}"]
    if ctx.scope:
        header.append("# Scope: " + " > ".join(s.name for s in ctx.scope))
    if ctx.entities:
        header.append("# Defines: " + ", ".join(e.signature or e.name for e in ctx.entities))
    if ctx.imports:
        header.append("# Uses: " + ", ".join(i.name for i in ctx.imports))
    before = [s.name for s in ctx.siblings if s.position == "before"]
    after = [s.name for s in ctx.siblings if s.position == "after"]
    if before:
        header.append("# Preceded by: " + ", ".join(before))
    if after:
        header.append("# Followed by: " + ", ".join(after))
    return "\n".join(header) + "\n\n" + text


def _imports_used(imports: list[ImportInfo], text: str) -> list[ImportInfo]:
    used = []
    for imp in imports:
        if imp.name and re.search(r"(?<![\w$])" + re.escape(imp.name) + r"(?![\w$])", text):
            used.append(imp)
    return used


# ---------------------------------------------------------------------------
# Public chunker
# ---------------------------------------------------------------------------

class TreeSitterAstChunker(AstChunker):
    """:class:`AstChunker` backed by the tree-sitter grammar packages."""

    def chunk(self, file_path: str, content: str, options: AstChunkOptions) -> list[AstChunk]:
        language = detect_language(file_path)
        if language is None:
            raise ValueError(f"No grammar for {file_path}")
        if not content.strip():
            return []

        grammar = _grammar_for(file_path, language)
        source_bytes = content.encode("utf-8")
        with _PARSER_LOCK:
            parser = _get_ts_parser(grammar)
            if parser is None:
                raise RuntimeError(f"tree-sitter grammar for {grammar} is not installed")
            tree = parser.parse(source_bytes)

        root = tree.root_node
        if root.has_error:
            logger.debug("Syntax errors in %s; chunking the recoverable tree", file_path)

        imports = self._imports(root, language)
        lines = content.split("\n")
        chunks: list[AstChunk] = []
        for segment in _segments(root, language):
            chunks.extend(self._render(file_path, lines, segment, imports, options))
        logger.debug("tree-sitter produced %d chunks for %s", len(chunks), file_path)
        return chunks

    @staticmethod
    def _imports(root, language: str) -> list[ImportInfo]:
        parse = _IMPORT_PARSERS[language]
        seen: set[tuple[str, str]] = set()
        result: list[ImportInfo] = []
        for child in root.named_children:
            if child.type not in _IMPORT_TYPES:
                continue
            for imp in parse(_text(child)):
                key = (imp.name, imp.source)
                if key not in seen:
                    seen.add(key)
                    result.append(imp)
        return result

    def _render(self, file_path: str, lines: list[str], segment: _Segment,
                imports: list[ImportInfo], options: AstChunkOptions) -> list[AstChunk]:
        start, end = segment.start_row, min(segment.end_row, len(lines) - 1)
        while start <= end and not lines[start].strip():
            start += 1
        while end >= start and not lines[end].strip():
            end -= 1
        if start > end:
            return []

        whole = "\n".join(lines[start:end + 1])
        if len(whole) <= options.max_chunk_size:
            pieces = [(start, end)]
        else:
            pieces = _split_lines(lines, start, end, options.max_chunk_size, options.overlap_lines)
        partial = len(pieces) > 1

        chunks = []
        for lo, hi in pieces:
            text = "\n".join(lines[lo:hi + 1])
            ctx = self._context(segment, text, imports, options.context_mode, partial)
            rendered = text if options.context_mode == "none" else _contextualize(file_path, text, ctx)
            chunks.append(AstChunk(
                text=text,
                contextualized_text=rendered,
                line_range=(lo, hi),
                context=ctx,
            ))
        return chunks

    @staticmethod
    def _context(segment: _Segment, text: str, imports: list[ImportInfo],
                 mode: str, partial: bool) -> AstContext:
        if mode == "none":
            return AstContext()
        entities = []
        d = segment.definition
        if d is not None:
            entities.append(EntityInfo(
                name=d.name,
                type=d.type,
                signature=d.signature,
                docstring=d.docstring,
                line_range=(d.node.start_point[0], d.node.end_point[0]),
                is_partial=partial,
            ))
        ctx = AstContext(scope=list(segment.scope), entities=entities)
        if mode == "full":
            ctx.siblings = list(segment.siblings)
            ctx.imports = _imports_used(imports, text)
        return ctx
