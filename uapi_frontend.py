import itertools
import logging
import os
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from clang import cindex
from clang.cindex import Cursor, CursorKind, TypeKind

from uapi_tree import (
    DeclarationNode,
    DeclarationTree,
    NodeKind,
    SourceLocation,
    Token,
    TokenKind,
    TypeCategory,
    TypeInfo,
)

logger = logging.getLogger(__name__)

TARGET_FLAGS: Dict[str, str] = {
    "m32": "-m32",
    "m64": "-m64",
    "mx32": "-mx32",
}


class FatalDiagnosticError(RuntimeError):
    pass


def try_set_libclang() -> None:
    lib_file = os.environ.get("LIBCLANG_FILE")
    lib_path = os.environ.get("LIBCLANG_PATH")
    try:
        if lib_file and os.path.exists(lib_file):
            cindex.Config.set_library_file(lib_file)
            return
        if lib_path and os.path.isdir(lib_path):
            cindex.Config.set_library_path(lib_path)
            return
    except Exception as ex:
        logger.debug("libclang location from environment ignored: %s", ex)

    candidates = [
        r"C:\Program Files\LLVM\bin\libclang.dll",
        r"C:\Program Files (x86)\LLVM\bin\libclang.dll",
    ]
    for p in candidates:
        if os.path.exists(p):
            try:
                cindex.Config.set_library_file(p)
                return
            except Exception as ex:
                logger.debug("libclang candidate %s ignored: %s", p, ex)


def build_clang_args(include_path: str, target: str = "m32", extra: Sequence[str] = ()) -> List[str]:
    if target not in TARGET_FLAGS:
        raise ValueError(f"unknown build target {target!r}")
    return [f"-I{include_path}", TARGET_FLAGS[target]] + list(extra)


def collect_virtual_files(virtual_base: str, physical_base: str) -> List[Tuple[str, str]]:
    """Build unsaved-file overrides for every header under virtual_base.

    Each override is keyed by the path of the header it replaces under
    physical_base.
    """
    if not virtual_base or not os.path.isdir(virtual_base):
        return []

    virtual_base = os.path.abspath(virtual_base)
    files: List[Tuple[str, str]] = []
    for root, _, names in os.walk(virtual_base):
        for n in sorted(names):
            if not n.lower().endswith(".h"):
                continue
            path = os.path.join(root, n)
            rel = os.path.relpath(path, virtual_base)
            with open(path, "r", encoding="utf-8", errors="ignore") as f:
                files.append((os.path.join(physical_base, rel), f.read()))

    files.sort(key=lambda x: x[0])
    logger.debug("collected %d virtual header files from %s", len(files), virtual_base)
    return files


def parse_translation_unit(
    input_c: str,
    clang_args: Sequence[str],
    unsaved_files: Optional[Sequence[Tuple[str, str]]] = None,
) -> cindex.TranslationUnit:
    idx = cindex.Index.create()
    tu = idx.parse(
        input_c,
        args=list(clang_args),
        unsaved_files=list(unsaved_files) if unsaved_files else None,
        options=cindex.TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD,
    )

    hasfatal = False
    for diag in tu.diagnostics:
        loc = diag.location
        where = f"{loc.file}:{loc.line}:{loc.column}" if loc.file else "<unknown>"
        if diag.severity >= cindex.Diagnostic.Fatal:
            hasfatal = True
        if diag.severity >= cindex.Diagnostic.Error:
            logger.error("%s: %s", where, diag.spelling)
        else:
            logger.warning("%s: %s", where, diag.spelling)

    if hasfatal:
        raise FatalDiagnosticError(f"fatal error occurred processing input translation unit {input_c}")
    return tu


_KIND_MAP: Dict[CursorKind, NodeKind] = {
    CursorKind.TRANSLATION_UNIT: NodeKind.TRANSLATION_UNIT,
    CursorKind.ENUM_DECL: NodeKind.ENUM_DECL,
    CursorKind.ENUM_CONSTANT_DECL: NodeKind.ENUM_CONSTANT_DECL,
    CursorKind.STRUCT_DECL: NodeKind.STRUCT_DECL,
    CursorKind.UNION_DECL: NodeKind.UNION_DECL,
    CursorKind.TYPEDEF_DECL: NodeKind.TYPEDEF_DECL,
    CursorKind.FIELD_DECL: NodeKind.FIELD_DECL,
    CursorKind.FUNCTION_DECL: NodeKind.FUNCTION_DECL,
    CursorKind.VAR_DECL: NodeKind.VAR_DECL,
    CursorKind.MACRO_DEFINITION: NodeKind.MACRO_DEFINITION,
    CursorKind.MACRO_INSTANTIATION: NodeKind.MACRO_EXPANSION,
    CursorKind.INCLUSION_DIRECTIVE: NodeKind.INCLUSION_DIRECTIVE,
    CursorKind.TYPE_REF: NodeKind.TYPE_REF,
}

_TOKEN_KINDS: Dict[str, TokenKind] = {
    "PUNCTUATION": TokenKind.PUNCTUATION,
    "KEYWORD": TokenKind.KEYWORD,
    "IDENTIFIER": TokenKind.IDENTIFIER,
    "LITERAL": TokenKind.LITERAL,
    "COMMENT": TokenKind.COMMENT,
}

K_ELABORATED = getattr(TypeKind, "ELABORATED", None)

_TYPE_CATEGORIES: Dict[TypeKind, TypeCategory] = {
    TypeKind.POINTER: TypeCategory.POINTER,
    TypeKind.CONSTANTARRAY: TypeCategory.CONSTANT_ARRAY,
    TypeKind.INCOMPLETEARRAY: TypeCategory.INCOMPLETE_ARRAY,
    TypeKind.RECORD: TypeCategory.RECORD,
    TypeKind.ENUM: TypeCategory.ENUM,
    TypeKind.TYPEDEF: TypeCategory.TYPEDEF,
    TypeKind.FUNCTIONPROTO: TypeCategory.FUNCTION,
    TypeKind.FUNCTIONNOPROTO: TypeCategory.FUNCTION,
}

_DECLARED_CATEGORIES = {TypeCategory.RECORD, TypeCategory.ENUM, TypeCategory.TYPEDEF}

_TYPED_KINDS = {
    NodeKind.ENUM_DECL,
    NodeKind.STRUCT_DECL,
    NodeKind.UNION_DECL,
    NodeKind.TYPEDEF_DECL,
    NodeKind.FIELD_DECL,
    NodeKind.FUNCTION_DECL,
    NodeKind.VAR_DECL,
    NodeKind.TYPE_REF,
}


def node_kind(kind: CursorKind) -> NodeKind:
    nk = _KIND_MAP.get(kind)
    if nk is not None:
        return nk
    if kind.is_expression():
        return NodeKind.EXPRESSION
    return NodeKind.OTHER


_TAG_CURSOR_KINDS = {CursorKind.STRUCT_DECL, CursorKind.UNION_DECL, CursorKind.ENUM_DECL}


def is_anonymous_tag(cur: Cursor) -> bool:
    """True for a struct, union or enum declared without a tag name.

    libclang 16+ spells an anonymous record that names a typedef after the
    typedef and reports it as not anonymous, so the tag is looked up in the
    tokens between the keyword and the body.
    """
    if cur.is_anonymous():
        return True
    name = cur.spelling or ""
    for t in itertools.islice(cur.get_tokens(), 1, None):
        if t.spelling == name:
            return False
        if t.spelling in ("{", ";"):
            return True
    return False


def cursor_name(cur: Cursor) -> str:
    # Older libclang spells anonymous records "struct (unnamed at x.h:1:9)"
    s = (cur.spelling or "").strip()
    if "(" in s:
        return ""
    if s and cur.kind in _TAG_CURSOR_KINDS and is_anonymous_tag(cur):
        return ""
    return s


def tok_start(t: cindex.Token) -> int:
    return t.extent.start.offset


def tok_end(t: cindex.Token) -> int:
    return t.extent.end.offset


def is_macro_function_like(cur: Cursor) -> bool:
    # "#define F(x)" has no space between the name and "(", "#define F (x)" does
    toks = list(itertools.islice(cur.get_tokens(), 2))
    if len(toks) < 2 or toks[1].spelling != "(":
        return False
    return tok_start(toks[1]) == tok_end(toks[0])


def convert_location(cur: Cursor) -> SourceLocation:
    loc = cur.location
    if not loc.file:
        return SourceLocation()
    return SourceLocation(file=str(loc.file), line=loc.line, column=loc.column, offset=loc.offset)


def cursor_tokens(cur: Cursor) -> Iterator[Token]:
    for t in cur.get_tokens():
        kind = _TOKEN_KINDS.get(getattr(t.kind, "name", ""), TokenKind.PUNCTUATION)
        yield Token(t.spelling, kind)


def _layout_value(value: int) -> Optional[int]:
    # libclang reports layout errors as negative values
    return value if value >= 0 else None


class TreeBuilder:
    """Converts a libclang cursor tree into a DeclarationTree.

    Token sources stay bound to the cursors, so the translation unit must
    outlive any use of the tree's extent_tokens().
    """

    def __init__(self, tu: cindex.TranslationUnit) -> None:
        self.tu = tu
        self.tree = DeclarationTree()
        self._handles: Dict[Tuple[int, str], int] = {}
        self._visited: List[Tuple[Cursor, DeclarationNode]] = []

    @staticmethod
    def _key(cur: Cursor) -> Tuple[int, str]:
        return (cur.hash, cur.spelling or "")

    def build(self) -> DeclarationTree:
        self._visit(self.tu.cursor, None)
        for cur, node in self._visited:
            self._fill(cur, node)
        for node in list(self.tree.nodes):
            if node.kind.is_record:
                self._mark_anonymous_members(node)
        self._sort_top_level()
        logger.debug("converted %d cursors", len(self.tree.nodes))
        return self.tree

    def _inclusion_sites(self) -> Dict[str, Tuple[str, int]]:
        sites: Dict[str, Tuple[str, int]] = {}
        for inc in self.tu.get_includes():
            # A guarded header only contributes at its first inclusion
            sites.setdefault(str(inc.include), (str(inc.source), inc.location.offset))
        return sites

    def _sort_top_level(self) -> None:
        """Interleave preprocessing records with declarations in source order.

        libclang lists the preprocessing record before the declarations. The
        position of a location is the chain of #include offsets leading to its
        file followed by its own offset, so included headers sort where they
        were included. Compiler-synthesized nodes stay first.
        """
        sites = self._inclusion_sites()

        def position(node: DeclarationNode) -> Tuple[int, ...]:
            loc = node.location
            if loc.file is None:
                return ()
            chain = [loc.offset]
            f, seen = loc.file, set()
            while f in sites and f not in seen:
                seen.add(f)
                f, offset = sites[f]
                chain.append(offset)
            return tuple(reversed(chain))

        self.tree.root.children.sort(key=position)

    def _visit(self, cur: Cursor, parent: Optional[DeclarationNode]) -> None:
        # Declarations are reported again under the field or typedef that
        # defines them inline; the first visit owns the node
        if self._key(cur) in self._handles:
            return

        node = DeclarationNode(kind=node_kind(cur.kind), name=cursor_name(cur), location=convert_location(cur))
        if node.kind == NodeKind.TRANSLATION_UNIT:
            node.name = ""
        self.tree.add(node, parent)
        self._handles[self._key(cur)] = node.index
        self._visited.append((cur, node))
        for ch in cur.get_children():
            self._visit(ch, node)

    def handle_for(self, cur: Optional[Cursor]) -> Optional[int]:
        if cur is None or cur.kind == CursorKind.NO_DECL_FOUND:
            return None
        if cur.kind == CursorKind.TRANSLATION_UNIT:
            return self.tree.root.index

        h = self._handles.get(self._key(cur))
        if h is not None:
            return h

        # Declarations outside the visited tree are kept as unparented nodes
        node = DeclarationNode(kind=node_kind(cur.kind), name=cursor_name(cur), location=convert_location(cur))
        self.tree.add(node)
        self._handles[self._key(cur)] = node.index
        node.semantic_parent = self.handle_for(cur.semantic_parent)
        if node.kind == NodeKind.ENUM_DECL:
            node.enum_integer_type = cur.enum_type.spelling
        return node.index

    def convert_type(self, t: cindex.Type) -> TypeInfo:
        is_const = t.is_const_qualified()
        while K_ELABORATED is not None and t.kind == K_ELABORATED:
            t = t.get_named_type()

        cat = _TYPE_CATEGORIES.get(t.kind, TypeCategory.BUILTIN)
        info = TypeInfo(
            kind=cat,
            spelling=t.spelling,
            size=_layout_value(t.get_size()),
            alignment=_layout_value(t.get_align()),
            is_const=is_const,
        )

        if cat == TypeCategory.POINTER:
            info.pointee = self.convert_type(t.get_pointee())
        elif cat == TypeCategory.CONSTANT_ARRAY:
            info.element = self.convert_type(t.element_type)
            info.array_size = t.element_count
        elif cat == TypeCategory.INCOMPLETE_ARRAY:
            info.element = self.convert_type(t.element_type)
        elif cat in _DECLARED_CATEGORIES:
            info.declaration = self.handle_for(t.get_declaration())
        return info

    def _fill(self, cur: Cursor, node: DeclarationNode) -> None:
        kind = node.kind

        if kind.is_declaration or kind in (NodeKind.FIELD_DECL, NodeKind.ENUM_CONSTANT_DECL):
            node.semantic_parent = self.handle_for(cur.semantic_parent)

        if kind in _TYPED_KINDS:
            node.type = self.convert_type(cur.type)
            # A forward declaration is incomplete even when the record is
            # defined later in the translation unit
            if kind.is_record and not cur.is_definition():
                node.type.size = None

        if kind == NodeKind.TYPEDEF_DECL:
            node.underlying_type = self.convert_type(cur.underlying_typedef_type)
        elif kind == NodeKind.FIELD_DECL:
            if cur.is_bitfield():
                node.bit_width = cur.get_bitfield_width()
        elif kind == NodeKind.ENUM_CONSTANT_DECL:
            node.enum_value = cur.enum_value
        elif kind == NodeKind.ENUM_DECL:
            node.enum_integer_type = cur.enum_type.spelling
        elif kind in (NodeKind.MACRO_DEFINITION, NodeKind.EXPRESSION):
            node.tokens = lambda c=cur: cursor_tokens(c)
            if kind == NodeKind.MACRO_DEFINITION and not node.is_synthesized:
                node.function_like = is_macro_function_like(cur)

    def _mark_anonymous_members(self, node: DeclarationNode) -> None:
        referenced = set()
        for ch in node.children:
            if ch.kind != NodeKind.FIELD_DECL or ch.type is None:
                continue
            t = ch.type.element if (ch.type.is_array and ch.type.element is not None) else ch.type
            if t.declaration is not None:
                referenced.add(t.declaration)

        for ch in node.children:
            if ch.kind.is_record and ch.is_anonymous and ch.index not in referenced:
                ch.anonymous_member = True


def build_tree(tu: cindex.TranslationUnit) -> DeclarationTree:
    return TreeBuilder(tu).build()
