import logging
import os
import re
from typing import Dict, Iterable, List, Optional, Tuple

from uapi_tree import DeclarationNode, DeclarationTree, NodeKind, TokenKind, TypeCategory, TypeInfo

logger = logging.getLogger(__name__)

MACRO_PREFIX = "UAPI_"
DECL_PREFIX = "uapi_"

_TAG_KEYWORDS: Dict[NodeKind, str] = {
    NodeKind.STRUCT_DECL: "struct ",
    NodeKind.UNION_DECL: "union ",
    NodeKind.ENUM_DECL: "enum ",
}

_ASSERTED_KINDS = {NodeKind.STRUCT_DECL, NodeKind.UNION_DECL, NodeKind.TYPEDEF_DECL}

_RE_POINTER_DECLARATOR = re.compile(r"\(\s*\*+")
_RE_NON_IDENT = re.compile(r"[^A-Za-z0-9]")
_RE_UNNAMED = re.compile(r"\((?:unnamed|anonymous)[^)]*\)")


class EmitError(Exception):
    def __init__(self, node: DeclarationNode, msg: str) -> None:
        super().__init__(f"{node.location}: {msg}")
        self.node = node
        self.msg = msg


class UnexpectedKindError(EmitError):
    pass


class AnonymousTypeError(EmitError):
    pass


class Out:
    def __init__(self) -> None:
        self.lines: List[str] = []
        self.ind: int = 0
        self._cur: Optional[str] = None

    def put(self, s: str) -> None:
        if self._cur is None:
            self._cur = "    " * self.ind
        self._cur += s

    def w(self, s: str = "") -> None:
        if self._cur is not None:
            self.lines.append(self._cur + s)
            self._cur = None
        elif s:
            self.lines.append(("    " * self.ind) + s)
        else:
            self.lines.append("")

    def get(self) -> str:
        if self._cur is not None:
            self.w()
        return "\n".join(self.lines) + "\n"


def _require(o: Optional[Out], node: Optional[DeclarationNode]) -> None:
    if o is None:
        raise ValueError("output writer is required")
    if node is None:
        raise ValueError("declaration node is required")


def _is_anonymous_record(decl: Optional[DeclarationNode]) -> bool:
    return decl is not None and decl.kind.is_record and decl.is_anonymous


def _has_declarator_text(t: TypeInfo) -> bool:
    # Function and pointer-to-array spellings need the name inside them
    return "(" in _RE_UNNAMED.sub("", t.spelling)


def _unwrap_arrays(t: TypeInfo) -> Tuple[TypeInfo, str]:
    suffix = ""
    while t.is_array and t.element is not None:
        suffix += f"[{t.array_size}]" if t.kind == TypeCategory.CONSTANT_ARRAY else "[]"
        t = t.element
    return t, suffix


def _insert_declarator(spelling: str, declarator: str) -> str:
    m = _RE_POINTER_DECLARATOR.search(spelling)
    if m is not None:
        return f"{spelling[:m.end()]} {declarator}{spelling[m.end():]}"
    i = spelling.find("(")
    if i >= 0:
        return f"{spelling[:i].rstrip()} {declarator}{spelling[i:]}"
    return f"{spelling} {declarator}"


# NAME MAPPINGS


def _add_secondary_name(names: Dict[str, str], name: str) -> None:
    if name in names:
        logger.debug("duplicate macro/enumeration constant name %s, last occurrence wins", name)
    names[name] = MACRO_PREFIX + name


def build_name_mappings(tree: DeclarationTree) -> Dict[str, str]:
    """Map every renamed identifier to its new spelling.

    Macro definitions and enumeration constants map to UAPI_<name>;
    declarations map to uapi_<name> and take precedence over both.
    """
    if tree is None:
        raise ValueError("declaration tree is required")

    root = tree.root
    names: Dict[str, str] = {}

    for macro in root.children_matching(
        lambda n: n.kind == NodeKind.MACRO_DEFINITION and not n.is_synthesized
    ):
        if macro.name:
            _add_secondary_name(names, macro.name)

    for enum in root.children_matching(lambda n: n.kind == NodeKind.ENUM_DECL and not n.is_synthesized):
        for const in enum.children_matching(lambda n: n.kind == NodeKind.ENUM_CONSTANT_DECL):
            if const.name:
                _add_secondary_name(names, const.name)

    for decl in root.children_matching(lambda n: n.kind.is_declaration and not n.is_synthesized):
        if decl.name:
            names[decl.name] = DECL_PREFIX + decl.name

    logger.debug("built %d name mappings", len(names))
    return names


# TYPES


def resolve_type(tree: DeclarationTree, t: TypeInfo, owner: Optional[DeclarationNode] = None) -> str:
    if t is None:
        raise ValueError("type is required")

    if t.kind == TypeCategory.POINTER and t.pointee is not None:
        star = "* const" if t.is_const else "*"
        if t.pointee.is_array:
            elem, dims = _unwrap_arrays(t.pointee)
            return f"{resolve_type(tree, elem, owner)} ({star}){dims}"
        return f"{resolve_type(tree, t.pointee, owner)} {star}"

    if t.is_array and t.element is not None:
        elem, dims = _unwrap_arrays(t)
        return f"{resolve_type(tree, elem, owner)} {dims}"

    decl = tree.declaration_of(t)

    # Built-in types are emitted as written
    if decl is None or decl.is_synthesized:
        return t.spelling

    if decl.is_anonymous:
        if decl.kind == NodeKind.ENUM_DECL and decl.enum_integer_type:
            return ("const " if t.is_const else "") + decl.enum_integer_type
        raise AnonymousTypeError(owner or decl, f"anonymous {decl.kind.value} cannot be referenced by name")

    parts: List[str] = []
    if t.is_const:
        parts.append("const ")
    parts.append(_TAG_KEYWORDS.get(decl.kind, ""))
    if tree.is_global(decl):
        parts.append(DECL_PREFIX)
    parts.append(decl.name)
    return "".join(parts)


# DECLARATIONS


def emit_enum(o: Out, node: DeclarationNode) -> None:
    _require(o, node)
    if node.kind != NodeKind.ENUM_DECL:
        raise UnexpectedKindError(node, "emit_enum: unexpected node kind")

    o.put("enum ")
    if not node.is_anonymous:
        o.put(f"{DECL_PREFIX}{node.name} ")
    o.w("{")
    o.w()

    o.ind += 1
    for ch in node.children:
        if ch.kind == NodeKind.ENUM_CONSTANT_DECL:
            emit_enum_constant(o, ch)
    o.ind -= 1

    o.w()
    o.w("};")


def emit_enum_constant(o: Out, node: DeclarationNode) -> None:
    _require(o, node)
    if node.kind != NodeKind.ENUM_CONSTANT_DECL:
        raise UnexpectedKindError(node, "emit_enum_constant: unexpected node kind")

    o.w(f"{MACRO_PREFIX}{node.name} = {node.enum_value},")


def emit_record(o: Out, tree: DeclarationTree, node: DeclarationNode) -> None:
    """Emit a struct or union declaration.

    Anonymous records can only appear inside another declaration; they are
    left open after the closing brace so the caller can finish the declarator.
    """
    _require(o, node)
    if not node.kind.is_record:
        raise UnexpectedKindError(node, "emit_record: unexpected node kind")

    keyword = _TAG_KEYWORDS[node.kind]
    anonymous = node.is_anonymous

    if not anonymous and (node.type is None or node.type.size is None):
        o.w(f"{keyword}{node.name};")
        return

    align = node.type.alignment if node.type is not None else None
    packed = (not anonymous) and align is not None
    if packed:
        o.w(f"#pragma pack(push, {align})")

    o.put(keyword)
    if not anonymous:
        o.put(f"{DECL_PREFIX}{node.name} ")
    o.w("{")
    o.w()

    o.ind += 1
    for ch in node.children:
        if ch.kind == NodeKind.FIELD_DECL:
            emit_field(o, tree, ch)
        elif ch.kind.is_record and ch.anonymous_member:
            emit_record(o, tree, ch)
            o.w(";")
    o.ind -= 1

    o.w()

    if anonymous:
        o.put("}")
        return

    o.w("};")
    if packed:
        o.w("#pragma pack(pop)")


def _emit_declarator(o: Out, tree: DeclarationTree, owner: DeclarationNode, t: TypeInfo, name: str) -> None:
    elem, suffix = _unwrap_arrays(t)

    decl = tree.declaration_of(elem)
    if _is_anonymous_record(decl):
        emit_record(o, tree, decl)
        o.put(f" {name}{suffix}")
    elif _has_declarator_text(elem):
        o.put(_insert_declarator(elem.spelling, f"{name}{suffix}"))
    else:
        o.put(f"{resolve_type(tree, elem, owner)} {name}{suffix}")


def emit_typedef(o: Out, tree: DeclarationTree, node: DeclarationNode) -> None:
    _require(o, node)
    if node.kind != NodeKind.TYPEDEF_DECL:
        raise UnexpectedKindError(node, "emit_typedef: unexpected node kind")
    if node.underlying_type is None:
        raise EmitError(node, f"typedef {node.name} has no underlying type")

    o.put("typedef ")
    _emit_declarator(o, tree, node, node.underlying_type, DECL_PREFIX + node.name)
    o.w(";")


def emit_field(o: Out, tree: DeclarationTree, node: DeclarationNode) -> None:
    _require(o, node)
    if node.kind != NodeKind.FIELD_DECL:
        raise UnexpectedKindError(node, "emit_field: unexpected node kind")
    if node.type is None:
        raise EmitError(node, f"field {node.name} has no type")

    # Field names keep their original spelling
    _emit_declarator(o, tree, node, node.type, node.name)
    if node.bit_width is not None:
        o.put(f" : {node.bit_width}")
    o.w(";")


def emit_declaration(o: Out, tree: DeclarationTree, node: DeclarationNode) -> None:
    _require(o, node)
    if node.kind == NodeKind.ENUM_DECL:
        emit_enum(o, node)
    elif node.kind.is_record:
        emit_record(o, tree, node)
    elif node.kind == NodeKind.TYPEDEF_DECL:
        emit_typedef(o, tree, node)


def emit_layout_assertion(o: Out, node: DeclarationNode) -> None:
    """Check the target compiler's alignof/sizeof against the parsed layout."""
    _require(o, node)
    if node.kind not in _ASSERTED_KINDS:
        return
    if node.type is None or node.type.size is None:
        return

    name = DECL_PREFIX + node.name
    target = _TAG_KEYWORDS.get(node.kind, "") + name

    o.w()
    o.w("#if !defined(__midl)")
    o.w(f'static_assert(alignof({target}) == {node.type.alignment}, "{name}: incorrect alignment");')
    o.w(f'static_assert(sizeof({target}) == {node.type.size}, "{name}: incorrect size");')
    o.w("#endif")


# MACROS


def emit_macro(o: Out, node: DeclarationNode, names: Dict[str, str]) -> None:
    _require(o, node)
    if names is None:
        raise ValueError("name mappings are required")
    if node.kind != NodeKind.MACRO_DEFINITION:
        raise UnexpectedKindError(node, "emit_macro: unexpected node kind")

    tokens = node.extent_tokens()
    next(tokens, None)
    strings = [names.get(t.spelling, t.spelling) if t.kind == TokenKind.IDENTIFIER else t.spelling for t in tokens]

    head = f"#define {MACRO_PREFIX}{node.name}"

    # The parameter list stays attached to the name or the macro would
    # become object-like
    if node.function_like and strings and strings[0] == "(":
        close = strings.index(")") if ")" in strings else len(strings) - 1
        head += "(" + " ".join(strings[1:close]) + ")"
        strings = strings[close + 1:]

    body = " ".join(strings).strip()
    if body:
        o.w(f"{head} {body}")
    else:
        o.w(head)


# HEADER


def include_guard(header_name: str) -> str:
    return "__" + _RE_NON_IDENT.sub("_", header_name).upper() + "_"


def emit_preamble(o: Out, header_name: str, clang_args: Iterable[str]) -> None:
    guard = include_guard(header_name)
    o.w("//-----------------------------------------------------------------------------")
    o.w(f"// {header_name}")
    o.w("//")
    o.w("// Generated by builduapi; changes to this file will be lost when it is")
    o.w("// regenerated")
    o.w("//")
    o.w("// clang arguments: " + " ".join(clang_args or []))
    o.w("//-----------------------------------------------------------------------------")
    o.w()
    o.w(f"#ifndef {guard}")
    o.w(f"#define {guard}")
    o.w()
    o.w("#if !defined(__cplusplus) && !defined(__midl)")
    o.w("#include <assert.h>")
    o.w("#include <stdalign.h>")
    o.w("#endif")
    o.w()


def emit_epilogue(o: Out, header_name: str) -> None:
    o.w(f"#endif\t// {include_guard(header_name)}")


def render_header(tree: DeclarationTree, clang_args: Iterable[str], header_name: str) -> str:
    if tree is None:
        raise ValueError("declaration tree is required")
    if not header_name:
        raise ValueError("header name is required")

    clang_args = list(clang_args or [])
    names = build_name_mappings(tree)

    o = Out()
    emit_preamble(o, header_name, clang_args)

    ndecls = nmacros = 0
    for cur in tree.root.children:
        if cur.is_synthesized:
            continue

        # Anonymous structs and unions are reached through a field or typedef
        if cur.is_anonymous and cur.kind != NodeKind.ENUM_DECL:
            continue

        if cur.kind.is_declaration:
            o.w(f"// {cur.location}")
            emit_declaration(o, tree, cur)
            emit_layout_assertion(o, cur)
            o.w()
            ndecls += 1
        elif cur.kind == NodeKind.MACRO_DEFINITION:
            o.w(f"// {cur.location}")
            emit_macro(o, cur, names)
            o.w()
            nmacros += 1

    emit_epilogue(o, header_name)
    logger.info("%s: %d declarations, %d macro definitions", header_name, ndecls, nmacros)
    return o.get()


def generate(tree: DeclarationTree, clang_args: Iterable[str], out_path: str) -> str:
    if tree is None:
        raise ValueError("declaration tree is required")
    if not out_path:
        raise ValueError("output header path is required")

    out_path = os.path.abspath(out_path)
    out_dir = os.path.dirname(out_path)
    if not os.path.isdir(out_dir):
        raise FileNotFoundError(f"output directory {out_dir} not found")

    text = render_header(tree, clang_args, os.path.basename(out_path))

    if os.path.exists(out_path):
        os.unlink(out_path)
    with open(out_path, "w", encoding="utf-8", newline="\n") as f:
        f.write(text)

    return out_path
