from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Union


class NodeKind(Enum):
    TRANSLATION_UNIT = "TranslationUnit"
    ENUM_DECL = "EnumDecl"
    ENUM_CONSTANT_DECL = "EnumConstantDecl"
    STRUCT_DECL = "StructDecl"
    UNION_DECL = "UnionDecl"
    TYPEDEF_DECL = "TypedefDecl"
    FIELD_DECL = "FieldDecl"
    FUNCTION_DECL = "FunctionDecl"
    VAR_DECL = "VarDecl"
    MACRO_DEFINITION = "MacroDefinition"
    MACRO_EXPANSION = "MacroExpansion"
    INCLUSION_DIRECTIVE = "InclusionDirective"
    TYPE_REF = "TypeRef"
    EXPRESSION = "Expression"
    OTHER = "Other"

    @property
    def is_declaration(self) -> bool:
        return self in _RENAMED_DECL_KINDS

    @property
    def is_record(self) -> bool:
        return self in (NodeKind.STRUCT_DECL, NodeKind.UNION_DECL)


# Enumeration constants and fields are declarations to clang, but their names
# are either UAPI_ prefixed separately or preserved as written.
_RENAMED_DECL_KINDS = {
    NodeKind.ENUM_DECL,
    NodeKind.STRUCT_DECL,
    NodeKind.UNION_DECL,
    NodeKind.TYPEDEF_DECL,
    NodeKind.FUNCTION_DECL,
    NodeKind.VAR_DECL,
}


class TypeCategory(Enum):
    BUILTIN = "builtin"
    POINTER = "pointer"
    CONSTANT_ARRAY = "constant_array"
    INCOMPLETE_ARRAY = "incomplete_array"
    RECORD = "record"
    ENUM = "enum"
    TYPEDEF = "typedef"
    FUNCTION = "function"


class TokenKind(Enum):
    PUNCTUATION = "punctuation"
    KEYWORD = "keyword"
    IDENTIFIER = "identifier"
    LITERAL = "literal"
    COMMENT = "comment"


@dataclass(frozen=True)
class Token:
    spelling: str
    kind: TokenKind = TokenKind.IDENTIFIER


@dataclass(frozen=True)
class SourceLocation:
    file: Optional[str] = None
    line: int = 0
    column: int = 0
    offset: int = 0

    def __str__(self) -> str:
        f = self.file if self.file else "<unknown>"
        return f"{f}:{self.line}:{self.column}"


@dataclass
class TypeInfo:
    kind: TypeCategory
    spelling: str
    size: Optional[int] = None
    alignment: Optional[int] = None
    pointee: Optional["TypeInfo"] = None
    element: Optional["TypeInfo"] = None
    array_size: Optional[int] = None
    # Handle into DeclarationTree.nodes, never the node itself
    declaration: Optional[int] = None
    is_const: bool = False

    @property
    def is_array(self) -> bool:
        return self.kind in (TypeCategory.CONSTANT_ARRAY, TypeCategory.INCOMPLETE_ARRAY)


TokenSource = Union[Sequence[Token], Callable[[], Iterable[Token]]]


@dataclass
class DeclarationNode:
    kind: NodeKind
    name: str = ""
    location: SourceLocation = field(default_factory=SourceLocation)
    type: Optional[TypeInfo] = None
    underlying_type: Optional[TypeInfo] = None
    bit_width: Optional[int] = None
    enum_value: Optional[int] = None
    enum_integer_type: Optional[str] = None
    semantic_parent: Optional[int] = None
    function_like: bool = False
    anonymous_member: bool = False
    children: List["DeclarationNode"] = field(default_factory=list)
    tokens: Optional[TokenSource] = None
    index: int = -1

    @property
    def is_anonymous(self) -> bool:
        return not self.name

    @property
    def is_synthesized(self) -> bool:
        return self.location.file is None

    def extent_tokens(self) -> Iterator[Token]:
        """Token stream spanning the node's source extent.

        The first token of a macro definition is the macro name itself.
        """
        if self.tokens is None:
            return iter(())
        if callable(self.tokens):
            return iter(self.tokens())
        return iter(self.tokens)

    def children_matching(self, predicate: Callable[["DeclarationNode"], bool]) -> Iterator["DeclarationNode"]:
        for ch in self.children:
            if predicate(ch):
                yield ch
            yield from ch.children_matching(predicate)


class DeclarationTree:
    def __init__(self) -> None:
        self.nodes: List[DeclarationNode] = []
        self._root: Optional[DeclarationNode] = None

    @property
    def root(self) -> DeclarationNode:
        if self._root is None:
            raise ValueError("declaration tree has no translation unit")
        return self._root

    def add(self, node: DeclarationNode, parent: Optional[DeclarationNode] = None) -> DeclarationNode:
        """Register a node in the table and, when given, append it to parent.

        A node added without a parent is only reachable through handles; the
        first TRANSLATION_UNIT node added becomes the root.
        """
        node.index = len(self.nodes)
        self.nodes.append(node)
        if node.kind == NodeKind.TRANSLATION_UNIT:
            if self._root is not None:
                raise ValueError("declaration tree already has a translation unit")
            self._root = node
        if parent is not None:
            parent.children.append(node)
        return node

    def resolve(self, handle: Optional[int]) -> Optional[DeclarationNode]:
        if handle is None:
            return None
        if handle < 0 or handle >= len(self.nodes):
            raise IndexError(f"invalid declaration handle {handle}")
        return self.nodes[handle]

    def declaration_of(self, t: Optional[TypeInfo]) -> Optional[DeclarationNode]:
        if t is None:
            return None
        return self.resolve(t.declaration)

    def parent_of(self, node: DeclarationNode) -> Optional[DeclarationNode]:
        return self.resolve(node.semantic_parent)

    def is_global(self, node: DeclarationNode) -> bool:
        parent = self.parent_of(node)
        return parent is not None and parent.kind == NodeKind.TRANSLATION_UNIT

    def walk(self) -> Iterator[DeclarationNode]:
        yield self.root
        yield from self.root.children_matching(lambda n: True)
