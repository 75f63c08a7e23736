import logging
import xml.etree.ElementTree as ET
from typing import Optional

from uapi_tree import DeclarationNode, DeclarationTree, NodeKind

logger = logging.getLogger(__name__)


def _token_text(node: DeclarationNode, skip: int = 0) -> str:
    tokens = node.extent_tokens()
    for _ in range(skip):
        next(tokens, None)
    return " ".join(t.spelling for t in tokens).strip()


def _children(tree: DeclarationTree, node: DeclarationNode, elem: ET.Element) -> None:
    for ch in node.children:
        emit_node(tree, ch, elem)


def emit_node(tree: DeclarationTree, node: DeclarationNode, parent: Optional[ET.Element]) -> Optional[ET.Element]:
    # Only the translation unit itself may come from no source file
    if node.kind != NodeKind.TRANSLATION_UNIT and node.is_synthesized:
        return None

    if node.kind in (NodeKind.MACRO_EXPANSION, NodeKind.INCLUSION_DIRECTIVE):
        return None

    def sub(tag: str) -> ET.Element:
        return ET.Element(tag) if parent is None else ET.SubElement(parent, tag)

    if node.kind == NodeKind.EXPRESSION:
        elem = sub("Expression")
        text = _token_text(node)
        if text:
            elem.text = text
        return elem

    if node.kind == NodeKind.MACRO_DEFINITION:
        elem = sub("Macro")
        elem.set("Name", node.name)
        text = _token_text(node, skip=1)
        if text:
            elem.text = text
        return elem

    if node.kind == NodeKind.FIELD_DECL:
        elem = sub("Field")
        elem.set("Name", node.name)
        size = node.type.size if node.type is not None else None
        elem.set("Size", "" if size is None else str(size))
        _children(tree, node, elem)
        return elem

    if node.kind == NodeKind.TYPEDEF_DECL:
        elem = sub("TypedefDecl")
        elem.set("Name", node.name)
        underlying = node.underlying_type.spelling if node.underlying_type is not None else ""
        elem.set("UnderlyingType", underlying)
        return elem

    if node.kind == NodeKind.TYPE_REF:
        elem = sub("TypeRef")
        decl = tree.declaration_of(node.type)
        if decl is None or decl.is_synthesized:
            elem.set("GLOBAL", "true")
        elem.set("Name", node.name)
        return elem

    elem = sub(node.kind.value)
    elem.set("Name", node.name)
    _children(tree, node, elem)
    return elem


def tree_to_xml(tree: DeclarationTree) -> ET.Element:
    if tree is None:
        raise ValueError("declaration tree is required")
    return emit_node(tree, tree.root, None)


def write_xml(tree: DeclarationTree, out_xml: str) -> None:
    if not out_xml:
        raise ValueError("output xml path is required")

    root = tree_to_xml(tree)
    doc = ET.ElementTree(root)
    ET.indent(doc, space="\t")
    doc.write(out_xml, encoding="utf-8", xml_declaration=True)
    logger.debug("wrote declaration tree xml to %s", out_xml)
