import os
import shutil
import sys
import tempfile
import types
import unittest


REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, REPO_ROOT)


from clang import cindex  # noqa: E402
from clang.cindex import CursorKind  # noqa: E402

from uapi_frontend import (  # noqa: E402
    FatalDiagnosticError,
    build_clang_args,
    build_tree,
    collect_virtual_files,
    cursor_name,
    is_anonymous_tag,
    is_macro_function_like,
    node_kind,
    parse_translation_unit,
    try_set_libclang,
)
from uapi_header import build_name_mappings, render_header  # noqa: E402
from uapi_tree import NodeKind  # noqa: E402


def _libclang_available() -> bool:
    try:
        try_set_libclang()
        cindex.Index.create()
    except Exception:
        return False
    return True


SOURCE = """\
#define FOO_MAX 16
#define FOO_SIZE(n) ((n) * 2)

enum color { RED, GREEN = 5 };

struct foo {
    int a;
    unsigned int flags : 3;
    struct foo *next;
    enum color shade;
};

typedef struct { int x; int y; } point_t;

typedef void (*handler_t)(int);

struct fwd;
"""


def _fake_cursor(spelling, kind, tokens=(), anonymous=False):
    return types.SimpleNamespace(
        spelling=spelling,
        kind=kind,
        is_anonymous=lambda: anonymous,
        get_tokens=lambda: iter([types.SimpleNamespace(spelling=t) for t in tokens]),
    )


class TempDirMixin:
    def setUp(self) -> None:
        self.tmp = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp, ignore_errors=True)

    def write(self, rel: str, text: str) -> str:
        path = os.path.join(self.tmp, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        return path


class ClangArgsTests(unittest.TestCase):
    def test_targets(self) -> None:
        self.assertEqual(build_clang_args("/inc"), ["-I/inc", "-m32"])
        self.assertEqual(build_clang_args("/inc", "m64", ["-DX=1"]), ["-I/inc", "-m64", "-DX=1"])
        self.assertEqual(build_clang_args("/inc", "mx32")[1], "-mx32")

    def test_unknown_target(self) -> None:
        with self.assertRaises(ValueError):
            build_clang_args("/inc", "arm")


class VirtualFilesTests(TempDirMixin, unittest.TestCase):
    def test_headers_are_keyed_by_original_path(self) -> None:
        self.write("mod/linux/types.h", "typedef int x;")
        self.write("mod/asm/a.h", "#define A 1")
        self.write("mod/README", "ignored")

        files = collect_virtual_files(os.path.join(self.tmp, "mod"), "/usr/include")

        self.assertEqual(
            files,
            [
                (os.path.join("/usr/include", "asm", "a.h"), "#define A 1"),
                (os.path.join("/usr/include", "linux", "types.h"), "typedef int x;"),
            ],
        )

    def test_missing_directory(self) -> None:
        self.assertEqual(collect_virtual_files(os.path.join(self.tmp, "nope"), "/usr/include"), [])
        self.assertEqual(collect_virtual_files("", "/usr/include"), [])


class CursorHelperTests(unittest.TestCase):
    def test_unnamed_spellings_are_anonymous(self) -> None:
        self.assertEqual(cursor_name(_fake_cursor("struct (unnamed at x.h:1:9)", CursorKind.STRUCT_DECL)), "")
        self.assertEqual(cursor_name(_fake_cursor(None, CursorKind.FIELD_DECL)), "")
        self.assertEqual(cursor_name(_fake_cursor("foo", CursorKind.FIELD_DECL)), "foo")

    def test_typedef_named_tags_are_anonymous(self) -> None:
        anon = _fake_cursor("point_t", CursorKind.STRUCT_DECL, ["struct", "{", "int", "x", ";", "}"])
        named = _fake_cursor("foo", CursorKind.STRUCT_DECL, ["struct", "foo", "{", "int", "x", ";", "}"])
        fwd = _fake_cursor("fwd", CursorKind.STRUCT_DECL, ["struct", "fwd", ";"])
        enum = _fake_cursor("mode_t", CursorKind.ENUM_DECL, ["enum", "{", "A", "}"])

        self.assertEqual(cursor_name(anon), "")
        self.assertEqual(cursor_name(named), "foo")
        self.assertEqual(cursor_name(fwd), "fwd")
        self.assertEqual(cursor_name(enum), "")
        self.assertTrue(is_anonymous_tag(_fake_cursor("", CursorKind.UNION_DECL, [], anonymous=True)))

    def test_function_like_macros_need_an_adjacent_paren(self) -> None:
        def macro(*spans):
            toks = [
                types.SimpleNamespace(
                    spelling=s,
                    extent=types.SimpleNamespace(
                        start=types.SimpleNamespace(offset=a), end=types.SimpleNamespace(offset=b)
                    ),
                )
                for s, a, b in spans
            ]
            return types.SimpleNamespace(get_tokens=lambda: iter(toks))

        self.assertTrue(is_macro_function_like(macro(("MAX", 8, 11), ("(", 11, 12), ("a", 12, 13))))
        self.assertFalse(is_macro_function_like(macro(("ONE", 8, 11), ("(", 12, 13), ("1", 13, 14))))
        self.assertFalse(is_macro_function_like(macro(("ONE", 8, 11), ("1", 12, 13))))
        self.assertFalse(is_macro_function_like(macro(("EMPTY", 8, 13))))

    def test_kind_mapping(self) -> None:
        self.assertEqual(node_kind(CursorKind.MACRO_INSTANTIATION), NodeKind.MACRO_EXPANSION)
        self.assertEqual(node_kind(CursorKind.STRUCT_DECL), NodeKind.STRUCT_DECL)


@unittest.skipUnless(_libclang_available(), "libclang not available")
class LibclangTests(TempDirMixin, unittest.TestCase):
    def parse(self, text: str):
        path = self.write("input.c", text)
        tu = parse_translation_unit(path, [f"-I{self.tmp}"])
        return tu, build_tree(tu)

    def test_tree_shape(self) -> None:
        tu, tree = self.parse(SOURCE)

        top = [n for n in tree.root.children if not n.is_synthesized]
        named = {(n.kind, n.name) for n in top}
        self.assertIn((NodeKind.MACRO_DEFINITION, "FOO_MAX"), named)
        self.assertIn((NodeKind.ENUM_DECL, "color"), named)
        self.assertIn((NodeKind.STRUCT_DECL, "foo"), named)
        self.assertIn((NodeKind.TYPEDEF_DECL, "handler_t"), named)

        anon = [n for n in top if n.kind == NodeKind.STRUCT_DECL and n.is_anonymous]
        self.assertEqual(len(anon), 1)

        fwd = next(n for n in top if n.name == "fwd")
        self.assertIsNone(fwd.type.size)

        foo = next(n for n in top if n.name == "foo")
        self.assertTrue(tree.is_global(foo))
        flags = next(n for n in foo.children if n.name == "flags")
        self.assertEqual(flags.bit_width, 3)

        size_macro = next(n for n in top if n.name == "FOO_SIZE")
        self.assertTrue(size_macro.function_like)
        self.assertEqual([t.spelling for t in size_macro.extent_tokens()][:4], ["FOO_SIZE", "(", "n", ")"])

        green = next(n for n in tree.walk() if n.name == "GREEN")
        self.assertEqual(green.enum_value, 5)

    def test_render(self) -> None:
        tu, tree = self.parse(SOURCE)

        names = build_name_mappings(tree)
        self.assertEqual(names["FOO_MAX"], "UAPI_FOO_MAX")
        self.assertEqual(names["RED"], "UAPI_RED")
        self.assertEqual(names["foo"], "uapi_foo")
        self.assertNotIn("a", names)

        text = render_header(tree, [f"-I{self.tmp}"], "uapi.h")

        self.assertIn("#define UAPI_FOO_MAX 16\n", text)
        self.assertIn("#define UAPI_FOO_SIZE(n) ", text)
        self.assertIn("enum uapi_color {", text)
        self.assertIn("    UAPI_GREEN = 5,", text)
        self.assertIn("struct uapi_foo {", text)
        self.assertIn("    unsigned int flags : 3;", text)
        self.assertIn("    struct uapi_foo * next;", text)
        self.assertIn("    enum uapi_color shade;", text)
        self.assertIn("} uapi_point_t;", text)
        self.assertIn("typedef void (* uapi_handler_t)(int);", text)
        self.assertIn("\nstruct fwd;\n", text)
        self.assertIn("static_assert(sizeof(struct uapi_foo) ==", text)
        self.assertIn("static_assert(sizeof(uapi_point_t) == 8,", text)

    def test_function_like_macros(self) -> None:
        tu, tree = self.parse("#define MAX(a, b) ((a) > (b) ? (a) : (b))\n#define ONE (1)\n#define EMPTY\n")

        macros = {n.name: n for n in tree.root.children if n.kind == NodeKind.MACRO_DEFINITION}
        self.assertTrue(macros["MAX"].function_like)
        self.assertFalse(macros["ONE"].function_like)
        self.assertFalse(macros["EMPTY"].function_like)

        text = render_header(tree, [], "uapi.h")
        self.assertIn("#define UAPI_MAX(a , b) ( ( a ) > ( b ) ? ( a ) : ( b ) )\n", text)
        self.assertIn("#define UAPI_ONE ( 1 )\n", text)
        self.assertIn("#define UAPI_EMPTY\n", text)

    def test_anonymous_records_as_fields_and_members(self) -> None:
        tu, tree = self.parse(
            "struct outer {\n"
            "    union { int i; float f; };\n"
            "    struct { int s1; } named;\n"
            "    int tail;\n"
            "};\n"
        )

        text = render_header(tree, [], "uapi.h")

        self.assertEqual(text.count("int s1;"), 1)
        self.assertEqual(text.count("int i;"), 1)
        self.assertIn("    union {\n\n        int i;\n        float f;\n\n    };\n", text)
        self.assertIn("    struct {\n\n        int s1;\n\n    } named;\n", text)
        self.assertIn("    int tail;\n", text)

        outer = next(n for n in tree.root.children if n.name == "outer")
        members = [n for n in outer.children if n.kind.is_record]
        self.assertEqual([m.anonymous_member for m in members], [True, False])

    def test_array_declarators(self) -> None:
        tu, tree = self.parse(
            "typedef int (*parr)[4];\n"
            "struct grid { int cells[2][3]; int (*rows)[4]; };\n"
        )

        text = render_header(tree, [], "uapi.h")

        self.assertIn("typedef int (* uapi_parr)[4];", text)
        self.assertIn("    int cells[2][3];", text)
        self.assertIn("    int (* rows)[4];", text)

    def test_top_level_source_order(self) -> None:
        self.write("a.h", "typedef unsigned int u32_t;\n#define A_MAX 4\n")
        tu, tree = self.parse(
            '#include "a.h"\n'
            "enum color { RED };\n"
            "#define AFTER 1\n"
            "struct s { u32_t v; };\n"
        )

        text = render_header(tree, [], "uapi.h")

        order = [
            text.index("typedef unsigned int uapi_u32_t;"),
            text.index("#define UAPI_A_MAX 4"),
            text.index("enum uapi_color {"),
            text.index("#define UAPI_AFTER 1"),
            text.index("struct uapi_s {"),
        ]
        self.assertEqual(order, sorted(order))

    def test_fatal_diagnostic(self) -> None:
        path = self.write("bad.c", '#include "missing.h"\n')

        with self.assertLogs("uapi_frontend", level="ERROR"):
            with self.assertRaises(FatalDiagnosticError):
                parse_translation_unit(path, [f"-I{self.tmp}"])

    def test_modified_headers_override_originals(self) -> None:
        self.write("orig/linux/foo.h", "#define FOO_VERSION 1\n")
        self.write("mod/linux/foo.h", "#define FOO_VERSION 2\n")
        path = self.write("input.c", "#include <linux/foo.h>\n")
        orig = os.path.join(self.tmp, "orig")

        unsaved = collect_virtual_files(os.path.join(self.tmp, "mod"), orig)
        tu = parse_translation_unit(path, [f"-I{orig}"], unsaved)
        tree = build_tree(tu)

        text = render_header(tree, [], "uapi.h")
        self.assertIn("#define UAPI_FOO_VERSION 2\n", text)


if __name__ == "__main__":
    unittest.main()
