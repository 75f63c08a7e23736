import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from uapi_frontend import (
    build_clang_args,
    build_tree,
    collect_virtual_files,
    parse_translation_unit,
    try_set_libclang,
)
from uapi_header import generate
from uapi_xml import write_xml

logger = logging.getLogger(__name__)


@dataclass
class Config:
    input_c: str
    output_h: str
    include_path: str
    target: str = "m32"
    modified_headers: Optional[str] = None
    clang_args: List[str] = field(default_factory=list)
    xml_output: Optional[str] = None
    verbose: bool = False


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    ap = argparse.ArgumentParser(
        prog="builduapi",
        description="Generate a renamed, layout-checked UAPI header from a C translation unit.",
    )
    ap.add_argument("input_c", help="input translation unit (.c)")
    ap.add_argument("output_h", help="output header (.h)")
    ap.add_argument("-i", "--include", default=None, help="original header include path (default: current directory)")

    g = ap.add_mutually_exclusive_group()
    g.add_argument("-m32", "-x86", dest="target", action="store_const", const="m32", help="x86 build target (default)")
    g.add_argument("-m64", "-x64", dest="target", action="store_const", const="m64", help="x64 build target")
    g.add_argument("-mx32", "-x32", dest="target", action="store_const", const="mx32", help="x32 build target")

    ap.add_argument("--modified-headers", default=None, help="directory of headers overriding the originals")
    ap.add_argument("--clang-arg", action="append", default=[], help="extra clang args (repeatable)")
    ap.add_argument("--xml", default=None, help="also dump the declaration tree as XML to this path")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    args = ap.parse_args(argv)

    return Config(
        input_c=args.input_c,
        output_h=args.output_h,
        include_path=args.include or os.getcwd(),
        target=args.target or "m32",
        modified_headers=args.modified_headers,
        clang_args=list(args.clang_arg),
        xml_output=args.xml,
        verbose=args.verbose,
    )


def run(cfg: Config) -> str:
    clang_args = build_clang_args(cfg.include_path, cfg.target, cfg.clang_args)

    if not os.path.isfile(cfg.input_c):
        raise FileNotFoundError(f"translation unit input file {cfg.input_c} not found")
    if not os.path.isdir(cfg.include_path):
        raise FileNotFoundError(f"include path {cfg.include_path} not found")

    out_dir = os.path.dirname(os.path.abspath(cfg.output_h))
    os.makedirs(out_dir, exist_ok=True)

    unsaved = collect_virtual_files(cfg.modified_headers, cfg.include_path) if cfg.modified_headers else []

    tu = parse_translation_unit(cfg.input_c, clang_args, unsaved)
    tree = build_tree(tu)

    if cfg.xml_output:
        write_xml(tree, cfg.xml_output)

    return generate(tree, clang_args, cfg.output_h)


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)

    print()
    print("builduapi " + " ".join(argv))
    print()

    cfg = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if cfg.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try_set_libclang()

    try:
        out_path = run(cfg)
    except Exception as ex:
        logger.debug("header generation failed", exc_info=True)
        print()
        print(f">> ERROR: {ex}")
        print()
        return 1

    print(f"[ok] wrote {out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
