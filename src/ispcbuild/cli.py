"""Command-line entry point.

Usage:
    ispcbuild build kernels src/a.ispc src/b.ispc --target sse4-i32x4 --target avx2-i32x8
    ispcbuild units kernels src/a.ispc --target sse4-i32x4 --dispatch per_isa
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from collections.abc import Sequence
from pathlib import Path

from .bindings import CdefSignatureGenerator, ProcessSignatureGenerator, SignatureGenerator
from .compiler import StubCodeGenerator
from .config import BuildOverrides, Config
from .errors import IspcBuildError
from .linker import ProcessToolchain, StubToolchain
from .matrix import expand_units
from .models import DISPATCH_MODES, MATH_LIBS, OPTIMIZATION_LEVELS, TASKING_MODES, BuildConfig
from .pipeline import BuildPass


def _config_from_args(args: argparse.Namespace) -> BuildConfig:
    config = Config(args.name, root=Path(args.root)).source(*args.sources)
    config.targets(*args.target)
    for raw in args.define:
        name, sep, value = raw.partition("=")
        config.define(name, value if sep else None)
    if args.include:
        config.include(*args.include)
    config.optimization(args.optimization).math_lib(args.math_lib).debug(args.debug)
    config.dispatch(args.dispatch, batch_limit=args.batch_limit)
    config.tasking(args.tasking)
    if args.output_dir:
        config.output_dir(args.output_dir)
    if args.target_os:
        config.target_os(args.target_os)
    if args.cpu:
        config.cpu(args.cpu)
    if args.jobs:
        config.jobs(args.jobs)
    return config.finalize()


def _signature_generator(args: argparse.Namespace) -> SignatureGenerator:
    if args.bindgen:
        return ProcessSignatureGenerator(tool=args.bindgen)
    return CdefSignatureGenerator()


def cmd_build(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    overrides = BuildOverrides.from_env()
    if args.compiler:
        overrides = dataclasses.replace(overrides, compiler=args.compiler)
    if args.prebuilt:
        overrides = dataclasses.replace(overrides, force_prebuilt=True)
    if args.prebuilt_dir:
        overrides = dataclasses.replace(overrides, prebuilt_dir=Path(args.prebuilt_dir))
    build_pass = BuildPass(
        config=config,
        code_generator=StubCodeGenerator() if args.dry_run else None,
        toolchain=StubToolchain() if args.dry_run else ProcessToolchain(),
        signature_generator=_signature_generator(args),
        overrides=overrides,
    )
    result = build_pass.run()
    if args.json:
        print(
            json.dumps(
                {
                    "library": str(result.library_path),
                    "bindings": str(result.bindings_path),
                    "mode": result.mode,
                    "compiled": list(result.compiled_units),
                    "cached": list(result.cached_units),
                },
                indent=2,
                sort_keys=True,
            )
        )
    else:
        print(result.library_path)
        print(result.bindings_path)
    return 0


def cmd_units(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    for unit in expand_units(config):
        print(f"{unit.identity}\t{unit.object_path}")
    return 0


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("name", help="Library name (a C identifier)")
    parser.add_argument("sources", nargs="+", help="Kernel source files")
    parser.add_argument("--root", default=".", help="Directory relative paths resolve against")
    parser.add_argument(
        "--target", action="append", required=True, help="Target ISA, repeatable"
    )
    parser.add_argument(
        "-D", "--define", action="append", default=[], metavar="NAME[=VALUE]"
    )
    parser.add_argument("-I", "--include", action="append", default=[], metavar="DIR")
    parser.add_argument(
        "-O", "--optimization", choices=OPTIMIZATION_LEVELS, default="O2", metavar="LEVEL"
    )
    parser.add_argument("-g", "--debug", action="store_true")
    parser.add_argument("--math-lib", choices=MATH_LIBS, default="default")
    parser.add_argument("--dispatch", choices=DISPATCH_MODES, default="batched")
    parser.add_argument("--batch-limit", type=int, default=None)
    parser.add_argument("--tasking", choices=TASKING_MODES, default="serial")
    parser.add_argument("--output-dir", default=None)
    parser.add_argument("--target-os", default=None)
    parser.add_argument("--cpu", default=None)
    parser.add_argument("--jobs", type=int, default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ispcbuild", description="ISPC kernel library builder")
    sub = parser.add_subparsers(dest="command", required=True)

    build_p = sub.add_parser("build", help="Compile, link, and emit bindings")
    _add_config_arguments(build_p)
    build_p.add_argument("--compiler", default=None, help="Path to the ispc executable")
    build_p.add_argument("--prebuilt", action="store_true", help="Use a prebuilt artifact set")
    build_p.add_argument("--prebuilt-dir", default=None)
    build_p.add_argument("--bindgen", default=None, help="Run this bindgen-style tool")
    build_p.add_argument(
        "--dry-run", action="store_true", help="Use stub compiler and toolchain"
    )
    build_p.add_argument("--json", action="store_true", help="Print a JSON summary")

    units_p = sub.add_parser("units", help="List the compiler invocations a build would make")
    _add_config_arguments(units_p)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "build":
            return cmd_build(args)
        return cmd_units(args)
    except IspcBuildError as exc:
        print(f"error[{exc.code}]: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
