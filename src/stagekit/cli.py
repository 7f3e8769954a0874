"""Command line interface for stagekit pipelines.

Usage:
    stagekit validate
    stagekit lock
    stagekit build --output dist/image --frozen
    stagekit emit-dockerfile Dockerfile
    stagekit promote dist/image release/image
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path

from stagekit.backends import BACKENDS
from stagekit.errors import StagekitError
from stagekit.manifest import promote
from stagekit.pipeline import Pipeline
from stagekit.settings import BuildSettings
from stagekit.specfile import DEFAULT_SPECFILE, load_pipeline


def _load(args: argparse.Namespace, **kwargs: object) -> Pipeline:
    return load_pipeline(args.file, settings=BuildSettings.from_env(), **kwargs)


def cmd_validate(args: argparse.Namespace) -> int:
    spec = _load(args).spec()
    print(f"ok: {len(spec.stages)} stages, final stage {spec.final_stage}")
    return 0


def cmd_lock(args: argparse.Namespace) -> int:
    path = _load(args).lock(args.output)
    print(f"Wrote {path}")
    return 0


def cmd_build(args: argparse.Namespace) -> int:
    pipeline = _load(args, backend=BACKENDS[args.backend]())
    result = pipeline.build(args.output, frozen=args.frozen, verify=False if args.no_verify else None)
    if args.log is not None:
        pipeline.logger.to_json_lines(args.log)
    print(f"Built {result.image_dir}")
    print(f"  cache: {len(result.cache_hits)} hits, {len(result.cache_misses)} misses")
    print(f"  tree digest: {result.manifest.tree_digest}")
    print(f"  release ready: {'yes' if result.release_ready else 'no (not verified)'}")
    return 0


def cmd_emit_dockerfile(args: argparse.Namespace) -> int:
    path = _load(args).emit_dockerfile(args.path)
    print(f"Wrote {path}")
    return 0


def cmd_promote(args: argparse.Namespace) -> int:
    target = promote(args.image_dir, args.dest)
    print(f"Promoted {args.image_dir} to {target}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stagekit", description="multi-stage image builder")
    parser.add_argument(
        "-f",
        "--file",
        type=Path,
        default=Path(DEFAULT_SPECFILE),
        help=f"Pipeline file (default: {DEFAULT_SPECFILE})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    validate_p = sub.add_parser("validate", help="Validate the stage graph")
    validate_p.set_defaults(handler=cmd_validate)

    lock_p = sub.add_parser("lock", help="Write the pipeline lockfile")
    lock_p.add_argument("--output", type=Path, default=None, help="Lockfile path")
    lock_p.set_defaults(handler=cmd_lock)

    build_p = sub.add_parser("build", help="Run every stage and assemble the final image")
    build_p.add_argument("--output", type=Path, default=None, help="Output directory")
    build_p.add_argument("--frozen", action="store_true", help="Require an up-to-date lockfile")
    build_p.add_argument("--no-verify", action="store_true", help="Skip the entrypoint self-test")
    build_p.add_argument("--backend", choices=sorted(BACKENDS), default="local", help="Step backend")
    build_p.add_argument("--log", type=Path, default=None, help="Write JSON-lines build log")
    build_p.set_defaults(handler=cmd_build)

    emit_p = sub.add_parser("emit-dockerfile", help="Render the equivalent Dockerfile")
    emit_p.add_argument("path", type=Path)
    emit_p.set_defaults(handler=cmd_emit_dockerfile)

    promote_p = sub.add_parser("promote", help="Copy a release-ready image to its destination")
    promote_p.add_argument("image_dir", type=Path)
    promote_p.add_argument("dest", type=Path)
    promote_p.set_defaults(handler=cmd_promote)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except StagekitError as exc:
        print(f"error [{exc.code}]: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
