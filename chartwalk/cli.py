"""CLI entrypoint for chartwalk."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Any, Dict

from .config import INFINITE_DEPTH, ConfigError, WalkConfig, load_config, merge_cli_overrides
from .documents import DocumentError
from .hashing import ContentHasher, HashingError
from .helm import HelmError, HelmTemplater, verify_render_dir
from .logging import configure_logging, get_logger
from .render import RenderError, Renderer, copy_source, post_render_command
from .stores import HashStoreError, HashStrategy, build_hash_store
from .walker import WalkError, Walker

_OVERRIDE_KEYS = (
    "root",
    "workdir",
    "output",
    "max_depth",
    "hash_store",
    "hash_strategy",
    "ignore_suffix",
    "skip_render_key",
    "ignore_value_file",
    "post_renderer",
    "log_file",
    "concurrency",
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chartwalk",
        description="Render a tree of Argo CD applications into flat manifests, "
        "re-rendering only what changed.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Increase log verbosity for troubleshooting.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a .chartwalk.yml file (defaults to <workdir>/.chartwalk.yml).",
    )
    parser.add_argument(
        "--root",
        help="Directory to initially look for Argo applications. The root of the tree.",
    )
    parser.add_argument("--workdir", help="Directory to run the command in.")
    parser.add_argument("--output", help="Path to store the rendered applications.")
    parser.add_argument(
        "--max-depth",
        type=int,
        help=f"Maximum depth for the depth first walk ({INFINITE_DEPTH} for unbounded).",
    )
    parser.add_argument(
        "--hash-store",
        choices=("sumfile", "json"),
        help="The hashing backend to use.",
    )
    parser.add_argument(
        "--hash-strategy",
        choices=tuple(strategy.value for strategy in HashStrategy),
        help="Whether to read + write, or just read hashes.",
    )
    parser.add_argument("--ignore-suffix", help="Suffix used to identify apps to ignore.")
    parser.add_argument("--skip-render-key", help="Helm key set to skip rendering a sub-tree.")
    parser.add_argument(
        "--ignore-value-file",
        help="Value files whose path contains this string are ignored.",
    )
    parser.add_argument(
        "--post-renderer",
        help="Command called with the output directory after an application is rendered.",
    )
    parser.add_argument(
        "--log-file",
        help="Also write a DEBUG level log of the run to this file (relative to the workdir).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Maximum number of document files processed in parallel per directory.",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> WalkConfig:
    """Combine ``.chartwalk.yml`` with the flags given on the command line."""
    if args.config:
        config_path = Path(args.config)
    else:
        config_path = Path(args.workdir or WalkConfig.workdir)
    overrides: Dict[str, Any] = {key: getattr(args, key) for key in _OVERRIDE_KEYS}
    return merge_cli_overrides(load_config(config_path), overrides)


def build_walker(config: WalkConfig, workdir: Path) -> Walker:
    templater = HelmTemplater(
        skip_render_key=config.skip_render_key,
        ignore_value_file=config.ignore_value_file,
        base_dir=workdir,
    )
    renderer = Renderer(
        helm_template=templater.run,
        copy=lambda app, output: copy_source(app, output, base_dir=workdir),
        post_render=post_render_command(config.post_renderer) if config.post_renderer else None,
    )
    hasher = ContentHasher(config.ignore_value_file, base_dir=workdir)
    return Walker(
        renderer,
        hasher,
        ignore_suffix=config.ignore_suffix,
        concurrency=config.concurrency,
    )


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for chartwalk."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_config(args)
    except ConfigError as exc:
        parser.exit(1, f"{exc}\n")

    workdir = Path(config.workdir).expanduser().resolve()
    if not workdir.is_dir():
        parser.exit(1, f"Could not set workdir: {workdir} is not a directory\n")

    log_file = workdir / config.log_file if config.log_file else None
    try:
        logger = configure_logging(verbose=bool(args.verbose), log_file=log_file)
    except OSError as exc:
        parser.exit(1, f"Could not open log file {log_file}: {exc}\n")

    start = time.monotonic()
    output = workdir / config.output
    try:
        verify_render_dir(output)
        hashes = build_hash_store(config.hash_store, config.hash_strategy, output)
        walker = build_walker(config, workdir)
        stats = walker.walk(workdir / config.root, output, config.max_depth, hashes)
    except WalkError as exc:
        for error in exc.errors:
            logger.error("%s", error)
        parser.exit(1, f"chartwalk failed: {exc}\nRun with --verbose for more details.\n")
    except (
        DocumentError,
        HashingError,
        HashStoreError,
        HelmError,
        RenderError,
        OSError,
        ValueError,
    ) as exc:
        parser.exit(1, f"chartwalk failed: {exc}\nRun with --verbose for more details.\n")

    logger.info("%s", stats.summary())
    logger.info("chartwalk took %.2fs to run", time.monotonic() - start)


if __name__ == "__main__":
    main(sys.argv[1:])
