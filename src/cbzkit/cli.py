"""CLI layer: argument parsing, config building, and top-level orchestration."""
from __future__ import annotations

import argparse
import logging
import os
from typing import Any, Dict, List, Optional

from .config import (
    EngineConfig,
    TransformConfig,
    load_config_from_path,
    load_merge_plan,
    plan_from_glob,
    plan_from_paths,
    sort_plan,
)
from .core import output_path
from .errors import (
    CbzError,
    CorruptArchiveError,
    DecodeError,
    DrmProtectedError,
    EmptyPlanError,
    ImageProcessingError,
    IoError,
    NoMatchError,
    UnsupportedPdfFeatureError,
    UnsupportedSourceError,
)
from .types_ import ReadingOrder, SourceDescriptor, SourceKind
from . import worker

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_NO_MATCH = 3
EXIT_PROTECTED = 4
EXIT_BAD_INPUT = 5
EXIT_IO = 6
EXIT_EMPTY_PLAN = 7

# checked in order, subclasses before their bases
EXIT_CODES = (
    (NoMatchError, EXIT_NO_MATCH),
    (DrmProtectedError, EXIT_PROTECTED),
    (UnsupportedPdfFeatureError, EXIT_PROTECTED),
    (CorruptArchiveError, EXIT_BAD_INPUT),
    (DecodeError, EXIT_BAD_INPUT),
    (ImageProcessingError, EXIT_BAD_INPUT),
    (UnsupportedSourceError, EXIT_BAD_INPUT),
    (IoError, EXIT_IO),
    (EmptyPlanError, EXIT_EMPTY_PLAN),
)


def exit_code_for(error: CbzError) -> int:
    """Map an engine error to the process exit code.

    >>> exit_code_for(NoMatchError('x'))
    3
    >>> exit_code_for(EmptyPlanError())
    7
    """
    for cls, code in EXIT_CODES:
        if isinstance(error, cls):
            return code
    return EXIT_BAD_INPUT


def setup_logging(verbose: bool = False, loglevel: Optional[str] = None, force_color: Optional[bool] = None):
    """Configure root logger with a compact, colored formatter and emoji prefixes.

    - verbose -> DEBUG level, otherwise INFO
    - loglevel: explicit string level to override verbose (e.g. DEBUG|INFO|WARNING|ERROR)
    - force_color: True/False to override automatic TTY detection
    """
    root = logging.getLogger()
    root.handlers.clear()

    if loglevel:
        lvl = loglevel.upper()
        if lvl == 'WARN':
            lvl = 'WARNING'
        level = getattr(logging, lvl, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()

    stream = handler.stream
    if force_color is None:
        use_color = hasattr(stream, "isatty") and stream.isatty()
    else:
        use_color = force_color

    handler.setFormatter(ColorFormatter(use_color))
    root.setLevel(level)
    root.addHandler(handler)


class ColorFormatter(logging.Formatter):
    """`<emoji> LEVEL: message`, level prefix coloured when writing to a terminal."""

    COLORS = {
        'DEBUG': '\x1b[34m',    # blue
        'INFO': '\x1b[32m',     # green
        'WARNING': '\x1b[33m',  # yellow
        'ERROR': '\x1b[31m',    # red
        'CRITICAL': '\x1b[31;1m',
    }
    EMOJI = {
        'DEBUG': '🔧',
        'INFO': '✅',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '💥',
    }
    RESET = '\x1b[0m'

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        emoji = self.EMOJI.get(level, '')
        if self.use_color:
            prefix = f"{self.COLORS.get(level, '')}{emoji} {level}:{self.RESET}"
        else:
            prefix = f"{emoji} {level}:"
        formatted = f"{prefix} {record.getMessage()}"
        if record.exc_info:
            formatted = f"{formatted}\n{self.formatException(record.exc_info)}"
        return formatted


def _pick(cli_value: Any, file_cfg: Dict[str, Any], key: str, default: Any, cast=None) -> Any:
    """CLI value first, then the config file, then the default."""
    if cli_value is not None:
        return cli_value
    if key in file_cfg:
        value = file_cfg[key]
        try:
            return cast(value) if cast else value
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for '{key}' in config file: {value!r} ({e})")
    return default


def build_engine_config(args: argparse.Namespace, file_cfg: Dict[str, Any]) -> EngineConfig:
    """Merge command-line options over `cbzkit.json` values over defaults.

    Raises:
        ValueError: for out-of-range or badly typed values.
    """
    defaults = EngineConfig()
    tdefaults = defaults.transforms
    transforms = TransformConfig(
        autosplit=_pick(getattr(args, 'autosplit', None), file_cfg, 'autosplit', tdefaults.autosplit, bool),
        reading_order=ReadingOrder(
            _pick(getattr(args, 'reading_order', None), file_cfg, 'reading_order', tdefaults.reading_order)
        ),
        brightness=_pick(getattr(args, 'brightness', None), file_cfg, 'brightness', tdefaults.brightness, int),
        contrast=_pick(getattr(args, 'contrast', None), file_cfg, 'contrast', tdefaults.contrast, float),
        blur=_pick(getattr(args, 'blur', None), file_cfg, 'blur', tdefaults.blur, float),
    )
    transforms.validate()
    compresslevel = _pick(None, file_cfg, 'compresslevel', defaults.compresslevel)
    cfg = EngineConfig(
        nb_worker=_pick(getattr(args, 'nb_worker', None), file_cfg, 'nb_worker', defaults.nb_worker, int),
        pdf_dpi=_pick(getattr(args, 'dpi', None), file_cfg, 'dpi', defaults.pdf_dpi, int),
        pdf_prefer_embedded=_pick(None, file_cfg, 'pdf_prefer_embedded', defaults.pdf_prefer_embedded, bool),
        jpeg_quality=_pick(None, file_cfg, 'jpeg_quality', defaults.jpeg_quality, int),
        compresslevel=int(compresslevel) if compresslevel is not None else None,
        transforms=transforms,
    )
    if cfg.nb_worker < 1:
        raise ValueError(f"nb_worker must be at least 1, got {cfg.nb_worker}")
    if cfg.pdf_dpi < 1:
        raise ValueError(f"dpi must be positive, got {cfg.pdf_dpi}")
    return cfg


def _cmd_pack(args: argparse.Namespace, cfg: EngineConfig) -> worker.OperationResult:
    source = SourceDescriptor.from_path(args.source, kind=args.kind)
    return worker.pack(source, output_path(args.outdir, args.name), cfg=cfg)


def _cmd_convert(args: argparse.Namespace, cfg: EngineConfig) -> worker.OperationResult:
    source = SourceDescriptor.from_path(args.source, kind=args.kind)
    return worker.convert(source, output_path(args.outdir, args.name), cfg=cfg)


def _cmd_merge(args: argparse.Namespace, cfg: EngineConfig) -> worker.OperationResult:
    given = [bool(args.archives), bool(args.archives_glob), bool(args.plan)]
    if sum(given) > 1:
        raise ValueError('give either archives, --archives-glob or --plan, not several')
    if args.plan:
        try:
            plan = load_merge_plan(args.plan)
        except OSError as e:
            raise ValueError(f"cannot read merge plan {args.plan}: {e}")
    elif args.archives_glob:
        plan = plan_from_glob(args.archives_glob)
    else:
        plan = plan_from_paths(args.archives)
    if args.sort_by_hint:
        plan = sort_plan(plan)
    for index, descriptor in enumerate(plan):
        logger.debug(f"plan[{index}] {descriptor.kind.value} {descriptor.location} hint={descriptor.order_hint}")
    if not plan:
        raise EmptyPlanError()
    return worker.merge(plan, output_path(args.outdir, args.name), cfg=cfg)


def _cmd_reindex(args: argparse.Namespace, cfg: EngineConfig) -> worker.OperationResult:
    name = args.name or os.path.splitext(os.path.basename(args.archive))[0]
    return worker.reindex(args.archive, output_path(args.outdir, name), cfg=cfg)


def _add_output_args(p: argparse.ArgumentParser, name_required: bool = True) -> None:
    p.add_argument('-o', '--outdir', required=True, help='directory receiving the archive (created if missing)')
    p.add_argument('-n', '--name', required=name_required, default=None,
                   help='archive name, ".cbz" is appended and unsafe characters removed')


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog='cbzkit', description='Assemble page images into CBZ archives')
    p.add_argument('--verbose', action='store_true', help='verbose logging')
    p.add_argument('--loglevel', type=str, default=None,
                   choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL', 'WARN'],
                   help='explicit log level (overrides --verbose)')
    p.add_argument('--config-dir', default=None,
                   help='directory holding cbzkit.json (defaults to the current directory)')
    sub = p.add_subparsers(dest='command', required=True)

    kinds = [k.value for k in SourceKind]

    pk = sub.add_parser('pack', help='build an archive from one source, applying page transforms')
    pk.add_argument('source', help='images glob or directory, or a PDF/MOBI/AZW3/EPUB/CBZ file')
    _add_output_args(pk)
    pk.add_argument('--kind', choices=kinds, default=None, help='source kind (inferred from the path by default)')
    pk.add_argument('--autosplit', action='store_true', default=None, help='split landscape spreads in two pages')
    pk.add_argument('--reading-order', choices=[o.value for o in ReadingOrder], default=None,
                    help='which half of a split spread comes first (default rtl)')
    pk.add_argument('--contrast', type=float, default=None, help='contrast factor, 1.0 keeps pages unchanged')
    pk.add_argument('--brightness', type=int, default=None, help='brightness delta in [-255, 255]')
    pk.add_argument('--blur', type=float, default=None, help='gaussian blur radius, 0 disables')
    pk.add_argument('--nb-worker', type=int, default=None, help='number of workers (default 1)')
    pk.add_argument('--dpi', type=int, default=None, help='PDF rasterization resolution (default 150)')
    pk.set_defaults(handler=_cmd_pack)

    cv = sub.add_parser('convert', help='convert an e-book or PDF into an archive, pages unchanged')
    cv.add_argument('source', help='PDF/MOBI/AZW3/EPUB file, images glob or CBZ')
    _add_output_args(cv)
    cv.add_argument('--kind', choices=kinds, default=None, help='source kind (inferred from the path by default)')
    cv.add_argument('--dpi', type=int, default=None, help='PDF rasterization resolution (default 150)')
    cv.add_argument('--nb-worker', type=int, default=None, help='number of workers (default 1)')
    cv.set_defaults(handler=_cmd_convert)

    mg = sub.add_parser('merge', help='concatenate archives into one, in the given order')
    mg.add_argument('archives', nargs='*', help='archives to merge, in order')
    mg.add_argument('--archives-glob', default=None, help='glob of archives, merged in natural file-name order')
    mg.add_argument('--plan', default=None, help='YAML merge plan')
    mg.add_argument('--sort-by-hint', action='store_true',
                    help='reorder sources by volume/chapter numbers found in their names')
    _add_output_args(mg)
    mg.add_argument('--nb-worker', type=int, default=None, help='number of workers (default 1)')
    mg.set_defaults(handler=_cmd_merge)

    ri = sub.add_parser('reindex', help='rewrite an archive with canonical page names')
    ri.add_argument('archive', help='CBZ archive with arbitrary image entry names')
    _add_output_args(ri, name_required=False)
    ri.set_defaults(handler=_cmd_reindex)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point for the `cbzkit` tool.

    Parses arguments, merges `cbzkit.json` defaults, runs one operation and
    returns a process exit code: 0 on success, 2 for usage/config errors,
    and a per-error-kind code otherwise (see `EXIT_CODES`). Errors are
    logged, never raised, so shims and tests can assert on exit codes.
    """
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose, loglevel=args.loglevel)

    config_dir = args.config_dir or os.getcwd()
    try:
        file_cfg = load_config_from_path(config_dir)
        cfg = build_engine_config(args, file_cfg)
    except ValueError as e:
        logger.error(str(e))
        return EXIT_USAGE

    try:
        result = args.handler(args, cfg)
    except CbzError as e:
        logger.error(e.message)
        return exit_code_for(e)
    except ValueError as e:
        logger.error(str(e))
        return EXIT_USAGE

    logger.info(f"Done: {result.destination} ({result.page_count} pages)")
    return EXIT_OK
