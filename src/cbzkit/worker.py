"""Assembly orchestration: Pack, Convert, Merge and Reindex.

Each operation walks the same states, `IDLE -> DECODING -> TRANSFORMING ->
WRITING -> DONE`, and lands in `FAILED` from any of them on error. The
working PageSet lives only for the duration of the call; the destination is
written through a temporary file so a failed operation leaves nothing
behind.
"""

from __future__ import annotations

import concurrent.futures
import logging
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Sequence, TypeVar

from .archive import write_archive
from .config import EngineConfig, TransformConfig
from .decoders import CbzDecoder, Decoder, decoder_for
from .errors import EmptyPlanError
from .image import transform_page
from .types_ import MergePlan, Page, PageSet, SourceDescriptor, SourceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class State(str, Enum):
    IDLE = "idle"
    DECODING = "decoding"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


_NEXT_STATE = {
    State.IDLE: State.DECODING,
    State.DECODING: State.TRANSFORMING,
    State.TRANSFORMING: State.WRITING,
    State.WRITING: State.DONE,
}


class OperationResult(NamedTuple):
    """Result of a successful operation: archive path and number of pages written."""

    destination: str
    page_count: int


class Operation:
    """State tracker for one Pack/Convert/Merge/Reindex run.

    States only move forward; `fail` records the error and is terminal.
    """

    def __init__(self, name: str, destination: str):
        self.name = name
        self.destination = destination
        self.state = State.IDLE
        self.history: List[State] = [State.IDLE]
        self.error: Optional[BaseException] = None

    def advance(self, state: State) -> None:
        if _NEXT_STATE.get(self.state) != state:
            raise RuntimeError(f"[{self.name}] invalid transition {self.state.value} -> {state.value}")
        logger.debug(f"[{self.name}] {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, error: BaseException) -> None:
        logger.debug(f"[{self.name}] {self.state.value} -> failed: {error}")
        self.error = error
        self.state = State.FAILED
        self.history.append(State.FAILED)


def map_ordered(func: Callable[[T], R], items: Sequence[T], nb_worker: int = 1) -> List[R]:
    """Apply `func` to every item, returning results in input order.

    With `nb_worker > 1` the calls run on a thread pool; the first failure
    cancels what has not started yet and is re-raised unchanged.
    """
    if nb_worker <= 1 or len(items) <= 1:
        return [func(item) for item in items]

    results: List[Optional[R]] = [None] * len(items)
    logger.debug(f"Using ThreadPoolExecutor with {nb_worker} workers for {len(items)} pages")
    with concurrent.futures.ThreadPoolExecutor(max_workers=nb_worker) as ex:
        futures = {ex.submit(func, item): i for i, item in enumerate(items)}
        try:
            for fut in concurrent.futures.as_completed(futures):
                results[futures[fut]] = fut.result()
        except BaseException:
            for fut in futures:
                fut.cancel()
            raise
    return results  # type: ignore[return-value]


def decode_source(
    descriptor: SourceDescriptor, cfg: EngineConfig, decoder: Optional[Decoder] = None
) -> PageSet:
    """Decode one source and check every page payload decodes."""
    decoder = decoder or decoder_for(descriptor.kind, cfg)
    logger.debug(f"decoding {descriptor.kind.value} source {descriptor.location}")
    page_set = decoder.decode(descriptor)
    map_ordered(Page.validate, page_set.sort().pages, cfg.nb_worker)
    logger.debug(f"decoded {len(page_set)} pages from {descriptor.location}")
    return page_set


def apply_transforms(page_set: PageSet, transforms: TransformConfig, cfg: EngineConfig) -> PageSet:
    """Run the transform pipeline on every page; split pages shift later ordinals."""
    if transforms.is_identity:
        return page_set
    outputs = map_ordered(
        lambda page: transform_page(page, transforms, cfg.jpeg_quality),
        page_set.sort().pages,
        cfg.nb_worker,
    )
    result = PageSet(page for pages in outputs for page in pages).renumber()
    if len(result) != len(page_set):
        logger.debug(f"autosplit turned {len(page_set)} pages into {len(result)}")
    return result


def _run(
    op: Operation,
    decode: Callable[[], PageSet],
    transforms: Optional[TransformConfig],
    cfg: EngineConfig,
) -> OperationResult:
    try:
        op.advance(State.DECODING)
        page_set = decode()

        op.advance(State.TRANSFORMING)
        if transforms is not None:
            page_set = apply_transforms(page_set, transforms, cfg)

        op.advance(State.WRITING)
        write_archive(page_set, op.destination, compresslevel=cfg.compresslevel)

        op.advance(State.DONE)
    except BaseException as e:
        op.fail(e)
        raise
    logger.info(f"{op.name}: wrote {len(page_set)} pages to {op.destination}")
    return OperationResult(destination=op.destination, page_count=len(page_set))


def pack(
    source: SourceDescriptor,
    destination: str,
    transforms: Optional[TransformConfig] = None,
    cfg: Optional[EngineConfig] = None,
) -> OperationResult:
    """Decode `source`, apply `transforms` (default: `cfg.transforms`) and write a CBZ."""
    cfg = cfg or EngineConfig()
    transforms = transforms if transforms is not None else cfg.transforms
    transforms.validate()
    op = Operation("pack", destination)
    return _run(op, lambda: decode_source(source, cfg), transforms, cfg)


def convert(
    source: SourceDescriptor, destination: str, cfg: Optional[EngineConfig] = None
) -> OperationResult:
    """Decode `source` and write it as a CBZ, without any transform."""
    cfg = cfg or EngineConfig()
    op = Operation("convert", destination)
    return _run(op, lambda: decode_source(source, cfg), None, cfg)


def merge(plan: MergePlan, destination: str, cfg: Optional[EngineConfig] = None) -> OperationResult:
    """Concatenate the sources of `plan` in list order into one CBZ.

    Each source keeps its internal page order; ordinals are renumbered across
    the whole concatenation.

    Raises:
        EmptyPlanError: when `plan` has no entries (nothing is written).
    """
    if not plan:
        raise EmptyPlanError()
    cfg = cfg or EngineConfig()
    op = Operation("merge", destination)

    def decode_all() -> PageSet:
        sets = []
        for index, descriptor in enumerate(plan):
            page_set = decode_source(descriptor, cfg)
            logger.debug(f"merge source {index}: {descriptor.location} ({len(page_set)} pages)")
            sets.append(page_set)
        return PageSet.concat(sets)

    return _run(op, decode_all, None, cfg)


def reindex(source: str, destination: str, cfg: Optional[EngineConfig] = None) -> OperationResult:
    """Rewrite any CBZ with canonical entry names.

    Every image entry is kept, ordered naturally by name; other entries are
    dropped.
    """
    cfg = cfg or EngineConfig()
    op = Operation("reindex", destination)
    descriptor = SourceDescriptor(kind=SourceKind.CBZ, location=source)
    return _run(op, lambda: decode_source(descriptor, cfg, CbzDecoder(strict=False)), None, cfg)
