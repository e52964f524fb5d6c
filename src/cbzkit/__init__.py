"""cbzkit: assemble page images into CBZ archives.

Public API:
- pack(source, destination, transforms=None, cfg=None)
- convert(source, destination, cfg=None)
- merge(plan, destination, cfg=None)
- reindex(source, destination, cfg=None)

Sources are described by `SourceDescriptor` (images glob, PDF, MOBI, AZW3,
EPUB or CBZ); every operation writes its archive atomically and raises a
`CbzError` subclass on failure.
"""
from .config import EngineConfig, TransformConfig
from .errors import CbzError
from .types_ import MergePlan, OrderHint, Page, PageSet, ReadingOrder, SourceDescriptor, SourceKind
from .worker import OperationResult, convert, merge, pack, reindex

__all__ = [
    "CbzError",
    "EngineConfig",
    "MergePlan",
    "OperationResult",
    "OrderHint",
    "Page",
    "PageSet",
    "ReadingOrder",
    "SourceDescriptor",
    "SourceKind",
    "TransformConfig",
    "convert",
    "merge",
    "pack",
    "reindex",
]
