from __future__ import annotations

import glob
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .core import extract_order_hint, natural_key
from .errors import NoMatchError
from .types_ import MergePlan, OrderHint, ReadingOrder, SourceDescriptor, SourceKind

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "cbzkit.json"


@dataclass
class TransformConfig:
    """Per-page transforms applied by Pack.

    Transforms run in a fixed order: autosplit, brightness, contrast, blur.
    The defaults are all identities.
    """

    autosplit: bool = False
    reading_order: ReadingOrder = ReadingOrder.RTL
    brightness: int = 0
    contrast: float = 1.0
    blur: float = 0.0

    def validate(self) -> None:
        """Raise ValueError for out-of-range parameters."""
        if not self.contrast > 0:
            raise ValueError(f"contrast factor must be positive, got {self.contrast}")
        if not -255 <= self.brightness <= 255:
            raise ValueError(f"brightness delta must be within [-255, 255], got {self.brightness}")
        if self.blur < 0:
            raise ValueError(f"blur radius must not be negative, got {self.blur}")

    @property
    def is_identity(self) -> bool:
        return (
            not self.autosplit
            and self.brightness == 0
            and self.contrast == 1.0
            and self.blur == 0
        )


@dataclass
class EngineConfig:
    """Runtime configuration shared by every operation.

    Attributes:
        nb_worker: worker threads used for per-page decode/transform work.
        pdf_dpi: rasterization resolution for PDF pages.
        pdf_prefer_embedded: extract a page's single embedded JPEG as-is
            instead of rendering the page.
        jpeg_quality: quality used when a transform re-encodes JPEG/WebP pages.
        compresslevel: deflate level for archive entries; None stores entries
            uncompressed (page images are already compressed).
        transforms: transforms applied by Pack.
    """

    nb_worker: int = 1
    pdf_dpi: int = 150
    pdf_prefer_embedded: bool = True
    jpeg_quality: int = 95
    compresslevel: Optional[int] = None
    transforms: TransformConfig = field(default_factory=TransformConfig)


def load_config_from_path(path: str) -> Dict[str, Any]:
    """Load an optional JSON config file (`cbzkit.json`) from directory `path`.

    Supported keys (all optional): `nb_worker`, `dpi`, `pdf_prefer_embedded`,
    `jpeg_quality`, `compresslevel`, `autosplit`, `reading_order`,
    `brightness`, `contrast`, `blur`.

    Raises:
        ValueError: if the file exists but is not a valid JSON object.

    Returns an empty dict when no config file is present.
    """
    cfg_path = os.path.join(path, CONFIG_FILENAME)
    if not os.path.exists(cfg_path):
        return {}
    try:
        with open(cfg_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid {CONFIG_FILENAME} ({cfg_path}): {e.msg}")
    except OSError as e:
        raise ValueError(f"Invalid {CONFIG_FILENAME} ({cfg_path}): {e}")
    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid {CONFIG_FILENAME} ({cfg_path}): top-level JSON must be an object"
        )
    logger.debug(f"loaded config from {cfg_path}: {data}")
    return data


def _plan_entry(entry: Any, base_dir: str) -> SourceDescriptor:
    if isinstance(entry, str):
        entry = {"path": entry}
    if not isinstance(entry, dict) or "path" not in entry:
        raise ValueError(f"invalid merge plan entry: {entry!r}")
    location = str(entry["path"])
    if not os.path.isabs(location):
        location = os.path.join(base_dir, location)
    kind = SourceKind(entry["kind"]) if entry.get("kind") else None
    hint = None
    if "volume" in entry or "chapter" in entry:
        hint = OrderHint(
            volume=int(entry.get("volume") or 0),
            chapter=int(entry.get("chapter") or 0),
            extra=int(entry.get("extra") or 0),
        )
    return SourceDescriptor.from_path(location, kind=kind, order_hint=hint)


def load_merge_plan(plan_path: str) -> MergePlan:
    """Load a merge plan from a YAML file.

    The document is either a list of entries or a mapping with a `sources`
    list. An entry is a path string or a mapping with `path` and optional
    `kind`, `volume`, `chapter` and `extra` keys. Relative paths are resolved
    against the plan file's directory.

    Example:
        sources:
          - path: Berserk v01.cbz
            volume: 1
          - path: extras/
            kind: images
    """
    with open(plan_path, "r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid merge plan ({plan_path}): {e}")
    if isinstance(data, dict):
        data = data.get("sources")
    if data is None:
        data = []
    if not isinstance(data, list):
        raise ValueError(f"Invalid merge plan ({plan_path}): expected a list of sources")
    base_dir = os.path.dirname(os.path.abspath(plan_path))
    return [_plan_entry(entry, base_dir) for entry in data]


def plan_from_paths(paths: List[str]) -> MergePlan:
    """Build a plan from archive paths, attaching hints parsed from file names."""
    return [
        SourceDescriptor.from_path(p, order_hint=extract_order_hint(p))
        for p in paths
    ]


def plan_from_glob(pattern: str) -> MergePlan:
    """Expand a glob of archives into a plan, in natural file-name order."""
    paths = [p for p in glob.glob(pattern) if os.path.isfile(p)]
    if not paths:
        raise NoMatchError(f"no archive matches {pattern}")
    paths.sort(key=lambda p: (natural_key(os.path.basename(p)), p))
    return plan_from_paths(paths)


def sort_plan(plan: MergePlan) -> MergePlan:
    """Stable sort: hinted sources by hint first, then the rest in natural name order."""
    hinted = [d for d in plan if d.order_hint is not None]
    unhinted = [d for d in plan if d.order_hint is None]
    hinted.sort(key=lambda d: d.order_hint)
    unhinted.sort(key=lambda d: natural_key(os.path.basename(d.location)))
    return hinted + unhinted
