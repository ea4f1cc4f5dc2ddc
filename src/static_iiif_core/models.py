"""Immutable job and plan values shared by every pipeline stage."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .exceptions import InvalidJobError

_URL_SAFE_ID = re.compile(r"^[A-Za-z0-9._~-]+$")


@dataclass(frozen=True)
class Size:
    width: int
    height: int

    def __post_init__(self):
        if int(self.width) < 1 or int(self.height) < 1:
            raise ValueError(f"Size dimensions must be positive, got {self.width}x{self.height}")

    def to_dict(self) -> dict[str, int]:
        return {"width": int(self.width), "height": int(self.height)}

    def __str__(self) -> str:
        return f"{self.width},{self.height}"


def sort_and_dedupe_sizes(sizes: Iterable[Size]) -> list[Size]:
    """Return sizes deduplicated by width (first seen wins) and sorted ascending by width."""
    seen: dict[int, Size] = {}
    for size in sizes:
        seen.setdefault(size.width, size)
    return sorted(seen.values(), key=lambda s: s.width)


@dataclass(frozen=True)
class ImageFormat:
    """One output encoding: file extension, Pillow writer and IANA media type."""

    ext: str
    pil_format: str
    media_type: str


IMAGE_FORMATS: dict[str, ImageFormat] = {
    "jpg": ImageFormat("jpg", "JPEG", "image/jpeg"),
    "webp": ImageFormat("webp", "WEBP", "image/webp"),
}

PRIMARY_FORMAT = "jpg"
SECONDARY_FORMAT = "webp"


class IIIFLayout(str, Enum):
    V2 = "v2"
    V3 = "v3"
    V2_AND_V3 = "v2_and_v3"

    @property
    def writes_v2(self) -> bool:
        return self in (IIIFLayout.V2, IIIFLayout.V2_AND_V3)

    @property
    def writes_v3(self) -> bool:
        return self in (IIIFLayout.V3, IIIFLayout.V2_AND_V3)


def parse_layout(value: IIIFLayout | str) -> IIIFLayout:
    """Accept enum values plus the spellings used in job files (`V2AndV3`, `both`)."""
    if isinstance(value, IIIFLayout):
        return value
    key = str(value or "").strip().lower().replace("-", "_").replace("+", "_and_")
    aliases = {"v2andv3": "v2_and_v3", "both": "v2_and_v3"}
    try:
        return IIIFLayout(aliases.get(key, key))
    except ValueError as exc:
        raise InvalidJobError(f"Unknown IIIF layout: {value!r}") from exc


class TileFileFormat(str, Enum):
    PYRAMIDAL_TIFF = "pyramidal_tiff"
    JPEG2000 = "jpeg2000"


@dataclass(frozen=True)
class PyramidalTiffOutput:
    """A multi-resolution TIFF whose pages are encoded with one tile codec."""

    tile_format: str = "jpeg"
    quality: int = 90
    tile_size: int = 512
    file_name: str | None = None
    format: TileFileFormat = field(default=TileFileFormat.PYRAMIDAL_TIFF, init=False)

    def __post_init__(self):
        codec = (self.tile_format or "").strip().lower()
        if codec == "jpg":
            codec = "jpeg"
        if codec not in ("jpeg", "webp"):
            raise InvalidJobError(f"Unsupported pyramidal TIFF tile format: {self.tile_format!r}")
        object.__setattr__(self, "tile_format", codec)
        if int(self.tile_size) <= 0:
            raise InvalidJobError("Pyramidal TIFF tile size must be positive")

    @property
    def codec(self) -> str:
        return self.tile_format

    @property
    def media_type(self) -> str:
        return "image/tiff"

    @property
    def label(self) -> str:
        return f"Pyramidal TIFF ({self.codec} tiles)"

    def default_file_name(self, job_id: str) -> str:
        return f"{job_id}.{self.codec}.tif"


@dataclass(frozen=True)
class Jpeg2000Output:
    """A single-file JPEG 2000 with its own resolution levels."""

    args: tuple[str, ...] = ()
    tile_size: int = 512
    file_name: str | None = None
    format: TileFileFormat = field(default=TileFileFormat.JPEG2000, init=False)

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(str(a) for a in self.args or ()))
        if int(self.tile_size) <= 0:
            raise InvalidJobError("JPEG 2000 tile size must be positive")

    @property
    def codec(self) -> str:
        return "jp2"

    @property
    def media_type(self) -> str:
        return "image/jp2"

    @property
    def label(self) -> str:
        return "JPEG 2000"

    def default_file_name(self, job_id: str) -> str:
        return f"{job_id}.jp2"


TileFileOutput = PyramidalTiffOutput | Jpeg2000Output


@dataclass(frozen=True)
class StaticOutputSpec:
    """What to produce for a static info.json/manifest.json run."""

    output_location: str = ""
    service_url: str = ""
    jpeg: bool = True
    webp: bool = True
    make_pyramid: bool = False
    tile_size: int = 512
    layout: IIIFLayout = IIIFLayout.V2
    max: str | None = None
    sizes: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "sizes", tuple(str(s) for s in self.sizes or ()))
        object.__setattr__(self, "layout", parse_layout(self.layout))
        if int(self.tile_size) <= 0:
            raise InvalidJobError(f"Tile size must be a positive integer, got {self.tile_size}")
        if self.requests_derivatives and not (self.output_location and self.service_url):
            raise InvalidJobError("Static outputs need both an output location and a service url")

    @property
    def requests_derivatives(self) -> bool:
        return bool(self.make_pyramid or (self.max or "").strip() or self.sizes)

    @property
    def enabled_formats(self) -> tuple[str, ...]:
        flags = {PRIMARY_FORMAT: self.jpeg, SECONDARY_FORMAT: self.webp}
        return tuple(fmt for fmt, enabled in flags.items() if enabled)


@dataclass(frozen=True)
class FileOutputSpec:
    output_location: str
    outputs: tuple[TileFileOutput, ...] = ()
    public_url: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "outputs", tuple(self.outputs or ()))
        if self.outputs and not self.output_location:
            raise InvalidJobError("File outputs need an output location")


@dataclass(frozen=True)
class Job:
    id: str
    origin: str
    static_outputs: StaticOutputSpec | None = None
    file_outputs: FileOutputSpec | None = None

    def __post_init__(self):
        if not self.id or not _URL_SAFE_ID.match(self.id):
            raise InvalidJobError(f"Job id must be URL-safe, got {self.id!r}")
        if not self.origin:
            raise InvalidJobError("Job origin is required")


@dataclass(frozen=True)
class DerivativePlan:
    """Resolved target sizes, ascending by width, with the manifest's largest size."""

    sizes: tuple[Size, ...]
    largest: Size
    max_size: Size | None = None

    @property
    def is_empty(self) -> bool:
        return not self.sizes


@dataclass(frozen=True)
class PipelineOptions:
    """Per-job runtime knobs, built once from config and passed explicitly."""

    scratch_dir: Path
    workers: int = 4
    operation_timeout_s: float = 0
    request_timeout: int = 30
    jpeg_quality: int = 90
    webp_quality: int = 85
    allow_upscale: bool = True
    max_pixels: int = 0
    azure_account_url: str = ""
    azure_connection_string: str = ""

    @classmethod
    def from_config(cls, cm) -> PipelineOptions:
        workers = int(cm.get_setting("system.workers", 4) or 4)
        return cls(
            scratch_dir=cm.get_scratch_dir(),
            workers=max(1, min(workers, 16)),
            operation_timeout_s=float(cm.get_setting("system.operation_timeout_s", 0) or 0),
            request_timeout=int(cm.get_setting("system.request_timeout", 30) or 30),
            jpeg_quality=int(cm.get_setting("images.jpeg_quality", 90)),
            webp_quality=int(cm.get_setting("images.webp_quality", 85)),
            allow_upscale=bool(cm.get_setting("images.allow_upscale", True)),
            max_pixels=int(cm.get_setting("images.max_pixels", 0) or 0),
            azure_account_url=str(cm.get_setting("storage.azure.account_url", "") or ""),
            azure_connection_string=str(cm.get_setting("storage.azure.connection_string", "") or ""),
        )

    def quality_for(self, fmt: str) -> int:
        return self.webp_quality if fmt == "webp" else self.jpeg_quality


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _tile_file_output_from_dict(data: dict[str, Any]) -> TileFileOutput:
    raw_format = str(_pick(data, "format", default="")).strip().lower().replace("-", "_")
    file_name = _pick(data, "file_name", "fileName")
    tile_size = int(_pick(data, "tile_size", "tileSize", default=512))
    if raw_format in ("pyramidal_tiff", "pyramidaltiff", "tiff", "ptif"):
        return PyramidalTiffOutput(
            tile_format=str(_pick(data, "tile_format", "tileFormat", default="jpeg")),
            quality=int(_pick(data, "quality", default=90)),
            tile_size=tile_size,
            file_name=file_name,
        )
    if raw_format in ("jpeg2000", "jp2"):
        return Jpeg2000Output(args=tuple(_pick(data, "args", default=())), tile_size=tile_size, file_name=file_name)
    raise InvalidJobError(f"Unknown tile file output format: {raw_format!r}")


def job_from_dict(data: dict[str, Any]) -> Job:
    """Build a `Job` from a JSON-like mapping (snake_case or camelCase keys)."""
    if not isinstance(data, dict):
        raise InvalidJobError("Job document must be a JSON object")

    static_outputs = None
    static_raw = _pick(data, "static_outputs", "staticOutputs")
    if isinstance(static_raw, dict):
        static_outputs = StaticOutputSpec(
            output_location=str(_pick(static_raw, "output_location", "outputLocation", default="")),
            service_url=str(_pick(static_raw, "service_url", "serviceUrl", default="")),
            jpeg=bool(_pick(static_raw, "jpeg", default=True)),
            webp=bool(_pick(static_raw, "webp", "webP", default=True)),
            make_pyramid=bool(_pick(static_raw, "make_pyramid", "makePyramid", default=False)),
            tile_size=int(_pick(static_raw, "tile_size", "tileSize", default=512)),
            layout=parse_layout(_pick(static_raw, "layout", "layoutVersion", default="v2")),
            max=_pick(static_raw, "max"),
            sizes=tuple(_pick(static_raw, "sizes", default=())),
        )

    file_outputs = None
    file_raw = _pick(data, "file_outputs", "fileOutputs")
    if isinstance(file_raw, dict):
        file_outputs = FileOutputSpec(
            output_location=str(_pick(file_raw, "output_location", "outputLocation", default="")),
            outputs=tuple(_tile_file_output_from_dict(o) for o in _pick(file_raw, "outputs", default=[])),
            public_url=_pick(file_raw, "public_url", "publicUrl"),
        )

    return Job(
        id=str(_pick(data, "id", default="")),
        origin=str(_pick(data, "origin", default="")),
        static_outputs=static_outputs,
        file_outputs=file_outputs,
    )


def load_job(path: Path | str) -> Job:
    """Read a job description from a JSON file."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InvalidJobError(f"Unable to read job file {p}: {exc}") from exc
    return job_from_dict(data)
