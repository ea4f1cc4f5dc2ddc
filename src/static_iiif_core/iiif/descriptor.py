"""IIIF Image API 3 descriptor (`info.json`) parsing, synthesis and reconciliation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..exceptions import DescriptorReadFailed
from ..logger import get_logger
from ..models import PRIMARY_FORMAT, SECONDARY_FORMAT, DerivativePlan, Size, StaticOutputSpec, sort_and_dedupe_sizes
from .constants import IMAGE_API_CONTEXT, IMAGE_API_PROTOCOL, IMAGE_SERVICE_TYPE, SYNTHESIZED_PROFILE

logger = get_logger(__name__)

_KNOWN_KEYS = {
    "@context",
    "id",
    "@id",
    "type",
    "protocol",
    "profile",
    "width",
    "height",
    "sizes",
    "tiles",
    "preferredFormats",
    "extraFormats",
}


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise DescriptorReadFailed(f"info.json {name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise DescriptorReadFailed(f"info.json {name} must be an integer, got {value!r}") from exc
    if number <= 0 or number != value:
        raise DescriptorReadFailed(f"info.json {name} must be a positive integer, got {value!r}")
    return number


@dataclass
class ImageServiceDescriptor:
    id: str
    width: int
    height: int
    profile: str = SYNTHESIZED_PROFILE
    sizes: list[Size] = field(default_factory=list)
    tiles: list[dict[str, Any]] = field(default_factory=list)
    preferred_formats: list[str] = field(default_factory=list)
    extra_formats: list[str] = field(default_factory=list)
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> Size:
        return Size(self.width, self.height)

    @classmethod
    def synthesize(cls, actual: Size, service_id: str) -> ImageServiceDescriptor:
        """A fresh level-2 descriptor for when no tile pyramid was produced."""
        return cls(id=service_id, width=actual.width, height=actual.height, profile=SYNTHESIZED_PROFILE)

    @classmethod
    def from_dict(cls, data: Any) -> ImageServiceDescriptor:
        if not isinstance(data, dict):
            raise DescriptorReadFailed("info.json must be a JSON object")

        service_id = data.get("id") or data.get("@id")
        if not service_id or not isinstance(service_id, str):
            raise DescriptorReadFailed("info.json has no id")

        sizes = []
        for entry in data.get("sizes") or []:
            if not isinstance(entry, dict):
                raise DescriptorReadFailed("info.json sizes entries must be objects")
            width = _positive_int(entry.get("width"), "sizes.width")
            sizes.append(Size(width, _positive_int(entry.get("height"), "sizes.height")))

        tiles = data.get("tiles") or []
        if isinstance(tiles, dict):
            tiles = [tiles]

        profile = data.get("profile") or SYNTHESIZED_PROFILE
        if isinstance(profile, list):
            profile = next((p for p in profile if isinstance(p, str)), SYNTHESIZED_PROFILE)

        return cls(
            id=service_id,
            width=_positive_int(data.get("width"), "width"),
            height=_positive_int(data.get("height"), "height"),
            profile=str(profile),
            sizes=sort_and_dedupe_sizes(sizes),
            tiles=[t for t in tiles if isinstance(t, dict)],
            preferred_formats=[str(f) for f in data.get("preferredFormats") or []],
            extra_formats=[str(f) for f in data.get("extraFormats") or []],
            extras={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "@context": IMAGE_API_CONTEXT,
            "id": self.id,
            "type": IMAGE_SERVICE_TYPE,
            "protocol": IMAGE_API_PROTOCOL,
            "profile": self.profile,
            "width": int(self.width),
            "height": int(self.height),
            "sizes": [s.to_dict() for s in sort_and_dedupe_sizes(self.sizes)],
        }
        if self.tiles:
            doc["tiles"] = self.tiles
        if self.preferred_formats:
            doc["preferredFormats"] = list(self.preferred_formats)
        if self.extra_formats:
            doc["extraFormats"] = list(self.extra_formats)
        doc.update(self.extras)
        return doc


def read_descriptor(path: Path) -> ImageServiceDescriptor:
    """Parse the `info.json` fragment left by the tiling step."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise DescriptorReadFailed(f"Cannot read {path}: {exc}") from exc
    return ImageServiceDescriptor.from_dict(data)


def format_lists(spec: StaticOutputSpec, surviving: tuple[str, ...]) -> list[str]:
    """Formats to advertise in preferredFormats/extraFormats (empty when none apply)."""
    if not spec.webp:
        return []
    if SECONDARY_FORMAT in surviving:
        return [SECONDARY_FORMAT]
    if PRIMARY_FORMAT in surviving:
        return [PRIMARY_FORMAT]
    return []


def build_descriptor(
    existing: ImageServiceDescriptor | None,
    actual: Size,
    plan: DerivativePlan,
    spec: StaticOutputSpec,
    *,
    sizes: list[Size] | None = None,
    formats: tuple[str, ...] | None = None,
) -> ImageServiceDescriptor:
    """Reconcile the tiling fragment (or a synthesized descriptor) with what was produced.

    `sizes` and `formats` default to the full plan and every enabled format;
    callers pass the subset that actually exists on disk.
    """
    descriptor = existing or ImageServiceDescriptor.synthesize(actual, spec.service_url)
    if existing is not None and existing.size != actual:
        logger.warning("info.json reports %s but the source is %s", existing.size, actual)

    if not plan.is_empty:
        descriptor.sizes = sort_and_dedupe_sizes(plan.sizes if sizes is None else sizes)

    surviving = spec.enabled_formats if formats is None else formats
    advertised = format_lists(spec, surviving)
    descriptor.preferred_formats = list(advertised)
    descriptor.extra_formats = list(advertised)
    return descriptor
