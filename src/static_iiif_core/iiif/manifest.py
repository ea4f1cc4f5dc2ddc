"""Single-canvas IIIF Presentation 3 manifest assembly."""

from __future__ import annotations

import copy
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from ..models import IMAGE_FORMATS, PRIMARY_FORMAT, Job, Size
from .constants import PRESENTATION_CONTEXT
from .descriptor import ImageServiceDescriptor


@dataclass(frozen=True)
class RenderingLink:
    """A downloadable alternative representation (e.g. a pyramidal TIFF)."""

    id: str
    media_type: str
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "Image",
            "label": {"en": [self.label]},
            "format": self.media_type,
        }


def ensure_context(document: dict[str, Any], context: str = PRESENTATION_CONTEXT) -> dict[str, Any]:
    """Make `context` present exactly once, as the first key, without duplicating it."""
    current = document.get("@context")
    if current is None:
        merged: Any = context
    elif isinstance(current, list):
        merged = [c for c in current if c != context] + [context]
        if len(merged) == 1:
            merged = context
    elif current == context:
        merged = context
    else:
        merged = [current, context]

    rest = {k: v for k, v in document.items() if k != "@context"}
    document.clear()
    document["@context"] = merged
    document.update(rest)
    return document


def source_label(origin: str) -> str:
    """A human label for the source: its file name, or the origin itself."""
    name = PurePosixPath(urlparse(origin).path or origin).name
    return name or origin


def _lang(value: str) -> dict[str, list[str]]:
    return {"en": [value]}


def image_url(service_id: str, size: Size, fmt: str) -> str:
    return f"{service_id}/full/{size.width},{size.height}/0/default.{IMAGE_FORMATS[fmt].ext}"


def build_manifest(
    descriptor: ImageServiceDescriptor,
    actual: Size,
    largest: Size,
    job: Job,
    *,
    body_format: str = PRIMARY_FORMAT,
    thumbnail: Size | None = None,
    renderings: Sequence[RenderingLink] = (),
) -> dict[str, Any]:
    """Build the manifest for one image.

    The canvas always carries the true source dimensions while the painting
    body describes `largest`, the biggest rendition that exists. The full
    descriptor is embedded as the body's service.
    """
    base = descriptor.id.rstrip("/")
    label = source_label(job.origin)
    canvas_id = f"{base}/canvas"
    media_type = IMAGE_FORMATS[body_format].media_type

    canvas: dict[str, Any] = {
        "id": canvas_id,
        "type": "Canvas",
        "label": _lang(f"single canvas for {label}"),
        "width": actual.width,
        "height": actual.height,
    }
    if thumbnail is not None:
        canvas["thumbnail"] = [
            {
                "id": image_url(base, thumbnail, body_format),
                "type": "Image",
                "format": media_type,
                "width": thumbnail.width,
                "height": thumbnail.height,
            }
        ]
    canvas["items"] = [
        {
            "id": f"{base}/page",
            "type": "AnnotationPage",
            "label": _lang(f"single anno page for {label}"),
            "items": [
                {
                    "id": f"{base}/painting",
                    "type": "Annotation",
                    "motivation": "painting",
                    "body": {
                        "id": image_url(base, largest, body_format),
                        "type": "Image",
                        "format": media_type,
                        "width": largest.width,
                        "height": largest.height,
                        "service": [copy.deepcopy(descriptor.to_dict())],
                    },
                    "target": canvas_id,
                }
            ],
        }
    ]

    manifest: dict[str, Any] = {
        "id": f"{base}/manifest.json",
        "type": "Manifest",
        "label": _lang(label),
        "items": [canvas],
    }
    if renderings:
        manifest["rendering"] = [r.to_dict() for r in renderings]

    return ensure_context(manifest)
