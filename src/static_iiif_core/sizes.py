"""IIIF Image API size-parameter parsing and resolution.

Supported syntaxes (Image API 2 and 3): `max`, `full`, `w,`, `,h`, `w,h`,
`!w,h` and `pct:n`. A leading `^` (the Image API 3 upscaling marker) is
accepted and ignored, since resolution never refuses to upscale.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from .exceptions import MalformedSizeRequest
from .models import Size

_WIDTH_ONLY = re.compile(r"^(\d+),$")
_HEIGHT_ONLY = re.compile(r"^,(\d+)$")
_EXACT = re.compile(r"^(\d+),(\d+)$")
_BEST_FIT = re.compile(r"^!(\d+),(\d+)$")
_PERCENT = re.compile(r"^pct:(\d+(?:\.\d+)?|\.\d+)$")


def round_px(value: float) -> int:
    """Round half up to the nearest pixel, never below 1."""
    return max(1, int(math.floor(value + 0.5)))


@dataclass(frozen=True)
class SizeRequest:
    """A parsed size parameter. `kind` is one of max, width, height, exact, best_fit, percent."""

    raw: str
    kind: str
    width: int | None = None
    height: int | None = None
    percent: float | None = None

    def resize(self, actual: Size) -> Size:
        """Compute the concrete target size for an image of `actual` dimensions."""
        full_w, full_h = actual.width, actual.height

        if self.kind == "max":
            return Size(full_w, full_h)
        if self.kind == "width":
            return Size(self.width, round_px(full_h * self.width / full_w))
        if self.kind == "height":
            return Size(round_px(full_w * self.height / full_h), self.height)
        if self.kind == "exact":
            return Size(self.width, self.height)
        if self.kind == "percent":
            factor = self.percent / 100.0
            return Size(round_px(full_w * factor), round_px(full_h * factor))
        if self.kind == "best_fit":
            # Compare the two scale ratios without floats so the bound is hit exactly.
            if self.width * full_h <= self.height * full_w:
                return Size(self.width, round_px(full_h * self.width / full_w))
            return Size(round_px(full_w * self.height / full_h), self.height)

        raise MalformedSizeRequest(self.raw, f"unknown kind {self.kind!r}")


def _positive(request: str, *values: str) -> list[int]:
    numbers = [int(v) for v in values]
    if any(n <= 0 for n in numbers):
        raise MalformedSizeRequest(request, "dimensions must be greater than zero")
    return numbers


def parse_size_request(request: str) -> SizeRequest:
    """Parse an IIIF size parameter, raising `MalformedSizeRequest` on bad syntax."""
    if not isinstance(request, str):
        raise MalformedSizeRequest(str(request), "size request must be a string")

    raw = request
    text = request.strip()
    if text.startswith("^"):
        text = text[1:]
    if not text:
        raise MalformedSizeRequest(raw, "empty size request")

    if text in ("max", "full"):
        return SizeRequest(raw, "max")

    m = _WIDTH_ONLY.match(text)
    if m:
        (w,) = _positive(raw, m.group(1))
        return SizeRequest(raw, "width", width=w)

    m = _HEIGHT_ONLY.match(text)
    if m:
        (h,) = _positive(raw, m.group(1))
        return SizeRequest(raw, "height", height=h)

    m = _EXACT.match(text)
    if m:
        w, h = _positive(raw, m.group(1), m.group(2))
        return SizeRequest(raw, "exact", width=w, height=h)

    m = _BEST_FIT.match(text)
    if m:
        w, h = _positive(raw, m.group(1), m.group(2))
        return SizeRequest(raw, "best_fit", width=w, height=h)

    m = _PERCENT.match(text)
    if m:
        pct = float(m.group(1))
        if pct <= 0:
            raise MalformedSizeRequest(raw, "percentage must be greater than zero")
        return SizeRequest(raw, "percent", percent=pct)

    raise MalformedSizeRequest(raw)


def resolve(request: str, actual: Size) -> Size:
    """Resolve a size request string against the full image size."""
    return parse_size_request(request).resize(actual)
