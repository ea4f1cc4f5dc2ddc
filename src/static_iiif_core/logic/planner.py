"""Derivative set planning: which renditions a job materializes."""

from __future__ import annotations

import logging

from ..exceptions import MalformedSizeRequest
from ..logger import get_logger
from ..models import DerivativePlan, Size, StaticOutputSpec, sort_and_dedupe_sizes
from ..sizes import resolve, round_px

logger = get_logger(__name__)


def clamp_to_actual(size: Size, actual: Size) -> Size:
    """Scale `size` down, keeping its proportions, so it fits inside `actual`."""
    if size.width <= actual.width and size.height <= actual.height:
        return size
    scale = min(actual.width / size.width, actual.height / size.height)
    return Size(
        min(actual.width, round_px(size.width * scale)),
        min(actual.height, round_px(size.height * scale)),
    )


def _resolve_entry(
    request: str,
    actual: Size,
    *,
    allow_upscale: bool,
    log: logging.Logger,
) -> Size | None:
    try:
        size = resolve(request, actual)
    except MalformedSizeRequest as exc:
        log.warning("Skipping size request: %s", exc)
        return None
    if not allow_upscale:
        clamped = clamp_to_actual(size, actual)
        if clamped != size:
            log.info("Size %r resolved to %s, clamped to %s (upscaling disabled)", request, size, clamped)
        size = clamped
    return size


def plan_derivatives(
    spec: StaticOutputSpec,
    actual: Size,
    *,
    allow_upscale: bool = True,
    log: logging.Logger | None = None,
) -> DerivativePlan:
    """Resolve `max` and `sizes` into an ordered, width-deduplicated plan.

    `max` is resolved first so that it wins width collisions; later requests
    resolving to an already planned width are dropped, keeping the first height.
    Malformed requests are skipped and logged rather than failing the job.
    """
    log = log or logger
    planned: list[Size] = []
    max_size = None

    max_request = (spec.max or "").strip()
    if max_request:
        max_size = _resolve_entry(max_request, actual, allow_upscale=allow_upscale, log=log)
        if max_size is not None:
            planned.append(max_size)

    for request in spec.sizes:
        size = _resolve_entry(request, actual, allow_upscale=allow_upscale, log=log)
        if size is None:
            continue
        if any(existing.width == size.width for existing in planned):
            log.debug("Size %r -> %s duplicates a planned width; skipped", request, size)
            continue
        planned.append(size)

    ordered = tuple(sort_and_dedupe_sizes(planned))
    largest = ordered[-1] if ordered else actual
    log.info("Planned %d size(s) for %s: %s", len(ordered), actual, ", ".join(str(s) for s in ordered) or "-")
    return DerivativePlan(sizes=ordered, largest=largest, max_size=max_size)
