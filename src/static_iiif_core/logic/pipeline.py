"""One job in, a directory of IIIF derivatives out.

Order of work: fetch and open the source, plan sizes, generate every
derivative, then (only after all generation has finished) reconcile
`info.json` and write `manifest.json` against what actually exists.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from ..exceptions import BlobStoreError, DescriptorReadFailed, SourceUnreadable
from ..iiif.descriptor import ImageServiceDescriptor, build_descriptor, read_descriptor
from ..iiif.manifest import RenderingLink, build_manifest, source_label
from ..logger import get_job_logger
from ..models import PRIMARY_FORMAT, DerivativePlan, Job, PipelineOptions, Size, StaticOutputSpec
from ..services.imaging.engine import ImageEngine, PillowImageEngine
from ..services.storage.blob_store import BlobStore, fetch_to_file, get_blob_store, publish_directory
from ..utils import clean_dir, join_uri, save_json
from .generator import (
    PYRAMID,
    DerivativeGenerator,
    GenerationReport,
    Operation,
    OperationResult,
    container_file_name,
    tile_info_path,
)
from .planner import plan_derivatives

PUBLISH = "publish"


@dataclass
class JobResult:
    job_id: str
    actual: Size
    plan: DerivativePlan | None
    report: GenerationReport
    descriptor: ImageServiceDescriptor | None = None
    manifest: dict[str, Any] | None = None

    @property
    def cancelled(self) -> bool:
        return self.report.cancelled


@dataclass(frozen=True)
class _Destination:
    uri: str
    store: BlobStore
    local_dir: Path

    @property
    def is_remote(self) -> bool:
        return self.store.local_path(self.uri) is None


def _destination(uri: str, scratch: Path, name: str, options: PipelineOptions) -> _Destination:
    store = get_blob_store(uri, options)
    local = store.local_path(uri)
    return _Destination(uri=uri, store=store, local_dir=local if local is not None else scratch / name)


def _open_source(job: Job, engine: ImageEngine, scratch: Path, options: PipelineOptions, log: logging.Logger):
    try:
        store = get_blob_store(job.origin, options)
        source_path = fetch_to_file(store, job.origin, scratch / "source" / (source_label(job.origin) or "source"))
    except BlobStoreError as exc:
        raise SourceUnreadable(f"Cannot fetch source {job.origin}: {exc}") from exc
    log.info("Opening source %s", job.origin)
    return engine.open(source_path)


def rendering_base(
    job: Job,
    spec: StaticOutputSpec,
    static_dir: Path,
    files_dir: Path | None,
    *,
    log: logging.Logger,
) -> str | None:
    """Public URI prefix for container files, or None when they are not web-addressable."""
    files = job.file_outputs
    if files.public_url:
        return files.public_url
    if urlparse(files.output_location).scheme in ("http", "https"):
        return files.output_location
    if files_dir is not None:
        try:
            relative = Path(files_dir).resolve().relative_to(Path(static_dir).resolve())
        except ValueError:
            relative = None
        if relative is not None:
            return join_uri(spec.service_url, "" if relative == Path(".") else relative.as_posix())
    log.warning(
        "Container files at %s have no public url and sit outside the static output; "
        "leaving them out of the manifest",
        files.output_location,
    )
    return None


def assemble_documents(
    job: Job,
    spec: StaticOutputSpec,
    plan: DerivativePlan,
    report: GenerationReport,
    actual: Size,
    static_dir: Path,
    *,
    tile_info: Path,
    files_dir: Path | None = None,
    log: logging.Logger,
) -> tuple[ImageServiceDescriptor, dict[str, Any]]:
    """Build info.json and manifest.json from the plan and what the report says exists."""
    formats = report.surviving_formats(spec.enabled_formats)
    sizes = report.produced_sizes(plan, formats)
    if formats != spec.enabled_formats:
        log.warning("Only %s survived derivative generation", ", ".join(formats) or "no format")

    existing = None
    if spec.make_pyramid and any(report.succeeded(PYRAMID, fmt) for fmt in spec.enabled_formats):
        try:
            existing = read_descriptor(tile_info)
        except DescriptorReadFailed as exc:
            log.warning("Tile descriptor unusable, synthesizing from source dimensions: %s", exc)

    descriptor = build_descriptor(existing, actual, plan, spec, sizes=sizes, formats=formats)

    largest = sizes[-1] if sizes else actual
    body_format = PRIMARY_FORMAT if PRIMARY_FORMAT in formats or not formats else formats[0]
    renderings = []
    produced = report.produced_containers()
    base = rendering_base(job, spec, static_dir, files_dir, log=log) if produced else None
    if base is not None:
        for result in produced:
            output = result.operation.output
            link = join_uri(base, container_file_name(job, output))
            renderings.append(RenderingLink(link, output.media_type, output.label))

    manifest = build_manifest(
        descriptor,
        actual,
        largest,
        job,
        body_format=body_format,
        thumbnail=sizes[0] if sizes else None,
        renderings=renderings,
    )
    return descriptor, manifest


def _publish(destination: _Destination, report: GenerationReport, log: logging.Logger) -> None:
    try:
        publish_directory(destination.local_dir, destination.store, destination.uri)
    except BlobStoreError as exc:
        log.error("Publishing to %s failed: %s", destination.uri, exc)
        failed = Operation(PUBLISH, target=destination.local_dir)
        report.results.append(OperationResult(failed, ok=False, error=str(exc)))


def run_job(
    job: Job,
    options: PipelineOptions,
    *,
    engine: ImageEngine | None = None,
    cancel_event: threading.Event | None = None,
    show_progress: bool = False,
) -> JobResult:
    """Run a job end to end.

    Only an unreadable source (or an unusable destination URI) raises; derivative
    failures are recorded in the returned report. A tile pyramid that timed out
    leaves info.json and manifest.json unwritten, the same as a cancelled job.
    """
    log = get_job_logger(job.id)
    engine = engine or PillowImageEngine(max_pixels=options.max_pixels)
    scratch = Path(options.scratch_dir) / job.id
    image = None
    generator = None

    def release() -> None:
        if image is not None:
            image.close()
        clean_dir(scratch)

    try:
        image = _open_source(job, engine, scratch, options, log)
        actual = Size(image.width, image.height)
        log.info("Source is %sx%s", actual.width, actual.height)

        spec = job.static_outputs
        plan = None
        static_dest = files_dest = None
        if spec is not None and not (spec.output_location and spec.service_url):
            log.warning("Static outputs need an output location and a service url; skipping them")
            spec = None
        if spec is not None:
            plan = plan_derivatives(spec, actual, allow_upscale=options.allow_upscale, log=log)
            static_dest = _destination(spec.output_location, scratch, "static", options)
        if job.file_outputs is not None and job.file_outputs.outputs:
            files_dest = _destination(job.file_outputs.output_location, scratch, "files", options)

        generator = DerivativeGenerator(
            engine, options, cancel_event=cancel_event, log=log, show_progress=show_progress
        )
        report = generator.generate(
            job,
            plan,
            image,
            static_dir=static_dest.local_dir if static_dest else None,
            files_dir=files_dest.local_dir if files_dest else None,
        )
        result = JobResult(job_id=job.id, actual=actual, plan=plan, report=report)

        if report.cancelled:
            log.warning("Job cancelled; leaving partial derivatives in place and skipping info.json/manifest.json")
            return result
        if report.pyramid_abandoned:
            log.warning("Tile pyramid timed out and may still be writing; skipping info.json/manifest.json")
            return result

        if spec is not None and static_dest is not None:
            result.descriptor, result.manifest = assemble_documents(
                job,
                spec,
                plan,
                report,
                actual,
                static_dest.local_dir,
                tile_info=tile_info_path(options.scratch_dir, job),
                files_dir=files_dest.local_dir if files_dest else None,
                log=log,
            )
            save_json(static_dest.local_dir / "info.json", result.descriptor.to_dict())
            save_json(static_dest.local_dir / "manifest.json", result.manifest)
            log.info("Wrote info.json and manifest.json to %s", static_dest.local_dir)

        for destination in (static_dest, files_dest):
            if destination is not None and destination.is_remote:
                _publish(destination, report, log)

        return result
    finally:
        # Abandoned workers may still hold the image and write into scratch.
        if generator is not None:
            generator.when_idle(release)
        else:
            release()
