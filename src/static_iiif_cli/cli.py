import argparse
import sys
from dataclasses import replace
from pathlib import Path

from static_iiif_core import __version__
from static_iiif_core.config_manager import get_config_manager
from static_iiif_core.exceptions import BlobStoreError, EngineUnavailable, InvalidJobError, SourceUnreadable
from static_iiif_core.logger import get_logger, setup_logging
from static_iiif_core.logic import JobResult, run_job
from static_iiif_core.models import Job, PipelineOptions, StaticOutputSpec, load_job
from static_iiif_core.services.imaging import PillowImageEngine
from static_iiif_core.utils import cleanup_old_files, sanitize_filename

logger = get_logger(__name__)

USAGE = "Args should be source-image, dest-folder"


def job_id_for(source: str) -> str:
    """Derive a URL-safe job id from the source file name."""
    stem = Path(source.rstrip("/")).stem
    safe = "".join(c for c in sanitize_filename(stem) if c.isascii())
    return safe.strip(".") or "image"


def build_static_spec(cm, dest: str) -> StaticOutputSpec:
    """Static output settings from config, writing into `dest`."""
    return StaticOutputSpec(
        output_location=dest,
        service_url=str(cm.get_setting("static.service_url", "") or ""),
        jpeg=bool(cm.get_setting("static.jpeg", True)),
        webp=bool(cm.get_setting("static.webp", True)),
        make_pyramid=bool(cm.get_setting("static.make_pyramid", False)),
        tile_size=int(cm.get_setting("static.tile_size", 512)),
        layout=cm.get_setting("static.layout", "v2"),
        max=cm.get_setting("static.max"),
        sizes=tuple(cm.get_setting("static.sizes", []) or []),
    )


def _prepare_options(cm) -> PipelineOptions:
    options = PipelineOptions.from_config(cm)
    days = int(cm.get_setting("housekeeping.scratch_cleanup_days", 7) or 0)
    if days > 0:
        stats = cleanup_old_files(options.scratch_dir, older_than_days=days)
        if stats["deleted"]:
            logger.info("Removed %d stale scratch entr(ies)", stats["deleted"])
    return options


def _print_summary(result: JobResult) -> None:
    report = result.report
    print(f"🖼️  Source: {result.actual.width}x{result.actual.height}")
    if result.plan is not None:
        sizes = ", ".join(str(s) for s in result.plan.sizes) or "none"
        print(f"📐 Sizes: {sizes}")
    if result.cancelled:
        print("⚠️  Job cancelled; info.json and manifest.json were not written")
        return
    if report.pyramid_abandoned:
        print("⚠️  Tile pyramid timed out; info.json and manifest.json were not written")
    failures = report.failures
    if failures:
        print(f"⚠️  {len(failures)} of {len(report.results)} operation(s) failed:")
        for failure in failures:
            print(f"   ❌ {failure.operation.name}: {failure.error}")
    else:
        print(f"✅ {len(report.results)} operation(s) completed")
    if result.manifest is not None:
        print(f"📄 Manifest: {result.manifest['id']}")


def _execute(job: Job, options: PipelineOptions, engine: PillowImageEngine) -> int:
    try:
        result = run_job(job, options, engine=engine, show_progress=True)
    except (SourceUnreadable, BlobStoreError) as e:
        logger.exception("Job %s failed", job.id)
        print(f"\n❌ Error: {e}")
        return 1
    _print_summary(result)
    return 1 if result.cancelled or result.report.pyramid_abandoned else 0


def main(argv=None) -> int:
    """`static-iiif <source-image> <dest-folder>`."""
    setup_logging()
    args = list(sys.argv[1:] if argv is None else argv)
    cm = get_config_manager()

    try:
        engine = PillowImageEngine(max_pixels=cm.get_setting("images.max_pixels", 0))
    except EngineUnavailable as e:
        logger.warning("Image engine unavailable: %s", e)
        return 0
    print(f"static-iiif {__version__} (Pillow {engine.version}, libvips {engine.vips_version})")

    if len(args) != 2:
        print(USAGE)
        return 0

    source, dest = args
    try:
        job = Job(id=job_id_for(source), origin=source, static_outputs=build_static_spec(cm, dest))
    except InvalidJobError as e:
        print(f"❌ Error: {e}")
        return 1

    print(f"🆔 Job: {job.id}")
    return _execute(job, _prepare_options(cm), engine)


def _build_job_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a static IIIF job described in a JSON file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("job", help="Path to the job JSON document")
    parser.add_argument("-w", "--workers", type=int, help="Override the derivative worker count")
    return parser


def job_main(argv=None) -> int:
    """`static-iiif-job <job.json>`."""
    setup_logging()
    args = _build_job_parser().parse_args(argv)

    try:
        job = load_job(args.job)
    except InvalidJobError as e:
        print(f"❌ Error: {e}")
        return 1

    cm = get_config_manager()
    try:
        engine = PillowImageEngine(max_pixels=cm.get_setting("images.max_pixels", 0))
    except EngineUnavailable as e:
        logger.error("Image engine unavailable: %s", e)
        return 1

    options = _prepare_options(cm)
    if args.workers:
        options = replace(options, workers=max(1, args.workers))
    print(f"🆔 Job: {job.id}")
    return _execute(job, options, engine)


if __name__ == "__main__":
    sys.exit(main())
