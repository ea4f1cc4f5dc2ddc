"""Derivative generation: tile pyramids, sized renditions and container files.

Every engine call is guarded on its own; a failure is recorded in the
`GenerationReport` and the remaining operations still run. Tasks run on a
bounded thread pool and the calling thread is the only one that touches the
report, so descriptor assembly can start as soon as `generate` returns.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from PIL import Image
from tqdm import tqdm

from ..exceptions import DerivativeOperationFailed
from ..logger import get_logger
from ..models import (
    IMAGE_FORMATS,
    DerivativePlan,
    Job,
    Jpeg2000Output,
    PipelineOptions,
    PyramidalTiffOutput,
    Size,
    TileFileFormat,
    TileFileOutput,
)
from ..services.imaging.engine import ImageEngine
from ..utils import ensure_dir

logger = get_logger(__name__)

# Worker tasks report engine failures instead of raising them.
# pylint: disable=broad-exception-caught

PYRAMID = "pyramid"
MAX = "max"
RENDITION = "rendition"
CONTAINER = "container"


@dataclass(frozen=True)
class Operation:
    """Identity of one engine-backed write."""

    kind: str
    fmt: str | None = None
    size: Size | None = None
    target: Path | None = None
    output: TileFileOutput | None = None

    @property
    def name(self) -> str:
        parts = [self.kind]
        if self.size is not None:
            parts.append(str(self.size))
        if self.fmt:
            parts.append(self.fmt)
        if self.output is not None:
            parts.append(self.output.codec)
        return " ".join(parts)


@dataclass(frozen=True)
class OperationResult:
    operation: Operation
    ok: bool
    error: str | None = None
    cancelled: bool = False
    timed_out: bool = False


@dataclass
class GenerationReport:
    job_id: str
    results: list[OperationResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failures(self) -> list[OperationResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled

    def _matching(self, kind: str | None = None, fmt: str | None = None, size: Size | None = None):
        for result in self.results:
            op = result.operation
            if kind is not None and op.kind != kind:
                continue
            if fmt is not None and op.fmt != fmt:
                continue
            if size is not None and op.size != size:
                continue
            yield result

    def succeeded(self, kind: str, fmt: str | None = None, size: Size | None = None) -> bool:
        matches = list(self._matching(kind, fmt, size))
        return bool(matches) and all(r.ok for r in matches)

    def failed_formats(self) -> set[str]:
        return {r.operation.fmt for r in self.failures if r.operation.fmt}

    def surviving_formats(self, enabled: Iterable[str]) -> tuple[str, ...]:
        """Enabled formats without any failed operation.

        When every format failed somewhere, fall back to the first format that
        produced anything, so the documents still point at files that exist.
        """
        enabled = tuple(enabled)
        failed = self.failed_formats()
        surviving = tuple(fmt for fmt in enabled if fmt not in failed)
        if surviving:
            return surviving
        for fmt in enabled:
            if any(r.ok for r in self._matching(fmt=fmt)):
                return (fmt,)
        return ()

    def produced_sizes(self, plan: DerivativePlan, formats: Sequence[str]) -> list[Size]:
        """Planned sizes whose `w,h` rendition exists in every given format."""
        if not formats:
            return []
        return [s for s in plan.sizes if all(self.succeeded(RENDITION, fmt, s) for fmt in formats)]

    def produced_containers(self) -> list[OperationResult]:
        return [r for r in self._matching(kind=CONTAINER) if r.ok]

    @property
    def pyramid_abandoned(self) -> bool:
        """A tiler that timed out may still be writing tiles and its fragment."""
        return any(r.timed_out for r in self._matching(kind=PYRAMID))


@dataclass
class _Task:
    operations: list[Operation]
    run: Callable[[], list[OperationResult]]
    started_at: float | None = None


def rendition_paths(static_dir: Path, size: Size, fmt: str, *, legacy: bool) -> list[Path]:
    """`full/{w},{h}/0/default.{ext}` first, then the `full/{w},/0/` mirror when requested."""
    name = f"default.{IMAGE_FORMATS[fmt].ext}"
    paths = [static_dir / "full" / f"{size.width},{size.height}" / "0" / name]
    if legacy:
        paths.append(static_dir / "full" / f"{size.width}," / "0" / name)
    return paths


def max_path(static_dir: Path, fmt: str) -> Path:
    return static_dir / "full" / "max" / "0" / f"default.{IMAGE_FORMATS[fmt].ext}"


def tile_info_path(scratch_dir: Path, job: Job) -> Path:
    """Where the tiler leaves its descriptor fragment for one job."""
    return Path(scratch_dir) / job.id / "tiles" / "info.json"


def container_file_name(job: Job, output: TileFileOutput) -> str:
    return (output.file_name or "").strip() or output.default_file_name(job.id)


def _write_pyramidal_tiff(engine: ImageEngine, image: Image.Image, path: Path, output: PyramidalTiffOutput) -> None:
    engine.save_pyramidal_tiff(image, path, tile_size=output.tile_size, codec=output.codec, quality=output.quality)


def _write_jpeg2000(engine: ImageEngine, image: Image.Image, path: Path, output: Jpeg2000Output) -> None:
    engine.save_jpeg2000(image, path, tile_size=output.tile_size, args=output.args)


CONTAINER_WRITERS: dict[TileFileFormat, Callable[..., None]] = {
    TileFileFormat.PYRAMIDAL_TIFF: _write_pyramidal_tiff,
    TileFileFormat.JPEG2000: _write_jpeg2000,
}


class DerivativeGenerator:
    """Drives the image engine for one job."""

    def __init__(
        self,
        engine: ImageEngine,
        options: PipelineOptions,
        *,
        cancel_event: threading.Event | None = None,
        log: logging.Logger | None = None,
        show_progress: bool = False,
    ):
        self.engine = engine
        self.options = options
        self.cancel_event = cancel_event or threading.Event()
        self.logger = log or logger
        self.show_progress = show_progress
        self._abandoned: list[Future] = []

    def _cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def when_idle(self, callback: Callable[[], None]) -> None:
        """Run `callback` now, or once the last task abandoned on timeout has exited."""
        pending = [f for f in self._abandoned if not f.done()]
        if not pending:
            callback()
            return

        remaining = [len(pending)]
        lock = threading.Lock()

        def finished(_future: Future) -> None:
            with lock:
                remaining[0] -= 1
                last = remaining[0] == 0
            if last:
                callback()

        self.logger.debug("Deferring cleanup until %d abandoned task(s) exit", len(pending))
        for future in pending:
            future.add_done_callback(finished)

    def _guard(self, operation: Operation, fn: Callable[[], object]) -> OperationResult:
        if self._cancelled():
            return OperationResult(operation, ok=False, error="cancelled", cancelled=True)
        try:
            fn()
        except Exception as exc:
            failure = DerivativeOperationFailed(operation.name, str(exc) or exc.__class__.__name__)
            self.logger.warning("Derivative operation failed (-> %s): %s", operation.target, failure)
            self.logger.debug("Failure details for %s", operation.name, exc_info=True)
            return OperationResult(operation, ok=False, error=failure.message)
        self.logger.debug("Wrote %s -> %s", operation.name, operation.target)
        return OperationResult(operation, ok=True)

    def _fail_all(self, operations: Iterable[Operation], message: str, *, cancelled=False, timed_out=False):
        return [
            OperationResult(op, ok=False, error=message, cancelled=cancelled, timed_out=timed_out) for op in operations
        ]

    def _encode_with_mirrors(self, image: Image.Image, fmt: str, paths: list[Path]) -> None:
        self.engine.save(image, paths[0], fmt, self.options.quality_for(fmt))
        for mirror in paths[1:]:
            ensure_dir(mirror.parent)
            shutil.copyfile(paths[0], mirror)

    def _sized_task(self, image: Image.Image, size: Size, operations: list[Operation], paths: dict[str, list[Path]]):
        def run() -> list[OperationResult]:
            if self._cancelled():
                return self._fail_all(operations, "cancelled", cancelled=True)
            try:
                resized = self.engine.resize(image, size)
            except Exception as exc:
                self.logger.warning("Resize to %s failed: %s", size, exc)
                return self._fail_all(operations, f"resize failed: {exc}")
            return [
                self._guard(op, lambda op=op: self._encode_with_mirrors(resized, op.fmt, paths[op.fmt]))
                for op in operations
            ]

        return _Task(operations, run)

    def _container_run(self, op: Operation, writer: Callable[..., None], image: Image.Image):
        def run() -> list[OperationResult]:
            return [self._guard(op, lambda: writer(self.engine, image, op.target, op.output))]

        return run

    def _build_tasks(
        self,
        job: Job,
        plan: DerivativePlan | None,
        image: Image.Image,
        static_dir: Path | None,
        files_dir: Path | None,
        tile_info: Path,
    ) -> list[_Task]:
        tasks: list[_Task] = []
        spec = job.static_outputs

        if spec is not None and static_dir is not None:
            formats = spec.enabled_formats
            legacy = spec.layout.writes_v2

            # The descriptor fragment is shared by every pyramid, so pyramids run one after another.
            if spec.make_pyramid and formats:
                pyramid_ops = [Operation(PYRAMID, fmt=fmt, target=static_dir) for fmt in formats]

                def run_pyramids(ops=pyramid_ops) -> list[OperationResult]:
                    return [
                        self._guard(
                            op,
                            lambda op=op: self.engine.build_tile_pyramid(
                                image,
                                static_dir,
                                tile_size=spec.tile_size,
                                service_id=spec.service_url,
                                fmt=op.fmt,
                                layout=spec.layout,
                                quality=self.options.quality_for(op.fmt),
                                info_path=tile_info,
                            ),
                        )
                        for op in ops
                    ]

                tasks.append(_Task(pyramid_ops, run_pyramids))

            if plan is not None and plan.max_size is not None and formats:
                max_paths = {fmt: [max_path(static_dir, fmt)] for fmt in formats}
                max_ops = [Operation(MAX, fmt=fmt, size=plan.max_size, target=max_paths[fmt][0]) for fmt in formats]
                tasks.append(self._sized_task(image, plan.max_size, max_ops, max_paths))

            for size in plan.sizes if plan is not None and formats else ():
                paths = {fmt: rendition_paths(static_dir, size, fmt, legacy=legacy) for fmt in formats}
                ops = [Operation(RENDITION, fmt=fmt, size=size, target=paths[fmt][0]) for fmt in formats]
                tasks.append(self._sized_task(image, size, ops, paths))

        if job.file_outputs is not None and files_dir is not None:
            for output in job.file_outputs.outputs:
                target = files_dir / container_file_name(job, output)
                op = Operation(CONTAINER, target=target, output=output)
                writer = CONTAINER_WRITERS[output.format]
                tasks.append(_Task([op], self._container_run(op, writer, image)))

        return tasks

    def generate(
        self,
        job: Job,
        plan: DerivativePlan | None,
        image: Image.Image,
        *,
        static_dir: Path | None = None,
        files_dir: Path | None = None,
    ) -> GenerationReport:
        """Run every derivative operation for `job` and return the aggregated report."""
        tile_info = tile_info_path(self.options.scratch_dir, job)
        tasks = self._build_tasks(job, plan, image, static_dir, files_dir, tile_info)
        report = GenerationReport(job_id=job.id)
        if not tasks:
            return report

        self.logger.info(
            "Generating %d derivative task(s) with %d worker(s)", len(tasks), self.options.workers
        )
        collected: list[list[OperationResult] | None] = [None] * len(tasks)
        timeout = float(self.options.operation_timeout_s or 0)

        def start(index: int) -> list[OperationResult]:
            tasks[index].started_at = time.monotonic()
            return tasks[index].run()

        executor = ThreadPoolExecutor(max_workers=self.options.workers, thread_name_prefix=f"derivatives-{job.id}")
        progress = tqdm(total=len(tasks), desc=f"{job.id}", unit="task", disable=not self.show_progress)
        try:
            futures: dict[Future, int] = {executor.submit(start, i): i for i in range(len(tasks))}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=0.5 if timeout else None, return_when=FIRST_COMPLETED)
                for future in done:
                    index = futures[future]
                    try:
                        collected[index] = future.result()
                    except Exception as exc:
                        self.logger.error("Derivative task crashed: %s", exc, exc_info=True)
                        collected[index] = self._fail_all(tasks[index].operations, str(exc))
                    progress.update(1)

                if timeout:
                    now = time.monotonic()
                    for future in list(pending):
                        task = tasks[futures[future]]
                        if task.started_at is not None and now - task.started_at > timeout:
                            names = ", ".join(op.name for op in task.operations)
                            self.logger.warning("Abandoning derivative task after %.1fs: %s", timeout, names)
                            collected[futures[future]] = self._fail_all(
                                task.operations, f"timed out after {timeout}s", timed_out=True
                            )
                            pending.discard(future)
                            self._abandoned.append(future)
                            progress.update(1)
        finally:
            progress.close()
            executor.shutdown(wait=not self._abandoned, cancel_futures=bool(self._abandoned))

        for results in collected:
            report.results.extend(results or [])
        report.cancelled = self._cancelled()

        failures = report.failures
        if failures:
            self.logger.warning("%d of %d derivative operation(s) failed", len(failures), len(report.results))
        else:
            self.logger.info("All %d derivative operation(s) succeeded", len(report.results))
        return report
