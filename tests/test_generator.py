import threading
import time
from pathlib import Path

from PIL import Image

from static_iiif_core.logic.generator import CONTAINER, MAX, PYRAMID, RENDITION, DerivativeGenerator
from static_iiif_core.models import (
    DerivativePlan,
    FileOutputSpec,
    IIIFLayout,
    Job,
    PipelineOptions,
    PyramidalTiffOutput,
    Size,
    StaticOutputSpec,
)


class RecordingEngine:
    """Writes tiny placeholder files and fails on demand."""

    def __init__(self, fail_formats=(), delay=0.0):
        self.fail_formats = set(fail_formats)
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def resize(self, image, size):
        self._record("resize", size)
        return image

    def save(self, image, path, fmt, quality):
        if self.delay:
            time.sleep(self.delay)
        self._record("save", fmt, Path(path))
        if fmt in self.fail_formats:
            raise OSError(f"encoder for {fmt} missing")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_bytes(f"{fmt}:{path.name}".encode())
        return path

    def build_tile_pyramid(self, image, out_dir, *, tile_size, service_id, fmt, layout, quality, info_path):
        self._record("pyramid", fmt, Path(info_path))
        if fmt in self.fail_formats:
            raise OSError("tiler crashed")
        return info_path

    def save_pyramidal_tiff(self, image, path, *, tile_size, codec, quality):
        self._record("tiff", codec)
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_bytes(b"II*\x00")
        return path


def _job(tmp_path, *, make_pyramid=False, layout=IIIFLayout.V2, file_outputs=None):
    spec = StaticOutputSpec(
        output_location=str(tmp_path / "out"),
        service_url="https://example.org/iiif/img",
        make_pyramid=make_pyramid,
        layout=layout,
        max="!1600,1600",
        sizes=("!100,100", "500,"),
    )
    return Job(id="img", origin="/src.png", static_outputs=spec, file_outputs=file_outputs)


PLAN = DerivativePlan(
    sizes=(Size(100, 67), Size(500, 333), Size(1600, 1067)),
    largest=Size(1600, 1067),
    max_size=Size(1600, 1067),
)


def _generator(engine, tmp_path, **kw):
    return DerivativeGenerator(engine, PipelineOptions(scratch_dir=tmp_path / "scratch", workers=3), **kw)


def test_all_operations_succeed(tmp_path):
    engine = RecordingEngine()
    image = Image.new("RGB", (30, 20))
    static_dir = tmp_path / "out"

    report = _generator(engine, tmp_path).generate(_job(tmp_path), PLAN, image, static_dir=static_dir)

    assert report.ok
    # max + three sizes, two formats each
    assert len(report.results) == 8
    assert (static_dir / "full" / "max" / "0" / "default.jpg").exists()
    assert (static_dir / "full" / "500,333" / "0" / "default.webp").exists()
    assert (static_dir / "full" / "500," / "0" / "default.webp").read_bytes() == (
        static_dir / "full" / "500,333" / "0" / "default.webp"
    ).read_bytes()
    # one resize per size task, shared by both formats
    assert sum(1 for c in engine.calls if c[0] == "resize") == 4


def test_v3_layout_skips_width_only_mirror(tmp_path):
    engine = RecordingEngine()
    static_dir = tmp_path / "out"
    job = _job(tmp_path, layout=IIIFLayout.V3)

    _generator(engine, tmp_path).generate(job, PLAN, Image.new("RGB", (30, 20)), static_dir=static_dir)

    assert (static_dir / "full" / "100,67" / "0" / "default.jpg").exists()
    assert not (static_dir / "full" / "100," / "0").exists()


def test_failing_format_is_recorded_and_others_continue(tmp_path):
    engine = RecordingEngine(fail_formats={"webp"})
    static_dir = tmp_path / "out"

    report = _generator(engine, tmp_path).generate(
        _job(tmp_path, make_pyramid=True), PLAN, Image.new("RGB", (30, 20)), static_dir=static_dir
    )

    assert not report.ok
    assert report.failed_formats() == {"webp"}
    assert report.surviving_formats(("jpg", "webp")) == ("jpg",)
    assert report.succeeded(PYRAMID, "jpg")
    assert not report.succeeded(PYRAMID, "webp")
    assert report.succeeded(MAX, "jpg")
    assert report.produced_sizes(PLAN, ("jpg",)) == list(PLAN.sizes)
    assert report.produced_sizes(PLAN, ("jpg", "webp")) == []
    assert all(r.error for r in report.failures)
    assert {r.error for r in report.failures if r.operation.kind != PYRAMID} == {"encoder for webp missing"}


def test_everything_failing_falls_back_to_nothing(tmp_path):
    engine = RecordingEngine(fail_formats={"jpg", "webp"})
    report = _generator(engine, tmp_path).generate(
        _job(tmp_path), PLAN, Image.new("RGB", (30, 20)), static_dir=tmp_path / "out"
    )
    assert report.surviving_formats(("jpg", "webp")) == ()


def test_pyramids_run_in_one_lane_before_sizes_are_counted(tmp_path):
    engine = RecordingEngine()
    report = _generator(engine, tmp_path).generate(
        _job(tmp_path, make_pyramid=True), PLAN, Image.new("RGB", (30, 20)), static_dir=tmp_path / "out"
    )
    pyramid_calls = [c for c in engine.calls if c[0] == "pyramid"]
    assert [c[1] for c in pyramid_calls] == ["jpg", "webp"]
    # the fragment goes to per-job scratch, never into the published tree
    fragment = tmp_path / "scratch" / "img" / "tiles" / "info.json"
    assert {c[2] for c in pyramid_calls} == {fragment}
    assert report.results[0].operation.kind == PYRAMID
    assert report.results[1].operation.kind == PYRAMID


def test_container_outputs(tmp_path):
    engine = RecordingEngine()
    files = FileOutputSpec(output_location=str(tmp_path / "files"), outputs=(PyramidalTiffOutput(),))
    job = Job(id="img", origin="/src.png", file_outputs=files)

    report = _generator(engine, tmp_path).generate(
        job, None, Image.new("RGB", (30, 20)), files_dir=tmp_path / "files"
    )

    (container,) = report.produced_containers()
    assert container.operation.kind == CONTAINER
    assert (tmp_path / "files" / "img.jpeg.tif").exists()


def test_empty_file_outputs_is_a_no_op(tmp_path):
    engine = RecordingEngine()
    job = Job(id="img", origin="/src.png", file_outputs=FileOutputSpec(output_location="", outputs=()))
    report = _generator(engine, tmp_path).generate(job, None, Image.new("RGB", (30, 20)), files_dir=tmp_path)
    assert report.results == []
    assert report.ok


def test_cancelled_before_start_records_every_operation(tmp_path):
    engine = RecordingEngine()
    cancel = threading.Event()
    cancel.set()

    report = _generator(engine, tmp_path, cancel_event=cancel).generate(
        _job(tmp_path), PLAN, Image.new("RGB", (30, 20)), static_dir=tmp_path / "out"
    )

    assert report.cancelled
    assert len(report.results) == 8
    assert all(r.cancelled and not r.ok for r in report.results)
    assert not any(c[0] == "save" for c in engine.calls)


def test_slow_operation_times_out(tmp_path):
    engine = RecordingEngine(delay=1.5)
    options = PipelineOptions(scratch_dir=tmp_path / "scratch", workers=1, operation_timeout_s=0.2)
    plan = DerivativePlan(sizes=(Size(10, 7),), largest=Size(10, 7))
    generator = DerivativeGenerator(engine, options)

    report = generator.generate(_job(tmp_path), plan, Image.new("RGB", (30, 20)), static_dir=tmp_path / "out")

    assert not report.ok
    assert any("timed out" in (r.error or "") for r in report.failures)
    assert {r.operation.kind for r in report.results} == {RENDITION}
    assert all(r.timed_out for r in report.failures)


def test_when_idle_runs_at_once_without_abandoned_tasks(tmp_path):
    generator = _generator(RecordingEngine(), tmp_path)
    generator.generate(_job(tmp_path), PLAN, Image.new("RGB", (30, 20)), static_dir=tmp_path / "out")

    released = threading.Event()
    generator.when_idle(released.set)
    assert released.is_set()


def test_when_idle_waits_for_abandoned_tasks(tmp_path):
    engine = RecordingEngine(delay=1.0)
    options = PipelineOptions(scratch_dir=tmp_path / "scratch", workers=1, operation_timeout_s=0.2)
    plan = DerivativePlan(sizes=(Size(10, 7),), largest=Size(10, 7))
    generator = DerivativeGenerator(engine, options)

    generator.generate(_job(tmp_path), plan, Image.new("RGB", (30, 20)), static_dir=tmp_path / "out")

    released = threading.Event()
    generator.when_idle(released.set)
    assert not released.is_set()
    assert released.wait(5)
    assert sum(1 for c in engine.calls if c[0] == "save") == 2
