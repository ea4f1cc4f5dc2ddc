"""End-to-end runs of `run_job` against real Pillow output in tmp_path."""

import json
import threading
import time

import pytest
from PIL import Image

from static_iiif_core.exceptions import SourceUnreadable
from static_iiif_core.logic.pipeline import run_job
from static_iiif_core.models import (
    FileOutputSpec,
    IIIFLayout,
    Job,
    PipelineOptions,
    PyramidalTiffOutput,
    Size,
    StaticOutputSpec,
)
from static_iiif_core.services.imaging.engine import PillowImageEngine

SERVICE = "https://example.org/iiif/img"


def _static(out_dir, **kw):
    base = {
        "output_location": str(out_dir),
        "service_url": SERVICE,
        "max": "!160,160",
        "sizes": ("!10,10", "50,"),
    }
    base.update(kw)
    return StaticOutputSpec(**base)


def _read(path):
    return json.loads(path.read_text(encoding="utf-8"))


class WebpBrokenEngine(PillowImageEngine):
    def save(self, image, path, fmt, quality):
        if fmt == "webp":
            raise OSError("webp encoder unavailable")
        return super().save(image, path, fmt, quality)


class SlowTilerEngine(PillowImageEngine):
    """Tiles only after sleeping past the operation timeout."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.finished = threading.Event()
        self.errors = []

    def build_tile_pyramid(self, image, out_dir, **kw):
        time.sleep(self.delay)
        try:
            return super().build_tile_pyramid(image, out_dir, **kw)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self.errors.append(exc)
            raise
        finally:
            self.finished.set()


class PyramidWithoutFragmentEngine(PillowImageEngine):
    def build_tile_pyramid(self, image, out_dir, **kw):
        info_path = super().build_tile_pyramid(image, out_dir, **kw)
        info_path.write_text("{ truncated", encoding="utf-8")
        return info_path


def test_static_run_writes_consistent_documents(tmp_path, make_image, options):
    out = tmp_path / "out"
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=_static(out))

    result = run_job(job, options)

    assert result.report.ok
    assert result.plan.sizes == (Size(10, 7), Size(50, 33), Size(160, 107))
    for size in result.plan.sizes:
        for ext in ("jpg", "webp"):
            wh = out / "full" / f"{size.width},{size.height}" / "0" / f"default.{ext}"
            w_only = out / "full" / f"{size.width}," / "0" / f"default.{ext}"
            assert wh.exists()
            assert w_only.read_bytes() == wh.read_bytes()
    with Image.open(out / "full" / "max" / "0" / "default.jpg") as img:
        assert img.size == (160, 107)

    info = _read(out / "info.json")
    assert info["id"] == SERVICE
    assert (info["width"], info["height"]) == (300, 200)
    assert info["sizes"] == [{"width": 10, "height": 7}, {"width": 50, "height": 33}, {"width": 160, "height": 107}]
    assert info["preferredFormats"] == ["webp"]

    manifest = _read(out / "manifest.json")
    canvas = manifest["items"][0]
    assert (canvas["width"], canvas["height"]) == (300, 200)
    body = canvas["items"][0]["items"][0]["body"]
    assert (body["width"], body["height"]) == (160, 107)
    assert body["service"][0] == info
    assert canvas["thumbnail"][0]["id"] == f"{SERVICE}/full/10,7/0/default.jpg"


def test_no_sizes_uses_actual_dimensions(tmp_path, make_image, options):
    out = tmp_path / "out"
    job = Job(id="img", origin=str(make_image(120, 80)), static_outputs=_static(out, max=None, sizes=()))

    result = run_job(job, options)

    assert result.plan.is_empty
    info = _read(out / "info.json")
    assert info["sizes"] == []
    body = _read(out / "manifest.json")["items"][0]["items"][0]["items"][0]["body"]
    assert (body["width"], body["height"]) == (120, 80)


def test_failed_webp_is_dropped_from_documents(tmp_path, make_image, options):
    out = tmp_path / "out"
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=_static(out))

    result = run_job(job, options, engine=WebpBrokenEngine())

    assert result.report.failed_formats() == {"webp"}
    info = _read(out / "info.json")
    assert info["preferredFormats"] == ["jpg"]
    assert info["extraFormats"] == ["jpg"]
    assert len(info["sizes"]) == 3
    assert not list(out.rglob("*.webp"))
    body = _read(out / "manifest.json")["items"][0]["items"][0]["items"][0]["body"]
    assert body["id"].endswith(".jpg")


def test_pyramid_fragment_is_reconciled(tmp_path, make_image, options):
    out = tmp_path / "out"
    spec = _static(out, make_pyramid=True, tile_size=128, layout=IIIFLayout.V3, webp=False)
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=spec)

    run_job(job, options)

    info = _read(out / "info.json")
    assert info["profile"] == "level0"
    assert info["tiles"][0]["scaleFactors"] == [1, 2, 4]
    assert info["sizes"][-1] == {"width": 160, "height": 107}
    assert "preferredFormats" not in info
    assert (out / "0,0,128,128" / "128,128" / "0" / "default.jpg").exists()
    assert not (out / "0,0,128,128" / "128," / "0").exists()
    assert not (out / "full" / "160," / "0").exists()


def test_unreadable_fragment_falls_back_to_synthesis(tmp_path, make_image, options):
    out = tmp_path / "out"
    spec = _static(out, make_pyramid=True, tile_size=128, webp=False)
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=spec)

    run_job(job, options, engine=PyramidWithoutFragmentEngine())

    info = _read(out / "info.json")
    assert info["profile"] == "level2"
    assert (info["width"], info["height"]) == (300, 200)
    assert "tiles" not in info


def test_file_outputs_add_rendering_links(tmp_path, make_image, options):
    out = tmp_path / "out"
    files = FileOutputSpec(
        output_location=str(tmp_path / "files"),
        outputs=(PyramidalTiffOutput(tile_size=64),),
        public_url="https://cdn.example.org/files",
    )
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=_static(out), file_outputs=files)

    run_job(job, options)

    assert (tmp_path / "files" / "img.jpeg.tif").exists()
    manifest = _read(out / "manifest.json")
    assert manifest["rendering"][0]["id"] == "https://cdn.example.org/files/img.jpeg.tif"
    assert manifest["rendering"][0]["format"] == "image/tiff"


def test_unreadable_source_aborts(tmp_path, options):
    bogus = tmp_path / "bogus.png"
    bogus.write_bytes(b"not an image")
    job = Job(id="img", origin=str(bogus), static_outputs=_static(tmp_path / "out"))

    with pytest.raises(SourceUnreadable):
        run_job(job, options)
    assert not (tmp_path / "out" / "info.json").exists()


def test_cancelled_job_writes_no_documents(tmp_path, make_image, options):
    out = tmp_path / "out"
    cancel = threading.Event()
    cancel.set()
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=_static(out))

    result = run_job(job, options, cancel_event=cancel)

    assert result.cancelled
    assert result.manifest is None
    assert not (out / "info.json").exists()
    assert not (out / "manifest.json").exists()


def test_scratch_space_is_cleaned(tmp_path, make_image, options):
    job = Job(id="img", origin=str(make_image(40, 30)), static_outputs=_static(tmp_path / "out"))
    run_job(job, options)
    assert not (options.scratch_dir / "img").exists()


def test_timed_out_pyramid_leaves_no_documents(tmp_path, make_image):
    out = tmp_path / "out"
    options = PipelineOptions(scratch_dir=tmp_path / "scratch", workers=2, operation_timeout_s=0.2)
    spec = _static(out, make_pyramid=True, tile_size=128, webp=False, max=None, sizes=("100,",))
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=spec)
    engine = SlowTilerEngine(delay=1.0)

    result = run_job(job, options, engine=engine)

    assert result.report.pyramid_abandoned
    assert result.manifest is None
    assert not (out / "info.json").exists()
    assert (out / "full" / "100,67" / "0" / "default.jpg").exists()

    # the abandoned tiler finishes later with the image still open, and nothing it writes becomes info.json
    assert engine.finished.wait(10)
    deadline = time.monotonic() + 5
    while (options.scratch_dir / "img").exists() and time.monotonic() < deadline:
        time.sleep(0.05)
    assert engine.errors == []
    assert (out / "0,0,128,128" / "128," / "0" / "default.jpg").exists()
    assert not (out / "info.json").exists()
    assert not (out / "manifest.json").exists()
    assert not (options.scratch_dir / "img").exists()


def test_container_inside_static_output_links_through_service_url(tmp_path, make_image, options):
    out = tmp_path / "out"
    files = FileOutputSpec(output_location=str(out / "files"), outputs=(PyramidalTiffOutput(tile_size=64),))
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=_static(out), file_outputs=files)

    run_job(job, options)

    manifest = _read(out / "manifest.json")
    assert manifest["rendering"][0]["id"] == f"{SERVICE}/files/img.jpeg.tif"


def test_container_without_public_url_is_not_linked(tmp_path, make_image, options, caplog):
    out = tmp_path / "out"
    files = FileOutputSpec(output_location=str(tmp_path / "files"), outputs=(PyramidalTiffOutput(tile_size=64),))
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=_static(out), file_outputs=files)

    run_job(job, options)

    assert (tmp_path / "files" / "img.jpeg.tif").exists()
    assert "rendering" not in _read(out / "manifest.json")
    assert "no public url" in caplog.text


@pytest.mark.parametrize("make_pyramid", [True, False])
def test_rerun_rewrites_identical_documents(tmp_path, make_image, options, make_pyramid):
    out = tmp_path / "out"
    spec = _static(out, make_pyramid=make_pyramid, tile_size=128)
    job = Job(id="img", origin=str(make_image(300, 200)), static_outputs=spec)

    run_job(job, options)
    first = {name: (out / name).read_bytes() for name in ("info.json", "manifest.json")}
    run_job(job, options)

    assert {name: (out / name).read_bytes() for name in ("info.json", "manifest.json")} == first


def test_rerun_without_pyramid_drops_tile_descriptor(tmp_path, make_image, options):
    out = tmp_path / "out"
    source = str(make_image(300, 200))
    tiled = Job(id="img", origin=source, static_outputs=_static(out, make_pyramid=True, tile_size=128))
    plain = Job(id="img", origin=source, static_outputs=_static(out, make_pyramid=False, tile_size=128))

    run_job(tiled, options)
    assert _read(out / "info.json")["profile"] == "level0"

    result = run_job(plain, options)

    info = _read(out / "info.json")
    assert info["profile"] == "level2"
    assert "tiles" not in info
    assert info["sizes"] == [{"width": s.width, "height": s.height} for s in result.plan.sizes]
    assert _read(out / "manifest.json")["items"][0]["items"][0]["items"][0]["body"]["service"][0] == info
