"""Pillow-backed image processing engine.

The pipeline only talks to the `ImageEngine` protocol; `PillowImageEngine` is
the concrete implementation used by the CLI. Every method either returns or
raises, and the generator turns raised errors into recorded failures.

Tiled pyramidal TIFFs go through libvips (`pyvips`), since Pillow can only
write striped TIFF pages.
"""

from __future__ import annotations

import math
import shutil
from pathlib import Path
from typing import Protocol

import pyvips
from PIL import Image, UnidentifiedImageError, features

from ...exceptions import EngineUnavailable, SourceUnreadable
from ...iiif.constants import IMAGE_API_CONTEXT, IMAGE_API_PROTOCOL, IMAGE_SERVICE_TYPE, TILED_PROFILE
from ...logger import get_logger
from ...models import IMAGE_FORMATS, IIIFLayout, Size
from ...utils import ensure_dir, save_json

logger = get_logger(__name__)

_TIFF_COMPRESSION = {"jpeg": "jpeg", "webp": "webp"}
_JPEG_MODES = ("RGB", "L", "CMYK")
_WEBP_MODES = ("RGB", "RGBA")
_J2K_MODES = ("RGB", "RGBA", "L", "LA")


class ImageEngine(Protocol):
    def open(self, path: Path) -> Image.Image: ...

    def build_tile_pyramid(
        self,
        image: Image.Image,
        out_dir: Path,
        *,
        tile_size: int,
        service_id: str,
        fmt: str,
        layout: IIIFLayout,
        quality: int,
        info_path: Path,
    ) -> Path: ...

    def resize(self, image: Image.Image, size: Size) -> Image.Image: ...

    def save(self, image: Image.Image, path: Path, fmt: str, quality: int) -> Path: ...

    def save_pyramidal_tiff(
        self, image: Image.Image, path: Path, *, tile_size: int, codec: str, quality: int
    ) -> Path: ...

    def save_jpeg2000(self, image: Image.Image, path: Path, *, tile_size: int, args: tuple[str, ...]) -> Path: ...


def scale_factors_for(width: int, height: int, tile_size: int) -> list[int]:
    """Powers of two from 1 up to the first factor where the image fits one tile."""
    factors = [1]
    while math.ceil(width / factors[-1]) > tile_size or math.ceil(height / factors[-1]) > tile_size:
        factors.append(factors[-1] * 2)
    return factors


def tile_regions(width: int, height: int, tile_size: int, scale_factor: int):
    """Yield `(x, y, w, h, sw, sh)`: full-resolution region plus its scaled tile size."""
    step = tile_size * scale_factor
    for y in range(0, height, step):
        rh = min(step, height - y)
        for x in range(0, width, step):
            rw = min(step, width - x)
            yield x, y, rw, rh, math.ceil(rw / scale_factor), math.ceil(rh / scale_factor)


def _convert_for(image: Image.Image, allowed_modes: tuple[str, ...]) -> Image.Image:
    if image.mode in allowed_modes:
        return image
    if "RGBA" in allowed_modes and ("A" in image.getbands() or image.mode == "P"):
        return image.convert("RGBA")
    return image.convert("RGB")


def _parse_j2k_args(args: tuple[str, ...]) -> dict:
    options: dict = {}
    for arg in args:
        key, sep, value = str(arg).partition("=")
        key = key.strip().lstrip("-").replace("-", "_")
        value = value.strip()
        if not sep or not key:
            raise ValueError(f"JPEG 2000 arguments must be key=value, got {arg!r}")
        if key == "quality_layers":
            options[key] = [float(v) for v in value.split(",") if v.strip()]
        elif key == "num_resolutions":
            options[key] = int(value)
        elif key == "irreversible":
            options[key] = value.lower() in ("1", "true", "yes", "on")
        elif key in ("progression", "quality_mode"):
            options[key] = value
        else:
            raise ValueError(f"Unsupported JPEG 2000 argument: {key}")
    return options


class PillowImageEngine:
    """Implements the engine contract with Pillow (libjpeg, libwebp, libtiff, openjpeg)."""

    def __init__(self, max_pixels: int | None = 0):
        if not features.check_codec("jpg"):
            raise EngineUnavailable("Pillow was built without JPEG support")
        if not features.check_module("webp"):
            logger.warning("Pillow was built without WebP support; webp derivatives will fail")
        # 0 or None disables Pillow's decompression-bomb limit.
        Image.MAX_IMAGE_PIXELS = int(max_pixels) if max_pixels else None

    @property
    def version(self) -> str:
        from PIL import __version__

        return __version__

    @property
    def vips_version(self) -> str:
        return ".".join(str(pyvips.version(i)) for i in range(3))

    def open(self, path: Path) -> Image.Image:
        try:
            image = Image.open(str(path))
            image.load()
        except (OSError, UnidentifiedImageError, Image.DecompressionBombError, ValueError) as exc:
            raise SourceUnreadable(f"Cannot open source image {path}: {exc}") from exc
        logger.debug("Opened %s (%sx%s, mode %s)", path, image.width, image.height, image.mode)
        return image

    def resize(self, image: Image.Image, size: Size) -> Image.Image:
        if image.size == (size.width, size.height):
            return image
        return image.resize((size.width, size.height), Image.Resampling.LANCZOS)

    def save(self, image: Image.Image, path: Path, fmt: str, quality: int) -> Path:
        spec = IMAGE_FORMATS[fmt]
        ensure_dir(path.parent)
        if spec.pil_format == "JPEG":
            _convert_for(image, _JPEG_MODES).save(str(path), format="JPEG", quality=int(quality), optimize=True)
        else:
            _convert_for(image, _WEBP_MODES).save(str(path), format=spec.pil_format, quality=int(quality))
        return path

    def build_tile_pyramid(
        self,
        image: Image.Image,
        out_dir: Path,
        *,
        tile_size: int,
        service_id: str,
        fmt: str,
        layout: IIIFLayout,
        quality: int,
        info_path: Path,
    ) -> Path:
        """Write a level-0 IIIF tile pyramid under `out_dir` and its descriptor fragment to `info_path`.

        Tiles follow `{x},{y},{w},{h}/{sw},{sh}/0/default.{ext}` for the v3
        layout and `{x},{y},{w},{h}/{sw},/0/default.{ext}` for v2; when both
        are requested the v2 tile is a byte copy of the v3 one. The fragment
        never lands in `out_dir`: the published `info.json` is assembled later
        from it.
        """
        ext = IMAGE_FORMATS[fmt].ext
        width, height = image.size
        factors = scale_factors_for(width, height, tile_size)
        level = image
        written = 0

        for factor in factors:
            level_w, level_h = math.ceil(width / factor), math.ceil(height / factor)
            if level.size != (level_w, level_h):
                level = level.resize((level_w, level_h), Image.Resampling.LANCZOS)

            for x, y, rw, rh, sw, sh in tile_regions(width, height, tile_size, factor):
                lx, ly = x // factor, y // factor
                tile = level.crop((lx, ly, min(lx + sw, level_w), min(ly + sh, level_h)))
                if tile.size != (sw, sh):
                    tile = tile.resize((sw, sh), Image.Resampling.LANCZOS)

                region_dir = out_dir / f"{x},{y},{rw},{rh}"
                targets = []
                if layout.writes_v3:
                    targets.append(region_dir / f"{sw},{sh}" / "0" / f"default.{ext}")
                if layout.writes_v2:
                    targets.append(region_dir / f"{sw}," / "0" / f"default.{ext}")

                self.save(tile, targets[0], fmt, quality)
                for mirror in targets[1:]:
                    ensure_dir(mirror.parent)
                    shutil.copyfile(targets[0], mirror)
                written += 1

        info = {
            "@context": IMAGE_API_CONTEXT,
            "id": service_id,
            "type": IMAGE_SERVICE_TYPE,
            "protocol": IMAGE_API_PROTOCOL,
            "profile": TILED_PROFILE,
            "width": width,
            "height": height,
            "sizes": [
                {"width": math.ceil(width / f), "height": math.ceil(height / f)} for f in reversed(factors)
            ],
            "tiles": [{"width": tile_size, "height": tile_size, "scaleFactors": factors}],
        }
        save_json(info_path, info)
        logger.debug("Wrote %d %s tiles (scale factors %s) under %s", written, ext, factors, out_dir)
        return info_path

    def save_pyramidal_tiff(self, image: Image.Image, path: Path, *, tile_size: int, codec: str, quality: int) -> Path:
        """Write a tiled pyramidal TIFF (`tile_size` square tiles, one IFD per halved level) with libvips."""
        compression = _TIFF_COMPRESSION.get(codec)
        if compression is None:
            raise ValueError(f"Unsupported TIFF tile codec: {codec}")

        rgb = _convert_for(image, ("RGB",))
        vimage = pyvips.Image.new_from_memory(rgb.tobytes(), rgb.width, rgb.height, 3, "uchar")

        ensure_dir(path.parent)
        vimage.tiffsave(
            str(path),
            tile=True,
            pyramid=True,
            tile_width=tile_size,
            tile_height=tile_size,
            compression=compression,
            Q=int(quality),
        )
        logger.debug("Wrote pyramidal TIFF %s (%spx tiles, %s, libvips %s)", path, tile_size, codec, self.vips_version)
        return path

    def save_jpeg2000(self, image: Image.Image, path: Path, *, tile_size: int, args: tuple[str, ...] = ()) -> Path:
        options = {"irreversible": True}
        width, height = image.size
        if width > tile_size or height > tile_size:
            options["tile_size"] = (tile_size, tile_size)
        smallest = min(width, height, tile_size)
        options["num_resolutions"] = max(1, min(6, int(math.log2(smallest)) + 1)) if smallest > 1 else 1
        options.update(_parse_j2k_args(args))

        ensure_dir(path.parent)
        _convert_for(image, _J2K_MODES).save(str(path), format="JPEG2000", **options)
        logger.debug("Wrote JPEG 2000 %s with %s", path, options)
        return path
