"""Test bootstrap.

Ensures `src/` is importable and keeps config paths and log files inside `tmp_path`.
"""

from __future__ import annotations

import contextlib
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def _config_manager():
    from static_iiif_core.config_manager import get_config_manager

    return get_config_manager()


def _drop_log_handlers(logger_mod) -> None:
    for handler in list(logger_mod.app_logger.handlers):
        logger_mod.app_logger.removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()


def pytest_configure():
    """Redirect session logging to a temporary folder before test collection."""
    cm = _config_manager()
    session_logs_dir = Path(tempfile.mkdtemp(prefix="static-iiif-pytest-logs-")) / "logs"
    cm.set_logs_dir(str(session_logs_dir))

    from static_iiif_core import logger as logger_mod

    session_logs_dir.mkdir(parents=True, exist_ok=True)
    logger_mod.LOG_BASE_DIR = session_logs_dir
    _drop_log_handlers(logger_mod)


@pytest.fixture(autouse=True)
def _isolated_paths(monkeypatch, tmp_path):
    """Point scratch and log directories at `tmp_path` for every test."""
    from static_iiif_core import logger as logger_mod

    cm = _config_manager()
    original = {
        "scratch": cm.resolve_path("scratch_dir", "data/local/scratch"),
        "logs": cm.resolve_path("logs_dir", "data/local/logs"),
    }
    cm.set_scratch_dir(str(tmp_path / "scratch"))
    cm.set_logs_dir(str(tmp_path / "logs"))

    (tmp_path / "logs").mkdir(parents=True, exist_ok=True)
    _drop_log_handlers(logger_mod)
    monkeypatch.setattr(logger_mod, "LOG_BASE_DIR", tmp_path / "logs")
    logger_mod.setup_logging()

    yield

    _drop_log_handlers(logger_mod)
    cm.set_scratch_dir(str(original["scratch"]))
    cm.set_logs_dir(str(original["logs"]))


@pytest.fixture
def make_image(tmp_path):
    """Write a small gradient image to disk and return its path."""
    from PIL import Image

    def _make(width=300, height=200, name="source.png", mode="RGB"):
        img = Image.new(mode, (width, height), color=(40, 90, 160) if mode == "RGB" else 128)
        for x in range(0, width, max(1, width // 10)):
            for y in range(height):
                img.putpixel((x, y), (200, 50, 50) if mode == "RGB" else 10)
        path = tmp_path / name
        img.save(path)
        return path

    return _make


@pytest.fixture
def options(tmp_path):
    from static_iiif_core.models import PipelineOptions

    return PipelineOptions(scratch_dir=tmp_path / "scratch", workers=2)
