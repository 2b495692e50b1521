"""Test bootstrap.

Ensures `src` is importable, keeps config/log files inside `tmp_path`, and
provides an in-process fake IIIF image server so no test touches the network.
"""

from __future__ import annotations

import contextlib
import io
import sys
import tempfile
import threading
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def _config_manager():
    from iiif_stitch_core.config_manager import get_config_manager

    return get_config_manager()


def _reset_log_handlers(logger_mod) -> None:
    for handler in list(logger_mod.app_logger.handlers):
        logger_mod.app_logger.removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()


def pytest_configure():
    """Redirect session logging to a temporary folder before test collection."""
    cm = _config_manager()
    session_logs_dir = Path(tempfile.mkdtemp(prefix="iiif-stitch-pytest-logs-")) / "logs"
    cm.data["paths"]["logs_dir"] = str(session_logs_dir)

    from iiif_stitch_core import logger as logger_mod

    session_logs_dir.mkdir(parents=True, exist_ok=True)
    logger_mod.LOG_BASE_DIR = session_logs_dir
    _reset_log_handlers(logger_mod)


@pytest.fixture(autouse=True)
def _isolated_paths(monkeypatch, tmp_path):
    """Point output and log folders at `tmp_path` for every test."""
    from iiif_stitch_core import logger as logger_mod

    cm = _config_manager()
    monkeypatch.setitem(cm.data["paths"], "output_dir", str(tmp_path / "out"))
    monkeypatch.setitem(cm.data["paths"], "logs_dir", str(tmp_path / "logs"))

    _reset_log_handlers(logger_mod)
    monkeypatch.setattr(logger_mod, "LOG_BASE_DIR", tmp_path / "logs")
    logger_mod.setup_logging()

    yield

    _reset_log_handlers(logger_mod)


def jpeg_bytes(size: tuple[int, int], color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG", quality=95)
    return buf.getvalue()


def write_jpeg(path: Path, size: tuple[int, int], color=(200, 30, 30)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(jpeg_bytes(size, color))
    return path


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", payload=None):
        self.status_code = status_code
        self.content = content
        self._payload = payload
        self.text = content.decode("latin-1", errors="replace")[:200]

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON payload")
        return self._payload

    def raise_for_status(self):
        import requests

        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeIIIFServer:
    """Serves manifests, `info.json` descriptors and tiles from memory.

    Tile responses are synthesized from the request URL: the region and size
    parameters decide the pixel size, so tests observe exactly what a real
    IIIF server would return.
    """

    def __init__(self):
        self.json_routes: dict[str, object] = {}
        self.descriptors: dict[str, dict] = {}
        self.failures: dict[str, int] = {}
        self.tile_overrides: dict[str, bytes] = {}
        self.requests: list[str] = []
        self.headers: dict[str, str] = {}
        self._lock = threading.Lock()

    def add_descriptor(
        self, base_url: str, width: int, height: int, tile=512, tile_height=None, scale_factors=None, formats=None
    ) -> dict:
        tiles = {"width": tile}
        if tile_height:
            tiles["height"] = tile_height
        if scale_factors is not None:
            tiles["scaleFactors"] = scale_factors
        info = {"@id": base_url, "width": width, "height": height, "tiles": [tiles]}
        if formats is not None:
            info["profile"] = ["http://iiif.io/api/image/2/level2.json", {"formats": formats}]
        self.descriptors[base_url] = info
        self.json_routes[f"{base_url}/info.json"] = info
        return info

    def get(self, url, timeout=None, **kwargs):
        with self._lock:
            self.requests.append(url)
        if url in self.failures:
            return FakeResponse(self.failures[url])
        if url in self.json_routes:
            return FakeResponse(200, b"{}", payload=self.json_routes[url])
        if url in self.tile_overrides:
            return FakeResponse(200, self.tile_overrides[url])
        for base, info in self.descriptors.items():
            if url.startswith(base + "/"):
                return self._tile(info, url[len(base) + 1 :])
        return FakeResponse(404, b"not found")

    def _tile(self, info: dict, params: str) -> FakeResponse:
        region, size, _rotation, _quality = params.split("/")
        if region == "full":
            rw, rh = info["width"], info["height"]
        else:
            _x, _y, rw, rh = (int(v) for v in region.split(","))
        w_str, h_str = size.split(",")
        w = int(w_str)
        h = int(h_str) if h_str else max(1, round(rh * w / rw))
        return FakeResponse(200, jpeg_bytes((w, h)))

    def tile_requests(self) -> list[str]:
        return [u for u in self.requests if not u.endswith(".json")]


@pytest.fixture
def iiif_server():
    return FakeIIIFServer()


@pytest.fixture
def make_jpeg():
    return write_jpeg
