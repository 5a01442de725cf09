import pytest

from tiledecoder.geodesy import Projection
from tiledecoder.models import TileContentRequest, WorkerOptions
from tiledecoder.worker import TileWorker

from tilebuilders import degrees_to_cartesian, make_b3dm, triangle_glb


@pytest.fixture
def rtc_center():
    """ECEF point at lon 10, lat 50, height 100 m."""
    return degrees_to_cartesian([[10.0, 50.0, 100.0]])[0]


@pytest.fixture
def mercator():
    return Projection("EPSG:3857")


@pytest.fixture
def worker():
    return TileWorker(WorkerOptions(projection="EPSG:3857"))


@pytest.fixture
def b3dm_bytes(rtc_center):
    glb = triangle_glb([[0, 0, 0], [10, 0, 0], [0, 10, 0]])
    return make_b3dm(glb, {"BATCH_LENGTH": 0, "RTC_CENTER": rtc_center.tolist()})


@pytest.fixture
def make_request():
    def _make(buffer=None, url="mem://tile", **kwargs):
        return TileContentRequest(url=url, raw_buffer=buffer, **kwargs)
    return _make
