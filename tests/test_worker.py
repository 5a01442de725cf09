"""Tests for TileWorker, the fetcher and WorkerPool."""

import asyncio
import json

import numpy as np
import pytest
import requests

from tiledecoder import fetch, worker as worker_module
from tiledecoder.errors import (
    GltfError,
    MissingContentError,
    NetworkError,
    TileFormatError,
    UnrecognizedFormatError,
)
from tiledecoder.fetch import FetchResult, build_request_url, fetch_array_buffer
from tiledecoder.models import ServiceConfig, TileContent, TileContentRequest, WorkerOptions
from tiledecoder.pool import WorkerPool
from tiledecoder.worker import TileWorker

from tilebuilders import empty_glb, make_b3dm, make_i3dm, make_pnts_raw, png_bytes, triangle_glb


def _load(worker, request):
    return asyncio.run(worker.load_tile(request))


class TestDecode:
    def test_json_manifest(self, worker, make_request):
        result = _load(worker, make_request(b'{"asset": {"version": "1.0"}, "root": {}}'))
        assert result.error is None
        assert result.content["asset"] == {"version": "1.0"}
        assert result.transferables == []

    def test_json_errors_propagate(self, worker, make_request):
        with pytest.raises(json.JSONDecodeError):
            _load(worker, make_request(b"{broken"))

    def test_unknown_magic(self, worker, make_request):
        result = _load(worker, make_request(b"abcd" + bytes(24)))
        assert isinstance(result.error, UnrecognizedFormatError)
        assert result.content is None

    def test_gltf_without_meshes_is_not_found(self, worker, make_request):
        result = _load(worker, make_request(make_b3dm(empty_glb())))
        assert isinstance(result.error, MissingContentError)
        assert result.error.status == 404

    def test_external_instanced_gltf_is_not_found(self, worker, make_request):
        result = _load(worker, make_request(make_i3dm(b"tree.glb", [[0, 0, 0]], gltf_format=0)))
        assert isinstance(result.error, MissingContentError)

    def test_corrupt_glb(self, worker, make_request):
        glb = bytearray(triangle_glb())
        glb[0:4] = b"nope"
        result = _load(worker, make_request(make_b3dm(bytes(glb))))
        assert isinstance(result.error, GltfError)

    def test_invalid_feature_table_json(self, worker, make_request):
        tile = bytearray(make_b3dm(triangle_glb()))
        tile[28:29] = b"x"
        result = _load(worker, make_request(bytes(tile)))
        assert isinstance(result.error, TileFormatError)
        assert result.content is None

    def test_feature_table_global_past_binary(self, worker, make_request):
        table = {"POINTS_LENGTH": 1, "POSITION": {"byteOffset": 0}, "RTC_CENTER": {"byteOffset": 400}}
        result = _load(worker, make_request(make_pnts_raw(table, bytes(12))))
        assert isinstance(result.error, TileFormatError)
        assert "RTC_CENTER" in str(result.error)

    def test_unknown_numeric_component_type(self, worker, make_request):
        table = {"POINTS_LENGTH": 1, "POSITION": {"byteOffset": 0, "componentType": 9999}}
        result = _load(worker, make_request(make_pnts_raw(table, bytes(12))))
        assert isinstance(result.error, TileFormatError)

    @pytest.mark.parametrize("nodes", [[{"mesh": 5}], [{"mesh": 0, "children": [7]}]])
    def test_glb_index_out_of_range(self, worker, make_request, nodes):
        result = _load(worker, make_request(make_b3dm(triangle_glb(nodes=nodes))))
        assert isinstance(result.error, GltfError)
        assert "out of range" in str(result.error)

    def test_b3dm_result(self, worker, make_request, b3dm_bytes):
        result = _load(worker, make_request(b3dm_bytes, up_axis="Z", root_index=0))
        error, content, transferables = result.as_tuple()
        assert error is None
        assert isinstance(content, TileContent)
        assert content.proj_center is not None
        assert len(transferables) == 1
        assert isinstance(transferables[0], bytearray)
        assert content.mesh.transferables == []

    def test_column_major_transform(self, worker, make_request, b3dm_bytes):
        identity = [1, 0, 0, 0, 0, 1, 0, 0, 0, 0, 1, 0, 0, 0, 0, 1]
        plain = _load(worker, make_request(b3dm_bytes, up_axis="Z"))
        transformed = _load(worker, make_request(b3dm_bytes, up_axis="Z", transform=identity))
        assert transformed.content.rtc_coord == plain.content.rtc_coord

    def test_shared_positions_select_model_space(self, worker, make_request):
        glb = triangle_glb(nodes=[{"mesh": 0}, {"mesh": 0, "translation": [5, 0, 0]}])
        result = _load(worker, make_request(make_b3dm(glb), up_axis="Z"))
        assert result.content.share_position
        assert result.content.proj_center is None


class TestFetch:
    def test_request_url(self):
        assert build_request_url("https://a/b+c.b3dm") == "https://a/b%2Bc.b3dm"
        assert build_request_url("https://a/t.b3dm", "key=1") == "https://a/t.b3dm?key=1"
        assert build_request_url("https://a/t.b3dm?v=2", "key=1") == "https://a/t.b3dm?v=2&key=1"

    def test_http_error_status(self, monkeypatch):
        class Response:
            status_code = 404
            reason = "Not Found"
            content = b""

        monkeypatch.setattr(fetch.requests, "get", lambda url, **kwargs: Response())
        with pytest.raises(NetworkError) as excinfo:
            fetch_array_buffer("https://a/t.b3dm")
        assert excinfo.value.status == 404

    def test_transport_error(self, monkeypatch):
        def fail(url, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(fetch.requests, "get", fail)
        with pytest.raises(NetworkError) as excinfo:
            fetch_array_buffer("https://a/t.b3dm")
        assert excinfo.value.status is None

    def test_default_timeout(self, monkeypatch):
        seen = {}

        class Response:
            status_code = 200
            reason = "OK"
            content = b"data"

        def get(url, **kwargs):
            seen.update(kwargs)
            return Response()

        monkeypatch.setattr(fetch.requests, "get", get)
        assert fetch_array_buffer("https://a/t.b3dm", {"headers": {"x": "1"}}).data == b"data"
        assert seen["timeout"] == fetch.FETCH_TIMEOUT
        assert seen["headers"] == {"x": "1"}


class TestLoadTile:
    def test_fetch_uses_service_params(self, monkeypatch, b3dm_bytes):
        seen = []

        async def fake_fetch(url, options=None):
            seen.append(url)
            return FetchResult(data=b3dm_bytes, status=200)

        monkeypatch.setattr(worker_module, "fetch_tile", fake_fetch)
        options = WorkerOptions(services=[ServiceConfig(), ServiceConfig(url_params="token=abc")])
        tile_worker = TileWorker(options)
        request = TileContentRequest(url="https://example.com/a+b.b3dm", root_index=1, up_axis="Z")

        result = _load(tile_worker, request)

        assert seen == ["https://example.com/a%2Bb.b3dm?token=abc"]
        assert result.error is None
        assert len(tile_worker.tracker) == 0

    def test_network_error(self, monkeypatch, worker, make_request):
        async def fake_fetch(url, options=None):
            raise NetworkError(url, status=503, reason="Service Unavailable")

        monkeypatch.setattr(worker_module, "fetch_tile", fake_fetch)
        result = _load(worker, make_request(url="https://example.com/a.b3dm"))
        assert isinstance(result.error, NetworkError)
        assert result.error.status == 503
        assert not worker.tracker.is_tracking("https://example.com/a.b3dm")

    def test_abort_returns_none(self, monkeypatch, worker, make_request):
        async def slow_fetch(url, options=None):
            await asyncio.sleep(10)

        monkeypatch.setattr(worker_module, "fetch_tile", slow_fetch)
        url = "https://example.com/slow.b3dm"

        async def scenario():
            task = asyncio.ensure_future(worker.load_tile(make_request(url=url)))
            while not worker.tracker.is_tracking(url):
                await asyncio.sleep(0)
            worker.abort_tile_loading(url)
            return await task

        assert asyncio.run(scenario()) is None
        assert not worker.tracker.is_tracking(url)

    def test_abort_without_request_in_flight(self, worker):
        assert worker.abort_tile_loading("https://example.com/idle.b3dm") == 0

    def test_request_image(self, monkeypatch, worker):
        pixels = np.zeros((2, 2, 4), dtype=np.uint8)
        monkeypatch.setattr(worker_module, "fetch_array_buffer",
                            lambda url, options=None: FetchResult(png_bytes(pixels), 200))
        image = worker.request_image("https://example.com/tex.png")
        assert (image.width, image.height) == (2, 2)

    def test_request_image_failure(self, monkeypatch, worker):
        def fail(url, options=None):
            raise NetworkError(url, status=404)

        monkeypatch.setattr(worker_module, "fetch_array_buffer", fail)
        assert worker.request_image("https://example.com/missing.png") is None


class TestWorkerPool:
    def test_decode_on_pool(self, make_request, b3dm_bytes):
        pool = WorkerPool(size=2)
        try:
            results = asyncio.run(_gather(pool, [make_request(b3dm_bytes, url=f"mem://{i}", up_axis="Z")
                                                 for i in range(4)]))
        finally:
            pool.close()
        assert all(r.error is None for r in results)
        assert len({id(r.content) for r in results}) == 4

    def test_abort_through_pool(self, monkeypatch, make_request):
        async def slow_fetch(url, options=None):
            await asyncio.sleep(5)
            return FetchResult(b"", 200)

        monkeypatch.setattr(worker_module, "fetch_tile", slow_fetch)
        url = "https://example.com/slow.b3dm"
        pool = WorkerPool(size=2)

        async def scenario():
            task = asyncio.ensure_future(pool.load_tile(make_request(url=url)))
            for _ in range(500):
                if any(t.worker.tracker.is_tracking(url) for t in pool._threads):
                    break
                await asyncio.sleep(0.01)
            assert await pool.abort(url)
            return await task

        try:
            assert asyncio.run(scenario()) is None
        finally:
            pool.close()

    def test_abort_immediately_after_dispatch(self, monkeypatch, make_request):
        async def slow_fetch(url, options=None):
            await asyncio.sleep(5)
            return FetchResult(b"", 200)

        monkeypatch.setattr(worker_module, "fetch_tile", slow_fetch)
        url = "https://example.com/eager.b3dm"
        pool = WorkerPool(size=1)

        async def scenario():
            task = asyncio.ensure_future(pool.load_tile(make_request(url=url)))
            # let load_tile hand the request to the worker, but no more
            await asyncio.sleep(0)
            aborted = await pool.abort(url)
            return aborted, await task

        try:
            assert asyncio.run(scenario()) == (True, None)
        finally:
            pool.close()

    def test_abort_after_completion_reports_false(self, make_request, b3dm_bytes):
        pool = WorkerPool(size=1)

        async def scenario():
            result = await pool.load_tile(make_request(b3dm_bytes, url="mem://done", up_axis="Z"))
            return result, await pool.abort("mem://done")

        try:
            result, aborted = asyncio.run(scenario())
        finally:
            pool.close()
        assert result.error is None
        assert aborted is False


async def _gather(pool, requests_):
    return await asyncio.gather(*(pool.load_tile(r) for r in requests_))
