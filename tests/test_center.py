"""Tests for the bounding accumulator and the model-center calculator."""

import numpy as np
import pytest

from tiledecoder.center import BoundingAccumulator, get_model_center, up_axis_matrix
from tiledecoder.constants import IDENTITY_MATRIX, X_TO_Z, Y_TO_Z
from tiledecoder.gltf import parse_glb
from tiledecoder.matrices import mat4_translation
from tiledecoder.models import BufferAttribute, DecodedMesh, FeatureTable, Mesh, Primitive

from tilebuilders import triangle_glb

TRIANGLE = [[0, 0, 0], [2, 0, 0], [0, 4, 0]]


class TestBoundingAccumulator:
    def test_empty_resolves_to_origin(self):
        acc = BoundingAccumulator()
        assert acc.is_empty()
        assert acc.center() == [0.0, 0.0, 0.0]

    def test_midpoint(self):
        acc = BoundingAccumulator()
        acc.fold(np.array([[0.0, 0.0, 0.0], [2.0, 4.0, 6.0]]))
        acc.fold(np.array([[-2.0, 1.0, 1.0]]))
        assert acc.center() == [0.0, 2.0, 3.0]

    def test_nan_height_resolves_to_zero(self):
        acc = BoundingAccumulator()
        acc.fold(np.array([[1.0, 2.0, np.nan]]))
        center = acc.center()
        assert center[:2] == [1.0, 2.0]
        assert center[2] == 0.0

    def test_nan_vertex_skipped_without_dropping_primitive(self):
        acc = BoundingAccumulator()
        acc.fold(np.array([[1.0, 0.0, 0.0], [3.0, 0.0, 0.0], [np.nan, 0.0, 0.0]]))
        assert acc.center() == [2.0, 0.0, 0.0]


def test_up_axis_matrix():
    assert up_axis_matrix("Y") is Y_TO_Z
    assert up_axis_matrix(None) is Y_TO_Z
    assert up_axis_matrix("x") is X_TO_Z
    assert up_axis_matrix("Z") is IDENTITY_MATRIX


class TestGetModelCenter:
    def test_empty_mesh(self):
        mesh = DecodedMesh()
        rtc, center, up = get_model_center(mesh)
        assert rtc is None
        assert center == [0.0, 0.0, 0.0]
        assert "CESIUM_RTC" in mesh.extensions

    def test_zero_vertex_primitive(self):
        position = BufferAttribute.from_array(np.zeros((0, 3), dtype=np.float32))
        mesh = DecodedMesh(meshes=[Mesh(primitives=[Primitive(attributes={"POSITION": position})])])
        _, center, _ = get_model_center(mesh, up_axis="Z")
        assert center == [0.0, 0.0, 0.0]

    def test_feature_table_rtc(self):
        mesh = parse_glb(triangle_glb(TRIANGLE))
        table = FeatureTable(RTC_CENTER=[100, 200, 300])
        rtc, center, _ = get_model_center(mesh, table, up_axis="Z")
        assert rtc == [100.0, 200.0, 300.0]
        assert center == pytest.approx([101, 202, 300])
        assert mesh.extensions["CESIUM_RTC"]["center"] == rtc

    def test_gltf_rtc_extension(self):
        mesh = parse_glb(triangle_glb(TRIANGLE, extensions={"CESIUM_RTC": {"center": [1, 1, 1]}}))
        rtc, center, _ = get_model_center(mesh, FeatureTable(), up_axis="Z")
        assert rtc == [1.0, 1.0, 1.0]
        assert center == pytest.approx([2, 3, 1])

    def test_y_up_correction(self):
        mesh = parse_glb(triangle_glb(TRIANGLE))
        _, center, up = get_model_center(mesh, up_axis="Y")
        assert up is Y_TO_Z
        assert center == pytest.approx([1, 0, 2])

    def test_node_matrix_applies(self):
        mesh = parse_glb(triangle_glb(TRIANGLE, nodes=[{"mesh": 0, "translation": [0, 0, 5]}]))
        _, center, _ = get_model_center(mesh, up_axis="Z")
        assert center == pytest.approx([1, 2, 5])

    def test_external_transform(self):
        mesh = parse_glb(triangle_glb(TRIANGLE))
        _, center, _ = get_model_center(mesh, up_axis="Z", transform=mat4_translation([10, 0, 0]))
        assert center == pytest.approx([11, 2, 0])
