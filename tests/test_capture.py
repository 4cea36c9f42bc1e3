"""Tests for 3D view capture."""

import io

from conftest import FakeRenderer
from PIL import Image

from floorplan3d.services.images import split_data_uri
from floorplan3d.viewer.capture import ViewCapture


def test_capture_returns_png_data_uri(fake_renderer):
    capture = ViewCapture(fake_renderer)
    uri = capture.capture_current_view()

    mime, raw = split_data_uri(uri)
    assert mime == "image/png"
    with Image.open(io.BytesIO(raw)) as img:
        assert img.size == (32, 24)
    assert fake_renderer.frames == 1


def test_capture_without_renderer():
    capture = ViewCapture()
    assert not capture.available
    assert capture.capture_current_view() is None


def test_capture_with_empty_frame():
    assert ViewCapture(FakeRenderer(empty=True)).capture_current_view() is None


def test_detach_only_forgets_matching_renderer(fake_renderer):
    capture = ViewCapture(fake_renderer)
    capture.detach(FakeRenderer())
    assert capture.available

    capture.detach(fake_renderer)
    assert not capture.available


def test_attach_replaces_renderer(fake_renderer):
    capture = ViewCapture()
    capture.attach(fake_renderer)
    assert capture.available
    assert capture.capture_current_view().startswith("data:image/png;base64,")
