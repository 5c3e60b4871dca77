import io
import os

import pytest
from PIL import Image

from threedgen.config import settings
from threedgen.exceptions import InvalidInput, PreprocessError
from threedgen.preprocess import RawImage, preprocess_images, safe_filename


def _noise_png(width: int, height: int) -> bytes:
    img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _small_images(count=4):
    return [RawImage(data=f"image-{i}".encode() * 100, filename=f"View {i}.PNG", content_type="image/png") for i in range(count)]


def test_small_images_pass_through_unchanged():
    images = _small_images()
    result = preprocess_images(images)

    assert [r.data for r in result] == [i.data for i in images]
    for processed, raw in zip(result, images):
        assert processed.compressed is False
        assert processed.content_type == "image/png"
        assert processed.original_size_bytes == processed.compressed_size_bytes == len(raw.data)
        assert processed.stat()["compression_ratio"] == 0.0


@pytest.mark.parametrize("count", [0, 3, 5])
def test_wrong_image_count_is_rejected(count):
    with pytest.raises(InvalidInput):
        preprocess_images(_small_images(count))


def test_large_image_is_resized_and_reencoded(monkeypatch):
    big = _noise_png(300, 200)
    monkeypatch.setattr(settings, "IMAGE_COMPRESSION_THRESHOLD_BYTES", len(big) - 1)
    monkeypatch.setattr(settings, "IMAGE_MAX_DIMENSION", 120)

    images = [RawImage(data=big, filename="front.png", content_type="image/png")] + _small_images(3)
    result = preprocess_images(images)

    first = result[0]
    assert first.compressed is True
    assert first.content_type == "image/jpeg"
    assert first.original_size_bytes == len(big)
    assert first.compressed_size_bytes == len(first.data)
    with Image.open(io.BytesIO(first.data)) as img:
        assert img.format == "JPEG"
        assert max(img.size) <= 120
        # aspect ratio preserved
        assert img.size == (120, 80)

    assert all(not r.compressed for r in result[1:])


def test_second_pass_applies_smaller_box(monkeypatch):
    big = _noise_png(300, 300)
    monkeypatch.setattr(settings, "IMAGE_COMPRESSION_THRESHOLD_BYTES", 1)
    monkeypatch.setattr(settings, "IMAGE_MAX_DIMENSION", 200)
    monkeypatch.setattr(settings, "IMAGE_SECOND_PASS_THRESHOLD_BYTES", 1)
    monkeypatch.setattr(settings, "IMAGE_SECOND_PASS_MAX_DIMENSION", 50)

    images = [RawImage(data=big, filename=f"{i}.png", content_type="image/png") for i in range(4)]
    result = preprocess_images(images)

    for processed in result:
        with Image.open(io.BytesIO(processed.data)) as img:
            assert img.size == (50, 50)


def test_undecodable_large_image_reports_index(monkeypatch):
    monkeypatch.setattr(settings, "IMAGE_COMPRESSION_THRESHOLD_BYTES", 10)
    valid = _noise_png(20, 20)
    images = [
        RawImage(data=valid, filename="a.png", content_type="image/png"),
        RawImage(data=valid, filename="b.png", content_type="image/png"),
        RawImage(data=b"not an image at all", filename="broken.jpg"),
        RawImage(data=valid, filename="d.png", content_type="image/png"),
    ]

    with pytest.raises(PreprocessError) as exc:
        preprocess_images(images)
    assert exc.value.index == 2
    assert "image 3" in exc.value.message


def test_safe_filename():
    assert safe_filename("My Photo (1).JPG", 0) == "compressed_1_my_photo__1_.jpg"
    assert safe_filename("", 3) == "compressed_4_image.jpg"
