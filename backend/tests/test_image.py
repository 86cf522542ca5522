import pytest

from converter.conversion.image import effective_quality, encode_image
from converter.conversion.models import Dimensions, ResizeSettings, SourceInfo
from converter.conversion.progress import ProgressReporter
from converter.errors import DecodeError, EncodeError, RasterTooLargeError

from conftest import FakeImageCodec, image_bytes

JPEG = SourceInfo(name="photo.jpg", mime_type="image/jpeg", size=10)
PNG = SourceInfo(name="logo.png", mime_type="image/png", size=10)


def test_effective_quality():
    assert effective_quality(80, has_alpha=False) == 0.8
    assert effective_quality(95, has_alpha=False) == 0.95
    assert effective_quality(95, has_alpha=True) == 1.0
    assert effective_quality(90, has_alpha=True) == 0.9


@pytest.mark.asyncio
async def test_downscales_into_box(publish, events):
    codec = FakeImageCodec()
    result = await encode_image(
        image_bytes(100, 50),
        JPEG,
        80,
        ResizeSettings(enabled=True, max_width=50, max_height=50),
        codec,
        ProgressReporter("item", publish),
    )

    assert result.original == Dimensions(100, 50)
    assert result.final == Dimensions(50, 25)
    assert result.data == b"webp:50x25"
    assert codec.encoded_quality == [0.8]
    assert [e["progress"] for e in events if "progress" in e] == [10, 40, 60, 80, 100]
    assert {"original_dimensions": Dimensions(100, 50), "final_dimensions": Dimensions(50, 25)} in events
    assert len(codec.released) == 2


@pytest.mark.asyncio
async def test_keeps_size_without_resize():
    result = await encode_image(image_bytes(640, 480), JPEG, 80, ResizeSettings(), FakeImageCodec())
    assert result.final == Dimensions(640, 480)


@pytest.mark.asyncio
async def test_alpha_source_at_high_quality_uses_full_quality():
    codec = FakeImageCodec()
    await encode_image(image_bytes(10, 10), PNG, 95, ResizeSettings(), codec)
    assert codec.encoded_quality == [1.0]


@pytest.mark.asyncio
async def test_rejects_huge_raster():
    codec = FakeImageCodec()
    with pytest.raises(RasterTooLargeError, match="16384x16384"):
        await encode_image(image_bytes(20000, 100), JPEG, 80, ResizeSettings(), codec)
    assert codec.encode_calls == 0
    assert len(codec.released) == 1


@pytest.mark.asyncio
async def test_decode_failure():
    with pytest.raises(DecodeError):
        await encode_image(b"not an image", JPEG, 80, ResizeSettings(), FakeImageCodec())


@pytest.mark.asyncio
async def test_empty_encoder_output_is_an_error():
    codec = FakeImageCodec(encode_result=None)
    with pytest.raises(EncodeError, match="Failed to create WebP image"):
        await encode_image(image_bytes(10, 10), JPEG, 80, ResizeSettings(), codec)
    assert len(codec.released) == 2
