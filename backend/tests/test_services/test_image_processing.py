"""Tests for free-tier post-processing and thumbnails."""

import base64
import io

import pytest
from PIL import Image

from app.core.errors import ValidationError
from app.services.image_processing import (
    PostProcessOptions,
    add_text_watermark,
    composite_logo,
    decode_base64_image,
    encode_base64_image,
    make_thumbnail,
    process_batch,
    process_image,
    resize_to_max,
)
from tests.fakes import png_bytes


def open_png(content: bytes) -> Image.Image:
    return Image.open(io.BytesIO(content))


class TestBase64:
    def test_raw_and_data_url(self) -> None:
        content = png_bytes()
        raw = base64.b64encode(content).decode()

        assert decode_base64_image(raw) == content
        assert decode_base64_image(f"data:image/png;base64,{raw}") == content
        assert encode_base64_image(content, "image/png") == f"data:image/png;base64,{raw}"

    def test_invalid_base64(self) -> None:
        with pytest.raises(ValidationError):
            decode_base64_image("%%% not base64 %%%")


class TestResize:
    def test_clamps_longest_side(self) -> None:
        image = Image.new("RGB", (2048, 1024))

        assert resize_to_max(image, 512).size == (512, 256)

    def test_never_upscales(self) -> None:
        image = Image.new("RGB", (300, 200))

        assert resize_to_max(image, 512) is image


class TestWatermark:
    def test_watermark_marks_bottom_right_only(self) -> None:
        image = Image.new("RGBA", (400, 300), (255, 255, 255, 255))

        marked = add_text_watermark(image, "MockupSuite AI generated")

        assert marked.size == image.size
        assert marked.getpixel((5, 5)) == (255, 255, 255, 255)
        # Inside the corner box, below the text
        assert marked.getpixel((392, 292))[0] < 200

    def test_logo_is_scaled_to_fifth_of_canvas(self) -> None:
        canvas = Image.new("RGBA", (500, 500), (255, 255, 255, 255))
        logo = Image.new("RGBA", (400, 400), (255, 0, 0, 255))

        result = composite_logo(canvas, logo)

        # 100px logo with 25px padding ends at 475
        assert result.getpixel((470, 470))[0] == 255
        assert result.getpixel((470, 470))[1] < 255
        assert result.getpixel((360, 360)) == (255, 255, 255, 255)


class TestProcessImage:
    """Test the combined pipeline."""

    def test_paid_plan_without_logo_is_untouched(self) -> None:
        content = png_bytes((1024, 1024))

        assert process_image(content, PostProcessOptions()) is content

    def test_free_tier_resizes_and_watermarks(self) -> None:
        content = png_bytes((1024, 768), (255, 255, 255, 255))

        result = open_png(process_image(content, PostProcessOptions(free_tier=True, max_dimension=512)))

        assert result.size == (512, 384)
        assert result.getpixel((2, 2)) == (255, 255, 255, 255)

    def test_free_tier_with_logo(self) -> None:
        options = PostProcessOptions(free_tier=True, max_dimension=256, logo=png_bytes((80, 40)))

        result = open_png(process_image(png_bytes((1024, 1024)), options))

        assert result.size == (256, 256)

    def test_unreadable_image(self) -> None:
        with pytest.raises(ValidationError):
            process_image(b"not an image", PostProcessOptions(free_tier=True))

    @pytest.mark.asyncio
    async def test_batch_keeps_order(self) -> None:
        images = [png_bytes((600, 600)), png_bytes((1200, 300))]

        results = await process_batch(images, PostProcessOptions(free_tier=True, max_dimension=300))

        assert [open_png(r).size for r in results] == [(300, 300), (300, 75)]


class TestThumbnail:
    def test_thumbnail_is_small_jpeg(self) -> None:
        thumbnail = open_png(make_thumbnail(png_bytes((1200, 600)), max_size=300))

        assert thumbnail.format == "JPEG"
        assert thumbnail.size == (300, 150)
