"""Image post-processing for generated output.

Free-tier images are clamped to a maximum dimension and stamped with a text
watermark. A brand-kit logo, when enabled, is composited afterwards. Every
transform here is pure: bytes in, bytes out.
"""

import asyncio
import base64
import binascii
import io
import logging
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from app.core.config import settings
from app.core.errors import ValidationError

logger = logging.getLogger(__name__)

WATERMARK_BOX_FILL = (0, 0, 0, 153)  # rgba(0, 0, 0, 0.6)
WATERMARK_TEXT_FILL = (255, 255, 255, 230)  # rgba(255, 255, 255, 0.9)
LOGO_MAX_RATIO = 0.2
LOGO_PADDING_RATIO = 0.05
LOGO_OPACITY = 0.8


def decode_base64_image(data: str) -> bytes:
    """Decode raw base64 or a ``data:image/...;base64,`` URL."""
    payload = data.split(",", 1)[1] if data.startswith("data:") else data
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Image data is not valid base64") from exc


def encode_base64_image(content: bytes, mime_type: str | None = None) -> str:
    """Encode bytes as base64, or as a data URL when ``mime_type`` is given."""
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime_type};base64,{encoded}" if mime_type else encoded


def open_image(content: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError("Could not read image data") from exc
    return image


def to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def resize_to_max(image: Image.Image, max_dimension: int) -> Image.Image:
    """Clamp the longest side to ``max_dimension``, keeping aspect ratio.

    Images already within bounds are returned unchanged (never upscaled).
    """
    width, height = image.size
    longest = max(width, height)
    if longest <= max_dimension:
        return image

    scale = max_dimension / longest
    new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
    return image.resize(new_size, Image.Resampling.LANCZOS)


def _watermark_font(canvas_size: tuple[int, int]) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    size = max(12, round(min(canvas_size) * 0.04))
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        # Pillow builds without FreeType only ship the fixed bitmap font
        return ImageFont.load_default()


def add_text_watermark(image: Image.Image, text: str | None = None) -> Image.Image:
    """Stamp a semi-transparent text box in the bottom-right corner."""
    text = text or settings.WATERMARK_TEXT
    base = image.convert("RGBA")
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    font = _watermark_font(base.size)

    padding = max(4, round(min(base.size) * 0.02))
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    text_width, text_height = right - left, bottom - top

    x = base.width - text_width - padding * 2
    y = base.height - text_height - padding * 2
    draw.rectangle(
        (x - padding, y - padding, x + text_width + padding, y + text_height + padding),
        fill=WATERMARK_BOX_FILL,
    )
    draw.text((x - left, y - top), text, font=font, fill=WATERMARK_TEXT_FILL)
    return Image.alpha_composite(base, overlay)


def composite_logo(
    image: Image.Image,
    logo: Image.Image,
    *,
    max_ratio: float = LOGO_MAX_RATIO,
    opacity: float = LOGO_OPACITY,
) -> Image.Image:
    """Place a logo bottom-right, at most ``max_ratio`` of each canvas side."""
    base = image.convert("RGBA")
    mark = logo.convert("RGBA")

    max_width = base.width * max_ratio
    max_height = base.height * max_ratio
    scale = min(1.0, max_width / mark.width, max_height / mark.height)
    if scale < 1.0:
        mark = mark.resize(
            (max(1, int(mark.width * scale)), max(1, int(mark.height * scale))),
            Image.Resampling.LANCZOS,
        )

    alpha = mark.getchannel("A").point(lambda value: round(value * opacity))
    mark.putalpha(alpha)

    padding = round(base.width * LOGO_PADDING_RATIO)
    position = (base.width - mark.width - padding, base.height - mark.height - padding)
    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    layer.paste(mark, (max(0, position[0]), max(0, position[1])), mark)
    return Image.alpha_composite(base, layer)


def make_thumbnail(content: bytes, max_size: int | None = None) -> bytes:
    """Downscaled JPEG preview for galleries."""
    image = open_image(content)
    image.thumbnail((max_size or settings.THUMBNAIL_MAX_SIZE,) * 2, Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=85)
    return buffer.getvalue()


@dataclass(frozen=True)
class PostProcessOptions:
    """What to apply to each generated image for one user."""

    free_tier: bool = False
    max_dimension: int = 512
    watermark_text: str | None = None
    logo: bytes | None = None

    @property
    def is_noop(self) -> bool:
        return not self.free_tier and self.logo is None


def process_image(content: bytes, options: PostProcessOptions) -> bytes:
    """Apply free-tier resize and watermark, then the brand logo."""
    if options.is_noop:
        return content

    image = open_image(content)
    if options.free_tier:
        image = resize_to_max(image, options.max_dimension)
        image = add_text_watermark(image, options.watermark_text)
    if options.logo is not None:
        image = composite_logo(image, open_image(options.logo))
    logger.debug("Post-processed image to %sx%s", image.width, image.height)
    return to_png_bytes(image)


async def process_batch(images: list[bytes], options: PostProcessOptions) -> list[bytes]:
    """Process images independently in worker threads; output keeps input order."""
    if options.is_noop:
        return list(images)
    return list(await asyncio.gather(*(asyncio.to_thread(process_image, img, options) for img in images)))
