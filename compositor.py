#!/usr/bin/env python3
"""Composite the POAP preview card: background, badge row, frame and address."""

import argparse
import io
import os
from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar

from PIL import Image, ImageDraw, ImageFilter, ImageFont, ImageOps, UnidentifiedImageError

from config import default_assets_dir
from errors import RenderError

CANVAS_SIZE = (1200, 630)
MAX_BADGES = 7
BADGE_SIZE = 160
BADGE_BORDER_WIDTH = 2
BADGE_BORDER_COLOR = (255, 148, 0, 255)
SHADOW_OFFSET_Y = 8
SHADOW_BLUR = 12
SHADOW_OPACITY = 0.8

# Top-left corners of the badge slots, left to right.
BADGE_POSITIONS: Tuple[Tuple[int, int], ...] = (
    (310, 435),
    (380, 415),
    (450, 435),
    (520, 415),
    (590, 395),
    (660, 415),
    (730, 435),
)

ADDRESS_BOX = (475, 545, 1020, 638)
ADDRESS_FONT_SIZE = 42
ADDRESS_TRACKING_EM = -0.1
ADDRESS_COLOR = (255, 255, 255, 255)
ADDRESS_MAX_CHARS = 32
ADDRESS_KEEP_CHARS = 16

T = TypeVar("T")


def abbreviate_address(address: str) -> str:
    if len(address) > ADDRESS_MAX_CHARS:
        return f"{address[:ADDRESS_KEEP_CHARS]}...{address[-ADDRESS_KEEP_CHARS:]}"
    return address


def select_recent_badges(badges: Iterable[T], limit: int = MAX_BADGES) -> List[T]:
    """Keep the ``limit`` most recent badges, ordered oldest to newest.

    The result is drawn left to right, so recency increases towards the right.
    """
    recent = sorted(badges, key=lambda badge: badge.created_at, reverse=True)[:limit]
    recent.reverse()
    return recent


def _open_rgba(data: bytes, what: str) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise RenderError(f"Could not decode {what}: {exc}") from exc


def _circle_mask(size: int) -> Image.Image:
    mask = Image.new("L", (size, size), 0)
    ImageDraw.Draw(mask).ellipse((0, 0, size - 1, size - 1), fill=255)
    return mask


def _badge_tile(image: Image.Image) -> Image.Image:
    fitted = ImageOps.fit(image, (BADGE_SIZE, BADGE_SIZE), method=Image.NEAREST)
    tile = Image.new("RGBA", (BADGE_SIZE, BADGE_SIZE), (0, 0, 0, 0))
    tile.paste(fitted, (0, 0), _circle_mask(BADGE_SIZE))
    ImageDraw.Draw(tile).ellipse(
        (0, 0, BADGE_SIZE - 1, BADGE_SIZE - 1),
        outline=BADGE_BORDER_COLOR,
        width=BADGE_BORDER_WIDTH,
    )
    return tile


def _badge_shadow() -> Tuple[Image.Image, int]:
    pad = SHADOW_BLUR * 2
    side = BADGE_SIZE + pad * 2
    alpha = Image.new("L", (side, side), 0)
    ImageDraw.Draw(alpha).ellipse(
        (pad, pad, pad + BADGE_SIZE - 1, pad + BADGE_SIZE - 1),
        fill=int(255 * SHADOW_OPACITY),
    )
    alpha = alpha.filter(ImageFilter.GaussianBlur(SHADOW_BLUR / 2))
    shadow = Image.new("RGBA", (side, side), (0, 0, 0, 0))
    shadow.putalpha(alpha)
    return shadow, pad


def load_font(font_bytes: Optional[bytes], size: int = ADDRESS_FONT_SIZE):
    if font_bytes:
        try:
            return ImageFont.truetype(io.BytesIO(font_bytes), size=size)
        except OSError as exc:
            raise RenderError(f"Could not load font: {exc}") from exc
    return ImageFont.load_default(size=size)


def _draw_address(canvas: Image.Image, address: str, font) -> None:
    left, top, right, bottom = ADDRESS_BOX
    box_w, box_h = right - left, bottom - top
    text = abbreviate_address(address)
    if not text:
        return
    tracking = ADDRESS_TRACKING_EM * ADDRESS_FONT_SIZE
    advances = [font.getlength(ch) for ch in text]
    text_w = sum(advances) + tracking * (len(text) - 1)

    bbox = font.getbbox(text)
    y = (box_h - (bbox[3] - bbox[1])) / 2 - bbox[1]
    # Right aligned; anything that does not fit falls off the left edge of the box.
    x = box_w - text_w

    layer = Image.new("RGBA", (box_w, box_h), (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    for ch, advance in zip(text, advances):
        if x + advance > 0:
            draw.text((x, y), ch, font=font, fill=ADDRESS_COLOR)
        x += advance + tracking
    canvas.alpha_composite(layer, dest=(left, top))


def compose_preview(
    background: bytes,
    badges: Sequence[bytes],
    address: str,
    font_bytes: Optional[bytes] = None,
    foreground: Optional[bytes] = None,
) -> bytes:
    """Render the 1200x630 preview and return it PNG encoded.

    ``badges`` are drawn into the slots of ``BADGE_POSITIONS`` in order; slots past the
    number of badges stay empty and badges past the seventh are ignored.
    """
    canvas = ImageOps.fit(_open_rgba(background, "background"), CANVAS_SIZE, method=Image.LANCZOS)

    shadow, pad = _badge_shadow()
    for index, (data, (x, y)) in enumerate(zip(badges[:MAX_BADGES], BADGE_POSITIONS)):
        tile = _badge_tile(_open_rgba(data, f"badge {index}"))
        canvas.alpha_composite(shadow, dest=(x - pad, y + SHADOW_OFFSET_Y - pad))
        canvas.alpha_composite(tile, dest=(x, y))

    if foreground:
        frame = _open_rgba(foreground, "foreground")
        if frame.size != CANVAS_SIZE:
            frame = frame.resize(CANVAS_SIZE, Image.LANCZOS)
        canvas.alpha_composite(frame)

    _draw_address(canvas, address, load_font(font_bytes))

    with io.BytesIO() as buffer:
        canvas.convert("RGB").save(buffer, format="PNG")
        return buffer.getvalue()


def asset_path(candidate: str, folder: str) -> str:
    """Return ``candidate`` if it names an existing file, else its copy under ``assets/<folder>``."""
    if os.path.isfile(candidate):
        return candidate
    bundled = os.path.join(default_assets_dir, folder, candidate)
    if os.path.isfile(bundled):
        return bundled
    raise FileNotFoundError(f"{candidate} not found (also looked in {os.path.dirname(bundled)})")


def _read_optional(path: Optional[str]) -> Optional[bytes]:
    if not path:
        return None
    with open(path, "rb") as handle:
        return handle.read()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render a POAP preview card from local image files.")
    parser.add_argument("--address", required=True, help="Address (or ENS name) printed on the card.")
    parser.add_argument(
        "--badges",
        nargs="*",
        default=[],
        help="Badge images, oldest first (looked up in assets/images/ when not found as given). At most 7 are drawn.",
    )
    parser.add_argument("--background", default="layer0.jpg", help="Background layer image.")
    parser.add_argument("--foreground", default=None, help="Optional frame layer drawn above the badges.")
    parser.add_argument("--font", default=None, help="TrueType/OpenType font for the address line.")
    parser.add_argument("--output", default="output/preview.png", help="Destination PNG path.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    background_path = asset_path(args.background, "images")
    badge_paths = [asset_path(badge, "images") for badge in args.badges]
    foreground_path = asset_path(args.foreground, "images") if args.foreground else None
    font_path = asset_path(args.font, "fonts") if args.font else None

    png_bytes = compose_preview(
        background=_read_optional(background_path),
        badges=[_read_optional(path) for path in badge_paths],
        address=args.address,
        font_bytes=_read_optional(font_path),
        foreground=_read_optional(foreground_path),
    )
    os.makedirs(os.path.dirname(os.path.abspath(args.output)), exist_ok=True)
    with open(args.output, "wb") as handle:
        handle.write(png_bytes)
    print(f"Saved preview to {args.output}")


if __name__ == "__main__":
    main()
