import io
import logging
import os
from dataclasses import dataclass
from typing import Optional

import numpy as np
from PIL import Image, ImageDraw

from compositor import BADGE_SIZE, CANVAS_SIZE

logger = logging.getLogger("poap_preview.assets")

BACKGROUND_FILE = os.path.join("images", "layer0.jpg")
FOREGROUND_FILE = os.path.join("images", "layer1.png")
DEFAULT_BADGE_FILE = os.path.join("images", "default-poap.png")
FONT_FILE = os.path.join("fonts", "MonaspaceXenon-WideMediumItalic.otf")


@dataclass(frozen=True)
class PreviewAssets:
    """Static layers used by every render, loaded once at startup."""

    background: bytes
    foreground: Optional[bytes]
    default_badge: bytes
    font: Optional[bytes]


def _encode_png(image: Image.Image) -> bytes:
    with io.BytesIO() as buffer:
        image.save(buffer, format="PNG")
        return buffer.getvalue()


def placeholder_background() -> bytes:
    width, height = CANVAS_SIZE
    ramp = np.linspace(0.0, 1.0, height, dtype=np.float32)[:, None]
    top = np.array([24, 20, 48], dtype=np.float32)
    bottom = np.array([92, 44, 120], dtype=np.float32)
    rows = top + (bottom - top) * ramp[..., None]
    pixels = np.broadcast_to(rows, (height, width, 3)).astype(np.uint8)
    return _encode_png(Image.fromarray(pixels))


def placeholder_foreground() -> bytes:
    """Transparent centre fading to a dark edge."""
    width, height = CANVAS_SIZE
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    dx = (xs - width / 2) / (width / 2)
    dy = (ys - height / 2) / (height / 2)
    distance = np.sqrt(dx * dx + dy * dy) / np.sqrt(2)
    alpha = np.clip((distance - 0.55) / 0.45, 0.0, 1.0) * 160
    rgba = np.zeros((height, width, 4), dtype=np.uint8)
    rgba[..., 3] = alpha.astype(np.uint8)
    return _encode_png(Image.fromarray(rgba))


def placeholder_badge() -> bytes:
    badge = Image.new("RGBA", (BADGE_SIZE, BADGE_SIZE), (0, 0, 0, 0))
    ImageDraw.Draw(badge).ellipse((0, 0, BADGE_SIZE - 1, BADGE_SIZE - 1), fill=(128, 128, 128, 255))
    return _encode_png(badge)


def _read_asset(assets_dir: str, relative: str) -> Optional[bytes]:
    path = os.path.join(assets_dir, relative)
    if not os.path.isfile(path):
        logger.warning("Asset %s not found; using a generated placeholder.", path)
        return None
    with open(path, "rb") as handle:
        return handle.read()


def load_assets(assets_dir: str) -> PreviewAssets:
    return PreviewAssets(
        background=_read_asset(assets_dir, BACKGROUND_FILE) or placeholder_background(),
        foreground=_read_asset(assets_dir, FOREGROUND_FILE) or placeholder_foreground(),
        default_badge=_read_asset(assets_dir, DEFAULT_BADGE_FILE) or placeholder_badge(),
        font=_read_asset(assets_dir, FONT_FILE),
    )
