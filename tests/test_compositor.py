import io
import sys
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image

import compositor
from compositor import (
    BADGE_POSITIONS,
    CANVAS_SIZE,
    MAX_BADGES,
    abbreviate_address,
    compose_preview,
    select_recent_badges,
)
from conftest import badge_payload, encode_image
from errors import RenderError
from models import BadgeRecord

BACKGROUND = (0, 0, 255)
BADGE_COLORS = [
    (255, 0, 0),
    (0, 255, 0),
    (255, 255, 0),
    (255, 0, 255),
    (0, 255, 255),
    (255, 128, 0),
    (128, 0, 255),
    (255, 255, 255),
]


def _close(pixel, expected, tolerance=6):
    return all(abs(a - b) <= tolerance for a, b in zip(pixel, expected))


def _render(badge_count: int) -> Image.Image:
    png = compose_preview(
        background=encode_image(BACKGROUND, size=CANVAS_SIZE),
        badges=[encode_image(color) for color in BADGE_COLORS[:badge_count]],
        address="0xabc",
    )
    return Image.open(io.BytesIO(png)).convert("RGB")


def test_abbreviate_long_address():
    address = "0xABCDEF0123456789abcdef0123456789ABCDEF01"
    assert len(address) == 42
    assert abbreviate_address(address) == "0xABCDEF01234567...23456789ABCDEF01"


def test_abbreviate_keeps_32_characters_verbatim():
    address = "a" * 16 + "b" * 16
    assert abbreviate_address(address) == address
    assert abbreviate_address(address + "c") == "a" * 16 + "..." + "b" * 15 + "c"


def test_select_recent_badges_keeps_seven_newest_oldest_first():
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    badges = [
        BadgeRecord.model_validate(badge_payload(i, (base + timedelta(days=i)).isoformat()))
        for i in (3, 9, 0, 5, 1, 8, 2, 7, 4, 6)
    ]

    selected = select_recent_badges(badges)

    assert [badge.event.name for badge in selected] == [f"Event {i}" for i in range(3, 10)]


def test_select_recent_badges_with_fewer_than_limit():
    badges = [BadgeRecord.model_validate(badge_payload(i, f"2023-0{i + 1}-01 10:00:00")) for i in (2, 0, 1)]

    selected = select_recent_badges(badges)

    assert [badge.id for badge in selected] == ["1000", "1001", "1002"]


def test_compose_preview_returns_png_canvas():
    image = _render(0)
    assert image.size == CANVAS_SIZE


@pytest.mark.parametrize("badge_count", [0, 1, 3, 7, 8])
def test_badges_fill_leading_slots_in_order(badge_count):
    image = _render(badge_count)
    drawn = min(badge_count, MAX_BADGES)

    for index, (x, y) in enumerate(BADGE_POSITIONS):
        if index < drawn:
            # Left part of each badge is not overlapped by the next slot.
            assert _close(image.getpixel((x + 35, y + 80)), BADGE_COLORS[index]), index
        else:
            assert _close(image.getpixel((x + 150, y + 80)), BACKGROUND), index


def test_badge_corners_stay_outside_circle():
    image = _render(1)
    x, y = BADGE_POSITIONS[0]
    assert not _close(image.getpixel((x + 2, y + 2)), BADGE_COLORS[0])


def test_undecodable_badge_raises_render_error():
    with pytest.raises(RenderError):
        compose_preview(
            background=encode_image(BACKGROUND, size=CANVAS_SIZE),
            badges=[b"not an image"],
            address="0xabc",
        )


def test_cli_renders_local_files(monkeypatch, tmp_path):
    background = tmp_path / "layer0.png"
    background.write_bytes(encode_image(BACKGROUND, size=CANVAS_SIZE))
    badge = tmp_path / "badge.png"
    badge.write_bytes(encode_image(BADGE_COLORS[0]))
    output = tmp_path / "out" / "preview.png"

    monkeypatch.setattr(
        sys,
        "argv",
        [
            "compositor.py",
            "--address",
            "0xabc",
            "--background",
            str(background),
            "--badges",
            str(badge),
            "--output",
            str(output),
        ],
    )

    compositor.main()

    image = Image.open(output).convert("RGB")
    x, y = BADGE_POSITIONS[0]
    assert image.size == CANVAS_SIZE
    assert _close(image.getpixel((x + 35, y + 80)), BADGE_COLORS[0])


def test_asset_path_falls_back_to_bundled_assets(monkeypatch, tmp_path):
    images = tmp_path / "images"
    images.mkdir()
    (images / "layer0.png").write_bytes(encode_image(BACKGROUND, size=CANVAS_SIZE))
    monkeypatch.setattr(compositor, "default_assets_dir", str(tmp_path))
    monkeypatch.chdir(tmp_path / "images")

    assert compositor.asset_path("layer0.png", "images") == "layer0.png"
    monkeypatch.chdir(tmp_path)
    assert compositor.asset_path("layer0.png", "images") == str(images / "layer0.png")


def test_asset_path_missing_file_raises(monkeypatch, tmp_path):
    monkeypatch.setattr(compositor, "default_assets_dir", str(tmp_path))
    monkeypatch.chdir(tmp_path)

    with pytest.raises(FileNotFoundError):
        compositor.asset_path("nowhere.png", "images")
