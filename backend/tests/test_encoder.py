from __future__ import annotations

from pathlib import Path

from PIL import Image

from webp_converter.conversion.codec import Raster, round_half_up
from webp_converter.conversion.encoder import MAX_ATTEMPTS, encode_to_budget


def _always_big(quality: int, width: int, height: int) -> int:
    return 10_000


def test_round_half_up_rounds_away_from_zero() -> None:
    assert round_half_up(184.5) == 185
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4) == 2
    assert round_half_up(720.0) == 720


def test_quality_steps_down_before_any_resize(tmp_path: Path, fake_raster) -> None:
    raster = fake_raster(1000, 800, _always_big)
    attempts = encode_to_budget(raster, tmp_path / "a.webp", 80, 100, 1000, 800)

    assert [a.quality for a in attempts[:9]] == [80, 75, 70, 65, 60, 55, 50, 45, 40]
    assert all((a.width, a.height) == (1000, 800) for a in attempts[:9])
    assert (attempts[9].quality, attempts[9].width, attempts[9].height) == (80, 900, 720)


def test_zero_budget_stops_after_fifty_attempts(tmp_path: Path, fake_raster) -> None:
    target = tmp_path / "a.webp"
    attempts = encode_to_budget(fake_raster(1000, 800, _always_big), target, 80, 0, 1000, 800)

    assert len(attempts) == MAX_ATTEMPTS == 50
    assert target.stat().st_size == attempts[-1].size


def test_stops_when_next_shrink_goes_below_minimum(tmp_path: Path, fake_raster) -> None:
    target = tmp_path / "a.webp"
    attempts = encode_to_budget(fake_raster(210, 400, _always_big), target, 80, 100, 210, 400)

    # 210 * 0.9 = 189 < 200, so no resize round happens
    assert len(attempts) == 9
    assert attempts[-1].quality == 40
    assert target.exists()


def test_budget_met_mid_search(tmp_path: Path, fake_raster) -> None:
    def size(quality: int, width: int, height: int) -> int:
        return quality * 10

    target = tmp_path / "a.webp"
    attempts = encode_to_budget(fake_raster(800, 600, size), target, 80, 600, 800, 600)

    assert [a.quality for a in attempts] == [80, 75, 70, 65, 60]
    assert target.stat().st_size == 600


def test_budget_met_after_resize(tmp_path: Path, fake_raster) -> None:
    def size(quality: int, width: int, height: int) -> int:
        return width * height // 100

    attempts = encode_to_budget(fake_raster(1000, 1000, size), tmp_path / "a.webp", 80, 8100, 1000, 1000)

    assert attempts[-1].size <= 8100
    assert (attempts[-1].width, attempts[-1].height, attempts[-1].quality) == (900, 900, 80)
    assert len(attempts) == 10


def test_start_quality_near_floor_steps_to_floor(tmp_path: Path, fake_raster) -> None:
    attempts = encode_to_budget(fake_raster(1000, 1000, _always_big), tmp_path / "a.webp", 42, 1, 1000, 1000)

    assert [a.quality for a in attempts[:3]] == [42, 40, 42]
    assert (attempts[2].width, attempts[2].height) == (900, 900)


def test_each_resize_scales_from_the_original(tmp_path: Path, fake_raster) -> None:
    raster = fake_raster(1000, 1000, _always_big)
    encode_to_budget(raster, tmp_path / "a.webp", 80, 1, 1000, 1000)

    assert (900, 900) in raster.scale_calls
    assert (810, 810) in raster.scale_calls


def test_no_temporary_files_left_behind(tmp_path: Path, fake_raster) -> None:
    encode_to_budget(fake_raster(300, 300, _always_big), tmp_path / "a.webp", 80, 1, 300, 300)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["a.webp"]


def test_real_encode_writes_webp(tmp_path: Path) -> None:
    raster = Raster(Image.new("RGB", (300, 200), (10, 200, 30)))
    target = tmp_path / "real.webp"

    attempts = encode_to_budget(raster, target, 80, 200 * 1024, 300, 200)

    assert len(attempts) == 1
    with Image.open(target) as img:
        assert img.format == "WEBP"
        assert img.size == (300, 200)
