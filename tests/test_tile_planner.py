from pathlib import Path

import pytest

from iiif_stitch_core.exceptions import DescriptorFetchError, InvalidDescriptorError
from iiif_stitch_core.iiif_tiles import (
    ImageServiceDescriptor,
    grid_extent,
    parse_descriptor,
    plan_tiles,
    planned_canvas_size,
    resolve_descriptor,
    resolve_scale_factor,
    tile_filename,
)

BASE = "https://iiif.example.org/iiif/2/page1"


def _descriptor(width, height, tile=512, tile_height=None, scale_factors=None, formats=("jpg",)):
    return ImageServiceDescriptor(
        base_url=BASE,
        full_width=width,
        full_height=height,
        tile_width=tile,
        tile_height=tile_height or tile,
        scale_factors=tuple(scale_factors) if scale_factors is not None else None,
        formats=tuple(formats),
    )


def _assert_exact_cover(plan, width, height):
    covered = 0
    seen = set()
    for entry in plan:
        assert (entry.row, entry.col) not in seen
        seen.add((entry.row, entry.col))
        assert 0 <= entry.region_x < width and 0 <= entry.region_y < height
        assert entry.region_x + entry.region_width <= width
        assert entry.region_y + entry.region_height <= height
        covered += entry.region_width * entry.region_height
    # Disjoint rectangles inside the image whose areas add up to the image cover it exactly.
    assert covered == width * height


def test_exact_multiple_grid_has_no_truncated_tiles():
    desc = _descriptor(2048, 1536, tile=512)
    plan = plan_tiles(desc, 1)

    assert len(plan) == (2048 // 512) * (1536 // 512)
    assert {e.output_width for e in plan} == {512}
    assert {e.output_height for e in plan} == {512}
    _assert_exact_cover(plan, 2048, 1536)


def test_exact_multiple_at_scale_factor_two():
    desc = _descriptor(2048, 1024, tile=256, scale_factors=[1, 2, 4])
    plan = plan_tiles(desc, 2)

    assert len(plan) == (2048 // 512) * (1024 // 512)
    assert all(e.region_width == 512 and e.region_height == 512 for e in plan)
    assert all(e.output_width == 256 for e in plan)
    _assert_exact_cover(plan, 2048, 1024)


def test_plan_is_row_major():
    plan = plan_tiles(_descriptor(1300, 1100, tile=512), 1)
    keys = [(e.row, e.col) for e in plan]
    assert keys == sorted(keys)
    assert keys[:3] == [(0, 0), (0, 1), (0, 2)]
    assert keys[3] == (1, 0)


def test_unlisted_scale_factor_falls_back_to_minimum_and_clips_edges(tmp_path: Path):
    desc = _descriptor(1000, 800, tile=512, scale_factors=[1, 2, 4])
    plan = plan_tiles(desc, 3, tile_dir=tmp_path)

    assert len(plan) == 4
    first, second, third, fourth = plan
    assert first.scale_factor == 1
    assert first.region == "0,0,512,512"
    assert second.region == "512,0,488,512"
    assert second.output_width == 488
    assert third.region == "0,512,512,288"
    assert third.output_height == 288
    assert fourth.region == "512,512,488,288"

    assert second.url == f"{BASE}/512,0,488,512/488,/0/default.jpg"
    assert second.destination == tmp_path / "512,0,488,512_488.jpg"
    _assert_exact_cover(plan, 1000, 800)


def test_remainders_are_scaled_and_never_exceed_tile_size():
    desc = _descriptor(1000, 800, tile=256, scale_factors=[1, 2])
    plan = plan_tiles(desc, 2)

    assert [(e.row, e.col) for e in plan] == [(0, 0), (0, 1), (1, 0), (1, 1)]
    assert plan[0].output_width == 256
    assert plan[1].output_width == 244  # ceil(488 / 2)
    assert plan[2].output_height == 144  # ceil(288 / 2)
    for entry in plan:
        assert 0 < entry.output_width <= desc.tile_width
        assert 0 < entry.output_height <= desc.tile_height
    assert plan[1].filename == "512,0,488,512_244x2.jpg"
    assert planned_canvas_size(plan) == (500, 400)


def test_missing_scale_factors_use_request_as_is():
    desc = _descriptor(1000, 800, tile=512)
    assert resolve_scale_factor(desc, 2) == 2

    plan = plan_tiles(desc, 2)
    assert len(plan) == 1
    only = plan[0]
    assert only.full_region
    assert only.region == "full"
    assert only.output_width == 500
    assert only.url == f"{BASE}/full/500,/0/default.jpg"
    assert only.filename == "full_500x2.jpg"


@pytest.mark.parametrize(
    ("supported", "requested", "expected"),
    [
        (None, None, 1),
        (None, 0, 1),
        (None, 4, 4),
        ((1, 2, 4), 4, 4),
        ((4, 2, 8), 3, 2),
        ((4, 2, 8), None, 2),
        ((2, 4), 1, 2),
    ],
)
def test_resolve_scale_factor(supported, requested, expected):
    desc = _descriptor(100, 100, scale_factors=supported)
    assert resolve_scale_factor(desc, requested) == expected


def test_single_oversized_tile_uses_full_region():
    plan = plan_tiles(_descriptor(300, 200, tile=1024), 1)
    assert len(plan) == 1
    assert plan[0].region == "full"
    assert plan[0].output_width == 300
    assert plan[0].output_height == 200
    assert plan[0].filename == "full_300.jpg"


def test_explicit_height_adds_height_to_size_parameter():
    plan = plan_tiles(_descriptor(1000, 800, tile=512), 1, explicit_height=True)
    assert plan[3].url == f"{BASE}/512,512,488,288/488,288/0/default.jpg"


def test_non_jpg_format_and_quality():
    plan = plan_tiles(_descriptor(100, 100, formats=("png", "webp")), 1, iiif_quality="gray")
    assert plan[0].format == "png"
    assert plan[0].url.endswith("/full/100,/0/gray.png")
    assert plan[0].filename == "full_100.png"


@pytest.mark.parametrize("field", ["full_width", "full_height", "tile_width"])
def test_plan_rejects_non_positive_geometry(field):
    values = {"full_width": 100, "full_height": 100, "tile_width": 64}
    values[field] = 0
    desc = _descriptor(values["full_width"], values["full_height"], tile=values["tile_width"], tile_height=64)
    with pytest.raises(InvalidDescriptorError):
        plan_tiles(desc, 1)


def test_parse_descriptor_reads_info_json_fields():
    info = {
        "@id": BASE + "/",
        "width": 4000,
        "height": 3000,
        "tiles": [{"width": 512, "scaleFactors": [1, 2, 4, 8]}],
        "profile": ["http://iiif.io/api/image/2/level2.json", {"formats": ["png", "jpg"]}],
    }
    desc = parse_descriptor(info, "https://fallback.example.org/x")

    assert desc.base_url == BASE
    assert (desc.full_width, desc.full_height) == (4000, 3000)
    assert desc.tile_height == 512
    assert desc.scale_factors == (1, 2, 4, 8)
    assert desc.formats == ("png", "jpg")
    assert desc.preferred_format == "jpg"


def test_parse_descriptor_defaults_and_fallback_url():
    desc = parse_descriptor({"width": "640", "height": 480, "tiles": [{"width": 256, "height": 128}]}, BASE)
    assert desc.base_url == BASE
    assert desc.tile_height == 128
    assert desc.scale_factors is None
    assert desc.formats == ("jpg",)


@pytest.mark.parametrize(
    "info",
    [
        {"width": 100, "height": 100},
        {"width": 100, "height": 100, "tiles": []},
        {"width": 100, "tiles": [{"width": 64}]},
        {"width": -5, "height": 100, "tiles": [{"width": 64}]},
        {"width": "abc", "height": 100, "tiles": [{"width": 64}]},
    ],
)
def test_parse_descriptor_rejects_missing_geometry(info):
    with pytest.raises(InvalidDescriptorError):
        parse_descriptor(info, BASE)


def test_tile_filename_marks_non_unit_scale():
    assert tile_filename("0,0,512,512", 512, 1, "jpg") == "0,0,512,512_512.jpg"
    assert tile_filename("0,0,1024,1024", 512, 2, "png") == "0,0,1024,1024_512x2.png"


def test_resolve_descriptor_accepts_service_or_info_url(iiif_server):
    iiif_server.add_descriptor(BASE, 1000, 700, scale_factors=[1, 2])

    from_service = resolve_descriptor(iiif_server, BASE + "/")
    from_info = resolve_descriptor(iiif_server, BASE + "/info.json")

    assert from_service == from_info
    assert from_service.base_url == BASE
    assert (from_service.full_width, from_service.full_height) == (1000, 700)
    assert from_service.scale_factors == (1, 2)


@pytest.mark.parametrize("status", [404, 500])
def test_resolve_descriptor_wraps_http_errors(iiif_server, status):
    iiif_server.failures[BASE + "/info.json"] = status

    with pytest.raises(DescriptorFetchError):
        resolve_descriptor(iiif_server, BASE)


def test_parse_descriptor_reads_v3_id():
    info = {"id": BASE, "width": 800, "height": 600, "tiles": [{"width": 256, "scaleFactors": [1, 2, 4]}]}

    descriptor = parse_descriptor(info, "https://fallback.example.org/img")

    assert descriptor.base_url == BASE
    assert descriptor.tile_height == 256


def test_grid_extent_counts_each_row_and_column_once():
    cells = [(0, 0, 512, 512), (0, 1, 488, 512), (1, 0, 512, 288), (1, 1, 488, 288), (1, 1, 999, 999)]

    assert grid_extent(cells) == (1000, 800)
    assert grid_extent([]) == (0, 0)
