import ee
import pytest

from LTGEEToolbox import EarthEngineImageryService, UpstreamQueryError, ValidationError, build_series
from LTGEEToolbox.Masking import QA_BAND

BOUNDS = (-122.30, 44.00, -122.29, 44.01)


def test_grid_from_bounds():
    bounds = (-122.5, 44.0, -122.0, 44.25)
    grid = EarthEngineImageryService.grid_from_bounds(bounds, scale=0.125)
    assert grid["dimensions"] == {"width": 4, "height": 2}
    assert grid["affineTransform"]["translateX"] == bounds[0]
    assert grid["affineTransform"]["translateY"] == bounds[3]
    assert grid["affineTransform"]["scaleY"] < 0
    assert grid["crsCode"] == "EPSG:4326"


def test_grid_validation():
    with pytest.raises(ValidationError):
        EarthEngineImageryService.grid_from_bounds((0, 0, -1, 1), scale=1)
    with pytest.raises(ValidationError):
        EarthEngineImageryService.grid_from_bounds((0, 0, 1, 1), scale=0)
    with pytest.raises(ValidationError):
        EarthEngineImageryService({"affineTransform": {}})


def test_service_grid_shape():
    grid = EarthEngineImageryService.grid_from_bounds((0, 0, 2.0, 1.0), scale=0.125)
    assert EarthEngineImageryService(grid).grid_shape == (8, 16)


def test_grid_bounds_cover_requested_box():
    bounds = (-122.5, 44.0, -122.0, 44.25)
    grid = EarthEngineImageryService.grid_from_bounds(bounds, scale=0.125)
    assert EarthEngineImageryService(grid).grid_bounds == bounds


def test_grid_bounds_extend_to_whole_pixels():
    grid = EarthEngineImageryService.grid_from_bounds((0.0, 0.0, 1.0, 0.625), scale=0.25)
    assert EarthEngineImageryService(grid).grid_bounds == (0.0, -0.125, 1.0, 0.625)


def test_grid_bounds_need_a_transform():
    service = EarthEngineImageryService({"dimensions": {"width": 2, "height": 2}})
    with pytest.raises(ValidationError):
        service.grid_bounds


@pytest.mark.parametrize("max_images", [0, -5, 2.5, True, "500"])
def test_max_images_must_be_positive_integer(max_images):
    grid = EarthEngineImageryService.grid_from_bounds((0, 0, 1.0, 1.0), scale=0.5)
    with pytest.raises(ValidationError):
        EarthEngineImageryService(grid, max_images=max_images)


def test_scene_limit_raises_instead_of_truncating():
    grid = EarthEngineImageryService.grid_from_bounds((0, 0, 1.0, 1.0), scale=0.5)
    service = EarthEngineImageryService(grid, max_images=500)
    service._check_scene_limit(500, "LANDSAT/LC08/C02/T1_L2", ("2017-06-01", "2017-09-30"))
    with pytest.raises(UpstreamQueryError, match="501 scenes") as excinfo:
        service._check_scene_limit(501, "LANDSAT/LC08/C02/T1_L2", ("2017-06-01", "2017-09-30"))
    assert excinfo.value.dataset_id == "LANDSAT/LC08/C02/T1_L2"


def test_scene_limit_can_be_disabled():
    grid = EarthEngineImageryService.grid_from_bounds((0, 0, 1.0, 1.0), scale=0.5)
    service = EarthEngineImageryService(grid, max_images=None)
    service._check_scene_limit(100000, "LANDSAT/LC08/C02/T1_L2", ("2017-06-01", "2017-09-30"))


def test_bands_for_dataset():
    sensor, bands = EarthEngineImageryService._bands_for("LANDSAT/LC09/C02/T1_L2")
    assert sensor == "LC09"
    assert bands[0] == "SR_B2"
    assert bands[-1] == QA_BAND
    with pytest.raises(ValidationError):
        EarthEngineImageryService._bands_for("COPERNICUS/S2_SR_HARMONIZED")


def test_query_images(ee_initialized):
    grid = EarthEngineImageryService.grid_from_bounds(BOUNDS, scale=0.0003)
    service = EarthEngineImageryService(grid, max_images=50)
    region = ee.Geometry.Rectangle(list(BOUNDS))
    scenes = service.query_images("LANDSAT/LC08/C02/T1_L2", region, ("2017-07-01", "2017-09-01"))
    assert 0 < scenes.size <= 50
    first = scenes.first()
    assert first.sensor == "LC08"
    assert first.grid_shape == service.grid_shape
    assert first.band_names[-1] == QA_BAND
    assert scenes.dates == sorted(scenes.dates)


def test_query_without_region_uses_grid_footprint(ee_initialized):
    grid = EarthEngineImageryService.grid_from_bounds(BOUNDS, scale=0.0003)
    service = EarthEngineImageryService(grid, max_images=50)
    date_range = ("2017-07-01", "2017-09-01")
    implicit = service.query_images("LANDSAT/LC08/C02/T1_L2", None, date_range)
    explicit = service.query_images("LANDSAT/LC08/C02/T1_L2", ee.Geometry.Rectangle(list(BOUNDS)), date_range)
    assert implicit.scene_ids == explicit.scene_ids


def test_query_over_scene_limit_fails(ee_initialized):
    grid = EarthEngineImageryService.grid_from_bounds(BOUNDS, scale=0.0003)
    service = EarthEngineImageryService(grid, max_images=1)
    with pytest.raises(UpstreamQueryError, match="max_images=1"):
        service.query_images("LANDSAT/LC08/C02/T1_L2", None, ("2017-01-01", "2018-01-01"))


def test_build_series_on_earth_engine(ee_initialized):
    grid = EarthEngineImageryService.grid_from_bounds(BOUNDS, scale=0.0003)
    service = EarthEngineImageryService(grid, max_images=50)
    series = build_series(
        service,
        2017,
        2018,
        "07-01",
        "08-15",
        region=ee.Geometry.Rectangle(list(BOUNDS)),
        sensors=("LC08",),
    )
    assert series.dates == ["2017-08-01", "2018-08-01"]
    assert series[0].band_names == ("B1", "B2", "B3", "B4", "B5", "B7")
