import numpy as np
import pytest

from LTGEEToolbox import RasterCollection, build_mosaic, count_clear_view_pixels, medoid
from LTGEEToolbox.Medoid import empty_placeholder, nominal_date


@pytest.fixture
def placeholder():
    return empty_placeholder((3, 3))


def test_empty_collection_returns_placeholder(placeholder):
    assert medoid(RasterCollection(), placeholder) is placeholder


def test_single_image_is_its_own_medoid(make_image, placeholder):
    img = make_image(np.arange(6 * 9).reshape(6, 3, 3) * 10)
    result = medoid(RasterCollection([img]), placeholder)
    np.testing.assert_array_equal(result.bands, img.bands)
    np.testing.assert_array_equal(result.mask, img.mask)


def test_medoid_picks_observation_closest_to_median(make_image, placeholder):
    col = RasterCollection([make_image(100), make_image(200), make_image(900)])
    result = medoid(col, placeholder)
    assert (result.bands == 200).all()
    assert result.dtype == np.uint16
    assert result.get("image_count") == 3


def test_medoid_is_always_a_member_observation(make_image, placeholder):
    rng = np.random.default_rng(42)
    images = [make_image(rng.integers(0, 5000, size=(6, 3, 3))) for _ in range(5)]
    result = medoid(RasterCollection(images), placeholder)
    for r in range(3):
        for c in range(3):
            pixel = result.bands[:, r, c]
            assert any(np.array_equal(pixel, img.bands[:, r, c]) for img in images)


def test_masked_observations_are_ignored_and_ties_go_to_first(make_image, placeholder):
    masked = np.zeros((3, 3), dtype=bool)
    col = RasterCollection(
        [make_image(100), make_image(500, mask=masked), make_image(900)]
    )
    result = medoid(col, placeholder)
    # median of 100 and 900 is 500; both are equally distant
    assert (result.bands == 100).all()


def test_pixels_without_valid_observation_are_masked(make_image, placeholder):
    mask_a = np.ones((3, 3), dtype=bool)
    mask_a[0, 0] = False
    mask_b = mask_a.copy()
    mask_b[1, 1] = False
    result = medoid(RasterCollection([make_image(300, mask=mask_a), make_image(700, mask=mask_b)]), placeholder)
    assert not result.mask[0, 0]
    assert (result.bands[:, 0, 0] == 0).all()
    assert result.mask[1, 1]
    assert (result.bands[:, 1, 1] == 300).all()


def test_count_clear_view_pixels(make_image, placeholder):
    mask = np.ones((3, 3), dtype=bool)
    mask[2, 2] = False
    counts = count_clear_view_pixels(RasterCollection([make_image(1), make_image(2, mask=mask)]))
    assert counts.band_names == ("count",)
    assert counts.band("count")[0, 0] == 2
    assert counts.band("count")[2, 2] == 1
    empty_counts = count_clear_view_pixels(RasterCollection(), placeholder)
    assert not empty_counts.bands.any()
    with pytest.raises(ValueError):
        count_clear_view_pixels(RasterCollection())


def test_nominal_date_is_august_first():
    assert nominal_date(2017).strftime("%Y-%m-%d") == "2017-08-01"


def test_build_mosaic_dates_composite(make_service):
    service = make_service({"LC08": ["2017-07-01", "2017-07-17", "2017-08-02"]})
    img = build_mosaic(service, 2017, "06-01", "09-30")
    assert img.date == "2017-08-01"
    assert img.get("year") == 2017
    assert not img.is_placeholder
    assert img.valid_count() == 9


def test_build_mosaic_without_scenes_uses_placeholder(make_service):
    service = make_service({"LC08": ["2016-07-01"]})
    img = build_mosaic(service, 2017, "06-01", "09-30")
    assert img.is_placeholder
    assert img.valid_count() == 0
    assert img.date == "2017-08-01"
    assert img.band_names == ("B1", "B2", "B3", "B4", "B5", "B7")
    assert img.grid_shape == (3, 3)
