import numpy as np
import pytest
from scipy.optimize import nnls

from LTGEEToolbox import (
    RasterCollection,
    SpectralIndex,
    ValidationError,
    compute_index,
    standardize,
    transform_collection,
)
from LTGEEToolbox.SpectralIndex import (
    _SUM_TO_ONE_WEIGHT,
    ENDMEMBERS,
    SIGN_SYMMETRIC,
    tasseled_cap,
    transform_image,
    unmix,
)

VEGETATION = [500, 800, 600, 3000, 1500, 900]


def test_every_index_is_computable(make_image):
    img = make_image(VEGETATION)
    for index in SpectralIndex:
        result = compute_index(img, index)
        assert result.band_names == (index.value,)
        assert result.dtype == np.float32
        assert result.grid_shape == (3, 3)


def test_index_names_are_case_insensitive(make_image):
    img = make_image(VEGETATION)
    np.testing.assert_array_equal(compute_index(img, "nbr").bands, compute_index(img, "NBR").bands)


def test_unknown_index_is_rejected(make_image):
    with pytest.raises(ValidationError, match="not supported"):
        compute_index(make_image(VEGETATION), "NDWI")
    with pytest.raises(ValidationError):
        SpectralIndex.parse(3)


def test_normalized_differences(make_image):
    img = make_image(VEGETATION)
    assert compute_index(img, "NBR").bands[0, 0, 0] == pytest.approx((3000 - 900) / 3900 * 1000, rel=1e-5)
    assert compute_index(img, "NDVI").bands[0, 0, 0] == pytest.approx((3000 - 600) / 3600 * 1000, rel=1e-5)
    assert compute_index(img, "NDMI").bands[0, 0, 0] == pytest.approx((3000 - 1500) / 4500 * 1000, rel=1e-5)
    assert compute_index(img, "NDSI").bands[0, 0, 0] == pytest.approx((800 - 1500) / 2300 * 1000, rel=1e-5)
    assert compute_index(img, "GNDVI").bands[0, 0, 0] == pytest.approx((3000 - 800) / 3800 * 1000, rel=1e-5)


def test_evi_uses_reflectance(make_image):
    img = make_image(VEGETATION)
    nir, red, blue = 0.3, 0.06, 0.05
    expected = 2.5 * (nir - red) / (nir + 6 * red - 7.5 * blue + 1) * 1000
    assert compute_index(img, "EVI").bands[0, 0, 0] == pytest.approx(expected, rel=1e-5)


def test_raw_bands_pass_through(make_image):
    img = make_image(VEGETATION)
    assert compute_index(img, "B4").bands[0, 0, 0] == 3000


def test_tasseled_cap_angle():
    bands = {name: np.array([v], dtype=np.float64) for name, v in zip(("B1", "B2", "B3", "B4", "B5", "B7"), VEGETATION)}
    tc = tasseled_cap(bands)
    expected = np.degrees(np.arctan(tc["TCG"] / tc["TCB"])) * 100
    np.testing.assert_allclose(tc["TCA"], expected)


@pytest.mark.parametrize("index", list(SpectralIndex))
def test_flip_negates(make_image, index):
    img = make_image(VEGETATION)
    np.testing.assert_array_equal(
        compute_index(img, index, flip=True).bands, -compute_index(img, index).bands
    )


def test_sign_symmetric_indices():
    assert SpectralIndex.NBR in SIGN_SYMMETRIC
    assert SpectralIndex.TCB not in SIGN_SYMMETRIC


def test_computation_is_deterministic(make_image):
    img = make_image(VEGETATION)
    for index in ("NBR", "TCW", "NDFI"):
        np.testing.assert_array_equal(compute_index(img, index).bands, compute_index(img, index).bands)


def test_zero_denominator_does_not_raise(make_image):
    result = compute_index(make_image(0), "NDVI")
    assert np.isnan(result.bands).all()


def test_unmix_pure_endmembers():
    bands = {
        name: np.array([ENDMEMBERS["gv"][i], ENDMEMBERS["soil"][i]], dtype=np.float64)
        for i, name in enumerate(("B1", "B2", "B3", "B4", "B5", "B7"))
    }
    fractions = unmix(bands)
    np.testing.assert_allclose(fractions["gv"], [1, 0], atol=1e-3)
    np.testing.assert_allclose(fractions["soil"], [0, 1], atol=1e-3)
    total = sum(fractions[name] for name in ENDMEMBERS)
    np.testing.assert_allclose(total, [1, 1], atol=1e-3)


def test_unmix_matches_per_pixel_nnls():
    rng = np.random.default_rng(7)
    band_names = ("B1", "B2", "B3", "B4", "B5", "B7")
    bands = {name: rng.integers(0, 10000, size=(6, 6)).astype(np.float64) for name in band_names}
    for name in band_names:
        bands[name][0, :3] = bands[name][0, 3:]
    mask = np.ones((6, 6), dtype=bool)
    mask[5, 5] = False

    fractions = unmix(bands, mask)

    names = list(ENDMEMBERS)
    matrix = np.array([ENDMEMBERS[name] for name in names], dtype=np.float64).T
    augmented = np.vstack([matrix, np.full((1, len(names)), _SUM_TO_ONE_WEIGHT)])
    for row, col in zip(*np.nonzero(mask)):
        target = [bands[name][row, col] for name in band_names] + [_SUM_TO_ONE_WEIGHT]
        expected, _ = nnls(augmented, np.array(target))
        got = [fractions[name][row, col] for name in names]
        np.testing.assert_allclose(got, expected, atol=1e-5)
    assert all(fractions[name][5, 5] == 0 for name in names)
    assert all((fractions[name] >= 0).all() for name in names)


def test_ndfi_range(make_image):
    forest = make_image(list(ENDMEMBERS["gv"]))
    bare = make_image(list(ENDMEMBERS["soil"]))
    assert compute_index(forest, "NDFI").bands[0, 0, 0] == pytest.approx(1000, abs=1)
    assert compute_index(bare, "NDFI").bands[0, 0, 0] == pytest.approx(-1000, abs=1)


def test_index_output_keeps_mask_and_time(make_image):
    mask = np.ones((3, 3), dtype=bool)
    mask[0, 1] = False
    img = make_image(VEGETATION, mask=mask, date="2016-08-01")
    result = compute_index(img, "NDVI")
    np.testing.assert_array_equal(result.mask, mask)
    assert result.date == "2016-08-01"


def test_transform_image_stacks_indices(make_image):
    img = make_image(VEGETATION, date="2016-08-01")
    stacked = transform_image(img, ["NBR", "NDVI", "TCW"], flips=[True, False, False])
    assert stacked.band_names == ("NBR", "NDVI", "TCW")
    assert stacked.band("NBR")[0, 0] < 0
    assert stacked.date == "2016-08-01"
    with pytest.raises(ValidationError):
        transform_image(img, ["NBR", "nbr"])
    with pytest.raises(ValidationError):
        transform_image(img, ["NBR", "NDVI"], flips=[True])
    with pytest.raises(ValidationError):
        transform_image(img, [])


def test_transform_collection_validates_before_computing(make_image):
    col = RasterCollection([make_image(VEGETATION, date="2015-08-01"), make_image(VEGETATION, date="2016-08-01")])
    result = transform_collection(col, "NBR", flips=True)
    assert result.size == 2
    assert result.dates == ["2015-08-01", "2016-08-01"]
    with pytest.raises(ValidationError):
        transform_collection(col, ["NBR", "BOGUS"])


def test_standardize_uses_collection_mean_and_std(make_image):
    col = RasterCollection([make_image(1, date="2015-08-01"), make_image(2, date="2016-08-01"), make_image(3, date="2017-08-01")])
    z = standardize(col)
    std = np.sqrt(2 / 3)
    assert z[0].bands[0, 0, 0] == pytest.approx(-1 / std)
    assert z[1].bands[0, 0, 0] == pytest.approx(0)
    assert z[2].bands[0, 0, 0] == pytest.approx(1 / std)
    assert z.dates == col.dates
    assert standardize(RasterCollection()).size == 0
