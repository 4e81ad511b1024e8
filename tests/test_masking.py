import numpy as np
import pytest

from LTGEEToolbox import MaskSpec, RasterImage, ValidationError, prepare_image
from LTGEEToolbox.ImageryService import FOREST_TYPE_DATASET, SURFACE_WATER_DATASET
from LTGEEToolbox.Masking import (
    DEFAULT_MASKS,
    HARMONIZED_BANDS,
    qa_mask,
    scale_sr,
    validate_sensor,
)

SR_DN = [8000, 12000, 16000, 24000, 30000, 36000]


def test_scale_sr_fixed_point_reflectance():
    scaled = scale_sr(np.array([0, 7273, 43636, 65535]))
    assert scaled.dtype == np.uint16
    np.testing.assert_array_equal(scaled, [0, 0, 9999, 16022])


def test_qa_mask_tests_selected_bits_only():
    qa = np.array([0, 8, 16, 32, 128, 2, 24])
    np.testing.assert_array_equal(
        qa_mask(qa, ["cloud"]), [True, False, True, True, True, True, False]
    )
    np.testing.assert_array_equal(
        qa_mask(qa, ["cloud", "shadow", "snow", "water"]),
        [True, False, False, False, False, True, False],
    )


def test_mask_spec_normalizes_names():
    spec = MaskSpec(("Cloud", "cloud", "extended-water", "non-forest"))
    assert spec.categories == ("cloud", "waterplus", "nonforest")
    assert spec.qa_categories == ("cloud",)
    assert spec.auxiliary_datasets == (SURFACE_WATER_DATASET, FOREST_TYPE_DATASET)
    assert "waterplus" in spec


def test_mask_spec_rejects_unknown_names():
    with pytest.raises(ValidationError, match="maskable"):
        MaskSpec(("cloud", "fog"))
    with pytest.raises(ValueError):
        MaskSpec.from_value("fog")


def test_mask_spec_defaults_and_empty():
    assert MaskSpec.from_value(None).categories == DEFAULT_MASKS
    assert MaskSpec.from_value([]).categories == ()


def test_validate_sensor():
    assert validate_sensor("LC09") == "LC09"
    with pytest.raises(ValidationError):
        validate_sensor("S2A")


@pytest.mark.parametrize(
    "sensor, first_band",
    [("LC08", "SR_B2"), ("LC09", "SR_B2"), ("LT05", "SR_B1"), ("LE07", "SR_B1")],
)
def test_prepare_image_harmonizes_band_layout(make_raw_scene, sensor, first_band):
    raw = make_raw_scene(sensor, "2017-07-01", dn=SR_DN)
    prepared = prepare_image(raw, sensor, [])
    assert prepared.band_names == HARMONIZED_BANDS
    assert prepared.dtype == np.uint16
    np.testing.assert_array_equal(prepared.band("B1"), scale_sr(raw.band(first_band)))
    np.testing.assert_array_equal(prepared.band("B7"), scale_sr(raw.band("SR_B7")))
    assert prepared.date == "2017-07-01"
    assert prepared.scene_id == raw.scene_id
    assert prepared.sensor == sensor


def test_prepare_image_applies_qa_masks(make_raw_scene):
    qa = np.zeros((3, 3), dtype=np.uint16)
    qa[0, 0] = 1 << 3
    qa[1, 1] = 1 << 7
    raw = make_raw_scene("LC08", "2017-07-01", qa=qa)
    cloud_only = prepare_image(raw, "LC08", ["cloud"])
    assert not cloud_only.mask[0, 0]
    assert cloud_only.mask[1, 1]
    defaults = prepare_image(raw, "LC08")
    assert defaults.valid_count() == 7


def test_prepare_image_keeps_source_mask(make_raw_scene):
    mask = np.ones((3, 3), dtype=bool)
    mask[2, 2] = False
    raw = make_raw_scene("LE07", "2010-07-01", mask=mask)
    assert not prepare_image(raw, "LE07", []).mask[2, 2]


def test_waterplus_masks_permanent_water_only(make_raw_scene):
    recurrence = np.array([[100, 50, 0], [0, 0, 0], [0, 0, 0]])
    water_mask = np.ones((3, 3), dtype=bool)
    water_mask[0, 2] = False  # never water
    surface_water = RasterImage(recurrence, band_names=["recurrence"], mask=water_mask)
    raw = make_raw_scene("LC08", "2017-07-01")
    prepared = prepare_image(
        raw, "LC08", ["waterplus"], auxiliary={SURFACE_WATER_DATASET: surface_water}
    )
    assert not prepared.mask[0, 0]
    assert prepared.mask[0, 1]
    assert prepared.mask[0, 2]
    assert prepared.valid_count() == 8


def test_nonforest_keeps_forest_pixels_only(make_raw_scene):
    forest = np.zeros((3, 3), dtype=bool)
    forest[:, 0] = True
    forest_type = RasterImage(np.ones((3, 3)), band_names=["forest_type"], mask=forest)
    raw = make_raw_scene("LC08", "2017-07-01")
    prepared = prepare_image(raw, "LC08", ["nonforest"], auxiliary={FOREST_TYPE_DATASET: forest_type})
    np.testing.assert_array_equal(prepared.mask, forest)


def test_auxiliary_masks_require_layers(make_raw_scene):
    raw = make_raw_scene("LC08", "2017-07-01")
    with pytest.raises(ValidationError, match="auxiliary"):
        prepare_image(raw, "LC08", ["waterplus"])
    wrong_grid = RasterImage(np.zeros((2, 2)), band_names=["recurrence"])
    with pytest.raises(ValidationError, match="grid"):
        prepare_image(raw, "LC08", ["waterplus"], auxiliary={SURFACE_WATER_DATASET: wrong_grid})
