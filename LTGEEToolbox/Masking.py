from dataclasses import dataclass

import numpy as np

from .Errors import ValidationError
from .ImageryService import FOREST_TYPE_DATASET, SURFACE_WATER_DATASET
from .RasterImage import RasterImage

# ---- Reflectance scaling for Landsat Collection 2 SR ----
_LS_SCALE = 0.0000275
_LS_OFFSET = -0.2
_LS_FIXED_POINT = 10000

HARMONIZED_BANDS = ("B1", "B2", "B3", "B4", "B5", "B7")

# Native SR band codes for each sensor, in harmonized order (blue, green, red, NIR, SWIR1, SWIR2)
SENSOR_BANDS = {
    "LT05": ("SR_B1", "SR_B2", "SR_B3", "SR_B4", "SR_B5", "SR_B7"),
    "LE07": ("SR_B1", "SR_B2", "SR_B3", "SR_B4", "SR_B5", "SR_B7"),
    "LC08": ("SR_B2", "SR_B3", "SR_B4", "SR_B5", "SR_B6", "SR_B7"),
    "LC09": ("SR_B2", "SR_B3", "SR_B4", "SR_B5", "SR_B6", "SR_B7"),
}

SPACECRAFT_IDS = {
    "LT05": "LANDSAT_5",
    "LE07": "LANDSAT_7",
    "LC08": "LANDSAT_8",
    "LC09": "LANDSAT_9",
}

QA_BAND = "QA_PIXEL"

# QA_PIXEL bit positions
QA_BITS = {
    "cloud": 3,
    "shadow": 4,
    "snow": 5,
    "water": 7,
}

MASK_OPTIONS = ("cloud", "shadow", "snow", "water", "waterplus", "nonforest")
DEFAULT_MASKS = ("cloud", "shadow", "snow", "water")

_MASK_ALIASES = {
    "extended-water": "waterplus",
    "extended_water": "waterplus",
    "non-forest": "nonforest",
    "non_forest": "nonforest",
}

# Mask categories sourced from ancillary datasets rather than the QA band
AUXILIARY_MASKS = {
    "waterplus": SURFACE_WATER_DATASET,
    "nonforest": FOREST_TYPE_DATASET,
}

# Surface-water recurrence (percent) above which a pixel counts as permanent water
WATER_RECURRENCE_THRESHOLD = 99


@dataclass(frozen=True)
class MaskSpec:
    """
    Validated, immutable selection of mask categories.

    Args:
        categories (tuple of str): names from MASK_OPTIONS (case-insensitive; 'extended-water' and 'non-forest'
            are accepted aliases of 'waterplus' and 'nonforest'). An empty tuple disables masking.

    Raises:
        ValidationError: if a name is not a maskable feature.
    """

    categories: tuple = DEFAULT_MASKS

    def __post_init__(self):
        categories = self.categories
        if isinstance(categories, str):
            categories = (categories,)
        normalized = []
        for name in categories:
            if not isinstance(name, str):
                raise ValidationError(f"Mask category names must be strings, got {name!r}")
            key = name.strip().lower()
            key = _MASK_ALIASES.get(key, key)
            if key not in MASK_OPTIONS:
                raise ValidationError(
                    f"'{name}' is not included in the list of maskable features. "
                    f"Choose from {list(MASK_OPTIONS)}"
                )
            if key not in normalized:
                normalized.append(key)
        object.__setattr__(self, "categories", tuple(normalized))

    @classmethod
    def from_value(cls, value):
        """
        Builds a MaskSpec from None (default masks), a MaskSpec, a single name, or a list of names.
        """
        if value is None:
            return cls()
        if isinstance(value, MaskSpec):
            return value
        if isinstance(value, str):
            return cls((value,))
        return cls(tuple(value))

    @property
    def qa_categories(self):
        return tuple(c for c in self.categories if c in QA_BITS)

    @property
    def auxiliary_datasets(self):
        """Ancillary dataset ids required by the selected categories."""
        return tuple(AUXILIARY_MASKS[c] for c in self.categories if c in AUXILIARY_MASKS)

    def __contains__(self, item):
        return item in self.categories


def validate_sensor(sensor_id):
    if sensor_id not in SENSOR_BANDS:
        raise ValidationError(
            f"Unknown sensor '{sensor_id}'. Choose from {list(SENSOR_BANDS)}"
        )
    return sensor_id


def scale_sr(dn):
    """
    Converts Landsat C2 SR digital numbers to fixed-point reflectance (reflectance x 10000) stored as uint16.

    Values are computed as ((DN * 0.0000275) - 0.2) * 10000, clamped to the uint16 range and truncated.

    Args:
        dn (np.ndarray): raw digital numbers.

    Returns:
        np.ndarray: uint16 array of the same shape.
    """
    reflectance = (np.asarray(dn, dtype=np.float64) * _LS_SCALE + _LS_OFFSET) * _LS_FIXED_POINT
    return np.clip(reflectance, 0, np.iinfo(np.uint16).max).astype(np.uint16)


def qa_mask(qa, categories):
    """
    Builds a validity mask from a bit-packed QA_PIXEL array: valid where every selected category bit is 0.

    Args:
        qa (np.ndarray): QA_PIXEL values.
        categories (iterable of str): QA categories ('cloud', 'shadow', 'snow', 'water').

    Returns:
        np.ndarray: boolean mask, True = valid.
    """
    qa = np.asarray(qa).astype(np.int64)
    mask = np.ones(qa.shape, dtype=bool)
    for category in categories:
        mask &= (qa & (1 << QA_BITS[category])) == 0
    return mask


def permanent_water_mask(surface_water):
    """
    Valid where the surface-water recurrence is not above 99 percent. Pixels with no recorded water are valid.

    Args:
        surface_water (RasterImage): surface-water layer; its 'recurrence' band (or first band) is used.
    """
    if "recurrence" in surface_water.band_names:
        recurrence = surface_water.band("recurrence")
    else:
        recurrence = surface_water.bands[0]
    permanent = surface_water.mask & (recurrence > WATER_RECURRENCE_THRESHOLD)
    return ~permanent


def forest_mask(forest_type):
    """
    Valid where the forest-type layer has a defined value (any forest type).

    Args:
        forest_type (RasterImage): forest-type layer.
    """
    return forest_type.mask.copy()


def load_auxiliary(service, mask_spec):
    """
    Fetches the ancillary layers needed by a mask selection, once per pipeline run.

    Args:
        service (ImageryService): imagery service.
        mask_spec (MaskSpec): validated mask selection.

    Returns:
        dict: dataset id -> RasterImage.
    """
    return {dataset_id: service.auxiliary_dataset(dataset_id) for dataset_id in mask_spec.auxiliary_datasets}


def _auxiliary_layer(auxiliary, category, grid_shape):
    dataset_id = AUXILIARY_MASKS[category]
    layer = (auxiliary or {}).get(dataset_id)
    if layer is None:
        raise ValidationError(
            f"The '{category}' mask requires the auxiliary dataset {dataset_id}"
        )
    if layer.grid_shape != tuple(grid_shape):
        raise ValidationError(
            f"Auxiliary dataset {dataset_id} grid {layer.grid_shape} does not match image grid {tuple(grid_shape)}"
        )
    return layer


def prepare_image(raw_image, sensor_id, mask_spec=None, auxiliary=None):
    """
    Harmonizes a raw Landsat C2 SR scene: selects the sensor's reflectance bands into the common
    B1, B2, B3, B4, B5, B7 layout, rescales them to fixed-point reflectance and applies the selected masks.

    QA categories are tested on the QA_PIXEL bits; 'waterplus' and 'nonforest' are applied by direct masking with
    the surface-water and forest-type ancillary layers.

    Args:
        raw_image (RasterImage): raw scene with 'SR_B*' bands and 'QA_PIXEL'.
        sensor_id (str): 'LT05', 'LE07', 'LC08' or 'LC09'.
        mask_spec (MaskSpec or list of str, optional): categories to mask. Defaults to cloud, shadow, snow and water.
        auxiliary (dict, optional): dataset id -> RasterImage for the ancillary masks (see load_auxiliary).

    Returns:
        RasterImage: six-band uint16 image carrying the source's time, scene id and properties.

    Raises:
        ValidationError: on an unknown sensor or mask category, or a missing ancillary layer.
    """
    mask_spec = MaskSpec.from_value(mask_spec)
    validate_sensor(sensor_id)

    sr = raw_image.select(list(SENSOR_BANDS[sensor_id]))
    bands = scale_sr(sr.bands)

    mask = raw_image.mask.copy()
    if mask_spec.qa_categories:
        mask &= qa_mask(raw_image.band(QA_BAND), mask_spec.qa_categories)
    if "waterplus" in mask_spec:
        mask &= permanent_water_mask(_auxiliary_layer(auxiliary, "waterplus", raw_image.grid_shape))
    if "nonforest" in mask_spec:
        mask &= forest_mask(_auxiliary_layer(auxiliary, "nonforest", raw_image.grid_shape))

    return RasterImage(
        bands,
        band_names=HARMONIZED_BANDS,
        mask=mask,
        time_start=raw_image.time_start,
        sensor=sensor_id,
        scene_id=raw_image.scene_id,
        properties=raw_image.properties,
    )
