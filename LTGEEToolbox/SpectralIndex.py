from enum import Enum

import numpy as np
from scipy.optimize import nnls

from .Errors import ValidationError
from .Masking import HARMONIZED_BANDS
from .RasterImage import RasterCollection, RasterImage

# Normalized differences and ratio indices are scaled by 1000
INDEX_SCALE = 1000

# Tasseled cap coefficients for the B1, B2, B3, B4, B5, B7 layout
TC_BRIGHTNESS = (0.2043, 0.4158, 0.5524, 0.5741, 0.3124, 0.2303)
TC_GREENNESS = (-0.1603, -0.2819, -0.4934, 0.7940, -0.0002, -0.1446)
TC_WETNESS = (0.0315, 0.2021, 0.3102, 0.1594, -0.6806, -0.6109)

# NDFI endmember spectra (fixed-point reflectance x 10000), unmixed in this order
ENDMEMBERS = {
    "gv": (500, 900, 400, 6100, 3000, 1000),
    "shade": (0, 0, 0, 0, 0, 0),
    "npv": (1400, 1700, 2200, 3000, 5500, 3000),
    "soil": (2000, 3000, 3400, 5800, 6000, 5800),
    "cloud": (9000, 9600, 8000, 7800, 7200, 6500),
}

# Weight of the sum-to-one row appended to the endmember matrix
_SUM_TO_ONE_WEIGHT = 1e5


class SpectralIndex(Enum):
    """
    Closed set of bands and indices that can be derived from a harmonized six-band image.
    """

    B1 = "B1"
    B2 = "B2"
    B3 = "B3"
    B4 = "B4"
    B5 = "B5"
    B7 = "B7"
    NBR = "NBR"
    NDMI = "NDMI"
    NDVI = "NDVI"
    NDSI = "NDSI"
    EVI = "EVI"
    GNDVI = "GNDVI"
    TCB = "TCB"
    TCG = "TCG"
    TCW = "TCW"
    TCA = "TCA"
    NDFI = "NDFI"

    @classmethod
    def parse(cls, name):
        """
        Resolves an index from its (case-insensitive) name.

        Raises:
            ValidationError: if the index is not supported.
        """
        if isinstance(name, cls):
            return name
        if not isinstance(name, str):
            raise ValidationError(f"Index names must be strings, got {name!r}")
        try:
            return cls(name.strip().upper())
        except ValueError:
            raise ValidationError(
                f"The index you provided is not supported: '{name}'. Choose from {[i.value for i in cls]}"
            ) from None


# Indices whose value changes sign when the two compared quantities are swapped
SIGN_SYMMETRIC = frozenset(
    {
        SpectralIndex.NDVI,
        SpectralIndex.NBR,
        SpectralIndex.NDMI,
        SpectralIndex.NDSI,
        SpectralIndex.GNDVI,
        SpectralIndex.EVI,
    }
)


def _normalized_difference(a, b):
    return (a - b) / (a + b)


def _weighted_sum(bands, coefficients):
    return sum(c * bands[name] for c, name in zip(coefficients, HARMONIZED_BANDS))


def tasseled_cap(bands):
    """
    Tasseled cap brightness, greenness, wetness and angle.

    Args:
        bands (dict): band name -> float64 array for B1, B2, B3, B4, B5, B7.

    Returns:
        dict: 'TCB', 'TCG', 'TCW', 'TCA' arrays. TCA is atan(TCG / TCB) in degrees x 100.
    """
    brightness = _weighted_sum(bands, TC_BRIGHTNESS)
    greenness = _weighted_sum(bands, TC_GREENNESS)
    wetness = _weighted_sum(bands, TC_WETNESS)
    angle = np.arctan(greenness / brightness) * (180 / np.pi) * 100
    return {"TCB": brightness, "TCG": greenness, "TCW": wetness, "TCA": angle}


def unmix(bands, mask=None, endmembers=ENDMEMBERS):
    """
    Fully constrained linear spectral unmixing: fractions are non-negative and sum to one.

    The endmember matrix is augmented with a heavily weighted sum-to-one row. Identical spectra are solved once,
    all of them together by unconstrained least squares. Where that solution is already non-negative it is also
    the non-negative least squares optimum; only the remaining spectra are solved one by one with `nnls`.

    Args:
        bands (dict): band name -> float64 array for B1, B2, B3, B4, B5, B7.
        mask (np.ndarray, optional): pixels to unmix. Defaults to all pixels.
        endmembers (dict): endmember name -> spectrum, in unmixing order.

    Returns:
        dict: endmember name -> fraction array (0 outside `mask`).
    """
    pixels = np.stack([bands[name] for name in HARMONIZED_BANDS], axis=-1)
    grid = pixels.shape[:-1]
    if mask is None:
        mask = np.ones(grid, dtype=bool)

    names = list(endmembers)
    matrix = np.array([endmembers[name] for name in names], dtype=np.float64).T
    augmented = np.vstack([matrix, np.full((1, len(names)), _SUM_TO_ONE_WEIGHT)])

    fractions = np.zeros(grid + (len(names),), dtype=np.float64)
    if mask.any():
        spectra, inverse = np.unique(pixels[mask], axis=0, return_inverse=True)
        targets = np.hstack([spectra, np.full((len(spectra), 1), _SUM_TO_ONE_WEIGHT)])
        solved = np.linalg.lstsq(augmented, targets.T, rcond=None)[0].T
        for i in np.flatnonzero((solved < 0).any(axis=1)):
            solved[i], _ = nnls(augmented, targets[i])
        fractions[mask] = solved[np.ravel(inverse)]
    return {name: fractions[..., i] for i, name in enumerate(names)}


def _band(name):
    return lambda bands, mask: bands[name]


def _nbr(bands, mask):
    return _normalized_difference(bands["B4"], bands["B7"]) * INDEX_SCALE


def _ndmi(bands, mask):
    return _normalized_difference(bands["B4"], bands["B5"]) * INDEX_SCALE


def _ndvi(bands, mask):
    return _normalized_difference(bands["B4"], bands["B3"]) * INDEX_SCALE


def _ndsi(bands, mask):
    return _normalized_difference(bands["B2"], bands["B5"]) * INDEX_SCALE


def _gndvi(bands, mask):
    return _normalized_difference(bands["B4"], bands["B2"]) * INDEX_SCALE


def _evi(bands, mask):
    nir = bands["B4"] / 10000
    red = bands["B3"] / 10000
    blue = bands["B1"] / 10000
    return 2.5 * ((nir - red) / (nir + 6 * red - 7.5 * blue + 1)) * INDEX_SCALE


def _tc(component):
    return lambda bands, mask: tasseled_cap(bands)[component]


def _ndfi(bands, mask):
    fractions = unmix(bands, mask)
    gv_shade = fractions["gv"] / (1 - fractions["shade"])
    npv_soil = fractions["npv"] + fractions["soil"]
    return (gv_shade - npv_soil) / (gv_shade + npv_soil) * INDEX_SCALE


_TRANSFORMS = {
    SpectralIndex.B1: _band("B1"),
    SpectralIndex.B2: _band("B2"),
    SpectralIndex.B3: _band("B3"),
    SpectralIndex.B4: _band("B4"),
    SpectralIndex.B5: _band("B5"),
    SpectralIndex.B7: _band("B7"),
    SpectralIndex.NBR: _nbr,
    SpectralIndex.NDMI: _ndmi,
    SpectralIndex.NDVI: _ndvi,
    SpectralIndex.NDSI: _ndsi,
    SpectralIndex.EVI: _evi,
    SpectralIndex.GNDVI: _gndvi,
    SpectralIndex.TCB: _tc("TCB"),
    SpectralIndex.TCG: _tc("TCG"),
    SpectralIndex.TCW: _tc("TCW"),
    SpectralIndex.TCA: _tc("TCA"),
    SpectralIndex.NDFI: _ndfi,
}


def compute_index(image, index, flip=False):
    """
    Computes a band or spectral index from a harmonized six-band image.

    Args:
        image (RasterImage): image with bands B1, B2, B3, B4, B5, B7 (fixed-point reflectance x 10000).
        index (str or SpectralIndex): index name, case-insensitive.
        flip (bool): multiply the result by -1, e.g. so that disturbance shows up as an increase.

    Returns:
        RasterImage: single float32 band named after the index, with the mask and time of the input.
        Zero denominators produce NaN or infinite values rather than errors.

    Raises:
        ValidationError: if the index is not supported or the image lacks a harmonized band.
    """
    index = SpectralIndex.parse(index)
    harmonized = image.select(list(HARMONIZED_BANDS))
    bands = {name: array.astype(np.float64) for name, array in zip(HARMONIZED_BANDS, harmonized.bands)}

    with np.errstate(divide="ignore", invalid="ignore"):
        values = _TRANSFORMS[index](bands, image.mask)
        if flip:
            values = values * -1

    return RasterImage(
        np.asarray(values, dtype=np.float32),
        band_names=[index.value],
        mask=image.mask,
        time_start=image.time_start,
        sensor=image.sensor,
        scene_id=image.scene_id,
        properties=image.properties,
    )


def _resolve_flips(indices, flips):
    if flips is None:
        return [False] * len(indices)
    if isinstance(flips, bool):
        return [flips] * len(indices)
    flips = [bool(f) for f in flips]
    if len(flips) != len(indices):
        raise ValidationError(
            f"Got {len(flips)} flip flags for {len(indices)} indices"
        )
    return flips


def transform_image(image, indices, flips=None):
    """
    Stacks several indices of one image into a multi-band image, preserving its time.

    Args:
        image (RasterImage): harmonized six-band image.
        indices (list of str): index names, in output band order.
        flips (bool or list of bool, optional): sign flip per index.

    Returns:
        RasterImage: one float32 band per index.
    """
    indices = [SpectralIndex.parse(i) for i in indices]
    if not indices:
        raise ValidationError("At least one index is required")
    if len(set(indices)) != len(indices):
        raise ValidationError(f"Duplicate indices requested: {[i.value for i in indices]}")
    flips = _resolve_flips(indices, flips)

    stacked = compute_index(image, indices[0], flips[0])
    for index, flip in zip(indices[1:], flips[1:]):
        stacked = stacked.add_bands(compute_index(image, index, flip))
    return stacked.set_time_start(image.time_start)


def transform_collection(collection, indices, flips=None):
    """
    Transforms an annual collection into a collection of selected indices or bands.

    All index names are validated before anything is computed.

    Args:
        collection (RasterCollection): harmonized images (e.g. a composite series).
        indices (list of str): index names.
        flips (bool or list of bool, optional): sign flip per index.

    Returns:
        RasterCollection: one multi-band index image per input image.
    """
    if isinstance(indices, (str, SpectralIndex)):
        indices = [indices]
    indices = [SpectralIndex.parse(i) for i in indices]
    flips = _resolve_flips(indices, flips)
    return collection.map(lambda image: transform_image(image, indices, flips))


def standardize(collection):
    """
    Standardizes a collection per pixel and band: (value - mean) / standard deviation across the collection.

    Args:
        collection (RasterCollection): images sharing a grid and band layout.

    Returns:
        RasterCollection: float64 z-score images with the original times.
    """
    if collection.size == 0:
        return collection
    mean = collection.mean()
    std = collection.std()

    def _standardize(image):
        with np.errstate(divide="ignore", invalid="ignore"):
            values = (image.bands.astype(np.float64) - mean.bands) / std.bands
        return RasterImage(
            values,
            band_names=image.band_names,
            mask=image.mask,
            time_start=image.time_start,
            sensor=image.sensor,
            scene_id=image.scene_id,
            properties=image.properties,
        )

    return RasterCollection(_standardize(image) for image in collection)
