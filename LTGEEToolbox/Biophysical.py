"""
Annual leaf area index (LAI) and fraction of absorbed photosynthetically active radiation (FAPAR) composites.

AVHRR (NOAA CDR V4) covers the years before MODIS_FIRST_YEAR, MODIS (MCD15A3H) the rest. Both are QA-masked,
reduced to a per-year median over the day window, brought to the AVHRR grid (about 5.56 km) and rescaled with
one set of harmonization coefficients so the two records form a single series.
"""

import logging
from dataclasses import dataclass

import ee
import numpy as np

from .Errors import ValidationError
from .Medoid import nominal_date
from .SensorCollection import DayWindow

logger = logging.getLogger(__name__)

AVHRR_LAI_DATASET = "NOAA/CDR/AVHRR/LAI_FAPAR/V4"
MODIS_LAI_DATASET = "MODIS/061/MCD15A3H"
MODIS_FIRST_YEAR = 2005

LAI_BANDS = ("LAI", "FAPAR")

# QA bit fields that must all be 0 for a clear observation
MODIS_LAI_QA_FLAGS = {"modland": 1 << 0, "cloud": 1 << 3, "scf": 3 << 5}
AVHRR_LAI_QA_FLAGS = {"cloud": 1 << 1, "invalid": 2 << 1, "out_of_range": 3 << 1}

# Gain and offset applied after the digital number scaling
LAI_HARMONIZATION = {
    "LAI": (0.3025988021153772, 0.14168120305862122),
    "FAPAR": (0.44193165531725004, 0.2805638310366593),
}


@dataclass(frozen=True)
class LaiSource:
    """
    One LAI/FAPAR record: its dataset, QA band and flags, source band names (in LAI_BANDS order) and the factor
    turning each band's digital numbers into physical units.
    """

    name: str
    dataset_id: str
    qa_band: str
    qa_flags: dict
    bands: tuple
    dn_scale: dict

    def coefficients(self):
        """
        Returns:
            dict: band name -> (multiplier, offset) mapping digital numbers to harmonized values.
        """
        return {
            band: (self.dn_scale[band] * gain, offset)
            for band, (gain, offset) in LAI_HARMONIZATION.items()
        }


AVHRR = LaiSource(
    name="AVHRR",
    dataset_id=AVHRR_LAI_DATASET,
    qa_band="QA",
    qa_flags=AVHRR_LAI_QA_FLAGS,
    bands=("LAI", "FAPAR"),
    dn_scale={"LAI": 0.0001, "FAPAR": 0.001},
)

MODIS = LaiSource(
    name="MODIS",
    dataset_id=MODIS_LAI_DATASET,
    qa_band="FparLai_QC",
    qa_flags=MODIS_LAI_QA_FLAGS,
    bands=("Lai", "Fpar"),
    dn_scale={"LAI": 0.01, "FAPAR": 0.01},
)


def lai_source(year):
    """
    Returns the LAI record used for a composite year.
    """
    return MODIS if int(year) >= MODIS_FIRST_YEAR else AVHRR


def clear_qa(qa, flags):
    """
    Validity mask of a QA array: True where none of the flag bits are set.

    Args:
        qa (np.ndarray): QA values.
        flags (dict): flag name -> bit mask, e.g. MODIS_LAI_QA_FLAGS.

    Returns:
        np.ndarray: boolean mask, True = clear.
    """
    qa = np.asarray(qa).astype(np.int64)
    mask = np.ones(qa.shape, dtype=bool)
    for bits in flags.values():
        mask &= (qa & bits) == 0
    return mask


def harmonize_lai_values(values, source):
    """
    Converts digital numbers of one record to harmonized LAI/FAPAR values.

    Args:
        values (dict): 'LAI' and 'FAPAR' -> digital numbers (scalars or arrays).
        source (LaiSource): record the values come from.

    Returns:
        dict: 'LAI' and 'FAPAR' -> float64 harmonized values.
    """
    coefficients = source.coefficients()
    return {
        band: np.asarray(values[band], dtype=np.float64) * coefficients[band][0] + coefficients[band][1]
        for band in LAI_BANDS
    }


def lai_query_plan(start_year, end_year, start_day, end_day):
    """
    Lists the LAI queries of a run without touching Earth Engine.

    Args:
        start_year (int): first year.
        end_year (int): last year (inclusive).
        start_day (str): window start, 'MM-DD'.
        end_day (str): window end, 'MM-DD' (exclusive).

    Returns:
        list of tuple: (year, LaiSource, date ranges) per year, in year order.

    Raises:
        ValidationError: on non-integer years, an inverted year range or malformed days.
    """
    for name, value in (("start_year", start_year), ("end_year", end_year)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer, got {value!r}")
    if end_year < start_year:
        raise ValidationError(f"end_year ({end_year}) must not be before start_year ({start_year})")
    window = DayWindow(start_day, end_day)
    return [(year, lai_source(year), window.date_ranges(year)) for year in range(start_year, end_year + 1)]


def mask_lai(image, source):
    """
    Masks an LAI/FAPAR ee.Image with its QA flags and returns the two bands renamed to LAI_BANDS.
    """
    qa = image.select(source.qa_band)
    mask = None
    for bits in source.qa_flags.values():
        clear = qa.bitwiseAnd(bits).eq(0)
        mask = clear if mask is None else mask.And(clear)
    masked = image.updateMask(mask).select(list(source.bands), list(LAI_BANDS))
    return ee.Image(masked.copyProperties(image, ["system:time_start"]))


def _harmonize_image(image, source):
    coefficients = source.coefficients()
    scaled = [
        image.select(band).multiply(coefficients[band][0]).add(coefficients[band][1]).rename(band)
        for band in LAI_BANDS
    ]
    return ee.Image.cat(*scaled)


def _to_lai_grid(image, projection):
    return (
        image.setDefaultProjection(projection)
        .reduceResolution(reducer=ee.Reducer.median())
        .reproject(crs=projection, scale=projection.nominalScale())
    )


def _year_collection(source, date_ranges, aoi):
    collection = None
    for start_date, end_date in date_ranges:
        part = (
            ee.ImageCollection(source.dataset_id)
            .filterBounds(aoi)
            .filterDate(start_date, end_date)
            .map(lambda image: mask_lai(image, source))
        )
        collection = part if collection is None else collection.merge(part)
    return collection


def lai_collection(start_year, end_year, start_day, end_day, aoi):
    """
    Builds an annual LAI/FAPAR collection harmonized across AVHRR and MODIS.

    Each year is the median of the QA-clear observations of its day window (wrapping windows take their start
    in the previous year), clipped to `aoi`, dated like the Landsat composites (August 1), reduced to the AVHRR
    grid with a median and rescaled to harmonized units.

    Args:
        start_year (int): first year.
        end_year (int): last year (inclusive).
        start_day (str): window start, 'MM-DD'.
        end_day (str): window end, 'MM-DD' (exclusive).
        aoi (ee.Geometry): area of interest.

    Returns:
        ee.ImageCollection: one 'LAI', 'FAPAR' image per year.

    Raises:
        ValidationError: on invalid years or days, before any Earth Engine call.

    Examples:
        >>> aoi = ee.Geometry.Rectangle([2.0, 41.3, 2.2, 41.5])
        >>> lai = lai_collection(2000, 2010, '06-01', '09-30', aoi)
    """
    plan = lai_query_plan(start_year, end_year, start_day, end_day)
    projection = ee.ImageCollection(AVHRR_LAI_DATASET).first().projection()

    images = []
    for year, source, date_ranges in plan:
        time_start = int(nominal_date(year).timestamp() * 1000)
        composite = _year_collection(source, date_ranges, aoi).median().clip(aoi)
        harmonized = _harmonize_image(_to_lai_grid(composite, projection), source)
        images.append(harmonized.set("system:time_start", time_start))
    logger.debug(f"Planned {len(images)} LAI composites ({start_year}-{end_year})")
    return ee.ImageCollection.fromImages(images).select(list(LAI_BANDS))
