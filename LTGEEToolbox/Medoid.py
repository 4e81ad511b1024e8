"""
Medoid compositing.

A medoid composite keeps, at every pixel, the single real observation whose bands are closest (in summed squared
difference) to the per-band median of all valid observations. Unlike a median or mean composite the output is
always a genuine observation, so spectral relationships between bands are preserved.
"""

import logging

import numpy as np
import pandas as pd

from .Masking import HARMONIZED_BANDS
from .RasterImage import RasterCollection, RasterImage
from .SensorCollection import DEFAULT_SENSORS, get_combined_sr_collection

logger = logging.getLogger(__name__)

# Month and day every annual composite is pinned to
NOMINAL_MONTH = 8
NOMINAL_DAY = 1


def nominal_date(year):
    """
    Nominal acquisition time given to the composite of a year (August 1).
    """
    return pd.Timestamp(year=int(year), month=NOMINAL_MONTH, day=NOMINAL_DAY)


def empty_placeholder(grid_shape, band_names=HARMONIZED_BANDS):
    """
    Fully-masked, all-zero six-band image standing in for years without imagery.
    """
    return RasterImage.placeholder(band_names, grid_shape)


def medoid(collection, placeholder):
    """
    Reduces a collection of same-grid images to a per-pixel medoid composite.

    Steps: per-band median across valid observations; per observation, squared deviation from the median summed
    across bands (float64); per pixel, the observation with the smallest distance wins (the first one on ties) and
    all of its original bands are copied to the output.

    Args:
        collection (RasterCollection): images sharing a grid and band layout.
        placeholder (RasterImage): image returned unchanged when the collection is empty.

    Returns:
        RasterImage: uint16 composite, valid wherever at least one observation is valid.
    """
    if collection.size == 0:
        return placeholder

    data, masks = collection.stack()
    values = data.astype(np.float64)
    invalid = np.broadcast_to(~masks[:, np.newaxis], values.shape)

    median = np.ma.median(np.ma.masked_array(values, mask=invalid), axis=0)
    median = np.ma.filled(np.ma.masked_array(median), 0.0)

    distance = ((values - median[np.newaxis]) ** 2).sum(axis=1)
    distance = np.where(masks, distance, np.inf)
    winner = np.argmin(distance, axis=0)

    index = np.broadcast_to(winner[np.newaxis, np.newaxis], (1,) + data.shape[1:])
    composite = np.take_along_axis(data, index, axis=0)[0]
    valid = masks.any(axis=0)
    composite = np.where(valid[np.newaxis], composite, 0)

    first = collection.first()
    return RasterImage(
        composite,
        band_names=first.band_names,
        mask=valid,
        properties={"image_count": collection.size},
    ).to_uint16()


def count_clear_view_pixels(collection, placeholder=None):
    """
    Counts, per pixel, how many observations of a collection are valid.

    Args:
        collection (RasterCollection): intra-annual collection.
        placeholder (RasterImage, optional): used for its grid when the collection is empty.

    Returns:
        RasterImage: single-band uint16 image named 'count', valid everywhere.
    """
    if collection.size == 0:
        if placeholder is None:
            raise ValueError("A placeholder is required to count pixels of an empty collection")
        collection = RasterCollection([placeholder])
    masks = np.stack([image.mask for image in collection])
    counts = masks.sum(axis=0).astype(np.uint16)
    return RasterImage(counts, band_names=["count"])


def build_mosaic(
    service,
    year,
    start_day,
    end_day,
    region=None,
    placeholder=None,
    mask_these=None,
    exclude=None,
    sensors=DEFAULT_SENSORS,
    auxiliary=None,
):
    """
    Builds the medoid composite of one year from every requested sensor.

    Args:
        service (ImageryService): imagery service.
        year (int): composite year.
        start_day (str): window start, 'MM-DD'.
        end_day (str): window end, 'MM-DD'.
        region (optional): spatial region passed through to the service.
        placeholder (RasterImage, optional): composite used when no scene is available. Defaults to a fully-masked
            six-band image on the service grid.
        mask_these (MaskSpec or list of str, optional): mask categories.
        exclude (ExclusionSpec or dict, optional): scenes to drop.
        sensors (tuple of str): sensors to merge.
        auxiliary (dict, optional): prefetched ancillary layers.

    Returns:
        RasterImage: composite with time pinned to August 1 of `year`.
    """
    collection = get_combined_sr_collection(
        service, year, start_day, end_day, region, mask_these, exclude, sensors, auxiliary
    )
    if placeholder is None:
        placeholder = empty_placeholder(service.grid_shape)
    if collection.size == 0:
        logger.warning(f"No images for {year}; using placeholder composite")
    else:
        logger.debug(f"Compositing {collection.size} images for {year}")
    img = medoid(collection, placeholder)
    return img.set_time_start(nominal_date(year)).set(year=int(year))
