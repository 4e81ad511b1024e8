import ee
import numpy as np

from .Errors import ValidationError
from .RasterImage import RasterCollection, RasterImage


def union_images(primary, secondary):
    """
    Unions two images acquired at the same time, such as adjacent tiles of one composite year.

    Masked pixels of each image count as 0 and the two images are added band by band, so each pixel keeps the
    value of whichever image covers it (overlaps are summed). A pixel is valid where either image is valid.

    Args:
        primary (RasterImage): image whose band names, time and properties are kept.
        secondary (RasterImage): image with the same band count and grid.

    Returns:
        RasterImage: the unioned image.

    Raises:
        ValidationError: if the images do not share a band count and grid.
    """
    if primary.n_bands != secondary.n_bands or primary.grid_shape != secondary.grid_shape:
        raise ValidationError(
            f"Cannot union a {primary.n_bands}-band {primary.grid_shape} image with a "
            f"{secondary.n_bands}-band {secondary.grid_shape} image"
        )
    bands = np.where(primary.mask, primary.bands, 0) + np.where(secondary.mask, secondary.bands, 0)
    return primary._replace(bands=bands, mask=primary.mask | secondary.mask)


def union_collections(collection_a, collection_b):
    """
    Unions two collections on matching acquisition times. Server-side counterpart: ee_union_collections.

    Only times present in both collections produce an image (inner join), in the order of `collection_a`.
    Images without a time are never matched.

    Args:
        collection_a (RasterCollection): primary collection.
        collection_b (RasterCollection): secondary collection.

    Returns:
        RasterCollection: one unioned image per matching (primary, secondary) pair.

    Examples:
        >>> west = build_sr_collection(west_service, 2000, 2010, '06-01', '09-30')
        >>> east = build_sr_collection(east_service, 2000, 2010, '06-01', '09-30')
        >>> stitched = union_collections(west, east)
    """
    unioned = []
    for primary in collection_a:
        if primary.time_start is None:
            continue
        for secondary in collection_b:
            if secondary.time_start == primary.time_start:
                unioned.append(union_images(primary, secondary))
    return RasterCollection(unioned)


def ee_union_images(joined):
    """
    Unions the 'primary' and 'secondary' images of a join result. Both are clipped to the union of their
    footprints and unmasked to 0 before being added.

    Args:
        joined (ee.Image): element produced by ee.Join.inner.

    Returns:
        ee.Image: the unioned image, with 'system:footprint' set to the unioned footprint and
        'system:time_start' taken from the primary image.
    """
    primary = ee.Image(joined.get("primary"))
    secondary = ee.Image(joined.get("secondary"))
    footprint = primary.geometry().union(secondary.geometry())
    merged = primary.clip(footprint).unmask(0).add(secondary.clip(footprint).unmask(0))
    return merged.set("system:footprint", footprint).set(
        "system:time_start", ee.Date(primary.get("system:time_start")).millis()
    )


def ee_union_collections(collection_a, collection_b):
    """
    Unions two ee.ImageCollection objects whose images share 'system:time_start', e.g. annual composites or LAI
    collections built over adjacent areas. Server-side friendly.

    Args:
        collection_a (ee.ImageCollection): primary collection.
        collection_b (ee.ImageCollection): secondary collection.

    Returns:
        ee.ImageCollection: one unioned image per matching time.
    """
    time_filter = ee.Filter.equals(leftField="system:time_start", rightField="system:time_start")
    joined = ee.ImageCollection(ee.Join.inner().apply(collection_a, collection_b, time_filter))
    return joined.map(ee_union_images)
