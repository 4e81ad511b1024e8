import logging
import math

import ee
import numpy as np
import pandas as pd

from .Errors import UpstreamQueryError, ValidationError
from .ImageryService import (
    ELEVATION_DATASET,
    FOREST_TYPE_DATASET,
    SURFACE_WATER_DATASET,
    ImageryService,
)
from .Masking import QA_BAND, SENSOR_BANDS
from .RasterImage import RasterCollection, RasterImage

logger = logging.getLogger(__name__)

_VALID_BAND = "VALID"


def _forest_type_layer():
    return (
        ee.ImageCollection(FOREST_TYPE_DATASET)
        .toBands()
        .select("2015_forest_type")
        .rename("forest_type")
    )


def _surface_water_layer():
    return ee.Image(SURFACE_WATER_DATASET).select("recurrence")


def _elevation_layer():
    return ee.Image(ELEVATION_DATASET).select("elevation")


_AUXILIARY_LAYERS = {
    FOREST_TYPE_DATASET: _forest_type_layer,
    SURFACE_WATER_DATASET: _surface_water_layer,
    ELEVATION_DATASET: _elevation_layer,
}


class EarthEngineImageryService(ImageryService):
    """
    Imagery service that reads Landsat scenes and ancillary layers from Google Earth Engine.

    Scenes are filtered server-side by date and by the query region (the grid footprint when no region is
    given). Their metadata is fetched in a single request and their pixels are pulled onto a fixed pixel grid
    with ee.data.computePixels. Earth Engine must be initialized (ee.Initialize) before queries are issued.

    Args:
        grid (dict): Earth Engine PixelGrid with 'dimensions', 'affineTransform' and 'crsCode'
            (see grid_from_bounds).
        max_images (int, optional): maximum number of scenes a single query may match. A query matching more
            raises UpstreamQueryError instead of being truncated. None disables the check. Defaults to 500.

    Raises:
        ValidationError: if the grid has no dimensions or max_images is not a positive integer.

    Examples:
        >>> import ee
        >>> ee.Initialize()
        >>> grid = EarthEngineImageryService.grid_from_bounds((-122.3, 44.0, -122.2, 44.1), scale=0.00027)
        >>> service = EarthEngineImageryService(grid)
        >>> series = build_series(service, 2015, 2017, '06-01', '09-30')
    """

    def __init__(self, grid, max_images=500):
        try:
            dimensions = grid["dimensions"]
            self._grid_shape = (int(dimensions["height"]), int(dimensions["width"]))
        except (KeyError, TypeError):
            raise ValidationError(
                "grid must be an Earth Engine PixelGrid dict with 'dimensions': {'width', 'height'}"
            ) from None
        if max_images is not None and (
            isinstance(max_images, bool) or not isinstance(max_images, int) or max_images < 1
        ):
            raise ValidationError(f"max_images must be a positive integer or None, got {max_images!r}")
        self.grid = grid
        self.max_images = max_images

    @staticmethod
    def grid_from_bounds(bounds, scale, crs="EPSG:4326"):
        """
        Builds a north-up Earth Engine PixelGrid covering a bounding box.

        Args:
            bounds (tuple of float): (xmin, ymin, xmax, ymax) in `crs` units.
            scale (float): pixel size in `crs` units.
            crs (str): coordinate reference system code. Defaults to 'EPSG:4326'.

        Returns:
            dict: PixelGrid usable with ee.data.computePixels.
        """
        xmin, ymin, xmax, ymax = bounds
        if xmax <= xmin or ymax <= ymin:
            raise ValidationError(f"Invalid bounds {bounds}: expected (xmin, ymin, xmax, ymax)")
        if scale <= 0:
            raise ValidationError(f"scale must be positive, got {scale}")
        return {
            "dimensions": {
                "width": int(math.ceil((xmax - xmin) / scale)),
                "height": int(math.ceil((ymax - ymin) / scale)),
            },
            "affineTransform": {
                "scaleX": scale,
                "shearX": 0,
                "translateX": xmin,
                "shearY": 0,
                "scaleY": -scale,
                "translateY": ymax,
            },
            "crsCode": crs,
        }

    @property
    def grid_shape(self):
        return self._grid_shape

    @property
    def grid_bounds(self):
        """
        Footprint of the pixel grid as (xmin, ymin, xmax, ymax) in the grid's CRS units.

        Raises:
            ValidationError: if the grid has no affineTransform.
        """
        try:
            transform = self.grid["affineTransform"]
            scale_x, scale_y = transform["scaleX"], transform["scaleY"]
            shear_x, shear_y = transform.get("shearX", 0), transform.get("shearY", 0)
            translate_x, translate_y = transform["translateX"], transform["translateY"]
        except (KeyError, TypeError, AttributeError):
            raise ValidationError("grid must carry an 'affineTransform' to derive its footprint") from None
        rows, cols = self._grid_shape
        corners = [(0, 0), (cols, 0), (0, rows), (cols, rows)]
        xs = [scale_x * col + shear_x * row + translate_x for col, row in corners]
        ys = [shear_y * col + scale_y * row + translate_y for col, row in corners]
        return (min(xs), min(ys), max(xs), max(ys))

    def grid_region(self):
        """
        Returns the grid footprint as a planar ee.Geometry.Rectangle in the grid's CRS.

        Queries issued without a region are filtered to this footprint.
        """
        return ee.Geometry.Rectangle(
            list(self.grid_bounds), proj=self.grid.get("crsCode", "EPSG:4326"), geodesic=False
        )

    def _check_scene_limit(self, total, dataset_id, date_range):
        if self.max_images is not None and total > self.max_images:
            start_date, end_date = date_range
            raise UpstreamQueryError(
                f"{dataset_id} has {total} scenes between {start_date} and {end_date}, more than "
                f"max_images={self.max_images}. Narrow the region or day window, or raise max_images",
                dataset_id=dataset_id,
            )

    @staticmethod
    def _bands_for(dataset_id):
        # 'LANDSAT/LC08/C02/T1_L2' -> 'LC08'
        parts = dataset_id.split("/")
        sensor = parts[1] if len(parts) > 1 else None
        if sensor not in SENSOR_BANDS:
            raise ValidationError(f"Unsupported dataset {dataset_id}: expected a Landsat C2 L2 collection")
        return sensor, list(SENSOR_BANDS[sensor]) + [QA_BAND]

    def _pixels(self, image, band_names):
        """
        Pulls the selected bands of an ee.Image onto the service grid, with a validity band.

        Returns:
            tuple: (bands array (n, rows, cols), mask array (rows, cols)).
        """
        selected = image.select(band_names)
        valid = selected.mask().reduce(ee.Reducer.min()).gt(0).rename(_VALID_BAND)
        expression = selected.unmask(0).addBands(valid.unmask(0))
        array = ee.data.computePixels(
            {
                "expression": expression,
                "fileFormat": "NUMPY_NDARRAY",
                "grid": self.grid,
            }
        )
        bands = np.stack([np.asarray(array[name]) for name in band_names])
        mask = np.asarray(array[_VALID_BAND]).astype(bool)
        return bands, mask

    def _scene_metadata(self, collection):
        features = collection.map(
            lambda img: ee.Feature(
                None,
                {
                    "scene_id": img.get("system:index"),
                    "time_start": img.get("system:time_start"),
                    "SPACECRAFT_ID": img.get("SPACECRAFT_ID"),
                    "CLOUD_COVER": img.get("CLOUD_COVER"),
                },
            )
        )
        df = ee.data.computeFeatures(
            {"expression": ee.FeatureCollection(features), "fileFormat": "PANDAS_DATAFRAME"}
        )
        if df.empty:
            return df
        if "geo" in df.columns:
            df = df.drop(columns=["geo"])
        return df.sort_values(by="time_start").reset_index(drop=True)

    def query_images(self, dataset_id, region, date_range):
        sensor, band_names = self._bands_for(dataset_id)
        start_date, end_date = date_range
        if region is None:
            region = self.grid_region()
        try:
            collection = (
                ee.ImageCollection(dataset_id)
                .filterDate(start_date, end_date)
                .filterBounds(region)
                .sort("system:time_start")
            )
            self._check_scene_limit(collection.size().getInfo(), dataset_id, date_range)
            metadata = self._scene_metadata(collection)

            images = []
            for row in metadata.itertuples(index=False):
                image = ee.Image(f"{dataset_id}/{row.scene_id}")
                bands, mask = self._pixels(image, band_names)
                properties = {"SPACECRAFT_ID": getattr(row, "SPACECRAFT_ID", None)}
                cloud_cover = getattr(row, "CLOUD_COVER", None)
                if cloud_cover is not None and not pd.isna(cloud_cover):
                    properties["CLOUD_COVER"] = float(cloud_cover)
                images.append(
                    RasterImage(
                        bands,
                        band_names=band_names,
                        mask=mask,
                        time_start=int(row.time_start),
                        sensor=sensor,
                        scene_id=row.scene_id,
                        properties=properties,
                    )
                )
        except ee.EEException as e:
            raise UpstreamQueryError(
                f"Earth Engine query for {dataset_id} between {start_date} and {end_date} failed: {e}",
                sensor=sensor,
                dataset_id=dataset_id,
            ) from e
        logger.debug(f"Fetched {len(images)} scenes from {dataset_id} ({start_date} -> {end_date})")
        return RasterCollection(images)

    def auxiliary_dataset(self, dataset_id):
        loader = _AUXILIARY_LAYERS.get(dataset_id)
        try:
            image = loader() if loader is not None else ee.Image(dataset_id)
            band_names = image.bandNames().getInfo()
            bands, mask = self._pixels(image, band_names)
        except ee.EEException as e:
            raise UpstreamQueryError(
                f"Earth Engine request for auxiliary dataset {dataset_id} failed: {e}",
                dataset_id=dataset_id,
            ) from e
        return RasterImage(bands, band_names=band_names, mask=mask)
