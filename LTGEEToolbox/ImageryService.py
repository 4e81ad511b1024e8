import abc
import logging

import pandas as pd

from .Errors import UpstreamQueryError, ValidationError
from .RasterImage import RasterCollection

logger = logging.getLogger(__name__)

# Ancillary datasets used for the 'nonforest', 'waterplus' masks and terrain bands
FOREST_TYPE_DATASET = "COPERNICUS/Landcover/100m/Proba-V/Global"
SURFACE_WATER_DATASET = "JRC/GSW1_1/GlobalSurfaceWater"
ELEVATION_DATASET = "USGS/SRTMGL1_003"


class ImageryService(abc.ABC):
    """
    Abstract imagery collaborator supplying raw scenes and ancillary layers to the compositing pipeline.

    Implementations return RasterImage/RasterCollection objects that share one pixel grid (`grid_shape`).
    Each raw scene must carry a scene id, an acquisition time and the native bands of its sensor
    (surface reflectance 'SR_B*' bands plus 'QA_PIXEL').

    Failures to answer a query must be raised as UpstreamQueryError; retry policy, if any, belongs to the
    implementation and not to the pipeline.
    """

    @property
    @abc.abstractmethod
    def grid_shape(self):
        """Grid shape (rows, cols) shared by every image returned by the service."""

    @abc.abstractmethod
    def query_images(self, dataset_id, region, date_range):
        """
        Returns the scenes of a dataset intersecting a region and acquired within a date range.

        Args:
            dataset_id (str): dataset identifier, e.g. 'LANDSAT/LC08/C02/T1_L2'.
            region: spatial region understood by the implementation (e.g. an ee.Geometry).
            date_range (tuple of str): ('YYYY-MM-DD', 'YYYY-MM-DD'), start inclusive and end exclusive.

        Returns:
            RasterCollection: matching raw scenes.
        """

    @abc.abstractmethod
    def auxiliary_dataset(self, dataset_id):
        """
        Returns an ancillary single-image dataset (forest type, surface water, elevation) on the service grid.

        Args:
            dataset_id (str): dataset identifier.

        Returns:
            RasterImage: ancillary layer.
        """

    def reduce_collection(self, collection, reducer):
        """
        Reduces a collection per band and per pixel.

        Args:
            collection (RasterCollection): collection to reduce.
            reducer (str): 'median', 'mean', 'sum', 'min', 'max', 'count' or 'std'.

        Returns:
            RasterImage: reduced image.
        """
        return collection.reduce(reducer)


class InMemoryImageryService(ImageryService):
    """
    Imagery service backed by RasterCollections held in memory.

    Every call is recorded in `queries` (for collection queries) and `auxiliary_requests` so that callers can
    assert how many requests a pipeline issued. Failures can be injected per dataset/date range with `fail_on`.

    Args:
        datasets (dict): dataset id -> RasterCollection (or list of RasterImage).
        auxiliary (dict, optional): dataset id -> RasterImage.
        grid_shape (tuple of int, optional): grid shape. Defaults to the grid of the first stored image.
        fail_on (callable, optional): predicate (dataset_id, date_range) -> bool; when it returns True the query
            raises UpstreamQueryError.

    Examples:
        >>> service = InMemoryImageryService({'LANDSAT/LC08/C02/T1_L2': [scene_a, scene_b]})
        >>> col = service.query_images('LANDSAT/LC08/C02/T1_L2', None, ('2017-06-01', '2017-09-01'))
        >>> len(service.queries)
        1
    """

    def __init__(self, datasets=None, auxiliary=None, grid_shape=None, fail_on=None):
        self._datasets = {
            key: value if isinstance(value, RasterCollection) else RasterCollection(value)
            for key, value in (datasets or {}).items()
        }
        self._auxiliary = dict(auxiliary or {})
        self._fail_on = fail_on
        self.queries = []
        self.auxiliary_requests = []

        if grid_shape is None:
            for collection in self._datasets.values():
                if collection.size:
                    grid_shape = collection.first().grid_shape
                    break
        if grid_shape is None:
            for image in self._auxiliary.values():
                grid_shape = image.grid_shape
                break
        if grid_shape is None:
            raise ValidationError(
                "grid_shape must be provided when the service holds no images"
            )
        self._grid_shape = tuple(grid_shape)

    @property
    def grid_shape(self):
        return self._grid_shape

    @property
    def query_count(self):
        return len(self.queries)

    def query_images(self, dataset_id, region, date_range):
        start_date, end_date = date_range
        self.queries.append((dataset_id, (start_date, end_date)))
        logger.debug(f"Query {dataset_id} {start_date} -> {end_date}")
        if self._fail_on is not None and self._fail_on(dataset_id, (start_date, end_date)):
            raise UpstreamQueryError(
                f"Query for {dataset_id} between {start_date} and {end_date} failed",
                dataset_id=dataset_id,
            )
        collection = self._datasets.get(dataset_id, RasterCollection())
        return collection.filter_date(pd.Timestamp(start_date), pd.Timestamp(end_date))

    def auxiliary_dataset(self, dataset_id):
        self.auxiliary_requests.append(dataset_id)
        try:
            return self._auxiliary[dataset_id]
        except KeyError:
            raise UpstreamQueryError(
                f"Auxiliary dataset {dataset_id} is not available", dataset_id=dataset_id
            ) from None
