__version__ = "0.1.0"

from .AnnualSeries import (
    CompositeSeries,
    build_clear_pixel_count_collection,
    build_series,
    build_series_from_config,
    build_sr_collection,
    composite_years,
    get_collection_id_list,
    image_inventory,
    transform_series,
)
from .Biophysical import lai_collection, lai_query_plan
from .CollectionStitch import ee_union_collections, union_collections
from .Config import CompositeConfig, load_config
from .EarthEngineService import EarthEngineImageryService
from .Errors import LTGEEToolboxError, UpstreamQueryError, ValidationError
from .ImageryService import ImageryService, InMemoryImageryService
from .LoggingUtils import setup_logging, timer
from .Masking import MaskSpec, prepare_image
from .Medoid import build_mosaic, count_clear_view_pixels, medoid
from .RasterImage import RasterCollection, RasterImage
from .SensorCollection import (
    DayWindow,
    ExclusionSpec,
    get_combined_sr_collection,
    get_sr_collection,
    remove_images,
)
from .SpectralIndex import SpectralIndex, compute_index, standardize, transform_collection

__all__ = [
    "CompositeSeries",
    "build_clear_pixel_count_collection",
    "build_series",
    "build_series_from_config",
    "build_sr_collection",
    "composite_years",
    "get_collection_id_list",
    "image_inventory",
    "transform_series",
    "lai_collection",
    "lai_query_plan",
    "ee_union_collections",
    "union_collections",
    "CompositeConfig",
    "load_config",
    "EarthEngineImageryService",
    "LTGEEToolboxError",
    "UpstreamQueryError",
    "ValidationError",
    "ImageryService",
    "InMemoryImageryService",
    "setup_logging",
    "timer",
    "MaskSpec",
    "prepare_image",
    "build_mosaic",
    "count_clear_view_pixels",
    "medoid",
    "RasterCollection",
    "RasterImage",
    "DayWindow",
    "ExclusionSpec",
    "get_combined_sr_collection",
    "get_sr_collection",
    "remove_images",
    "SpectralIndex",
    "compute_index",
    "standardize",
    "transform_collection",
]
