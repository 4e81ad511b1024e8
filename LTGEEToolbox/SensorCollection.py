import logging
import re
from dataclasses import dataclass
from datetime import date

import pandas as pd

from .Errors import LTGEEToolboxError, UpstreamQueryError, ValidationError
from .Masking import (
    SPACECRAFT_IDS,
    MaskSpec,
    load_auxiliary,
    prepare_image,
    validate_sensor,
)
from .RasterImage import RasterCollection

logger = logging.getLogger(__name__)

DEFAULT_SENSORS = ("LT05", "LE07", "LC08", "LC09")

# Landsat 7 scan line corrector failure
SLC_OFF_DATE = pd.Timestamp("2003-06-01T00:00")

_MONTH_DAY = re.compile(r"^(\d{2})-(\d{2})$")


def landsat_dataset_id(sensor):
    """
    Returns the Collection 2 Tier 1 Level 2 dataset id of a sensor, e.g. 'LANDSAT/LC08/C02/T1_L2'.
    """
    return f"LANDSAT/{validate_sensor(sensor)}/C02/T1_L2"


def _parse_month_day(value):
    if not isinstance(value, str):
        raise ValidationError(f"Day-of-year boundaries must be 'MM-DD' strings, got {value!r}")
    match = _MONTH_DAY.match(value)
    if match is None:
        raise ValidationError(f"Malformed day-of-year '{value}', expected 'MM-DD'")
    month, day = int(match.group(1)), int(match.group(2))
    try:
        # 2001 is not a leap year: '02-29' is rejected since it does not exist every year
        date(2001, month, day)
    except ValueError:
        raise ValidationError(
            f"Invalid day-of-year '{value}': not a calendar day present in every year"
        ) from None
    return month, day


@dataclass(frozen=True)
class DayWindow:
    """
    Recurring annual date window bounded by 'MM-DD' strings.

    A window whose start month is after its end month (e.g. '11-01' to '03-31') wraps across the calendar year:
    for year Y it covers the tail of year Y-1 and the head of year Y.

    Args:
        start_day (str): first day, 'MM-DD'.
        end_day (str): last day, 'MM-DD'. Passed to the imagery service as an exclusive bound, as with
            ee.ImageCollection.filterDate.

    Raises:
        ValidationError: if either boundary is malformed.
    """

    start_day: str
    end_day: str

    def __post_init__(self):
        _parse_month_day(self.start_day)
        _parse_month_day(self.end_day)

    @property
    def start_month(self):
        return _parse_month_day(self.start_day)[0]

    @property
    def end_month(self):
        return _parse_month_day(self.end_day)[0]

    @property
    def wraps(self):
        return self.start_month > self.end_month

    def date_ranges(self, year):
        """
        Date ranges to query for a given year.

        Args:
            year (int): composite year.

        Returns:
            list of tuple: one ('YYYY-MM-DD', 'YYYY-MM-DD') range, or two when the window wraps
            (previous-year tail first, running through December 31).
        """
        year = int(year)
        if self.wraps:
            old_year = year - 1
            return [
                (f"{old_year}-{self.start_day}", f"{year}-01-01"),
                (f"{year}-01-01", f"{year}-{self.end_day}"),
            ]
        return [(f"{year}-{self.start_day}", f"{year}-{self.end_day}")]


def _scene_key(scene_id):
    # 'LANDSAT/LC08/C02/T1_L2/LC08_046028_20170815' -> 'LC08_046028_20170815'
    return str(scene_id).split("/")[-1]


@dataclass(frozen=True)
class ExclusionSpec:
    """
    Scenes to leave out of every composite.

    Args:
        img_ids (tuple of str): scene ids to drop. Full asset paths are accepted; only the final path segment
            is compared.
        slc_off (bool): if True, drop Landsat 7 scenes acquired after the 2003-06-01 scan line corrector failure.
    """

    img_ids: tuple = ()
    slc_off: bool = False

    def __post_init__(self):
        img_ids = self.img_ids
        if img_ids is None:
            img_ids = ()
        elif isinstance(img_ids, str):
            img_ids = (img_ids,)
        object.__setattr__(self, "img_ids", tuple(str(i) for i in img_ids))
        if not isinstance(self.slc_off, bool):
            raise ValidationError(f"slc_off must be a boolean, got {self.slc_off!r}")

    @classmethod
    def from_dict(cls, value):
        """
        Builds an ExclusionSpec from {'imgIds': [...], 'slcOff': bool}, optionally nested under an 'exclude' key.
        Snake-case keys ('img_ids', 'slc_off') are accepted as well.
        """
        if "exclude" in value:
            value = value["exclude"]
        known = {"imgIds": "img_ids", "img_ids": "img_ids", "slcOff": "slc_off", "slc_off": "slc_off"}
        kwargs = {}
        for key, item in value.items():
            if key not in known:
                raise ValidationError(
                    f"Unknown exclusion option '{key}'. Use 'imgIds' and/or 'slcOff'"
                )
            kwargs[known[key]] = item
        return cls(**kwargs)

    @classmethod
    def from_value(cls, value):
        if value is None:
            return cls()
        if isinstance(value, ExclusionSpec):
            return value
        if isinstance(value, dict):
            return cls.from_dict(value)
        raise ValidationError(f"Unsupported exclusion specification: {value!r}")

    @property
    def excluded_scene_ids(self):
        return frozenset(_scene_key(i) for i in self.img_ids)

    def excludes(self, image):
        """
        True when the image must be dropped.
        """
        if image.scene_id is not None and _scene_key(image.scene_id) in self.excluded_scene_ids:
            return True
        if self.slc_off and image.time_start is not None:
            is_landsat_7 = image.sensor == "LE07" or image.get("SPACECRAFT_ID") == SPACECRAFT_IDS["LE07"]
            if is_landsat_7 and image.time_start > SLC_OFF_DATE:
                return True
        return False


def remove_images(collection, exclude):
    """
    Removes excluded scenes from a collection.

    Args:
        collection (RasterCollection): input collection.
        exclude (ExclusionSpec or dict): exclusion specification.

    Returns:
        RasterCollection: collection without the excluded scenes.
    """
    exclude = ExclusionSpec.from_value(exclude)
    if not exclude.img_ids and not exclude.slc_off:
        return collection
    kept = collection.filter(lambda image: not exclude.excludes(image))
    dropped = collection.size - kept.size
    if dropped:
        logger.debug(f"Excluded {dropped} scene(s)")
    return kept


def _query(service, dataset_id, region, date_range, year, sensor):
    try:
        return service.query_images(dataset_id, region, date_range)
    except UpstreamQueryError as e:
        raise e.tagged(year=year, sensor=sensor) from e
    except LTGEEToolboxError:
        raise
    except Exception as e:
        raise UpstreamQueryError(
            f"Query for {dataset_id} between {date_range[0]} and {date_range[1]} failed: {e}",
            year=year,
            sensor=sensor,
            dataset_id=dataset_id,
        ) from e


def build_year_window(service, year, start_day, end_day, sensor, region=None, exclude=None):
    """
    Collects the raw scenes of one sensor for one year's day-of-year window.

    When the window wraps across the calendar year (start month after end month), the tail of the previous year
    and the head of the requested year are queried separately and concatenated.

    Args:
        service (ImageryService): imagery service.
        year (int): composite year.
        start_day (str): window start, 'MM-DD'.
        end_day (str): window end, 'MM-DD'.
        sensor (str): 'LT05', 'LE07', 'LC08' or 'LC09'.
        region (optional): spatial region passed through to the service.
        exclude (ExclusionSpec or dict, optional): scenes to drop.

    Returns:
        RasterCollection: raw scenes.

    Raises:
        ValidationError: on malformed inputs, before any query.
        UpstreamQueryError: if the service fails; not retried.
    """
    window = DayWindow(start_day, end_day)
    exclude = ExclusionSpec.from_value(exclude)
    dataset_id = landsat_dataset_id(sensor)

    collection = RasterCollection()
    for date_range in window.date_ranges(year):
        collection = collection.merge(_query(service, dataset_id, region, date_range, year, sensor))
    return remove_images(collection, exclude)


def get_sr_collection(
    service,
    year,
    start_day,
    end_day,
    sensor,
    region=None,
    mask_these=None,
    exclude=None,
    auxiliary=None,
):
    """
    Builds the harmonized, masked surface reflectance collection of one sensor for one year.

    Args:
        service (ImageryService): imagery service.
        year (int): composite year.
        start_day (str): window start, 'MM-DD'.
        end_day (str): window end, 'MM-DD'.
        sensor (str): sensor id.
        region (optional): spatial region passed through to the service.
        mask_these (MaskSpec or list of str, optional): mask categories. Defaults to cloud, shadow, snow, water.
        exclude (ExclusionSpec or dict, optional): scenes to drop.
        auxiliary (dict, optional): prefetched ancillary layers. Fetched from the service when needed and not given.

    Returns:
        RasterCollection: six-band uint16 images.
    """
    mask_spec = MaskSpec.from_value(mask_these)
    DayWindow(start_day, end_day)
    validate_sensor(sensor)
    exclude = ExclusionSpec.from_value(exclude)

    if auxiliary is None:
        auxiliary = load_auxiliary(service, mask_spec)
    raw = build_year_window(service, year, start_day, end_day, sensor, region, exclude)
    return raw.map(lambda image: prepare_image(image, sensor, mask_spec, auxiliary))


def get_combined_sr_collection(
    service,
    year,
    start_day,
    end_day,
    region=None,
    mask_these=None,
    exclude=None,
    sensors=DEFAULT_SENSORS,
    auxiliary=None,
):
    """
    Merges the harmonized collections of several sensors (TM, ETM+, OLI, OLI-2 by default) for one year.

    Returns:
        RasterCollection: union of the per-sensor collections, in sensor order.
    """
    mask_spec = MaskSpec.from_value(mask_these)
    DayWindow(start_day, end_day)
    for sensor in sensors:
        validate_sensor(sensor)
    exclude = ExclusionSpec.from_value(exclude)

    if auxiliary is None:
        auxiliary = load_auxiliary(service, mask_spec)
    merged = RasterCollection()
    for sensor in sensors:
        merged = merged.merge(
            get_sr_collection(
                service, year, start_day, end_day, sensor, region, mask_spec, exclude, auxiliary
            )
        )
    return merged
