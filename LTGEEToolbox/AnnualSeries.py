import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Optional

import pandas as pd

from .Config import ON_ERROR_OPTIONS
from .Errors import UpstreamQueryError, ValidationError
from .LoggingUtils import timer
from .Masking import MaskSpec, load_auxiliary, validate_sensor
from .Medoid import build_mosaic, count_clear_view_pixels, empty_placeholder, nominal_date
from .RasterImage import RasterCollection, RasterImage
from .SensorCollection import (
    DEFAULT_SENSORS,
    DayWindow,
    ExclusionSpec,
    build_year_window,
    get_combined_sr_collection,
)
from .SpectralIndex import transform_collection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class YearResult:
    """
    Outcome of one year's task: either an image or the error that prevented it.
    """

    year: int
    image: Optional[RasterImage] = None
    error: Optional[UpstreamQueryError] = None
    cancelled: bool = False

    @property
    def ok(self):
        return self.image is not None


class CompositeSeries:
    """
    Annual composite time series: exactly one image per year in [start_year, end_year], ascending.

    Years without imagery hold the fully-masked placeholder. Years whose queries failed and were substituted are
    listed in `failures`.

    Args:
        years (list of int): consecutive ascending years.
        images (list of RasterImage): one composite per year.
        failures (dict, optional): year -> UpstreamQueryError for substituted years.
    """

    def __init__(self, years, images, failures=None):
        years = tuple(int(y) for y in years)
        images = tuple(images)
        if len(years) != len(images):
            raise ValidationError(f"Got {len(images)} composites for {len(years)} years")
        if years and years != tuple(range(years[0], years[0] + len(years))):
            raise ValidationError(f"Series years must be consecutive and ascending: {years}")
        self._years = years
        self._images = images
        self._failures = dict(failures or {})

    @property
    def years(self):
        return list(self._years)

    @property
    def images(self):
        return list(self._images)

    @property
    def failures(self):
        return dict(self._failures)

    @property
    def dates(self):
        return [image.date for image in self._images]

    @property
    def placeholder_years(self):
        return [year for year, image in zip(self._years, self._images) if image.is_placeholder]

    def __len__(self):
        return len(self._images)

    def __iter__(self):
        return iter(self._images)

    def __getitem__(self, position):
        return self._images[position]

    def __repr__(self):
        span = f"{self._years[0]}-{self._years[-1]}" if self._years else "empty"
        return f"CompositeSeries({span}, placeholders={self.placeholder_years})"

    def image_for_year(self, year):
        try:
            return self._images[self._years.index(int(year))]
        except ValueError:
            raise ValidationError(f"Year {year} is not part of the series {self.years}") from None

    def to_collection(self):
        return RasterCollection(self._images)

    def to_dataframe(self):
        """
        Summarizes the series as a pandas DataFrame with one row per year.

        Returns:
            pd.DataFrame: columns 'year', 'date', 'placeholder', 'valid_pixels', 'error'.
        """
        rows = []
        for year, image in zip(self._years, self._images):
            error = self._failures.get(year)
            rows.append(
                {
                    "year": year,
                    "date": image.date,
                    "placeholder": image.is_placeholder,
                    "valid_pixels": image.valid_count(),
                    "error": str(error) if error is not None else None,
                }
            )
        return pd.DataFrame(rows, columns=["year", "date", "placeholder", "valid_pixels", "error"])


def _validate_years(start_year, end_year):
    for name, value in (("start_year", start_year), ("end_year", end_year)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer, got {value!r}")
    if end_year < start_year:
        raise ValidationError(f"end_year ({end_year}) must not be before start_year ({start_year})")
    return list(range(start_year, end_year + 1))


def _validate_common(start_year, end_year, start_day, end_day, sensors, mask_these, exclude):
    years = _validate_years(start_year, end_year)
    DayWindow(start_day, end_day)
    if isinstance(sensors, str):
        sensors = (sensors,)
    sensors = tuple(sensors)
    if not sensors:
        raise ValidationError("At least one sensor is required")
    for sensor in sensors:
        validate_sensor(sensor)
    return years, sensors, MaskSpec.from_value(mask_these), ExclusionSpec.from_value(exclude)


def _validate_workers(max_workers):
    if isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 1:
        raise ValidationError(f"max_workers must be a positive integer, got {max_workers!r}")


def _run_per_year(task, years, max_workers, stop_on_error=False):
    """
    Runs `task(year)` for every year on a bounded thread pool.

    Results are placed by year position, independent of completion order. UpstreamQueryError is captured per
    year; with `stop_on_error` the years not yet started are cancelled after the first failure. Any other
    exception propagates.
    """
    results = [None] * len(years)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_position = {executor.submit(task, year): i for i, year in enumerate(years)}
        for future in as_completed(future_to_position):
            position = future_to_position[future]
            year = years[position]
            if future.cancelled():
                results[position] = YearResult(year, cancelled=True)
                continue
            try:
                results[position] = YearResult(year, image=future.result())
                logger.debug(f"Finished year {year}")
            except UpstreamQueryError as e:
                logger.error(f"Year {year} failed: {e}")
                results[position] = YearResult(year, error=e.tagged(year=year))
                if stop_on_error:
                    for pending in future_to_position:
                        pending.cancel()
    return results


def composite_years(
    service,
    start_year,
    end_year,
    start_day,
    end_day,
    region=None,
    sensors=DEFAULT_SENSORS,
    mask_these=None,
    exclude=None,
    max_workers=4,
    placeholder=None,
    stop_on_error=False,
):
    """
    Builds the medoid composite of every year concurrently and reports each year's outcome as a value.

    Args:
        service (ImageryService): imagery service.
        start_year (int): first year.
        end_year (int): last year (inclusive).
        start_day (str): window start, 'MM-DD'.
        end_day (str): window end, 'MM-DD'.
        region (optional): spatial region passed through to the service.
        sensors (tuple of str): sensors to merge.
        mask_these (MaskSpec or list of str, optional): mask categories.
        exclude (ExclusionSpec or dict, optional): scenes to drop.
        max_workers (int): maximum number of years processed at once.
        placeholder (RasterImage, optional): composite for years without imagery.
        stop_on_error (bool): cancel years not yet started after the first failure.

    Returns:
        list of YearResult: one per year, ascending.
    """
    years, sensors, mask_spec, exclude = _validate_common(
        start_year, end_year, start_day, end_day, sensors, mask_these, exclude
    )
    _validate_workers(max_workers)
    if placeholder is None:
        placeholder = empty_placeholder(service.grid_shape)
    auxiliary = load_auxiliary(service, mask_spec)

    def _composite(year):
        return build_mosaic(
            service,
            year,
            start_day,
            end_day,
            region,
            placeholder,
            mask_spec,
            exclude,
            sensors,
            auxiliary,
        )

    return _run_per_year(_composite, years, max_workers, stop_on_error)


def build_series(
    service,
    start_year,
    end_year,
    start_day,
    end_day,
    region=None,
    sensors=DEFAULT_SENSORS,
    mask_these=None,
    exclude=None,
    max_workers=4,
    on_error="raise",
):
    """
    Builds an annual medoid composite series.

    Every input is validated before the first request is sent to the imagery service. Years are processed
    independently on a bounded worker pool; the output is always ordered by year.

    Args:
        service (ImageryService): imagery service.
        start_year (int): first year.
        end_year (int): last year (inclusive), not before `start_year`.
        start_day (str): window start, 'MM-DD'.
        end_day (str): window end, 'MM-DD'. A window with start month after end month spans the year boundary.
        region (optional): spatial region passed through to the service.
        sensors (tuple of str): sensors to merge. Defaults to LT05, LE07, LC08 and LC09.
        mask_these (MaskSpec or list of str, optional): mask categories. Defaults to cloud, shadow, snow, water.
        exclude (ExclusionSpec or dict, optional): scenes to drop.
        max_workers (int): maximum number of years processed at once.
        on_error (str): 'raise' to cancel pending years and raise the earliest failure, or 'placeholder' to
            substitute the placeholder for failed years and record them in `CompositeSeries.failures`.

    Returns:
        CompositeSeries: one composite per year, each dated August 1.

    Raises:
        ValidationError: on invalid inputs.
        UpstreamQueryError: when a year fails and `on_error` is 'raise'.

    Examples:
        >>> series = build_series(service, 2015, 2017, '06-01', '09-30', mask_these=['cloud', 'shadow'])
        >>> series.dates
        ['2015-08-01', '2016-08-01', '2017-08-01']
    """
    if on_error not in ON_ERROR_OPTIONS:
        raise ValidationError(f"on_error must be one of {list(ON_ERROR_OPTIONS)}, got {on_error!r}")
    years, sensors, mask_spec, exclude = _validate_common(
        start_year, end_year, start_day, end_day, sensors, mask_these, exclude
    )
    _validate_workers(max_workers)

    placeholder = empty_placeholder(service.grid_shape)
    with timer(f"Annual medoid series {start_year}-{end_year}", logger):
        results = composite_years(
            service,
            start_year,
            end_year,
            start_day,
            end_day,
            region,
            sensors,
            mask_spec,
            exclude,
            max_workers,
            placeholder,
            stop_on_error=on_error == "raise",
        )

    failed = [r for r in results if r.error is not None]
    if failed and on_error == "raise":
        raise failed[0].error

    images = []
    failures = {}
    for result in results:
        if result.ok:
            images.append(result.image)
        else:
            logger.warning(f"Substituting placeholder composite for failed year {result.year}")
            failures[result.year] = result.error
            images.append(placeholder.set_time_start(nominal_date(result.year)).set(year=result.year))
    return CompositeSeries(years, images, failures)


def build_sr_collection(service, start_year, end_year, start_day, end_day, region=None, **kwargs):
    """
    Annual medoid composites as a RasterCollection (see build_series for the arguments).
    """
    return build_series(service, start_year, end_year, start_day, end_day, region, **kwargs).to_collection()


def build_clear_pixel_count_collection(
    service,
    start_year,
    end_year,
    start_day,
    end_day,
    region=None,
    mask_these=None,
    exclude=None,
    sensors=DEFAULT_SENSORS,
    max_workers=4,
):
    """
    Counts, per year and pixel, the unmasked observations available to build each composite.

    Returns:
        RasterCollection: one single-band 'count' image per year, dated August 1.

    Raises:
        UpstreamQueryError: if any year fails.
    """
    years, sensors, mask_spec, exclude = _validate_common(
        start_year, end_year, start_day, end_day, sensors, mask_these, exclude
    )
    _validate_workers(max_workers)
    placeholder = empty_placeholder(service.grid_shape)
    auxiliary = load_auxiliary(service, mask_spec)

    def _count(year):
        collection = get_combined_sr_collection(
            service, year, start_day, end_day, region, mask_spec, exclude, sensors, auxiliary
        )
        return count_clear_view_pixels(collection, placeholder).set_time_start(nominal_date(year))

    results = _run_per_year(_count, years, max_workers, stop_on_error=True)
    for result in results:
        if result.error is not None:
            raise result.error
    return RasterCollection(result.image for result in results)


def get_collection_id_list(
    service,
    start_year,
    end_year,
    start_day,
    end_day,
    region=None,
    exclude=None,
    sensors=DEFAULT_SENSORS,
):
    """
    Lists every raw scene that goes into the annual composites.

    Returns:
        dict: 'id_list' (list of scene ids) and 'collection' (RasterCollection of the raw scenes).
    """
    years, sensors, _, exclude = _validate_common(
        start_year, end_year, start_day, end_day, sensors, (), exclude
    )
    collection = RasterCollection()
    for year in years:
        for sensor in sensors:
            collection = collection.merge(
                build_year_window(service, year, start_day, end_day, sensor, region, exclude)
            )
    return {"id_list": collection.scene_ids, "collection": collection}


def image_inventory(
    service,
    start_year,
    end_year,
    start_day,
    end_day,
    region=None,
    exclude=None,
    sensors=DEFAULT_SENSORS,
    file_path=None,
):
    """
    Tabulates the raw scenes feeding each annual composite and optionally saves them to CSV.

    Args:
        file_path (str, optional): CSV path; '.csv' is appended when missing.

    Returns:
        pd.DataFrame: columns 'year', 'sensor', 'scene_id', 'date', sorted by year then date.
    """
    years, sensors, _, exclude = _validate_common(
        start_year, end_year, start_day, end_day, sensors, (), exclude
    )
    rows = []
    for year in years:
        for sensor in sensors:
            scenes = build_year_window(service, year, start_day, end_day, sensor, region, exclude)
            for image in scenes:
                rows.append(
                    {"year": year, "sensor": sensor, "scene_id": image.scene_id, "date": image.date}
                )
    df = pd.DataFrame(rows, columns=["year", "sensor", "scene_id", "date"])
    df = df.sort_values(by=["year", "date"], kind="stable").reset_index(drop=True)
    if file_path:
        if not file_path.lower().endswith(".csv"):
            file_path += ".csv"
        df.to_csv(file_path, index=False)
        logger.info(f"Image inventory saved to {file_path}")
    return df


def build_series_from_config(service, config, region=None):
    """
    Builds a composite series from a CompositeConfig.
    """
    config.validate()
    return build_series(
        service,
        config.start_year,
        config.end_year,
        config.start_day,
        config.end_day,
        region,
        sensors=config.sensors,
        mask_these=config.mask_spec,
        exclude=config.exclusions,
        max_workers=config.max_workers,
        on_error=config.on_error,
    )


def transform_series(series, config):
    """
    Applies the indices and sign flips of a CompositeConfig to every composite of a series.

    Returns:
        RasterCollection: one multi-band index image per year.
    """
    config.validate()
    return transform_collection(series.to_collection(), config.indices, config.flips)
