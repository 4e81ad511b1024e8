import numpy as np
import pandas as pd

from .Errors import ValidationError

_REDUCERS = ("median", "mean", "sum", "min", "max", "count", "std")


def _to_timestamp(value):
    """
    Converts a time value to a pandas Timestamp. Integers are read as milliseconds since the epoch,
    matching the 'system:time_start' convention of Earth Engine images.
    """
    if value is None:
        return None
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        return pd.Timestamp(int(value), unit="ms")
    return pd.Timestamp(value)


def _readonly(array):
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


class RasterImage:
    """
    Immutable multi-band raster on a fixed grid, with a shared per-pixel validity mask and acquisition metadata.

    All bands share the same grid. Every transform (select, rename, add_bands, update_mask, set_time_start, ...)
    returns a new RasterImage and leaves the source untouched.

    Args:
        bands (array-like): pixel values with shape (n_bands, rows, cols). A 2D array is treated as a single band.
        band_names (list of str, optional): one name per band. Defaults to 'band_0', 'band_1', ...
        mask (array-like, optional): boolean validity mask (True = valid) with shape (rows, cols), or
            (n_bands, rows, cols) in which case a pixel is valid only where every band is valid. Defaults to all valid.
        time_start (pd.Timestamp, datetime, str or int, optional): acquisition time. Integers are milliseconds since epoch.
        sensor (str, optional): sensor identifier such as 'LC08'.
        scene_id (str, optional): opaque scene identifier such as 'LC08_046028_20170815'.
        properties (dict, optional): additional metadata.

    Raises:
        ValidationError: if band names or mask do not match the pixel array.

    Examples:
        >>> img = RasterImage(np.zeros((6, 10, 10)), band_names=['B1', 'B2', 'B3', 'B4', 'B5', 'B7'])
        >>> nir = img.select('B4')
    """

    def __init__(
        self,
        bands,
        band_names=None,
        mask=None,
        time_start=None,
        sensor=None,
        scene_id=None,
        properties=None,
    ):
        bands = np.asarray(bands)
        if bands.ndim == 2:
            bands = bands[np.newaxis, ...]
        if bands.ndim != 3:
            raise ValidationError(
                f"Raster bands must have shape (n_bands, rows, cols), got {bands.shape}"
            )
        if band_names is None:
            band_names = [f"band_{i}" for i in range(bands.shape[0])]
        band_names = tuple(str(name) for name in band_names)
        if len(band_names) != bands.shape[0]:
            raise ValidationError(
                f"Got {len(band_names)} band names for {bands.shape[0]} bands"
            )
        if len(set(band_names)) != len(band_names):
            raise ValidationError(f"Band names must be unique: {band_names}")

        grid = bands.shape[1:]
        if mask is None:
            mask = np.ones(grid, dtype=bool)
        else:
            mask = np.asarray(mask, dtype=bool)
            if mask.ndim == 3:
                mask = mask.all(axis=0)
            if mask.shape != grid:
                raise ValidationError(
                    f"Mask shape {mask.shape} does not match raster grid {grid}"
                )

        self._bands = _readonly(bands)
        self._mask = _readonly(mask)
        self._band_names = band_names
        self._time_start = _to_timestamp(time_start)
        self._sensor = sensor
        self._scene_id = scene_id
        self._properties = dict(properties or {})

    @classmethod
    def placeholder(cls, band_names, shape, time_start=None):
        """
        Builds a fully-masked image with every band set to zero, used to stand in for years without imagery.

        Args:
            band_names (list of str): band names of the placeholder.
            shape (tuple of int): grid shape (rows, cols).
            time_start (optional): acquisition time to attach.

        Returns:
            RasterImage: all-zero, fully invalid uint16 image.
        """
        band_names = tuple(band_names)
        bands = np.zeros((len(band_names),) + tuple(shape), dtype=np.uint16)
        mask = np.zeros(tuple(shape), dtype=bool)
        return cls(
            bands,
            band_names=band_names,
            mask=mask,
            time_start=time_start,
            properties={"placeholder": True},
        )

    # ---- Read-only attributes ----
    @property
    def bands(self):
        return self._bands

    @property
    def mask(self):
        return self._mask

    @property
    def band_names(self):
        return self._band_names

    @property
    def time_start(self):
        return self._time_start

    @property
    def sensor(self):
        return self._sensor

    @property
    def scene_id(self):
        return self._scene_id

    @property
    def properties(self):
        return dict(self._properties)

    @property
    def grid_shape(self):
        return self._bands.shape[1:]

    @property
    def n_bands(self):
        return self._bands.shape[0]

    @property
    def dtype(self):
        return self._bands.dtype

    @property
    def is_placeholder(self):
        return bool(self._properties.get("placeholder", False))

    @property
    def date(self):
        """
        Acquisition date formatted as 'YYYY-MM-dd', or None when the image carries no time.
        """
        if self._time_start is None:
            return None
        return self._time_start.strftime("%Y-%m-%d")

    def get(self, name, default=None):
        return self._properties.get(name, default)

    def _replace(self, **changes):
        kwargs = {
            "bands": self._bands,
            "band_names": self._band_names,
            "mask": self._mask,
            "time_start": self._time_start,
            "sensor": self._sensor,
            "scene_id": self._scene_id,
            "properties": self._properties,
        }
        kwargs.update(changes)
        return RasterImage(**kwargs)

    def band(self, name):
        """
        Returns the pixel array of a single band.

        Args:
            name (str): band name.

        Returns:
            np.ndarray: read-only (rows, cols) array.
        """
        return self._bands[self._band_index(name)]

    def _band_index(self, selector):
        if isinstance(selector, (int, np.integer)):
            if not -self.n_bands <= selector < self.n_bands:
                raise ValidationError(
                    f"Band index {selector} out of range for {self.n_bands} bands"
                )
            return int(selector) % self.n_bands
        try:
            return self._band_names.index(selector)
        except ValueError:
            raise ValidationError(
                f"Band '{selector}' not found. Available bands: {list(self._band_names)}"
            ) from None

    # ---- Transforms ----
    def select(self, selectors, new_names=None):
        """
        Selects bands by name or index, optionally renaming them.

        Args:
            selectors (str, int or list): band name(s) or index(es) to keep, in output order.
            new_names (list of str, optional): new names for the selected bands.

        Returns:
            RasterImage: image with the selected bands.
        """
        if isinstance(selectors, (str, int, np.integer)):
            selectors = [selectors]
        indices = [self._band_index(s) for s in selectors]
        names = [self._band_names[i] for i in indices]
        if new_names is not None:
            if isinstance(new_names, str):
                new_names = [new_names]
            if len(new_names) != len(indices):
                raise ValidationError(
                    f"Got {len(new_names)} new names for {len(indices)} selected bands"
                )
            names = list(new_names)
        return self._replace(bands=self._bands[indices], band_names=names)

    def rename(self, new_names):
        if isinstance(new_names, str):
            new_names = [new_names]
        return self._replace(band_names=list(new_names))

    def add_bands(self, other, overwrite=False):
        """
        Appends the bands of another image on the same grid. The output is valid only where both images are valid.

        Args:
            other (RasterImage): image whose bands are appended.
            overwrite (bool): if True, bands of `other` replace same-named bands of this image.

        Returns:
            RasterImage: combined image, keeping this image's metadata.
        """
        if other.grid_shape != self.grid_shape:
            raise ValidationError(
                f"Cannot add bands on grid {other.grid_shape} to image on grid {self.grid_shape}"
            )
        names = list(self._band_names)
        arrays = [b for b in self._bands]
        for name, array in zip(other.band_names, other.bands):
            if name in names:
                if not overwrite:
                    raise ValidationError(
                        f"Band '{name}' already exists; use overwrite=True to replace it"
                    )
                arrays[names.index(name)] = array
            else:
                names.append(name)
                arrays.append(array)
        dtype = np.result_type(self.dtype, other.dtype)
        bands = np.stack([a.astype(dtype, copy=False) for a in arrays])
        return self._replace(
            bands=bands, band_names=names, mask=self._mask & other.mask
        )

    def update_mask(self, mask):
        """
        Restricts the validity mask: a pixel stays valid only where it is valid now and `mask` is True.

        Args:
            mask (np.ndarray or RasterImage): boolean (rows, cols) array, or an image whose first band is
                non-zero and valid where pixels should be kept.

        Returns:
            RasterImage: image with the combined mask.
        """
        if isinstance(mask, RasterImage):
            mask = mask.mask & (mask.bands[0] != 0)
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.grid_shape:
            raise ValidationError(
                f"Mask shape {mask.shape} does not match raster grid {self.grid_shape}"
            )
        return self._replace(mask=self._mask & mask)

    def set_time_start(self, time_start):
        return self._replace(time_start=time_start)

    def set(self, *args, **kwargs):
        """
        Returns a copy of the image with extra properties, given as a dict and/or keyword arguments.
        """
        properties = dict(self._properties)
        for arg in args:
            properties.update(arg)
        properties.update(kwargs)
        return self._replace(properties=properties)

    def copy_properties(self, source):
        """
        Copies time, sensor, scene id and properties from another image.
        """
        return self._replace(
            time_start=source.time_start,
            sensor=source.sensor,
            scene_id=source.scene_id,
            properties=source.properties,
        )

    def astype(self, dtype):
        return self._replace(bands=self._bands.astype(dtype))

    def to_uint16(self):
        """
        Casts bands to uint16, clamping to [0, 65535] and truncating fractional values. Non-finite values become 0.
        """
        values = np.nan_to_num(self._bands.astype(np.float64), nan=0.0, posinf=0.0, neginf=0.0)
        values = np.clip(values, 0, np.iinfo(np.uint16).max)
        return self._replace(bands=values.astype(np.uint16))

    # ---- Accessors ----
    def masked_array(self, dtype=None):
        """
        Returns the bands as a numpy masked array, with invalid pixels masked in every band.
        """
        data = self._bands if dtype is None else self._bands.astype(dtype)
        mask = np.broadcast_to(~self._mask, data.shape)
        return np.ma.masked_array(data, mask=mask)

    def valid_count(self):
        return int(self._mask.sum())

    def __repr__(self):
        return (
            f"RasterImage(bands={list(self._band_names)}, grid={self.grid_shape}, "
            f"dtype={self.dtype}, date={self.date}, sensor={self._sensor}, scene_id={self._scene_id})"
        )


class RasterCollection:
    """
    Ordered, immutable collection of RasterImage objects.

    Mirrors the small part of an image-collection API used by the compositing pipeline: merging, mapping,
    filtering, sorting and per-pixel reductions across members that share a grid.

    Args:
        images (iterable of RasterImage, optional): member images. Defaults to an empty collection.

    Raises:
        TypeError: if a member is not a RasterImage.
    """

    def __init__(self, images=None):
        images = tuple(images or ())
        for image in images:
            if not isinstance(image, RasterImage):
                raise TypeError(
                    f"RasterCollection members must be RasterImage objects, got {type(image)}"
                )
        self._images = images

    @property
    def images(self):
        return self._images

    @property
    def size(self):
        return len(self._images)

    def __len__(self):
        return len(self._images)

    def __iter__(self):
        return iter(self._images)

    def __getitem__(self, item):
        if isinstance(item, slice):
            return RasterCollection(self._images[item])
        return self._images[item]

    def __repr__(self):
        return f"RasterCollection(size={self.size}, scene_ids={self.scene_ids})"

    @property
    def scene_ids(self):
        return [image.scene_id for image in self._images]

    @property
    def dates(self):
        """
        Client-side list of acquisition dates ('YYYY-MM-dd') in collection order.
        """
        return [image.date for image in self._images]

    def first(self):
        return self._images[0] if self._images else None

    def image_grab(self, img_selector):
        """
        Selects an image by positional index (negative indices count from the end).
        """
        return self._images[img_selector]

    def merge(self, other):
        return RasterCollection(self._images + tuple(other))

    def map(self, fn):
        return RasterCollection(fn(image) for image in self._images)

    def filter(self, predicate):
        return RasterCollection(image for image in self._images if predicate(image))

    def filter_date(self, start_date, end_date):
        """
        Keeps images acquired in [start_date, end_date). Images without a time are dropped.
        """
        start = pd.Timestamp(start_date)
        end = pd.Timestamp(end_date)
        return self.filter(
            lambda image: image.time_start is not None and start <= image.time_start < end
        )

    def sort_by_time(self, ascending=True):
        images = sorted(
            self._images,
            key=lambda image: (image.time_start is None, image.time_start or pd.Timestamp(0)),
            reverse=not ascending,
        )
        return RasterCollection(images)

    def stack(self, dtype=None):
        """
        Stacks member pixels into dense arrays.

        Args:
            dtype (np.dtype, optional): output dtype for pixel values.

        Returns:
            tuple: (data, masks) with shapes (N, n_bands, rows, cols) and (N, rows, cols).

        Raises:
            ValidationError: if the collection is empty or members differ in grid or band names.
        """
        if not self._images:
            raise ValidationError("Cannot stack an empty collection")
        reference = self._images[0]
        for image in self._images[1:]:
            if image.grid_shape != reference.grid_shape:
                raise ValidationError(
                    f"Collection members must share a grid: {image.grid_shape} != {reference.grid_shape}"
                )
            if image.band_names != reference.band_names:
                raise ValidationError(
                    f"Collection members must share band names: {image.band_names} != {reference.band_names}"
                )
        data = np.stack([image.bands for image in self._images])
        if dtype is not None:
            data = data.astype(dtype)
        masks = np.stack([image.mask for image in self._images])
        return data, masks

    def reduce(self, reducer):
        """
        Per-band, per-pixel reduction across the collection, ignoring invalid observations.

        Args:
            reducer (str): one of 'median', 'mean', 'sum', 'min', 'max', 'count', 'std' (population standard deviation).

        Returns:
            RasterImage: reduced image, valid wherever at least one member is valid.
        """
        if reducer not in _REDUCERS:
            raise ValidationError(
                f"Unknown reducer '{reducer}'. Choose from {list(_REDUCERS)}"
            )
        data, masks = self.stack(dtype=np.float64)
        band_names = self._images[0].band_names
        valid = masks.any(axis=0)
        if reducer == "count":
            counts = np.broadcast_to(masks[:, np.newaxis], data.shape).sum(axis=0)
            return RasterImage(counts.astype(np.uint16), band_names=band_names)
        marr = np.ma.masked_array(data, mask=np.broadcast_to(~masks[:, np.newaxis], data.shape))
        if reducer == "median":
            reduced = np.ma.median(marr, axis=0)
        elif reducer == "mean":
            reduced = marr.mean(axis=0)
        elif reducer == "sum":
            reduced = marr.sum(axis=0)
        elif reducer == "min":
            reduced = marr.min(axis=0)
        elif reducer == "max":
            reduced = marr.max(axis=0)
        else:
            reduced = marr.std(axis=0)
        reduced = np.ma.filled(np.ma.masked_array(reduced), 0.0)
        return RasterImage(reduced, band_names=band_names, mask=valid)

    def median(self):
        return self.reduce("median")

    def mean(self):
        return self.reduce("mean")

    def std(self):
        return self.reduce("std")
