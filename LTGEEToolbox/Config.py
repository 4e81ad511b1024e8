"""
Configuration for annual composite runs.

A run is described by a CompositeConfig, built in code or loaded from a YAML file such as::

    start_year: 1990
    end_year: 2020
    start_day: '06-20'
    end_day: '09-20'
    sensors: [LT05, LE07, LC08, LC09]
    mask_these: [cloud, shadow, snow, water]
    exclude:
      imgIds: [LANDSAT/LE07/C02/T1_L2/LE07_046028_20120805]
      slcOff: true
    indices: [NBR, NDVI, TCW]
    flips: [true, true, false]
    max_workers: 4
    on_error: placeholder
"""

from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .Errors import ValidationError
from .Masking import DEFAULT_MASKS, MaskSpec, validate_sensor
from .SensorCollection import DEFAULT_SENSORS, DayWindow, ExclusionSpec
from .SpectralIndex import SpectralIndex

ON_ERROR_OPTIONS = ("raise", "placeholder")


@dataclass(frozen=True)
class CompositeConfig:
    """
    Immutable parameters of an annual composite run.

    Args:
        start_year (int): first year.
        end_year (int): last year (inclusive).
        start_day (str): window start, 'MM-DD'.
        end_day (str): window end, 'MM-DD'.
        sensors (tuple of str): sensors to merge. None selects all four Landsat sensors.
        mask_these (tuple of str): mask categories. None selects cloud, shadow, snow and water. An empty
            tuple disables masking.
        exclude (ExclusionSpec): scenes to drop.
        indices (tuple of str): indices to derive from the composites.
        flips (tuple of bool): sign flip per index (defaults to no flips).
        max_workers (int): maximum number of years processed at once.
        on_error (str): 'raise' or 'placeholder'.
    """

    start_year: int
    end_year: int
    start_day: str = "06-01"
    end_day: str = "09-30"
    sensors: tuple = DEFAULT_SENSORS
    mask_these: tuple = DEFAULT_MASKS
    exclude: ExclusionSpec = field(default_factory=ExclusionSpec)
    indices: tuple = ("NBR",)
    flips: tuple = ()
    max_workers: int = 4
    on_error: str = "raise"

    def __post_init__(self):
        defaults = {"sensors": DEFAULT_SENSORS, "mask_these": DEFAULT_MASKS, "indices": (), "flips": ()}
        for name, default in defaults.items():
            value = getattr(self, name)
            if value is None:
                value = default
            elif isinstance(value, (str, bool)):
                value = (value,)
            object.__setattr__(self, name, tuple(value))
        object.__setattr__(self, "exclude", ExclusionSpec.from_value(self.exclude))

    @classmethod
    def from_dict(cls, values):
        """
        Builds a config from a plain dict (e.g. parsed YAML). Unknown keys raise ValidationError.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValidationError(f"Unknown configuration keys: {unknown}")
        missing = [name for name in ("start_year", "end_year") if name not in values]
        if missing:
            raise ValidationError(f"Missing required configuration keys: {missing}")
        return cls(**values)

    @property
    def mask_spec(self):
        return MaskSpec(self.mask_these)

    @property
    def exclusions(self):
        return self.exclude

    @property
    def day_window(self):
        return DayWindow(self.start_day, self.end_day)

    def validate(self):
        """
        Checks every parameter.

        Returns:
            CompositeConfig: self, for chaining.

        Raises:
            ValidationError: if any parameter is invalid.
        """
        for name in ("start_year", "end_year"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer, got {value!r}")
        if self.end_year < self.start_year:
            raise ValidationError(
                f"end_year ({self.end_year}) must not be before start_year ({self.start_year})"
            )
        DayWindow(self.start_day, self.end_day)
        if not self.sensors:
            raise ValidationError("At least one sensor is required")
        for sensor in self.sensors:
            validate_sensor(sensor)
        MaskSpec(self.mask_these)
        for index in self.indices:
            SpectralIndex.parse(index)
        if self.flips and len(self.flips) != len(self.indices):
            raise ValidationError(
                f"Got {len(self.flips)} flip flags for {len(self.indices)} indices"
            )
        if self.on_error not in ON_ERROR_OPTIONS:
            raise ValidationError(
                f"on_error must be one of {list(ON_ERROR_OPTIONS)}, got {self.on_error!r}"
            )
        if isinstance(self.max_workers, bool) or not isinstance(self.max_workers, int) or self.max_workers < 1:
            raise ValidationError(f"max_workers must be a positive integer, got {self.max_workers!r}")
        return self


def load_config(config_path="config.yaml"):
    """
    Loads and validates a CompositeConfig from a YAML file.

    Args:
        config_path (str or Path): path to the configuration file.

    Returns:
        CompositeConfig: validated configuration.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file is not valid YAML.
        ValidationError: if the configuration is invalid.
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, "r") as file:
        values = yaml.safe_load(file)
    if not isinstance(values, dict):
        raise ValidationError(f"Configuration file {config_path} must contain a mapping")
    return CompositeConfig.from_dict(values).validate()
