class LTGEEToolboxError(Exception):
    """Base class for errors raised by LTGEEToolbox."""


class ValidationError(LTGEEToolboxError, ValueError):
    """
    Raised when user-supplied parameters are invalid (unknown mask category, unknown index name,
    malformed day-of-year string, end year before start year, ...).

    Validation always happens before any request is issued to an imagery service.
    """


class UpstreamQueryError(LTGEEToolboxError, RuntimeError):
    """
    Raised when an imagery service fails to answer a query.

    The error is tagged with the year and sensor being processed so that the caller can decide
    whether to abort a whole series or substitute a placeholder for that year.

    Args:
        message (str): description of the failure.
        year (int, optional): year being composited when the failure occurred.
        sensor (str, optional): sensor id (e.g. 'LC08') being queried.
        dataset_id (str, optional): dataset that was queried.
    """

    def __init__(self, message, year=None, sensor=None, dataset_id=None):
        super().__init__(message)
        self.message = message
        self.year = year
        self.sensor = sensor
        self.dataset_id = dataset_id

    def tagged(self, year=None, sensor=None):
        """
        Returns a copy of the error with missing year/sensor tags filled in.
        """
        err = UpstreamQueryError(
            self.message,
            year=self.year if self.year is not None else year,
            sensor=self.sensor if self.sensor is not None else sensor,
            dataset_id=self.dataset_id,
        )
        err.__cause__ = self.__cause__
        return err

    def __str__(self):
        message = super().__str__()
        tags = []
        if self.year is not None:
            tags.append(f"year={self.year}")
        if self.sensor is not None:
            tags.append(f"sensor={self.sensor}")
        if tags:
            return f"{message} [{', '.join(tags)}]"
        return message
