"""
Detection pipeline exceptions.

None of these is fatal to a tick: each is caught at the stage that raised it,
logged, and the stage carries on with the data it has.
"""


class RadarError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


class MalformedInput(RadarError):
    """An ingested item or sample is missing fields or cannot be parsed."""

    pass


class InsufficientHistory(RadarError):
    """Not enough data yet to compute a baseline or correlation."""

    pass


class StoreUnavailable(RadarError):
    """Persistence read or write failed."""

    def __init__(self, collection: str, reason: str, key: str | None = None):
        self.collection = collection
        self.reason = reason
        super().__init__(f"Store '{collection}' unavailable: {reason}", key=key)


class StaleClock(RadarError):
    """Timestamp outside the accepted clock skew."""

    def __init__(self, key: str, skew_seconds: float):
        self.skew_seconds = skew_seconds
        super().__init__(
            f"Timestamp for '{key}' is {skew_seconds:.0f}s ahead of the tick clock",
            key=key,
        )
