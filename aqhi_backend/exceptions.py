"""
AQHI engine error taxonomy

Only InvalidConfiguration is fatal. Every other class is raised inside a
component and recovered before a HealthIndexResult leaves the engine.
"""


class AQHIEngineError(Exception):
    """Base class for all engine errors"""


class ConversionUnavailable(AQHIEngineError):
    """Index value outside every breakpoint bracket, or not a pollutant at all"""


class InsufficientData(AQHIEngineError):
    """No usable samples for a computation step; the fallback chain moves on"""


class UpstreamFetchFailure(AQHIEngineError):
    """History store or supplementary API failed or timed out"""


class InvalidConfiguration(AQHIEngineError):
    """Unknown variant, malformed coefficient/breakpoint table or bad setting"""
