"""
Collectors Package - AQHI Backend
Reading-history and supplementary air quality sources
"""

from .reading_history import InMemoryReadingHistory, MySQLReadingHistory
from .supplement_client import GoogleAirQualityClient

__all__ = [
    'InMemoryReadingHistory',
    'MySQLReadingHistory',
    'GoogleAirQualityClient',
]
