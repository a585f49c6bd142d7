#!/usr/bin/env python3
"""
Engine configuration
====================
Settings come from the environment (optionally a .env file next to the
package) and are validated once, when the service is built. Secrets such as
the Google Air Quality key are only ever read from the environment.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from aqhi_backend.collectors.reading_history import InMemoryReadingHistory, MySQLReadingHistory
from aqhi_backend.collectors.supplement_client import GoogleAirQualityClient
from aqhi_backend.exceptions import InvalidConfiguration
from aqhi_backend.processors.formula_engine import FormulaEngine
from aqhi_backend.processors.health_index_service import HealthIndexService
from aqhi_backend.processors.result_cache import ResultCache
from aqhi_backend.processors.source_fusion import (
    DEFAULT_BOUNDING_BOX, SourceFusion, SupplementBudget, SupplementGrid, SupplementProvider,
)
from aqhi_backend.processors.temporal_aggregator import TemporalAggregator, utc_now
from aqhi_backend.utils.database_connection import SimpleDatabase

logger = logging.getLogger(__name__)

DEFAULT_ENV_PATH = Path(__file__).parent.parent.parent / '.env'

HISTORY_BACKENDS = ('memory', 'mysql')


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise InvalidConfiguration(f"{name} must be a number, got {raw!r}") from None


def _parse_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfiguration(f"{name} must be an integer, got {raw!r}") from None


def _parse_bbox(raw: Optional[str]) -> Tuple[float, float, float, float]:
    if not raw:
        return DEFAULT_BOUNDING_BOX
    parts = [p.strip() for p in raw.split(',')]
    if len(parts) != 4:
        raise InvalidConfiguration(f"AQHI_GRID_BBOX needs lat_min,lat_max,lon_min,lon_max, got {raw!r}")
    try:
        return tuple(float(p) for p in parts)
    except ValueError:
        raise InvalidConfiguration(f"AQHI_GRID_BBOX must be numeric, got {raw!r}") from None


@dataclass
class EngineSettings:
    """Everything needed to build a HealthIndexService"""
    variant: str = 'thai'
    window_hours: float = 3.0
    poll_interval_minutes: float = 10.0
    cache_ttl_seconds: float = 300.0
    no_data_ttl_seconds: float = 60.0
    grid_bbox: Tuple[float, float, float, float] = DEFAULT_BOUNDING_BOX
    grid_rows: int = 3
    grid_cols: int = 3
    supplement_daily_budget: Optional[int] = 1000
    history_timeout_seconds: float = 10.0
    supplement_timeout_seconds: float = 15.0
    history_backend: str = 'memory'
    google_api_key: Optional[str] = None
    db_host: str = 'localhost'
    db_port: int = 3306
    db_user: str = 'root'
    db_password: str = ''
    db_name: str = 'aqhi'

    def __post_init__(self):
        self.validate()

    def validate(self):
        positive = {
            'AQHI_WINDOW_HOURS': self.window_hours,
            'AQHI_POLL_INTERVAL_MINUTES': self.poll_interval_minutes,
            'AQHI_CACHE_TTL_SECONDS': self.cache_ttl_seconds,
            'AQHI_NO_DATA_TTL_SECONDS': self.no_data_ttl_seconds,
            'AQHI_HISTORY_TIMEOUT_SECONDS': self.history_timeout_seconds,
            'AQHI_SUPPLEMENT_TIMEOUT_SECONDS': self.supplement_timeout_seconds,
            'AQHI_GRID_ROWS': self.grid_rows,
            'AQHI_GRID_COLS': self.grid_cols,
        }
        for name, value in positive.items():
            if value <= 0:
                raise InvalidConfiguration(f"{name} must be positive, got {value}")

        if self.no_data_ttl_seconds > self.cache_ttl_seconds:
            raise InvalidConfiguration("AQHI_NO_DATA_TTL_SECONDS cannot exceed AQHI_CACHE_TTL_SECONDS")
        if self.supplement_daily_budget is not None and self.supplement_daily_budget < 0:
            raise InvalidConfiguration(f"AQHI_SUPPLEMENT_DAILY_BUDGET cannot be negative: {self.supplement_daily_budget}")
        if self.history_backend not in HISTORY_BACKENDS:
            raise InvalidConfiguration(
                f"AQHI_HISTORY_BACKEND must be one of {', '.join(HISTORY_BACKENDS)}, got {self.history_backend!r}"
            )

        lat_min, lat_max, lon_min, lon_max = self.grid_bbox
        if not (-90 <= lat_min < lat_max <= 90 and -180 <= lon_min < lon_max <= 180):
            raise InvalidConfiguration(f"Invalid grid bounding box: {self.grid_bbox}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 env_file: Optional[Path] = None) -> 'EngineSettings':
        """
        Read settings from a mapping, or from os.environ after loading .env

        A negative AQHI_SUPPLEMENT_DAILY_BUDGET is rejected; an empty one
        keeps the default of 1000 calls per day.
        """
        if environ is None:
            load_dotenv(env_file or DEFAULT_ENV_PATH)
            environ = os.environ

        return cls(
            variant=environ.get('AQHI_VARIANT') or 'thai',
            window_hours=_parse_float(environ, 'AQHI_WINDOW_HOURS', 3.0),
            poll_interval_minutes=_parse_float(environ, 'AQHI_POLL_INTERVAL_MINUTES', 10.0),
            cache_ttl_seconds=_parse_float(environ, 'AQHI_CACHE_TTL_SECONDS', 300.0),
            no_data_ttl_seconds=_parse_float(environ, 'AQHI_NO_DATA_TTL_SECONDS', 60.0),
            grid_bbox=_parse_bbox(environ.get('AQHI_GRID_BBOX')),
            grid_rows=_parse_int(environ, 'AQHI_GRID_ROWS', 3),
            grid_cols=_parse_int(environ, 'AQHI_GRID_COLS', 3),
            supplement_daily_budget=_parse_int(environ, 'AQHI_SUPPLEMENT_DAILY_BUDGET', 1000),
            history_timeout_seconds=_parse_float(environ, 'AQHI_HISTORY_TIMEOUT_SECONDS', 10.0),
            supplement_timeout_seconds=_parse_float(environ, 'AQHI_SUPPLEMENT_TIMEOUT_SECONDS', 15.0),
            history_backend=(environ.get('AQHI_HISTORY_BACKEND') or 'memory').lower(),
            google_api_key=environ.get('GOOGLE_AIR_QUALITY_API_KEY') or None,
            db_host=environ.get('DB_HOST') or 'localhost',
            db_port=_parse_int(environ, 'DB_PORT', 3306),
            db_user=environ.get('DB_USER') or 'root',
            db_password=environ.get('DB_PASSWORD') or '',
            db_name=environ.get('DB_NAME') or 'aqhi',
        )

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.window_hours)

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(minutes=self.poll_interval_minutes)

    def database_config(self) -> Dict[str, Any]:
        return {
            'host': self.db_host,
            'port': self.db_port,
            'user': self.db_user,
            'password': self.db_password,
            'database': self.db_name,
        }


def build_service(settings: EngineSettings, history=None,
                  supplement_provider: Optional[SupplementProvider] = None,
                  enable_supplement: bool = True,
                  clock: Callable[[], datetime] = utc_now) -> HealthIndexService:
    """
    Wire a HealthIndexService from settings

    Args:
        settings: Validated engine settings
        history: Reading-history provider; chosen from settings.history_backend when omitted
        supplement_provider: Supplementary point source; the Google client when
            omitted and an API key is configured, otherwise fusion is disabled
        enable_supplement: False turns fusion off even when a source is available
        clock: Time source shared by every component
    """
    engine = FormulaEngine(clock=clock)

    if history is None:
        if settings.history_backend == 'mysql':
            history = MySQLReadingHistory(SimpleDatabase(settings.database_config()))
            logger.info("📊 Reading history from MySQL")
        else:
            history = InMemoryReadingHistory(clock=clock)
            logger.info("📊 Reading history kept in memory")

    aggregator = TemporalAggregator(
        history,
        window=settings.window,
        poll_interval=settings.poll_interval,
        timeout_seconds=settings.history_timeout_seconds,
        clock=clock,
    )

    if enable_supplement and supplement_provider is None and settings.google_api_key:
        supplement_provider = GoogleAirQualityClient(
            settings.google_api_key, timeout_seconds=settings.supplement_timeout_seconds,
        )

    fusion = None
    if not enable_supplement:
        logger.info("ℹ️ Supplementary source disabled")
    elif supplement_provider is not None:
        required = []
        for formula in engine.variants.values():
            required.extend(formula.required_pollutants)
        fusion = SourceFusion(
            supplement_provider,
            SupplementGrid(*settings.grid_bbox, rows=settings.grid_rows, cols=settings.grid_cols),
            required_pollutants=required,
            normalizer=engine.normalizer,
            budget=SupplementBudget(settings.supplement_daily_budget, clock=clock),
            timeout_seconds=settings.supplement_timeout_seconds,
            clock=clock,
        )
    else:
        logger.warning("⚠️ GOOGLE_AIR_QUALITY_API_KEY not set - missing pollutants will not be supplemented")

    cache = ResultCache(
        ttl=timedelta(seconds=settings.cache_ttl_seconds),
        no_data_ttl=timedelta(seconds=settings.no_data_ttl_seconds),
        clock=clock,
    )

    return HealthIndexService(
        engine,
        aggregator=aggregator,
        fusion=fusion,
        current_provider=history,
        cache=cache,
        default_variant=settings.variant,
        timeout_seconds=settings.history_timeout_seconds,
        clock=clock,
    )
