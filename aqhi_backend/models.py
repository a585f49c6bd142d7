"""
AQHI data model
===============
Readings, aggregate windows and health index results shared by the processors.

Concentrations are carried as Optional[Concentration] everywhere: None means
"not measured", Concentration(0.0, unit) means "measured zero".
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

# Unit labels
UG_M3 = 'μg/m³'
MG_M3 = 'mg/m³'
PPB = 'ppb'
PPM = 'ppm'

# Sentinel value carried by no-data results
NO_DATA_VALUE = -1


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Pollutant(str, Enum):
    PM25 = 'pm25'
    PM10 = 'pm10'
    O3 = 'o3'
    NO2 = 'no2'
    SO2 = 'so2'
    CO = 'co'


class SourceTag(str, Enum):
    PRIMARY = 'primary'
    SUPPLEMENT = 'supplement'


class CalculationMethod(str, Enum):
    AGGREGATE = 'aggregate'
    CURRENT = 'current'
    NONE = 'none'


class QualityTier(str, Enum):
    EXCELLENT = 'excellent'
    GOOD = 'good'
    FAIR = 'fair'
    LIMITED = 'limited'
    ESTIMATED = 'estimated'


@dataclass(frozen=True)
class Concentration:
    """Physical pollutant quantity in a given unit"""
    value: float
    unit: str


@dataclass
class Measurement:
    """Single pollutant measurement with provenance"""
    quantity: float
    unit: str
    source_tag: SourceTag = SourceTag.PRIMARY

    def __post_init__(self):
        if self.quantity is None or math.isnan(self.quantity) or self.quantity < 0:
            raise ValueError(f"Measurement quantity must be a non-negative number, got {self.quantity}")

    @property
    def concentration(self) -> Concentration:
        return Concentration(self.quantity, self.unit)


@dataclass
class PollutantReading:
    """
    One station reading. An empty `values` map is valid and means the
    station reported nothing for this poll.
    """
    station_id: str
    timestamp: datetime
    latitude: float
    longitude: float
    values: Dict[Pollutant, Measurement] = field(default_factory=dict)

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)

    def concentration(self, pollutant: Pollutant) -> Optional[Concentration]:
        measurement = self.values.get(pollutant)
        return measurement.concentration if measurement else None

    def with_values(self, values: Dict[Pollutant, Measurement]) -> 'PollutantReading':
        return replace(self, values=dict(values))

    def pollutants_by_source(self, tag: SourceTag) -> List[Pollutant]:
        return [p for p, m in self.values.items() if m.source_tag == tag]


@dataclass
class AggregateWindow:
    """Windowed per-pollutant means for one station; derived, never persisted"""
    station_id: str
    window_start: datetime
    window_end: datetime
    means: Dict[Pollutant, float]
    units: Dict[Pollutant, str]
    sample_count: int
    coverage: float
    quality_tier: QualityTier
    pollutant_counts: Dict[Pollutant, int] = field(default_factory=dict)

    def concentrations(self) -> Dict[Pollutant, Optional[Concentration]]:
        return {p: Concentration(v, self.units[p]) for p, v in self.means.items()}


@dataclass(frozen=True)
class RiskLevel:
    """Classification tier with presentation metadata"""
    key: str
    label: str
    min_value: float
    max_value: float
    color: str = ''
    description: str = ''

    def contains(self, value: float) -> bool:
        return self.min_value <= value <= self.max_value


NO_DATA_LEVEL = RiskLevel(
    key='NO_DATA',
    label='No Data',
    min_value=float('-inf'),
    max_value=float('-inf'),
    color='#9ca3af',
    description='No readings available for this station',
)


@dataclass
class HealthIndexResult:
    """
    Health index for one station under one formula variant.
    `value` is always set; NO_DATA_VALUE marks the no-data sentinel.
    """
    station_id: str
    variant: str
    value: Union[int, float]
    risk_components: Dict[Pollutant, float]
    level: RiskLevel
    calculation_method: CalculationMethod
    computed_at: datetime
    quality_tier: Optional[QualityTier] = None
    sample_count: int = 0
    missing_pollutants: List[Pollutant] = field(default_factory=list)
    supplemented_pollutants: List[Pollutant] = field(default_factory=list)
    note: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.calculation_method != CalculationMethod.NONE

    def to_dict(self) -> Dict:
        """Plain-data view for the presentation layer"""
        return {
            'station_id': self.station_id,
            'variant': self.variant,
            'value': self.value,
            'risk_components': {p.value: round(v, 4) for p, v in self.risk_components.items()},
            'level': {
                'key': self.level.key,
                'label': self.level.label,
                'color': self.level.color,
                'description': self.level.description,
            },
            'calculation_method': self.calculation_method.value,
            'computed_at': self.computed_at.isoformat(),
            'quality_tier': self.quality_tier.value if self.quality_tier else None,
            'sample_count': self.sample_count,
            'missing_pollutants': [p.value for p in self.missing_pollutants],
            'supplemented_pollutants': [p.value for p in self.supplemented_pollutants],
            'note': self.note,
        }
