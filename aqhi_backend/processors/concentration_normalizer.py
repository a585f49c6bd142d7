#!/usr/bin/env python3
"""
🔄 INDEX ↔ CONCENTRATION NORMALIZER
==================================
Converts regional AQI values back to physical concentrations and moves
concentrations between the units each AQHI formula variant expects.

CONVERSION PIPELINE:
- Locate the EPA breakpoint bracket [I_lo, I_hi, C_lo, C_hi] holding the index
- Reverse linear interpolation: C = (I - I_lo) / (I_hi - I_lo) × (C_hi - C_lo) + C_lo
- Apply the fixed unit factor to reach the canonical unit:
  * PM2.5 / PM10: μg/m³ (no conversion)
  * O3: ppm → μg/m³ (×1962)
  * NO2: ppb → μg/m³ (×1.88)
  * SO2: ppb → μg/m³ (×2.62)
  * CO: ppm → mg/m³ (×1.15)

Reverse conversion divides by exactly the same factor, so a value taken
to canonical and back to the native unit is unchanged.
"""

import logging
import math
import numbers
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from aqhi_backend.exceptions import ConversionUnavailable, InvalidConfiguration
from aqhi_backend.models import (
    MG_M3, PPB, PPM, UG_M3,
    Concentration, Measurement, Pollutant, PollutantReading, SourceTag,
)

logger = logging.getLogger(__name__)

# Feed codes that are meteorology, not pollutants
WEATHER_PARAMETERS = frozenset(['h', 't', 'p', 'w', 'wd', 'r', 'dew'])

# US EPA AQI breakpoints (2024 PM2.5 revision), native units
# Format: (index_low, index_high, conc_low, conc_high)
EPA_AQI_BREAKPOINTS = {
    'pm25': [
        (0, 50, 0.0, 9.0),
        (51, 100, 9.1, 35.4),
        (101, 150, 35.5, 55.4),
        (151, 200, 55.5, 125.4),
        (201, 300, 125.5, 225.4),
        (301, 500, 225.5, 325.4),
        (501, 999, 325.5, 500.4),
    ],
    'pm10': [
        (0, 50, 0, 54),
        (51, 100, 55, 154),
        (101, 150, 155, 254),
        (151, 200, 255, 354),
        (201, 300, 355, 424),
        (301, 500, 425, 604),
        (501, 999, 605, 1004),
    ],
    # Ozone 8-hour average, ppm
    'o3_8hr': [
        (0, 50, 0.000, 0.054),
        (51, 100, 0.055, 0.070),
        (101, 150, 0.071, 0.085),
        (151, 200, 0.086, 0.105),
        (201, 300, 0.106, 0.200),
    ],
    # Ozone 1-hour average, ppm - EPA only defines it above AQI 100
    'o3_1hr': [
        (101, 150, 0.125, 0.164),
        (151, 200, 0.165, 0.204),
        (201, 300, 0.205, 0.404),
        (301, 500, 0.405, 0.604),
    ],
    'no2': [
        (0, 50, 0, 53),
        (51, 100, 54, 100),
        (101, 150, 101, 360),
        (151, 200, 361, 649),
        (201, 300, 650, 1249),
        (301, 500, 1250, 2049),
    ],
    'so2': [
        (0, 50, 0, 35),
        (51, 100, 36, 75),
        (101, 150, 76, 185),
        (151, 200, 186, 304),
        (201, 300, 305, 604),
        (301, 500, 605, 1004),
    ],
    'co': [
        (0, 50, 0.0, 4.4),
        (51, 100, 4.5, 9.4),
        (101, 150, 9.5, 12.4),
        (151, 200, 12.5, 15.4),
        (201, 300, 15.5, 30.4),
        (301, 500, 30.5, 50.4),
    ],
}

# Unit the breakpoint table is expressed in
NATIVE_UNITS = {
    Pollutant.PM25: UG_M3,
    Pollutant.PM10: UG_M3,
    Pollutant.O3: PPM,
    Pollutant.NO2: PPB,
    Pollutant.SO2: PPB,
    Pollutant.CO: PPM,
}

CANONICAL_UNITS = {
    Pollutant.PM25: UG_M3,
    Pollutant.PM10: UG_M3,
    Pollutant.O3: UG_M3,
    Pollutant.NO2: UG_M3,
    Pollutant.SO2: UG_M3,
    Pollutant.CO: MG_M3,
}

# Multiplier taking one unit of X to the canonical unit (25°C, 1 atm)
UNIT_FACTORS = {
    Pollutant.PM25: {UG_M3: 1.0},
    Pollutant.PM10: {UG_M3: 1.0},
    Pollutant.O3: {UG_M3: 1.0, PPM: 1962.0, PPB: 1.962},
    Pollutant.NO2: {UG_M3: 1.0, PPB: 1.88, PPM: 1880.0},
    Pollutant.SO2: {UG_M3: 1.0, PPB: 2.62, PPM: 2620.0},
    Pollutant.CO: {MG_M3: 1.0, UG_M3: 0.001, PPM: 1.15, PPB: 0.00115},
}

# Aliases seen across WAQI, Google and the internal store
UNIT_ALIASES = {
    'ug/m3': UG_M3,
    'µg/m³': UG_M3,
    'μg/m³': UG_M3,
    'micrograms_per_cubic_meter': UG_M3,
    'mg/m3': MG_M3,
    'mg/m³': MG_M3,
    'ppb': PPB,
    'parts_per_billion': PPB,
    'ppm': PPM,
    'parts_per_million': PPM,
}


def normalize_pollutant_name(code: Any) -> Optional[Pollutant]:
    """
    Map pollutant codes from different feeds to the internal enum

    - WAQI: pm25, o3, no2, so2, co
    - Google: pm25, pm10, o3, no2, so2, co
    - Others: PM2.5, PM2_5, OZONE, NITROGEN_DIOXIDE ...

    Meteorological codes and unknown codes return None.
    """
    if isinstance(code, Pollutant):
        return code
    if code is None:
        return None

    code_lower = str(code).strip().lower()
    if code_lower in WEATHER_PARAMETERS:
        return None

    if code_lower in ('pm2.5', 'pm25', 'pm2_5'):
        return Pollutant.PM25
    elif code_lower in ('pm10', 'pm_10'):
        return Pollutant.PM10
    elif code_lower in ('o3', 'ozone'):
        return Pollutant.O3
    elif code_lower in ('no2', 'nitrogen_dioxide'):
        return Pollutant.NO2
    elif code_lower in ('so2', 'sulfur_dioxide', 'sulphur_dioxide'):
        return Pollutant.SO2
    elif code_lower in ('co', 'carbon_monoxide'):
        return Pollutant.CO
    return None


def normalize_unit(unit: Any) -> Optional[str]:
    if unit is None:
        return None
    return UNIT_ALIASES.get(str(unit).strip().lower())


def _is_valid_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    return math.isfinite(value) and value >= 0


def _coordinate(payload: Dict[str, Any], key: str, station_id: str) -> float:
    value = payload.get(key, 0.0)
    if isinstance(value, bool) or not isinstance(value, (numbers.Real, str)):
        raise ValueError(f"{station_id}: {key} must be a number, got {value!r}")
    try:
        coordinate = float(value)
    except ValueError:
        raise ValueError(f"{station_id}: {key} must be a number, got {value!r}") from None
    if not math.isfinite(coordinate):
        raise ValueError(f"{station_id}: {key} must be finite, got {value!r}")
    return coordinate


class ConcentrationNormalizer:
    """
    Index value → concentration conversion and unit re-expression
    """

    def __init__(self, breakpoints: Optional[Dict[str, List[Tuple[float, float, float, float]]]] = None,
                 ozone_period: str = '8hr'):
        self.breakpoints = breakpoints or EPA_AQI_BREAKPOINTS
        if ozone_period not in ('8hr', '1hr'):
            raise InvalidConfiguration(f"Unknown ozone averaging period: {ozone_period}")
        self.ozone_period = ozone_period
        self._validate_breakpoints()

    def _validate_breakpoints(self):
        for key, brackets in self.breakpoints.items():
            if not brackets:
                raise InvalidConfiguration(f"Empty breakpoint table for {key}")
            previous_high = None
            for bracket in brackets:
                if len(bracket) != 4:
                    raise InvalidConfiguration(f"Breakpoint for {key} must have 4 values: {bracket}")
                idx_lo, idx_hi, conc_lo, conc_hi = bracket
                if idx_hi <= idx_lo or conc_hi <= conc_lo:
                    raise InvalidConfiguration(f"Breakpoint for {key} is not increasing: {bracket}")
                if previous_high is not None and idx_lo <= previous_high:
                    raise InvalidConfiguration(f"Overlapping breakpoints for {key} at {bracket}")
                previous_high = idx_hi

    def _table_key(self, pollutant: Pollutant, ozone_period: Optional[str]) -> str:
        if pollutant == Pollutant.O3:
            return f"o3_{ozone_period or self.ozone_period}"
        return pollutant.value

    def lookup_bracket(self, index_value: float, pollutant: Pollutant,
                       ozone_period: Optional[str] = None) -> Tuple[float, float, float, float]:
        """Find the bracket holding index_value, raising ConversionUnavailable otherwise"""
        brackets = self.breakpoints.get(self._table_key(pollutant, ozone_period))
        if not brackets:
            raise ConversionUnavailable(f"No breakpoint table for {pollutant.value}")

        for bracket in brackets:
            idx_lo, idx_hi, _, _ = bracket
            if idx_lo <= index_value <= idx_hi:
                return bracket

        raise ConversionUnavailable(f"Index {index_value} out of range for {pollutant.value}")

    def to_native_concentration(self, index_value: Any, pollutant: Any,
                                ozone_period: Optional[str] = None) -> Optional[Concentration]:
        """Interpolated concentration in the breakpoint table's own unit"""
        pollutant_enum = normalize_pollutant_name(pollutant)
        if pollutant_enum is None or not _is_valid_number(index_value):
            return None

        try:
            idx_lo, idx_hi, conc_lo, conc_hi = self.lookup_bracket(index_value, pollutant_enum, ozone_period)
        except ConversionUnavailable as e:
            logger.debug(f"⚠️ {e}")
            return None

        if index_value == idx_hi:
            concentration = conc_hi
        elif index_value == idx_lo:
            concentration = conc_lo
        else:
            concentration = (index_value - idx_lo) / (idx_hi - idx_lo) * (conc_hi - conc_lo) + conc_lo
        return Concentration(concentration, NATIVE_UNITS[pollutant_enum])

    def to_concentration(self, index_value: Any, pollutant: Any,
                         ozone_period: Optional[str] = None) -> Optional[Concentration]:
        """
        Convert an index value to a canonical-unit concentration

        Returns None for negative/non-numeric input, weather codes, unknown
        pollutants and index values outside every bracket.
        """
        native = self.to_native_concentration(index_value, pollutant, ozone_period)
        if native is None:
            return None

        pollutant_enum = normalize_pollutant_name(pollutant)
        factor = UNIT_FACTORS[pollutant_enum][native.unit]
        return Concentration(native.value * factor, CANONICAL_UNITS[pollutant_enum])

    def supports_unit(self, pollutant: Pollutant, unit: str) -> bool:
        return unit in UNIT_FACTORS.get(pollutant, {})

    def to_canonical(self, concentration: Concentration, pollutant: Pollutant) -> Concentration:
        return self.to_formula_unit(concentration, pollutant, CANONICAL_UNITS[pollutant])

    def to_formula_unit(self, concentration: Concentration, pollutant: Pollutant,
                        target_unit: str) -> Concentration:
        """
        Re-express a concentration in the unit a formula variant requires

        Goes through the canonical unit with the same factor table used by
        to_concentration, so forward and reverse conversions are exact inverses.
        """
        factors = UNIT_FACTORS.get(pollutant)
        source_unit = normalize_unit(concentration.unit) or concentration.unit
        target = normalize_unit(target_unit) or target_unit

        if source_unit == target:
            return Concentration(concentration.value, target)

        if not factors or source_unit not in factors or target not in factors:
            raise InvalidConfiguration(
                f"Cannot convert {pollutant.value} from {concentration.unit} to {target_unit}"
            )

        canonical_value = concentration.value * factors[source_unit]
        return Concentration(canonical_value / factors[target], target)

    def reading_from_feed(self, payload: Dict[str, Any]) -> PollutantReading:
        """
        Build a PollutantReading from a feed record

        Expected shape:
            {stationId, lat, lon, timestamp,
             pollutants: {code: {value, isIndexOrConcentration, unit?}}}

        `isIndexOrConcentration` is 'index' for AQI values and
        'concentration' for raw values (unit defaults to the canonical unit).
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Feed record must be an object, got {type(payload).__name__}")

        station_id = str(payload.get('stationId') or payload.get('station_id') or 'unknown')
        timestamp = payload.get('timestamp')
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
        elif isinstance(timestamp, (int, float)):
            timestamp = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        elif timestamp is None:
            timestamp = datetime.now(timezone.utc)
        elif not isinstance(timestamp, datetime):
            raise ValueError(f"{station_id}: unsupported timestamp {timestamp!r}")

        pollutants = payload.get('pollutants') or {}
        if not isinstance(pollutants, dict):
            raise ValueError(f"{station_id}: pollutants must be an object, got {type(pollutants).__name__}")

        values: Dict[Pollutant, Measurement] = {}
        conversion_log = []
        skipped = []

        for code, entry in pollutants.items():
            if str(code).lower() in WEATHER_PARAMETERS:
                skipped.append(f"{code} (weather)")
                continue

            pollutant = normalize_pollutant_name(code)
            if pollutant is None:
                skipped.append(f"{code} (unsupported)")
                continue

            if not isinstance(entry, dict):
                entry = {'value': entry, 'isIndexOrConcentration': 'index'}
            value = entry.get('value')
            kind = str(entry.get('isIndexOrConcentration', 'index')).lower()

            if kind == 'index':
                concentration = self.to_concentration(value, pollutant)
            elif _is_valid_number(value):
                unit = normalize_unit(entry.get('unit')) or CANONICAL_UNITS[pollutant]
                try:
                    concentration = self.to_canonical(Concentration(float(value), unit), pollutant)
                except InvalidConfiguration as e:
                    logger.warning(f"⚠️ {station_id}: {e}")
                    concentration = None
            else:
                concentration = None

            if concentration is None:
                skipped.append(f"{code}={value} (unconvertible)")
                continue

            values[pollutant] = Measurement(concentration.value, concentration.unit, SourceTag.PRIMARY)
            conversion_log.append(f"{pollutant.value.upper()}: {value} → {concentration.value:.2f} {concentration.unit}")

        if conversion_log:
            logger.debug(f"🔄 {station_id} converted: {', '.join(conversion_log)}")
        if skipped:
            logger.debug(f"🔄 {station_id} skipped: {', '.join(skipped)}")

        return PollutantReading(
            station_id=station_id,
            timestamp=timestamp,
            latitude=_coordinate(payload, 'lat', station_id),
            longitude=_coordinate(payload, 'lon', station_id),
            values=values,
        )
