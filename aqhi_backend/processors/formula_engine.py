#!/usr/bin/env python3
"""
🧮 AQHI FORMULA ENGINE
=====================
Excess-risk health index for several regional standards.

FORMULA:
    AQHI = (10 / C) × S × Σ_i s_i × (exp(β_i × x_i) - 1)

- C: variant scaling constant
- β_i: per-pollutant coefficient, x_i in the unit the variant requires
- s_i: per-term multiplier (Thai %ER: 100 on every term)
- S: multiplier applied after summation (Canadian: 100 on the sum)

Where the ×100 sits is part of each variant's definition. Putting it on the
wrong side only gives the same number when every term carries it, so each
variant states both s_i and S explicitly.

A missing pollutant contributes exactly 0 to the sum.

VARIANTS:
- thai:      C=105.19, β PM2.5 0.0022 (μg/m³), O3 0.0010 (ppb), NO2 0.0030 (ppb), floor 0
- canadian:  C=10.4, β PM2.5 0.000487 (μg/m³), O3 0.000537 (ppb), NO2 0.000871 (ppb), floor 1
- pm25_only: Thai constants restricted to PM2.5, floor 0
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Union

from aqhi_backend.exceptions import InvalidConfiguration
from aqhi_backend.models import (
    NO_DATA_LEVEL, PPB, UG_M3,
    CalculationMethod, Concentration, HealthIndexResult, Pollutant, RiskLevel,
)
from aqhi_backend.processors.concentration_normalizer import ConcentrationNormalizer

logger = logging.getLogger(__name__)

LEVEL_KEYS = ('LOW', 'MODERATE', 'HIGH', 'VERY_HIGH')

THAI_LEVELS = (
    RiskLevel('LOW', 'Low', 0, 3.9, '#10b981', 'Ideal air quality for outdoor activities'),
    RiskLevel('MODERATE', 'Moderate', 4, 6.9, '#f59e0b',
              'No need to modify outdoor activities unless experiencing symptoms'),
    RiskLevel('HIGH', 'High', 7, 10.9, '#ef4444',
              'Consider reducing or rescheduling strenuous outdoor activities'),
    RiskLevel('VERY_HIGH', 'Very High', 11, math.inf, '#7f1d1d',
              'Reduce or reschedule strenuous outdoor activities'),
)

CANADIAN_LEVELS = (
    RiskLevel('LOW', 'Low', 1, 3, '#10b981', 'Ideal air quality for outdoor activities'),
    RiskLevel('MODERATE', 'Moderate', 4, 6, '#f59e0b',
              'No need to modify outdoor activities unless experiencing symptoms'),
    RiskLevel('HIGH', 'High', 7, 10, '#ef4444',
              'Consider reducing or rescheduling strenuous outdoor activities'),
    RiskLevel('VERY_HIGH', 'Very High', 11, math.inf, '#7f1d1d',
              'Reduce or reschedule strenuous outdoor activities'),
)


def round_half_up(value: float, precision: int) -> Union[int, float]:
    quantum = Decimal(1).scaleb(-precision)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if precision == 0 else float(rounded)


@dataclass(frozen=True)
class FormulaVariant:
    """One regional AQHI standard"""
    name: str
    scaling_constant: float
    betas: Mapping[Pollutant, float]
    units: Mapping[Pollutant, str]
    term_scale: Mapping[Pollutant, float]
    sum_scale: float
    floor: float
    levels: tuple
    precision: int = 0
    description: str = ''
    # Scored when measured; never reported missing nor fetched from the supplement
    optional_pollutants: FrozenSet[Pollutant] = frozenset()

    @property
    def pollutants(self) -> List[Pollutant]:
        return list(self.betas)

    @property
    def required_pollutants(self) -> List[Pollutant]:
        return [p for p in self.betas if p not in self.optional_pollutants]

    def validate(self, normalizer: ConcentrationNormalizer):
        if not self.name:
            raise InvalidConfiguration("Formula variant needs a name")
        if not self.scaling_constant or self.scaling_constant <= 0 or not math.isfinite(self.scaling_constant):
            raise InvalidConfiguration(f"{self.name}: scaling constant must be positive, got {self.scaling_constant}")
        if not self.betas:
            raise InvalidConfiguration(f"{self.name}: no beta coefficients")
        if not self.required_pollutants:
            raise InvalidConfiguration(f"{self.name}: every pollutant is optional")
        unscored = set(self.optional_pollutants) - set(self.betas)
        if unscored:
            raise InvalidConfiguration(
                f"{self.name}: optional pollutants without a beta: {', '.join(sorted(p.value for p in unscored))}"
            )
        if self.precision < 0:
            raise InvalidConfiguration(f"{self.name}: precision cannot be negative")
        if not math.isfinite(self.sum_scale) or self.sum_scale <= 0:
            raise InvalidConfiguration(f"{self.name}: sum scale must be positive")

        for pollutant, beta in self.betas.items():
            if not isinstance(pollutant, Pollutant):
                raise InvalidConfiguration(f"{self.name}: unknown pollutant {pollutant}")
            if not math.isfinite(beta) or beta <= 0:
                raise InvalidConfiguration(f"{self.name}: beta for {pollutant.value} must be positive, got {beta}")
            unit = self.units.get(pollutant)
            if unit is None or not normalizer.supports_unit(pollutant, unit):
                raise InvalidConfiguration(f"{self.name}: unsupported unit {unit} for {pollutant.value}")
            scale = self.term_scale.get(pollutant, 1.0)
            if not math.isfinite(scale) or scale <= 0:
                raise InvalidConfiguration(f"{self.name}: term scale for {pollutant.value} must be positive")

        if [level.key for level in self.levels] != list(LEVEL_KEYS):
            raise InvalidConfiguration(f"{self.name}: levels must be {', '.join(LEVEL_KEYS)} in order")
        for lower, upper in zip(self.levels, self.levels[1:]):
            if lower.max_value >= upper.min_value or lower.min_value > lower.max_value:
                raise InvalidConfiguration(f"{self.name}: level {lower.key} overlaps {upper.key}")


THAI_VARIANT = FormulaVariant(
    name='thai',
    scaling_constant=105.19,
    betas={Pollutant.PM25: 0.0022, Pollutant.PM10: 0.0009, Pollutant.O3: 0.0010, Pollutant.NO2: 0.0030},
    units={Pollutant.PM25: UG_M3, Pollutant.PM10: UG_M3, Pollutant.O3: PPB, Pollutant.NO2: PPB},
    term_scale={Pollutant.PM25: 100.0, Pollutant.PM10: 100.0, Pollutant.O3: 100.0, Pollutant.NO2: 100.0},
    sum_scale=1.0,
    floor=0,
    levels=THAI_LEVELS,
    description='Thai Health Department AQHI (OPD morbidity), %ER per pollutant',
    optional_pollutants=frozenset({Pollutant.PM10}),
)

CANADIAN_VARIANT = FormulaVariant(
    name='canadian',
    scaling_constant=10.4,
    betas={Pollutant.PM25: 0.000487, Pollutant.O3: 0.000537, Pollutant.NO2: 0.000871},
    units={Pollutant.PM25: UG_M3, Pollutant.O3: PPB, Pollutant.NO2: PPB},
    term_scale={Pollutant.PM25: 1.0, Pollutant.O3: 1.0, Pollutant.NO2: 1.0},
    sum_scale=100.0,
    floor=1,
    levels=CANADIAN_LEVELS,
    description='Health Canada AQHI, ×100 applied to the summed risk',
)

PM25_ONLY_VARIANT = FormulaVariant(
    name='pm25_only',
    scaling_constant=105.19,
    betas={Pollutant.PM25: 0.0022},
    units={Pollutant.PM25: UG_M3},
    term_scale={Pollutant.PM25: 100.0},
    sum_scale=1.0,
    floor=0,
    levels=THAI_LEVELS,
    description='Diagnostic: Thai constants with PM2.5 as the only term',
)

DEFAULT_VARIANTS = (THAI_VARIANT, CANADIAN_VARIANT, PM25_ONLY_VARIANT)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FormulaOutput:
    """Raw evaluation before it is wrapped into a HealthIndexResult"""
    raw_value: float
    value: Union[int, float]
    risk_components: Dict[Pollutant, float] = field(default_factory=dict)
    missing_pollutants: List[Pollutant] = field(default_factory=list)


class FormulaEngine:
    """
    Evaluates AQHI variants from concentrations
    """

    def __init__(self, variants=DEFAULT_VARIANTS,
                 normalizer: Optional[ConcentrationNormalizer] = None,
                 clock: Callable[[], datetime] = _utc_now):
        self.normalizer = normalizer or ConcentrationNormalizer()
        self.clock = clock
        self.variants: Dict[str, FormulaVariant] = {}
        for variant in variants:
            variant.validate(self.normalizer)
            if variant.name in self.variants:
                raise InvalidConfiguration(f"Duplicate formula variant: {variant.name}")
            self.variants[variant.name] = variant

    def get_variant(self, name: str) -> FormulaVariant:
        variant = self.variants.get(name)
        if variant is None:
            raise InvalidConfiguration(
                f"Unknown formula variant '{name}', expected one of {', '.join(sorted(self.variants))}"
            )
        return variant

    def classify(self, value: float, variant: Union[str, FormulaVariant]) -> RiskLevel:
        if not isinstance(variant, FormulaVariant):
            variant = self.get_variant(variant)
        if value is None or (isinstance(value, float) and math.isnan(value)):
            return NO_DATA_LEVEL
        for level in variant.levels:
            if level.contains(value):
                return level
        # Values in the gap between two tiers (e.g. 3.95) fall to the upper tier
        for level in variant.levels:
            if value < level.min_value:
                return level
        return variant.levels[-1]

    def compute(self, variant: FormulaVariant,
                concentrations: Mapping[Pollutant, Optional[Concentration]]) -> FormulaOutput:
        components = {}
        missing = []
        total = 0.0

        for pollutant in variant.pollutants:
            concentration = concentrations.get(pollutant)
            if concentration is None:
                components[pollutant] = 0.0
                if pollutant not in variant.optional_pollutants:
                    missing.append(pollutant)
                continue

            try:
                x = self.normalizer.to_formula_unit(concentration, pollutant, variant.units[pollutant]).value
            except InvalidConfiguration as e:
                logger.warning(f"⚠️ Treating {pollutant.value.upper()} as missing: {e}")
                components[pollutant] = 0.0
                if pollutant not in variant.optional_pollutants:
                    missing.append(pollutant)
                continue
            term = variant.term_scale.get(pollutant, 1.0) * (math.exp(variant.betas[pollutant] * x) - 1)
            components[pollutant] = term * variant.sum_scale
            total += term

        raw_value = (10.0 / variant.scaling_constant) * variant.sum_scale * total
        value = round_half_up(max(variant.floor, raw_value), variant.precision)

        return FormulaOutput(raw_value=raw_value, value=value,
                             risk_components=components, missing_pollutants=missing)

    def evaluate(self, variant: Union[str, FormulaVariant],
                 concentrations: Mapping[Pollutant, Optional[Concentration]],
                 station_id: str = '',
                 calculation_method: CalculationMethod = CalculationMethod.CURRENT) -> HealthIndexResult:
        """Evaluate one variant; unknown variant names raise InvalidConfiguration"""
        if not isinstance(variant, FormulaVariant):
            variant = self.get_variant(variant)

        output = self.compute(variant, concentrations)
        level = self.classify(output.value, variant)

        logger.debug(
            f"🧮 {variant.name} {station_id}: "
            + ", ".join(f"{p.value.upper()}={v:.4f}" for p, v in output.risk_components.items())
            + f" → {output.raw_value:.3f} → {output.value} ({level.label})"
        )

        return HealthIndexResult(
            station_id=station_id,
            variant=variant.name,
            value=output.value,
            risk_components=output.risk_components,
            level=level,
            calculation_method=calculation_method,
            computed_at=self.clock(),
            missing_pollutants=output.missing_pollutants,
        )
