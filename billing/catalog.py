"""Phases come from the catalog document as plain dicts; ``phase_from_dict``
builds the immutable values and ``PlanPhase.validate`` returns the list of
problems instead of raising, so a whole catalog can be checked in one pass.
"""

import enum
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Tuple

from billing.errors import CatalogApiException, CatalogValidationException, ErrorCode


class PhaseType(str, enum.Enum):
    TRIAL = "TRIAL"
    DISCOUNT = "DISCOUNT"
    FIXEDTERM = "FIXEDTERM"
    EVERGREEN = "EVERGREEN"


class TimeUnit(str, enum.Enum):
    DAYS = "DAYS"
    WEEKS = "WEEKS"
    MONTHS = "MONTHS"
    YEARS = "YEARS"
    UNLIMITED = "UNLIMITED"


class BillingPeriod(str, enum.Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"
    NO_BILLING_PERIOD = "NO_BILLING_PERIOD"


class ValidationErrorKind(str, enum.Enum):
    MISSING_PRICING_SECTION = "MISSING_PRICING_SECTION"
    INVALID_DURATION = "INVALID_DURATION"
    INVALID_PRICE = "INVALID_PRICE"
    INVALID_BILLING_PERIOD = "INVALID_BILLING_PERIOD"
    INVALID_LIMIT = "INVALID_LIMIT"


@dataclass(frozen=True)
class ValidationError:
    kind: ValidationErrorKind
    message: str
    source_uri: str
    object_type: str
    object_name: str


@dataclass(frozen=True)
class Duration:
    unit: TimeUnit
    number: int = -1


@dataclass(frozen=True)
class Price:
    currency: str
    value: Decimal


@dataclass(frozen=True)
class Fixed:
    prices: Tuple[Price, ...]


@dataclass(frozen=True)
class Recurring:
    billing_period: BillingPeriod
    prices: Tuple[Price, ...]


@dataclass(frozen=True)
class Limit:
    unit: str
    min: Optional[Decimal] = None
    max: Optional[Decimal] = None

    def complies_with(self, value: Decimal) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


@dataclass(frozen=True)
class Usage:
    name: str
    billing_period: BillingPeriod
    limits: Tuple[Limit, ...] = ()

    def complies_with_limits(self, unit: str, value: Decimal) -> bool:
        return all(limit.complies_with(value) for limit in self.limits if limit.unit == unit)


def phase_name(plan_name: str, phase_type: PhaseType) -> str:
    return f"{plan_name}-{PhaseType(phase_type).value.lower()}"


def plan_name(phase_name: str) -> str:
    suffixes = sorted((f"-{phase_type.value.lower()}" for phase_type in PhaseType), key=len, reverse=True)
    for suffix in suffixes:
        if phase_name.endswith(suffix) and len(phase_name) > len(suffix):
            return phase_name[: -len(suffix)]
    raise CatalogApiException(ErrorCode.CAT_BAD_PHASE_NAME, phase_name)


@dataclass(frozen=True)
class PlanPhase:
    plan_name: str
    phase_type: PhaseType
    duration: Duration
    fixed: Optional[Fixed] = None
    recurring: Optional[Recurring] = None
    usages: Tuple[Usage, ...] = ()

    @property
    def name(self) -> str:
        return phase_name(self.plan_name, self.phase_type)

    def complies_with_limits(self, unit: str, value: Decimal, product_limits: Iterable[Limit] = ()) -> bool:
        if not all(usage.complies_with_limits(unit, value) for usage in self.usages):
            return False
        return all(limit.complies_with(value) for limit in product_limits if limit.unit == unit)

    def validate(self, catalog_uri: str) -> List[ValidationError]:
        errors = []

        def error(kind, message):
            errors.append(ValidationError(kind, message, catalog_uri, "PlanPhase", self.name))

        if self.fixed is None and self.recurring is None and not self.usages:
            error(ValidationErrorKind.MISSING_PRICING_SECTION,
                  f"Phase {self.phase_type.value} of plan {self.plan_name} needs to define at least "
                  f"either a fixed or recurring or usage section.")

        if self.duration.unit is not TimeUnit.UNLIMITED and self.duration.number < 1:
            error(ValidationErrorKind.INVALID_DURATION,
                  f"Phase {self.name} has a {self.duration.unit.value} duration of {self.duration.number}")

        if self.fixed is not None:
            self._validate_prices("fixed", self.fixed.prices, error)
        if self.recurring is not None:
            if not self.recurring.prices:
                error(ValidationErrorKind.INVALID_PRICE, f"Recurring section of phase {self.name} has no price")
            if self.recurring.billing_period is BillingPeriod.NO_BILLING_PERIOD:
                error(ValidationErrorKind.INVALID_BILLING_PERIOD,
                      f"Recurring section of phase {self.name} needs a billing period")
            self._validate_prices("recurring", self.recurring.prices, error)

        for usage in self.usages:
            for limit in usage.limits:
                if limit.min is not None and limit.max is not None and limit.min > limit.max:
                    error(ValidationErrorKind.INVALID_LIMIT,
                          f"Usage {usage.name} of phase {self.name} has min {limit.min} above max {limit.max} "
                          f"for unit {limit.unit}")
        return errors

    def _validate_prices(self, section: str, prices, error) -> None:
        seen = set()
        for price in prices:
            if len(price.currency) != 3 or not price.currency.isalpha():
                error(ValidationErrorKind.INVALID_PRICE,
                      f"The {section} section of phase {self.name} has an invalid currency {price.currency!r}")
            if price.value < 0:
                error(ValidationErrorKind.INVALID_PRICE,
                      f"The {section} section of phase {self.name} has a negative {price.currency} price")
            if price.currency in seen:
                error(ValidationErrorKind.INVALID_PRICE,
                      f"The {section} section of phase {self.name} prices {price.currency} twice")
            seen.add(price.currency)


def validate_phases(phases: Iterable[PlanPhase], catalog_uri: str) -> List[PlanPhase]:
    """Validate all phases, raising once with every problem found."""
    phases = list(phases)
    errors = [error for phase in phases for error in phase.validate(catalog_uri)]
    if errors:
        raise CatalogValidationException(catalog_uri, errors)
    return phases


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _prices(data) -> Tuple[Price, ...]:
    return tuple(Price(currency=item["currency"].upper(), value=_decimal(item["value"])) for item in data or ())


def phase_from_dict(plan_name: str, data: dict) -> PlanPhase:
    try:
        duration = data.get("duration") or {}
        fixed = data.get("fixed")
        recurring = data.get("recurring")
        return PlanPhase(
            plan_name=plan_name,
            phase_type=PhaseType(data["type"]),
            duration=Duration(TimeUnit(duration.get("unit", TimeUnit.UNLIMITED.value)),
                              int(duration.get("number", -1))),
            fixed=Fixed(_prices(fixed.get("prices"))) if fixed is not None else None,
            recurring=Recurring(BillingPeriod(recurring.get("billing_period", BillingPeriod.NO_BILLING_PERIOD.value)),
                                _prices(recurring.get("prices"))) if recurring is not None else None,
            usages=tuple(
                Usage(
                    name=usage["name"],
                    billing_period=BillingPeriod(usage.get("billing_period", BillingPeriod.MONTHLY.value)),
                    limits=tuple(Limit(limit["unit"], _decimal(limit.get("min")), _decimal(limit.get("max")))
                                 for limit in usage.get("limits", ())),
                )
                for usage in data.get("usages", ())
            ),
        )
    except (KeyError, ValueError, TypeError, AttributeError, InvalidOperation) as exc:
        raise CatalogApiException(ErrorCode.CAT_INVALID_CATALOG, plan_name, repr(exc)) from exc
