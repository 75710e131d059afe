import logging
import time
from typing import Annotated, NamedTuple

from pydantic import BeforeValidator, Field, ValidationError

from api.schemas import CostEstimate, DrawingSpecs, HistoricalComparable
from .capability import (
    MalformedResponseError,
    ModelCapability,
    RemoteUnavailableError,
    generate_validated,
)
from .prompts import COST_ESTIMATE_SCHEMA, MAX_COMPARABLES, build_cost_prompt
from .wire import Text, TextList, WireModel, clamp_confidence

logger = logging.getLogger(__name__)

DEFAULT_COST_CONFIDENCE = 0.5
# Tolerance before the model's own total is replaced by the component sum.
RECONCILE_REL_TOL = 0.01
RECONCILE_ABS_TOL = 1.0


class CostEstimationFailed(Exception):
    """Raised when cost estimation fails; ``cause`` holds the classified error."""

    error_type = "CostEstimationFailed"

    def __init__(self, message: str, cause: Exception):
        super().__init__(message)
        self.cause = cause


class CostingResult(NamedTuple):
    estimate: CostEstimate
    warnings: list[str]


def _wrap_number(key: str):
    """Accept a bare number where a nested object was asked for."""
    def wrap(value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return {key: value}
        return value
    return BeforeValidator(wrap)


Amount = Annotated[float | None, Field(allow_inf_nan=False)]


class _RawCostLine(WireModel):
    total_cost: Amount = None
    unit_price: Amount = None
    estimated_hours: Amount = None
    hourly_rate: Amount = None
    reasoning: Text = None


class _RawOverhead(WireModel):
    percentage: Amount = None
    amount: Amount = None


class _RawTotal(WireModel):
    cost: Amount = None
    recommended_price: Amount = None
    margin: Amount = None


class _RawCostEstimate(WireModel):
    material: Annotated[_RawCostLine | None, _wrap_number("totalCost")] = None
    labor: Annotated[_RawCostLine | None, _wrap_number("totalCost")] = None
    overhead: Annotated[_RawOverhead | None, _wrap_number("amount")] = None
    total: Annotated[_RawTotal | None, _wrap_number("cost")] = None
    confidence: float | None = None
    reasoning: Text = None
    risk_factors: TextList = []
    currency: Text = None


def _require(value: float | None, label: str) -> float:
    if value is None:
        raise MalformedResponseError(f"Cost estimate is missing {label}")
    if value < 0:
        raise MalformedResponseError(f"Cost estimate has negative {label}: {value}")
    return float(value)


def decode_cost_estimate(data: dict) -> CostingResult:
    """Validate a raw cost reply into a CostEstimate, reconciling the total.

    The model computes all four figures independently, so the total is
    recomputed from material + labor + overhead whenever the two disagree.
    """
    try:
        raw = _RawCostEstimate.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(f"Cost response failed validation: {e}") from e

    warnings: list[str] = []
    material = _require(raw.material and raw.material.total_cost, "material cost")
    labor = _require(raw.labor and raw.labor.total_cost, "labor cost")
    overhead = _require(raw.overhead and raw.overhead.amount, "overhead")
    component_sum = material + labor + overhead

    model_total = raw.total.cost if raw.total else None
    if model_total is None:
        warnings.append("Model omitted the total; computed from material + labor + overhead")
        total = component_sum
    else:
        total = _require(model_total, "total")

    estimate_fields = dict(
        material=material,
        labor=labor,
        overhead=overhead,
        total=total,
        confidence=clamp_confidence(raw.confidence, "Cost confidence", warnings, default=DEFAULT_COST_CONFIDENCE),
        reasoning=raw.reasoning or None,
        currency=raw.currency or "JPY",
        labor_hours=raw.labor.estimated_hours,
        hourly_rate=raw.labor.hourly_rate,
        recommended_price=raw.total.recommended_price if raw.total else None,
        risk_factors=raw.risk_factors,
    )
    try:
        estimate = CostEstimate(**estimate_fields)
    except ValidationError as e:
        raise MalformedResponseError(f"Cost response failed validation: {e}") from e

    if not estimate.is_reconciled(rel_tol=RECONCILE_REL_TOL, abs_tol=RECONCILE_ABS_TOL):
        warnings.append(
            f"Model total {estimate.total:g} did not match material + labor + overhead "
            f"({component_sum:g}); using the component sum"
        )
        logger.warning("Reconciled cost total %.2f -> %.2f", estimate.total, component_sum)
        estimate = estimate.model_copy(update={"total": component_sum})

    return CostingResult(estimate=estimate, warnings=warnings)


class CostEstimator:
    """Layer 2: price a part from its DrawingSpecs and optional past quotes."""

    def __init__(
        self,
        capability: ModelCapability,
        structured_output: bool = True,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ):
        self.capability = capability
        self.structured_output = structured_output
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    async def estimate(
        self,
        specs: DrawingSpecs,
        comparables: list[HistoricalComparable] | tuple = (),
    ) -> CostingResult:
        comparables = list(comparables)[:MAX_COMPARABLES]
        prompt = build_cost_prompt(
            specs.model_dump(mode="json", by_alias=True, exclude_none=True),
            [c.model_dump(mode="json", by_alias=True, exclude_none=True) for c in comparables],
        )

        t0 = time.monotonic()
        logger.info(
            "Cost estimation starting (material=%s, quantity=%d, comparables=%d)",
            specs.material.type, specs.quantity, len(comparables),
        )
        try:
            result = await generate_validated(
                self.capability,
                prompt,
                decode_cost_estimate,
                schema=COST_ESTIMATE_SCHEMA,
                structured=self.structured_output,
                max_retries=self.max_retries,
                retry_base_delay=self.retry_base_delay,
                label="cost estimation",
            )
        except (RemoteUnavailableError, MalformedResponseError) as e:
            logger.error("Cost estimation failed: %s", e)
            raise CostEstimationFailed(f"Failed to estimate cost: {e}", cause=e) from e

        logger.info(
            "Cost estimation completed in %dms (total=%.0f %s, confidence=%.2f)",
            int((time.monotonic() - t0) * 1000),
            result.estimate.total, result.estimate.currency, result.estimate.confidence,
        )
        return result
