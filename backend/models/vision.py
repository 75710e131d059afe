import logging
import math
import time
from typing import NamedTuple

from pydantic import Field, ValidationError

from api.schemas import Dimensions, DrawingSpecs, MaterialSpec
from .capability import (
    MalformedResponseError,
    ModelCapability,
    RemoteUnavailableError,
    generate_validated,
)
from .prompts import DRAWING_SPECS_SCHEMA, EXTRACTION_PROMPT
from .wire import Text, TextList, WireModel, clamp_confidence

logger = logging.getLogger(__name__)

DEFAULT_OVERALL_CONFIDENCE = 0.5
DIMENSION_FIELDS = ("length", "width", "height", "thickness", "diameter")

UNIT_ALIASES = {
    "mm": "mm", "millimeter": "mm", "millimeters": "mm", "millimetre": "mm", "millimetres": "mm",
    "cm": "cm", "centimeter": "cm", "centimeters": "cm", "centimetre": "cm", "centimetres": "cm",
    "inch": "inch", "inches": "inch", "in": "inch", '"': "inch",
    "m": "m", "meter": "m", "meters": "m", "metre": "m", "metres": "m",
}


class AnalysisFailed(Exception):
    """Raised when drawing extraction fails; ``cause`` holds the classified error."""

    error_type = "AnalysisFailed"

    def __init__(self, message: str, cause: Exception):
        super().__init__(message)
        self.cause = cause


class ExtractionResult(NamedTuple):
    specs: DrawingSpecs
    confidence: float
    warnings: list[str]


class _RawDimensions(WireModel):
    length: float | None = None
    width: float | None = None
    height: float | None = None
    thickness: float | None = None
    diameter: float | None = None
    unit: str | None = None


class _RawMaterial(WireModel):
    type: Text = None
    grade: Text = None
    specifications: Text = None
    confidence: float | None = None


class _RawExtraction(WireModel):
    dimensions: _RawDimensions | None = None
    material: _RawMaterial | None = None
    quantity: float | None = Field(None, allow_inf_nan=False)
    surface_finish: Text = None
    tolerances: TextList = []
    manufacturing_process: TextList = []
    overall_confidence: float | None = None


def _normalize_unit(unit: str | None, has_values: bool, warnings: list[str]) -> str:
    if unit is None or not unit.strip():
        if has_values:
            warnings.append("Dimension unit missing from model response; assuming mm")
        return "mm"
    normalized = UNIT_ALIASES.get(unit.strip().lower())
    if normalized is None:
        raise MalformedResponseError(f"Unrecognised dimension unit: {unit!r}")
    return normalized


def decode_extraction(data: dict) -> ExtractionResult:
    """Validate a raw extraction reply into DrawingSpecs plus overall confidence.

    Raises MalformedResponseError when the reply does not have the expected shape.
    """
    try:
        raw = _RawExtraction.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(f"Extraction response failed validation: {e}") from e

    warnings: list[str] = []

    raw_dims = raw.dimensions or _RawDimensions()
    dims = {}
    for field in DIMENSION_FIELDS:
        value = getattr(raw_dims, field)
        if value is not None and not math.isfinite(value):
            warnings.append(f"Ignored non-finite {field} ({value}) from model response")
            value = None
        elif value is not None and value <= 0:
            warnings.append(f"Ignored non-positive {field} ({value}) from model response")
            value = None
        dims[field] = value
    has_values = any(v is not None for v in dims.values())
    dims["unit"] = _normalize_unit(raw_dims.unit, has_values, warnings)

    raw_material = raw.material or _RawMaterial()
    material_type = (raw_material.type or "").strip()
    if not material_type:
        warnings.append("Material type not identified on drawing")
        material_type = "unspecified"

    quantity = raw.quantity
    if quantity is None:
        quantity = 1
    elif quantity < 1:
        warnings.append(f"Quantity {quantity} from model response is below 1; using 1")
        quantity = 1
    elif quantity != int(quantity):
        warnings.append(f"Fractional quantity {quantity} rounded to {round(quantity)}")
        quantity = max(1, round(quantity))

    material_confidence = clamp_confidence(raw_material.confidence, "Material confidence", warnings)
    try:
        specs = DrawingSpecs(
            dimensions=Dimensions(**dims),
            material=MaterialSpec(
                type=material_type,
                grade=raw_material.grade or None,
                specifications=raw_material.specifications or None,
                confidence=material_confidence,
            ),
            quantity=int(quantity),
            surface_finish=raw.surface_finish or None,
            tolerances=raw.tolerances,
            manufacturing_process=raw.manufacturing_process,
        )
    except ValidationError as e:
        raise MalformedResponseError(f"Extraction response failed validation: {e}") from e

    confidence = clamp_confidence(
        raw.overall_confidence, "Overall confidence", warnings, default=DEFAULT_OVERALL_CONFIDENCE
    )
    return ExtractionResult(specs=specs, confidence=confidence, warnings=warnings)


class VisionExtractor:
    """Layer 1: turn a preprocessed drawing into DrawingSpecs via the remote model."""

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

    async def extract(self, image: bytes) -> ExtractionResult:
        t0 = time.monotonic()
        logger.info("Vision extraction starting (provider=%s, %d bytes)", self.capability.name, len(image))
        try:
            result = await generate_validated(
                self.capability,
                EXTRACTION_PROMPT,
                decode_extraction,
                schema=DRAWING_SPECS_SCHEMA,
                image=image,
                structured=self.structured_output,
                max_retries=self.max_retries,
                retry_base_delay=self.retry_base_delay,
                label="vision extraction",
            )
        except (RemoteUnavailableError, MalformedResponseError) as e:
            logger.error("Vision extraction failed: %s", e)
            raise AnalysisFailed(f"Failed to analyze drawing: {e}", cause=e) from e

        logger.info(
            "Vision extraction completed in %dms (material=%s, quantity=%d, confidence=%.2f)",
            int((time.monotonic() - t0) * 1000),
            result.specs.material.type, result.specs.quantity, result.confidence,
        )
        return result
