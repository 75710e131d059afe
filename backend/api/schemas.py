import math
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Unit = Literal["mm", "cm", "inch", "m"]


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire (the UI's naming)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Dimensions(CamelModel):
    length: float | None = None
    width: float | None = None
    height: float | None = None
    thickness: float | None = None
    diameter: float | None = None
    unit: Unit = "mm"


class MaterialSpec(CamelModel):
    type: str
    grade: str | None = None
    specifications: str | None = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)


class DrawingSpecs(CamelModel):
    dimensions: Dimensions = Field(default_factory=Dimensions)
    material: MaterialSpec
    quantity: int = Field(1, ge=1)
    surface_finish: str | None = None
    tolerances: list[str] = []
    manufacturing_process: list[str] = []


class CostEstimate(CamelModel):
    material: float = Field(ge=0.0)
    labor: float = Field(ge=0.0)
    overhead: float = Field(ge=0.0)
    total: float = Field(ge=0.0)
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str | None = None
    currency: str = "JPY"
    labor_hours: float | None = None
    hourly_rate: float | None = None
    recommended_price: float | None = None
    risk_factors: list[str] = []

    def component_sum(self) -> float:
        return self.material + self.labor + self.overhead

    def is_reconciled(self, rel_tol: float = 0.01, abs_tol: float = 1.0) -> bool:
        """True when total agrees with material + labor + overhead."""
        return math.isclose(self.total, self.component_sum(), rel_tol=rel_tol, abs_tol=abs_tol)


class HistoricalComparable(CamelModel):
    document_id: str
    quoted_on: str
    filename: str | None = None
    material: str
    quantity: int = 1
    dimensions: Dimensions | None = None
    manufacturing_process: list[str] = []
    total: float
    confidence: float | None = None
    status: str | None = None


class AnalysisResult(CamelModel):
    """Outcome of one successful pipeline run. Immutable once built."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    document_id: str
    filename: str
    original_filename: str | None = None
    specs: DrawingSpecs
    analysis_confidence: float = Field(ge=0.0, le=1.0)
    costing: CostEstimate
    warnings: list[str] = []


class AnalysisPayload(CamelModel):
    specs: DrawingSpecs
    confidence: float


class UploadResponse(CamelModel):
    success: bool = True
    document_id: str
    filename: str
    original_filename: str | None = None
    analysis: AnalysisPayload
    costing: CostEstimate
    warnings: list[str] = []
    message: str = "Drawing analyzed successfully"

    @classmethod
    def from_result(cls, result: AnalysisResult) -> "UploadResponse":
        return cls(
            document_id=result.document_id,
            filename=result.filename,
            original_filename=result.original_filename,
            analysis=AnalysisPayload(specs=result.specs, confidence=result.analysis_confidence),
            costing=result.costing,
            warnings=list(result.warnings),
        )


class ErrorResponse(CamelModel):
    success: bool = False
    error: str
    error_type: str | None = None
    category: str | None = None
    stage: str | None = None
    traceback: str | None = None


class ConnectionTestResponse(CamelModel):
    success: bool = True
    connected: bool
    provider: str
    model: str
    message: str


class HealthResponse(CamelModel):
    success: bool = True
    status: str = "ok"
    timestamp: str
    service: str = "quotation-ai-backend"


class ComparablesResponse(CamelModel):
    success: bool = True
    comparables: list[HistoricalComparable] = []
