import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, TypeVar

from api.schemas import AnalysisResult, HistoricalComparable
from models.analyzer import DrawingAnalyzer
from models.costing import CostEstimationFailed
from models.vision import AnalysisFailed
from .errors import (
    AnalysisError,
    CostingError,
    MissingFile,
    PipelineError,
    PipelineTimeout,
)
from .preprocess import ImagePreprocessor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT = 180.0
COMPARABLES_LIMIT = 5


class PipelineState(str, enum.Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    PREPROCESSED = "preprocessed"
    ANALYZED = "analyzed"
    COSTED = "costed"
    COMPLETED = "completed"
    FAILED = "failed"


STAGE_MESSAGES = {
    PipelineState.RECEIVED: "Upload received",
    PipelineState.VALIDATED: "File validated",
    PipelineState.PREPROCESSED: "Image optimized for analysis",
    PipelineState.ANALYZED: "Drawing analyzed",
    PipelineState.COSTED: "Cost estimated",
    PipelineState.COMPLETED: "Quote ready",
}


@dataclass(frozen=True)
class UploadedImage:
    filename: str | None
    content_type: str | None
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class StageEvent:
    state: PipelineState
    step: int
    total_steps: int
    message: str
    elapsed_ms: int
    result: AnalysisResult | None = None
    detail: dict = field(default_factory=dict)


def new_document_id() -> str:
    """DOC-<epoch ms>-<random suffix>; the suffix keeps same-millisecond uploads apart."""
    return f"DOC-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class UploadPipeline:
    """Validate -> preprocess -> extract -> estimate, one request at a time.

    Holds only configuration and injected collaborators; every run keeps its
    state on the stack, so one instance serves concurrent requests.
    """

    TOTAL_STEPS = 5

    def __init__(
        self,
        analyzer: DrawingAnalyzer,
        preprocessor: ImagePreprocessor | None = None,
        comparables=None,
        archive_dir: str | Path | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.analyzer = analyzer
        self.preprocessor = preprocessor or ImagePreprocessor()
        self.comparables = comparables
        self.archive_dir = Path(archive_dir) if archive_dir else None
        self.request_timeout = request_timeout

    async def run(self, upload: UploadedImage) -> AnalysisResult:
        """Run the whole pipeline and return the composed result."""
        result = None
        async for event in self.stages(upload):
            if event.state is PipelineState.COMPLETED:
                result = event.result
        return result

    async def stages(self, upload: UploadedImage) -> AsyncIterator[StageEvent]:
        """Yield one StageEvent per state transition; raise PipelineError on failure."""
        t0 = time.monotonic()
        deadline = t0 + self.request_timeout
        state = PipelineState.RECEIVED
        warnings: list[str] = []

        def event(new_state: PipelineState, step: int, **kwargs) -> StageEvent:
            return StageEvent(
                state=new_state,
                step=step,
                total_steps=self.TOTAL_STEPS,
                message=STAGE_MESSAGES[new_state],
                elapsed_ms=int((time.monotonic() - t0) * 1000),
                **kwargs,
            )

        logger.info(
            "Upload received: filename=%s content_type=%s size=%d",
            upload.filename, upload.content_type, upload.size,
        )
        try:
            # received -> validated
            if not upload.data or not upload.filename:
                raise MissingFile("No file uploaded", stage="validation")
            self.preprocessor.check(upload.content_type, upload.size)
            state = PipelineState.VALIDATED
            yield event(state, 1)

            # validated -> preprocessed
            processed = await self._bounded(
                asyncio.to_thread(self.preprocessor.preprocess, upload.data, upload.content_type),
                deadline, "preprocessing",
            )
            state = PipelineState.PREPROCESSED
            yield event(state, 2, detail={"originalBytes": upload.size, "processedBytes": len(processed)})

            # preprocessed -> analyzed
            try:
                extraction = await self._bounded(self.analyzer.extract(processed), deadline, "analysis")
            except AnalysisFailed as e:
                raise AnalysisError(str(e), stage="analysis", cause=e) from e
            warnings.extend(extraction.warnings)
            state = PipelineState.ANALYZED
            yield event(state, 3, detail={
                "material": extraction.specs.material.type,
                "confidence": extraction.confidence,
            })

            # analyzed -> costed
            comparables = await self._safe_comparables(extraction.specs.material.type)
            try:
                costing = await self._bounded(
                    self.analyzer.estimate(extraction.specs, comparables), deadline, "costing"
                )
            except CostEstimationFailed as e:
                raise CostingError(str(e), stage="costing", cause=e) from e
            warnings.extend(costing.warnings)
            state = PipelineState.COSTED
            yield event(state, 4, detail={"total": costing.estimate.total, "currency": costing.estimate.currency})

            # costed -> completed
            document_id = new_document_id()
            filename = f"drawing-{document_id[4:]}.jpg"
            archive_warning = await self._archive(filename, processed)
            if archive_warning:
                warnings.append(archive_warning)

            result = AnalysisResult(
                document_id=document_id,
                filename=filename,
                original_filename=upload.filename,
                specs=extraction.specs,
                analysis_confidence=extraction.confidence,
                costing=costing.estimate,
                warnings=warnings,
            )
            state = PipelineState.COMPLETED
            logger.info(
                "Pipeline completed: document_id=%s total=%.0f in %dms (%d warnings)",
                document_id, result.costing.total, int((time.monotonic() - t0) * 1000), len(warnings),
            )
            yield event(state, 5, result=result)

        except PipelineError as e:
            logger.warning(
                "Pipeline failed at %s -> failed: %s (%s)", state.value, e.message, e.error_type
            )
            raise

    async def _bounded(self, aw: Awaitable[T], deadline: float, stage: str) -> T:
        """Await ``aw`` within what is left of the request budget."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise PipelineTimeout(
                f"Request exceeded {self.request_timeout:g}s before {stage}", stage=stage
            )
        try:
            return await asyncio.wait_for(aw, timeout=remaining)
        except asyncio.TimeoutError as e:
            logger.error("Pipeline deadline hit during %s", stage)
            raise PipelineTimeout(
                f"Request exceeded {self.request_timeout:g}s during {stage}", stage=stage, cause=e
            ) from e

    async def _safe_comparables(self, material_type: str) -> list[HistoricalComparable]:
        """Comparables with graceful degradation."""
        if self.comparables is None:
            return []
        try:
            return await self.comparables.find_similar(material_type, limit=COMPARABLES_LIMIT)
        except Exception as e:
            logger.warning("Comparables lookup failed, estimating without history: %s", e)
            return []

    async def _archive(self, filename: str, data: bytes) -> str | None:
        """Keep a copy of the processed drawing. Failure is a warning, never an error."""
        if self.archive_dir is None:
            return None
        try:
            await asyncio.to_thread(_write_file, self.archive_dir, filename, data)
        except OSError as e:
            logger.warning("Could not archive %s: %s", filename, e)
            return f"Drawing could not be archived: {e.strerror or e}"
        logger.info("Archived processed drawing to %s", self.archive_dir / filename)
        return None


def _write_file(directory: Path, filename: str, data: bytes) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    # "xb" refuses to overwrite another request's file.
    with open(directory / filename, "xb") as f:
        f.write(data)
