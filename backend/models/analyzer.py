import logging

from api.schemas import DrawingSpecs, HistoricalComparable
from .capability import ModelCapability
from .costing import CostEstimator, CostingResult
from .vision import ExtractionResult, VisionExtractor

logger = logging.getLogger(__name__)


class DrawingAnalyzer:
    """Single entry point over one model provider: extract, estimate, test_connection.

    The provider is chosen by configuration and injected, so tests can pass a
    fake capability without touching process-wide state.
    """

    def __init__(
        self,
        capability: ModelCapability,
        structured_output: bool = True,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ):
        self.capability = capability
        self.extractor = VisionExtractor(
            capability,
            structured_output=structured_output,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
        )
        self.estimator = CostEstimator(
            capability,
            structured_output=structured_output,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
        )

    @property
    def provider(self) -> str:
        return self.capability.name

    @property
    def model(self) -> str:
        return self.capability.model

    async def extract(self, image: bytes) -> ExtractionResult:
        return await self.extractor.extract(image)

    async def estimate(
        self, specs: DrawingSpecs, comparables: list[HistoricalComparable] | tuple = ()
    ) -> CostingResult:
        return await self.estimator.estimate(specs, comparables)

    async def test_connection(self) -> bool:
        connected = await self.capability.health_check()
        logger.info("Model connection test: provider=%s model=%s connected=%s", self.provider, self.model, connected)
        return connected

    async def close(self):
        await self.capability.close()
