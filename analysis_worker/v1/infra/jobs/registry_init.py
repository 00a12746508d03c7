"""
Analyzer registry initialization.

Registers the analyzers the worker can route assessments to.
"""

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.v1.core.registries import DEFAULT_ANALYZER, AnalyzerRegistry, analyzer_registry
from analysis_worker.v1.infra.inference import HttpInferenceProvider, MockAnalyzer
from analysis_worker.v1.infra.jobs.schemas import DEFAULT_ASSESSMENT_NAME

logger = get_logger(__name__)


def register_analyzers(
    settings: Settings, registry: AnalyzerRegistry = analyzer_registry
) -> AnalyzerRegistry:
    """Register the default analyzer and the named assessment analyzers."""

    if DEFAULT_ANALYZER in registry.list():
        return registry

    logger.info("Registering analyzers", use_mock_inference=settings.use_mock_inference)

    if settings.use_mock_inference:
        analyzer = MockAnalyzer()
    else:
        analyzer = HttpInferenceProvider(settings)

    registry.register(DEFAULT_ANALYZER, analyzer)
    registry.register(DEFAULT_ASSESSMENT_NAME, analyzer)

    logger.info("Analyzers registered", registered_analyzers=registry.list())
    return registry
