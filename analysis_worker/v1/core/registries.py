from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Analyzer Registry - turns assessment payloads into analysis results
class Analyzer(Protocol):
    """Protocol for analyzers that call the inference provider."""

    async def analyze(
        self, job_id: str, user_id: str, payload: dict[str, Any], assessment_name: str
    ) -> dict[str, Any]:
        """
        Produce the analysis result for one assessment.

        Returns the result document persisted as ``test_result``, e.g.
        ``{"archetype": str, "shortSummary": str, ...}``. Provider failures
        are raised as InferenceProviderError.
        """
        ...


DEFAULT_ANALYZER = "default"


class AnalyzerRegistry(Registry[Analyzer]):
    """Registry for analyzers keyed by assessment name, with a default."""

    def __init__(self):
        super().__init__("Analyzer")

    def resolve(self, assessment_name: str | None) -> Analyzer:
        """Get the analyzer for an assessment, falling back to the default."""
        if assessment_name and assessment_name in self._implementations:
            return self._implementations[assessment_name]
        return self.get(DEFAULT_ANALYZER)


# Global registry instance (singleton)
analyzer_registry = AnalyzerRegistry()
