from dataclasses import dataclass
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

    def has(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


@dataclass
class JobContext:
    """Per-attempt context handed to a job handler."""

    job_id: str
    job_type: str
    attempt: int
    max_attempts: int
    worker_id: str
    logger: Any

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background tasks."""

    async def handle(
        self, payload: dict[str, Any], context: JobContext
    ) -> dict[str, Any] | None:
        """
        Handle a background job.

        Handlers must be idempotent: delivery is at-least-once.

        Args:
            payload: Job-specific parameters
            context: Job id, type, attempt number and a bound logger

        Returns:
            Optional result dictionary recorded on the completed job

        Raises:
            HandlerError: business failure, optionally classified or permanent
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers, keyed by job type."""

    def __init__(self):
        super().__init__("Job")


# Global registry instance (singleton)
job_registry = JobRegistry()
