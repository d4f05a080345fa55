from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Fatal error that ends the run; ``stage`` names where it happened."""

    stage = "run"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigurationError(OrchestratorError):
    stage = "configuration"


class SystemSetupError(OrchestratorError):
    stage = "setup"


class CatalogError(OrchestratorError):
    stage = "catalog"


class LaunchError(OrchestratorError):
    """Raised when a child cannot be given its configured output sinks."""

    stage = "spawn"


class ExhaustionError(OrchestratorError):
    """Raised when probing or allocation runs out of usable candidates."""

    stage = "allocation"
