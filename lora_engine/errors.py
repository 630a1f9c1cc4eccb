"""Exception types raised by the training engine."""

from typing import Optional


class ConfigError(ValueError):
    """Invalid configuration value. ``field`` names the offending setting."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class TrainingStateError(RuntimeError):
    """Raised when an orchestrator is reused after a finished or failed run."""

    def __init__(self, status: str, message: Optional[str] = None):
        self.status = status
        super().__init__(
            message
            or f"training run is '{status}'; call reset() before training again"
        )
