"""
Exception hierarchy for LogTrains.

All LogTrains exceptions inherit from LogTrainsError, allowing callers to catch
every LogTrains-specific failure with a single except clause.

Exception Categories:
    - StoreError: Entry Store failures (I/O, missing entry, corrupt record)
    - SelectError: History selection could not be resolved
    - AssemblyError: The context window cannot be built under the budget
    - InferenceError: The text-generation engine failed or was cancelled
    - ConfigError: Settings file could not be loaded

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors include context (entry, request, budget, stage)
    - Only inference errors are ever marked retryable
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Store errors: 1xxx
ERROR_STORE_IO = 1001
ERROR_STORE_NOT_FOUND = 1002
ERROR_STORE_CORRUPT = 1003

# Selection errors: 2xxx
ERROR_SELECT_EMPTY = 2001
ERROR_SELECT_OUT_OF_RANGE = 2002

# Assembly errors: 3xxx
ERROR_ASSEMBLY_BUDGET_EXHAUSTED = 3001

# Inference errors: 4xxx
ERROR_INFERENCE_MODEL_UNAVAILABLE = 4001
ERROR_INFERENCE_RESOURCE_EXHAUSTED = 4002
ERROR_INFERENCE_CANCELLED = 4003
ERROR_INFERENCE_TIMEOUT = 4004
ERROR_INFERENCE_RESPONSE = 4005

# Configuration errors: 5xxx
ERROR_CONFIG_INVALID = 5001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class LogTrainsError(Exception):
    """
    Base exception for all LogTrains errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Store Errors
# =============================================================================


@dataclass
class StoreError(LogTrainsError):
    """
    Base class for Entry Store errors.

    Attributes:
        operation: The store operation that failed (e.g., "append", "load_body")
        identifier: Identifier of the entry involved, if any
        path: Filesystem path involved, if any
    """

    operation: str = ""
    identifier: int | None = None
    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "operation": self.operation,
            "identifier": self.identifier,
            "path": self.path,
        })


@dataclass
class StoreIOError(StoreError):
    """Raised when reading or writing the history directory fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"History store {self.operation or 'I/O'} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORE_IO
        if not self.suggestion:
            self.suggestion = "Check that the history directory exists and is writable"
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class EntryNotFoundError(StoreError):
    """Raised when an entry vanished between listing and loading."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Entry not found: {self.identifier}"
        if self.code == 0:
            self.code = ERROR_STORE_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "The entry was probably removed by retention cleanup"
        super().__post_init__()


@dataclass
class EntryCorruptError(StoreError):
    """Raised when a stored record cannot be decoded."""

    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Entry {self.identifier} is corrupt: {self.reason}"
        if self.code == 0:
            self.code = ERROR_STORE_CORRUPT
        if not self.suggestion:
            self.suggestion = f"Delete the damaged file: {self.path}" if self.path else None
        super().__post_init__()
        self.context["reason"] = self.reason


# =============================================================================
# Selection Errors
# =============================================================================


@dataclass
class SelectError(LogTrainsError):
    """
    Base class for history selection errors.

    Attributes:
        request: Description of the selection request
        available: Number of entries in the store at selection time
    """

    request: str = ""
    available: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "request": self.request,
            "available": self.available,
        })


@dataclass
class SelectionEmptyError(SelectError):
    """Raised when the store holds no entries."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"No captured output in history for {self.request or 'selection'}"
        if self.code == 0:
            self.code = ERROR_SELECT_EMPTY
        if not self.suggestion:
            self.suggestion = "Run a command with `logtrains run -- <cmd>` or pipe output in"
        super().__post_init__()


@dataclass
class SelectionOutOfRangeError(SelectError):
    """Raised when an offset reaches past the oldest entry."""

    offset: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Offset {self.offset} is out of range: "
                f"only {self.available} entries in history"
            )
        if self.code == 0:
            self.code = ERROR_SELECT_OUT_OF_RANGE
        if not self.suggestion:
            self.suggestion = f"Use an offset between 0 and {max(self.available - 1, 0)}"
        super().__post_init__()
        self.context["offset"] = self.offset


# =============================================================================
# Assembly Errors
# =============================================================================


@dataclass
class AssemblyError(LogTrainsError):
    """
    Base class for window assembly errors.

    Attributes:
        max_tokens: Total token ceiling of the request
        reserved_for_preamble: Tokens claimed by the preamble
    """

    max_tokens: int = 0
    reserved_for_preamble: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "max_tokens": self.max_tokens,
            "reserved_for_preamble": self.reserved_for_preamble,
        })


@dataclass
class BudgetExhaustedError(AssemblyError):
    """Raised when the preamble alone consumes the whole token budget."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Preamble needs {self.reserved_for_preamble} tokens "
                f"but the budget is only {self.max_tokens}"
            )
        if self.code == 0:
            self.code = ERROR_ASSEMBLY_BUDGET_EXHAUSTED
        if not self.suggestion:
            self.suggestion = "Increase --max-tokens or shorten the prompt template"
        super().__post_init__()


# =============================================================================
# Inference Errors
# =============================================================================


@dataclass
class InferenceError(LogTrainsError):
    """
    Base class for text-generation failures.

    Attributes:
        backend: Name of the inference backend (e.g., "ollama")
        model: Model identifier that was requested
    """

    backend: str = ""
    model: str = ""

    # Whether the caller may reasonably retry the same request
    retryable: bool = False

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "backend": self.backend,
            "model": self.model,
        })


@dataclass
class ModelUnavailableError(InferenceError):
    """Raised when the engine is unreachable or the model is not pulled."""

    url: str = ""
    underlying_error: str = ""
    available_models: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Model {self.model} is not available on {self.backend}"
            if self.underlying_error:
                self.message += f": {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_INFERENCE_MODEL_UNAVAILABLE
        if not self.suggestion:
            if self.available_models:
                self.suggestion = (
                    f"Run: ollama pull {self.model} "
                    f"(available: {', '.join(self.available_models[:5])})"
                )
            else:
                self.suggestion = (
                    f"Start the engine (ollama serve) and run: ollama pull {self.model}, "
                    "then retry"
                )
        self.retryable = True
        super().__post_init__()
        self.context.update({
            "url": self.url,
            "underlying_error": self.underlying_error,
            "available_models": self.available_models,
        })


@dataclass
class ResourceExhaustedError(InferenceError):
    """Raised when the engine runs out of memory or compute."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Not enough resources to run {self.model}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_INFERENCE_RESOURCE_EXHAUSTED
        if not self.suggestion:
            self.suggestion = "Close other applications or use the smaller preset (--model tiny)"
        self.retryable = True
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class InferenceCancelledError(InferenceError):
    """Raised when generation is interrupted by the user."""

    partial_output: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Generation cancelled"
        if self.code == 0:
            self.code = ERROR_INFERENCE_CANCELLED
        super().__post_init__()
        self.context["partial_chars"] = len(self.partial_output)


@dataclass
class InferenceTimeoutError(InferenceError):
    """Raised when the engine does not answer in time."""

    timeout_seconds: float = 0.0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"{self.backend} did not respond within {self.timeout_seconds}s"
        if self.code == 0:
            self.code = ERROR_INFERENCE_TIMEOUT
        if not self.suggestion:
            self.suggestion = "The model may still be loading; retry or raise timeout_seconds"
        self.retryable = True
        super().__post_init__()
        self.context["timeout_seconds"] = self.timeout_seconds


@dataclass
class InferenceResponseError(InferenceError):
    """Raised when the engine returns an unusable response."""

    raw_response: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Bad response from {self.backend}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_INFERENCE_RESPONSE
        super().__post_init__()
        self.context.update({
            "raw_response": self.raw_response[:500],
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigError(LogTrainsError):
    """Raised when a settings or template file cannot be loaded."""

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration in {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })
