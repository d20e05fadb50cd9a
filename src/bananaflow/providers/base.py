"""
Provider Base - Generation service contract and error taxonomy.

This module provides the foundation the dispatcher talks to:
- GenerationRequest/GenerationResult: Request/response data structures
- GenerationService: Abstract base class for service implementations
- ServiceError hierarchy: transient vs. fatal failures

Images travel as opaque encoded blobs (data URLs or raw base64 strings);
providers decide how to put them on the wire.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OutputFormat(Enum):
    """What a request expects back from the service."""
    IMAGE = "image"
    TEXT = "text"
    JSON = "json"


@dataclass
class GenerationRequest:
    """Request for a single generation call."""
    prompt: str
    images: list[str] = field(default_factory=list)
    aspect_ratio: str | None = None
    output: OutputFormat = OutputFormat.IMAGE

    # Only used with OutputFormat.JSON
    response_schema: dict[str, Any] | None = None

    # Provider-specific extra parameters
    extra_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Result from a generation call."""
    images: list[str] = field(default_factory=list)  # data URLs
    text: str | None = None
    model_id: str = ""
    generation_time: float = 0.0  # Seconds

    @property
    def first_image(self) -> str | None:
        return self.images[0] if self.images else None


@dataclass
class ProviderConfig:
    """Configuration for a provider."""
    api_key: str = ""
    base_url: str | None = None  # Override default URL
    image_model: str | None = None
    text_model: str | None = None
    timeout: float = 120.0
    extra: dict[str, Any] = field(default_factory=dict)


class ServiceError(Exception):
    """Base exception for generation service errors."""
    pass


class TransientServiceError(ServiceError):
    """Overload, quota or rate-limit signal. Worth retrying."""
    status: int | None = None
    retry_after: float | None = None


class RateLimitError(TransientServiceError):
    """Rate limit or quota exceeded (HTTP 429)."""
    status = 429


class ServiceOverloadedError(TransientServiceError):
    """Service temporarily unavailable (HTTP 503)."""
    status = 503


class FatalServiceError(ServiceError):
    """Any failure that a retry would not fix."""
    pass


class AuthenticationError(FatalServiceError):
    """API key invalid or missing."""
    pass


class GenerationError(FatalServiceError):
    """Bad request, content policy, network or empty response."""
    pass


class UnsupportedOperationError(FatalServiceError):
    """The service cannot perform the requested operation."""
    pass


class ResourceExhaustedError(ServiceError):
    """Transient failures persisted past the retry budget."""

    def __init__(self, message: str = "Quota exhausted or service busy, try again later.",
                 attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class GenerationService(ABC):
    """
    Abstract base class for generation services.

    Each service handles communication with a specific API.
    """

    id: str = ""
    name: str = ""

    def __init__(self, config: ProviderConfig):
        self.config = config

    @property
    def is_configured(self) -> bool:
        """Check if the service has the configuration it needs."""
        return bool(self.config.api_key)

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Run one generation call.

        Args:
            request: Prompt, images and parameters

        Returns:
            GenerationResult with images and/or text

        Raises:
            TransientServiceError: Overload or rate limit
            FatalServiceError: Anything that should not be retried
        """
        ...
