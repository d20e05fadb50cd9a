"""
Generation Services.

This package provides the service contract the dispatcher submits requests
to, and its implementations:
- Google Gemini: image and text generation via :generateContent

Usage:
    from bananaflow.providers import GeminiService, ProviderConfig

    service = GeminiService(ProviderConfig(api_key="..."))
    result = await service.generate(GenerationRequest(prompt="A cat"))
"""

from bananaflow.providers.base import (
    AuthenticationError,
    FatalServiceError,
    GenerationError,
    GenerationRequest,
    GenerationResult,
    GenerationService,
    OutputFormat,
    ProviderConfig,
    RateLimitError,
    ResourceExhaustedError,
    ServiceError,
    ServiceOverloadedError,
    TransientServiceError,
    UnsupportedOperationError,
)

from bananaflow.providers.gemini import GeminiService


__all__ = [
    # Base classes
    "GenerationService",
    "GenerationRequest",
    "GenerationResult",
    "OutputFormat",
    "ProviderConfig",
    # Exceptions
    "ServiceError",
    "TransientServiceError",
    "RateLimitError",
    "ServiceOverloadedError",
    "FatalServiceError",
    "AuthenticationError",
    "GenerationError",
    "UnsupportedOperationError",
    "ResourceExhaustedError",
    # Services
    "GeminiService",
]
