"""
Adapter for the external field-extraction engine.

The engine is opaque: the pipeline only sees fields (a JSON object) or a
classified failure.
"""

from admissions.extraction.client import (
    ExtractionClient,
    ExtractionFailure,
    ExtractionFailureKind,
    TransientExtractionError,
    reason_for,
)

__all__ = [
    "ExtractionClient",
    "ExtractionFailure",
    "ExtractionFailureKind",
    "TransientExtractionError",
    "reason_for",
]
