from __future__ import annotations

from .ocr import TesseractRecognizer, TextRecognition, TextRecognizer
from .orchestrator import (
    RecognitionOrchestrator,
    RecognitionRequest,
    RequestState,
    ResultSurface,
    Session,
)
from .outcome import (
    CancelledOutcome,
    DigitOutcome,
    FailedOutcome,
    RecognitionOutcome,
    TextOutcome,
    format_outcome,
    parse_digit_tokens,
)

__all__ = [
    "CancelledOutcome",
    "DigitOutcome",
    "FailedOutcome",
    "RecognitionOrchestrator",
    "RecognitionOutcome",
    "RecognitionRequest",
    "RequestState",
    "ResultSurface",
    "Session",
    "TesseractRecognizer",
    "TextOutcome",
    "TextRecognition",
    "TextRecognizer",
    "format_outcome",
    "parse_digit_tokens",
]
