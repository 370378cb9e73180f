from __future__ import annotations

from enum import Enum
from typing import Final


class ErrorCode(str, Enum):
    no_image = "no_image"
    engine_failed = "engine_failed"
    invalid_image = "invalid_image"
    feature_size_mismatch = "feature_size_mismatch"
    model_load_failed = "model_load_failed"
    classification_failed = "classification_failed"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.no_image: "Select and crop an image first.",
    ErrorCode.engine_failed: "Text recognizer failed.",
    ErrorCode.invalid_image: "Image preprocessing failed.",
    ErrorCode.feature_size_mismatch: "HOG feature vector size mismatch.",
    ErrorCode.model_load_failed: "Digit classifier model could not be loaded.",
    ErrorCode.classification_failed: "Digit classifier failed to evaluate the image.",
}


class AppError(Exception):
    code: ErrorCode = ErrorCode.invalid_image

    def __init__(self, message: str | None = None) -> None:
        msg = message if message is not None else default_message(self.code)
        super().__init__(msg)
        self.message = msg


class NoImageError(AppError):
    code = ErrorCode.no_image


class ExternalEngineError(AppError):
    code = ErrorCode.engine_failed


class ImageError(AppError):
    code = ErrorCode.invalid_image


class FeatureSizeError(AppError):
    code = ErrorCode.feature_size_mismatch

    def __init__(self, expected: int, actual: int | None, detail: str = "") -> None:
        got = "none" if actual is None else str(actual)
        msg = f"HOG feature size mismatch: expected {expected}, got {got}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
        self.expected = expected
        self.actual = actual


class ModelLoadError(AppError):
    code = ErrorCode.model_load_failed


class ClassificationError(AppError):
    code = ErrorCode.classification_failed


def default_message(code: ErrorCode) -> str:
    return _DEFAULT_MESSAGE.get(code, "")
