from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from ..errors import AppError
from ..inference.types import ClassificationResult

# ASCII digits and the plain space survive; newlines and tabs do not
_NON_DIGIT_OR_SPACE: Final[re.Pattern[str]] = re.compile(r"[^0-9 ]")


@dataclass(frozen=True)
class TextOutcome:
    values: tuple[str, ...]


@dataclass(frozen=True)
class DigitOutcome:
    result: ClassificationResult
    preview_png: bytes | None = None


@dataclass(frozen=True)
class FailedOutcome:
    error: AppError

    @property
    def message(self) -> str:
        return self.error.message


@dataclass(frozen=True)
class CancelledOutcome:
    pass


RecognitionOutcome = TextOutcome | DigitOutcome | FailedOutcome | CancelledOutcome


def parse_digit_tokens(text: str) -> list[str]:
    return _NON_DIGIT_OR_SPACE.sub("", text).split()


def format_values(values: tuple[str, ...] | list[str]) -> str:
    return "".join(f"var{i} = {v}\n" for i, v in enumerate(values, start=1))


def format_digit(result: ClassificationResult) -> str:
    return f"Dígito (TF): {result.digit}\nConfiança: {result.confidence * 100:.2f}%"


def format_outcome(outcome: RecognitionOutcome) -> str:
    """Text for the result area; failures and cancellations leave it empty."""
    if isinstance(outcome, TextOutcome):
        return format_values(outcome.values)
    if isinstance(outcome, DigitOutcome):
        return format_digit(outcome.result)
    return ""
