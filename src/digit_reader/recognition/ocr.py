from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol

import pytesseract
from PIL import Image

from ..config import Settings
from ..errors import ExternalEngineError
from ..logging import get_logger


@dataclass(frozen=True)
class TextRecognition:
    text: str

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class TextRecognizer(Protocol):
    """General-purpose OCR engine.

    ``process`` must not block; engine failures resolve the returned future
    with ``ExternalEngineError``.
    """

    def process(self, img: Image.Image) -> Future[TextRecognition]: ...


class TesseractRecognizer:
    def __init__(self, lang: str = "eng", config: str = "", max_workers: int = 1) -> None:
        self._lang = lang
        self._config = config
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ocr")

    @classmethod
    def from_settings(cls, settings: Settings) -> TesseractRecognizer:
        rc = settings.recognition
        return cls(lang=rc.ocr_lang, config=rc.ocr_config)

    def process(self, img: Image.Image) -> Future[TextRecognition]:
        # Own copy so the caller may release its image right away
        return self._pool.submit(self._run, img.copy())

    def _run(self, img: Image.Image) -> TextRecognition:
        try:
            text = pytesseract.image_to_string(img, lang=self._lang, config=self._config)
        except (pytesseract.TesseractError, OSError, RuntimeError) as exc:
            get_logger().warning("tesseract_failed error=%s", exc)
            raise ExternalEngineError(f"Tesseract failed: {exc}") from None
        return TextRecognition(text=str(text))

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
