from __future__ import annotations

import os
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import CancelledError as _FutCancelled
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as _FutTimeout
from enum import Enum
from typing import Final, Protocol

from PIL import Image

from ..config import Settings
from ..errors import AppError, ExternalEngineError, NoImageError
from ..inference.pipeline import DigitPipeline, PipelineOutput
from ..logging import get_logger, log_event
from ..request_context import request_id_var
from .ocr import TesseractRecognizer, TextRecognition, TextRecognizer
from .outcome import (
    CancelledOutcome,
    DigitOutcome,
    FailedOutcome,
    RecognitionOutcome,
    TextOutcome,
    format_outcome,
    parse_digit_tokens,
)


class RequestState(str, Enum):
    idle = "idle"
    awaiting_text = "awaiting_text"
    text_found = "text_found"
    fallback_classifying = "fallback_classifying"
    done = "done"
    failed = "failed"
    cancelled = "cancelled"


_TRANSITIONS: Final[dict[RequestState, frozenset[RequestState]]] = {
    RequestState.idle: frozenset({RequestState.awaiting_text, RequestState.failed}),
    RequestState.awaiting_text: frozenset(
        {RequestState.text_found, RequestState.fallback_classifying, RequestState.cancelled}
    ),
    RequestState.text_found: frozenset({RequestState.done, RequestState.cancelled}),
    RequestState.fallback_classifying: frozenset(
        {RequestState.done, RequestState.failed, RequestState.cancelled}
    ),
    RequestState.done: frozenset(),
    RequestState.failed: frozenset(),
    RequestState.cancelled: frozenset(),
}


class RecognitionRequest:
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._state = RequestState.idle
        self.history: list[RequestState] = [RequestState.idle]

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def finished(self) -> bool:
        return not _TRANSITIONS[self._state]

    def advance(self, new: RequestState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"illegal request transition {self._state.value} -> {new.value}")
        self._state = new
        self.history.append(new)


class ResultSurface(Protocol):
    def set_text(self, text: str) -> None: ...
    def notify(self, message: str) -> None: ...
    def show_preview(self, png: bytes) -> None: ...


class Session:
    """Liveness guard around the presentation surface.

    Every mutation goes through :meth:`apply`; once :meth:`close` returns no
    further call reaches the surface. Surface callbacks may close the session
    themselves.
    """

    def __init__(self, surface: ResultSurface) -> None:
        self._surface = surface
        self._lock = threading.RLock()
        self._active = True

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def close(self) -> None:
        with self._lock:
            self._active = False

    def apply(self, fn: Callable[[ResultSurface], None]) -> bool:
        with self._lock:
            if not self._active:
                return False
            fn(self._surface)
            return True


class FallbackPipeline(Protocol):
    def run(self, img: Image.Image) -> PipelineOutput: ...


class RecognitionOrchestrator:
    """Text recognizer first, HOG+MLP digit classifier when it finds nothing."""

    def __init__(
        self,
        recognizer: TextRecognizer,
        pipeline: FallbackPipeline,
        ocr_timeout_seconds: float = 0.0,
        threads: int = 0,
    ) -> None:
        self._recognizer = recognizer
        self._pipeline = pipeline
        self._ocr_timeout = ocr_timeout_seconds if ocr_timeout_seconds > 0 else None
        self._pool = _make_pool(threads)
        self._logger = get_logger()
        # Set only for a recognizer this orchestrator created and must shut down
        self._owned_recognizer: TesseractRecognizer | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        recognizer: TextRecognizer | None = None,
        pipeline: FallbackPipeline | None = None,
    ) -> RecognitionOrchestrator:
        # Model problems surface here, before any request is accepted
        pipe = pipeline if pipeline is not None else DigitPipeline.from_settings(settings)
        owned: TesseractRecognizer | None = None
        if recognizer is None:
            owned = TesseractRecognizer.from_settings(settings)
            recognizer = owned
        orch = cls(
            recognizer,
            pipe,
            ocr_timeout_seconds=settings.recognition.ocr_timeout_seconds,
            threads=settings.app.threads,
        )
        orch._owned_recognizer = owned
        return orch

    def submit(self, img: Image.Image | None, session: Session) -> Future[RecognitionOutcome]:
        req = RecognitionRequest(uuid.uuid4().hex)
        session.apply(lambda s: s.set_text(""))
        if img is None:
            err = NoImageError()
            req.advance(RequestState.failed)
            self._logger.warning("recognition_rejected code=%s", err.code.value)
            session.apply(lambda s: s.notify(err.message))
            done: Future[RecognitionOutcome] = Future()
            done.set_result(FailedOutcome(err))
            return done
        return self._pool.submit(self._run, req, img, session)

    def recognize(self, img: Image.Image | None, session: Session) -> RecognitionOutcome:
        return self.submit(img, session).result()

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)
        if self._owned_recognizer is not None:
            self._owned_recognizer.shutdown()

    def _run(self, req: RecognitionRequest, img: Image.Image, session: Session) -> RecognitionOutcome:
        token = request_id_var.set(req.request_id)
        t0 = time.perf_counter()
        try:
            req.advance(RequestState.awaiting_text)
            recognized = self._await_text(img)
            if not session.active:
                return self._cancel(req)
            if isinstance(recognized, TextRecognition) and not recognized.is_empty:
                req.advance(RequestState.text_found)
                self._logger.debug("text_recognized chars=%d", len(recognized.text))
                outcome: RecognitionOutcome = TextOutcome(
                    values=tuple(parse_digit_tokens(recognized.text))
                )
            else:
                if isinstance(recognized, ExternalEngineError):
                    self._logger.warning("text_recognizer_failed error=%s", recognized.message)
                    msg = f"{recognized.message} Trying the digit classifier."
                    session.apply(lambda s: s.notify(msg))
                else:
                    self._logger.warning("text_recognizer_empty fallback=hog_mlp")
                req.advance(RequestState.fallback_classifying)
                outcome = self._classify(img)
            return self._deliver(req, session, outcome, t0)
        finally:
            request_id_var.reset(token)

    def _await_text(self, img: Image.Image) -> TextRecognition | ExternalEngineError:
        # Any recognizer failure counts as an engine failure and leads to the fallback
        try:
            fut = self._recognizer.process(img)
        except Exception as exc:
            self._logger.error("text_recognizer_submit_failed error=%s", exc)
            return ExternalEngineError(f"Text recognizer failed: {exc}")
        try:
            return fut.result(timeout=self._ocr_timeout)
        except _FutTimeout:
            fut.cancel()
            return ExternalEngineError(f"Text recognizer timed out after {self._ocr_timeout:g}s.")
        except ExternalEngineError as exc:
            return exc
        except _FutCancelled:
            return ExternalEngineError("Text recognizer was cancelled.")
        except Exception as exc:
            self._logger.error("text_recognizer_crashed error=%s", exc)
            return ExternalEngineError(f"Text recognizer failed: {exc}")

    def _classify(self, img: Image.Image) -> DigitOutcome | FailedOutcome:
        try:
            out = self._pipeline.run(img)
        except AppError as exc:
            self._logger.error("fallback_failed code=%s error=%s", exc.code.value, exc.message)
            return FailedOutcome(exc)
        return DigitOutcome(result=out.result, preview_png=out.preview_png)

    def _deliver(
        self,
        req: RecognitionRequest,
        session: Session,
        outcome: RecognitionOutcome,
        t0: float,
    ) -> RecognitionOutcome:
        if not session.apply(lambda s: _apply_outcome(s, outcome)):
            return self._cancel(req)
        failed = isinstance(outcome, FailedOutcome)
        req.advance(RequestState.failed if failed else RequestState.done)
        fields: dict[str, object] = {
            "latency_ms": int((time.perf_counter() - t0) * 1000.0),
            "state": req.state.value,
        }
        if isinstance(outcome, TextOutcome):
            fields["source"] = "ocr"
            fields["n_values"] = len(outcome.values)
        elif isinstance(outcome, DigitOutcome):
            fields["source"] = "classifier"
            fields["digit"] = outcome.result.digit
            fields["confidence"] = outcome.result.confidence
            fields["model_id"] = outcome.result.model_id
        elif isinstance(outcome, FailedOutcome):
            fields["code"] = outcome.error.code.value
        log_event("recognition_finished", fields)
        return outcome

    def _cancel(self, req: RecognitionRequest) -> CancelledOutcome:
        req.advance(RequestState.cancelled)
        self._logger.info("recognition_discarded reason=session_closed")
        return CancelledOutcome()


def _apply_outcome(surface: ResultSurface, outcome: RecognitionOutcome) -> None:
    if isinstance(outcome, FailedOutcome):
        surface.notify(outcome.message)
        return
    if isinstance(outcome, DigitOutcome) and outcome.preview_png is not None:
        surface.show_preview(outcome.preview_png)
    surface.set_text(format_outcome(outcome))


def _make_pool(threads: int) -> ThreadPoolExecutor:
    if threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="recognize")
