from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "digit_reader"

# Structured field name -> accepted Python type
_INT_FIELDS: Final[frozenset[str]] = frozenset({"latency_ms", "digit", "n_values"})
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"confidence"})
_STR_FIELDS: Final[frozenset[str]] = frozenset({"model_id", "source", "state", "code"})


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        extra = _parse_evt_fields(msg)
        if "event" in extra:
            payload["message"] = str(extra.pop("event"))
        payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colored single-line output for terminals.

    ``EVT`` messages are shown as ``<event> key=value ...``; other messages
    keep their text with the leading event name in bold.
    """

    _RESET: Final[str] = "\x1b[0m"
    _BOLD: Final[str] = "\x1b[1m"
    _DIM: Final[str] = "\x1b[2m"
    _LEVELS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.ERROR, "ERROR", "\x1b[91m"),
        (logging.WARNING, "WARN", "\x1b[93m"),
        (logging.INFO, "INFO", "\x1b[36m"),
        (logging.NOTSET, "DEBUG", "\x1b[90m"),
    )

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        tag, color = next((t, c) for lvl, t, c in self._LEVELS if record.levelno >= lvl)
        event, rest = self._event_and_rest(record.getMessage())
        line = f"{self._DIM}[{ts}]{self._RESET} {color}[{tag}]{self._RESET}"
        if event:
            line += f" {self._BOLD}{event}{self._RESET}"
        if rest:
            line += f" {rest}"
        rid = request_id_var.get()
        if rid:
            line += f" {self._DIM}rid={rid}{self._RESET}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

    @staticmethod
    def _event_and_rest(msg: str) -> tuple[str, str]:
        if msg.startswith("EVT "):
            fields = _parse_evt_fields(msg)
            event = str(fields.pop("event", "event"))
            return event, " ".join(f"{k}={v}" for k, v in fields.items())
        head, _, rest = msg.partition(" ")
        if "=" in head:
            return "", msg
        return head, rest


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    parts: list[str] = [f"event={event}"]
    for key, val in (fields or {}).items():
        if key in _INT_FIELDS and isinstance(val, int) and not isinstance(val, bool):
            parts.append(f"{key}={val}")
        elif key in _FLOAT_FIELDS and isinstance(val, float):
            parts.append(f"{key}={val}")
        elif key in _STR_FIELDS and isinstance(val, str) and val and " " not in val:
            parts.append(f"{key}={val}")
    get_logger().info("EVT " + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        k, sep, v = tok.partition("=")
        key = k.strip()
        if not sep or not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.lstrip("-").isdigit():
            val = int(v)
        elif key in _FLOAT_FIELDS and _is_float_str(v):
            val = float(v)
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    body = s[1:] if s.startswith("-") else s
    if not body:
        return False
    return body.count(".") <= 1 and body.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]


def _env_level() -> int:
    v = os.environ.get("DIGIT_READER_LOG_LEVEL")
    if not v:
        return logging.INFO
    return {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }.get(v.strip().upper(), logging.INFO)


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Re-binds a single StreamHandler to the current ``sys.stdout`` so repeated
    calls (and stdout replacement under pytest) never duplicate output.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("DIGIT_READER_LOG_PROPAGATE")

    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


@runtime_checkable
class _HasIsatty(Protocol):
    def isatty(self) -> bool: ...


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    force_json = _env_truthy("DIGIT_READER_LOG_JSON")
    force_pretty = _env_truthy("DIGIT_READER_LOG_PRETTY")
    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
