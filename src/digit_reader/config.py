from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/digit_reader.toml")
_TRUE_STRINGS: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class AppConfig:
    # 0 sizes the request pool from the CPU count
    threads: int = 0


@dataclass(frozen=True)
class ModelConfig:
    model_dir: Path = Path("models")
    active_model: str = "seven_segment_model_mlp"


@dataclass(frozen=True)
class RecognitionConfig:
    # 0 waits for the text recognizer indefinitely
    ocr_timeout_seconds: float = 0.0
    ocr_lang: str = "eng"
    ocr_config: str = "--psm 6"
    invert: bool = False
    visualize: bool = False
    visualize_max_kb: int = 16


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    model: ModelConfig
    recognition: RecognitionConfig

    @staticmethod
    def defaults() -> Settings:
        return Settings(app=AppConfig(), model=ModelConfig(), recognition=RecognitionConfig())

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("DIGIT_READER_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Environment first, then TOML values on top.
        base = cls(
            app=_load_app_from_env(),
            model=_load_model_from_env(),
            recognition=_load_recognition_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            model=_merge_model(base.model, _toml_table(raw, "model")),
            recognition=_merge_recognition(base.recognition, _toml_table(raw, "recognition")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    if th is not None:
        a = replace(a, threads=_non_negative_int("APP__THREADS", th))
    return a


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    md = os.getenv("MODEL__DIR")
    am = os.getenv("MODEL__ACTIVE")
    if md:
        m = replace(m, model_dir=Path(md))
    if am:
        m = replace(m, active_model=am)
    return m


def _load_recognition_from_env() -> RecognitionConfig:
    r = RecognitionConfig()
    to = os.getenv("RECOGNITION__OCR_TIMEOUT_SECONDS")
    lang = os.getenv("RECOGNITION__OCR_LANG")
    ocfg = os.getenv("RECOGNITION__OCR_CONFIG")
    inv = os.getenv("RECOGNITION__INVERT")
    vis = os.getenv("RECOGNITION__VISUALIZE")
    vk = os.getenv("RECOGNITION__VISUALIZE_MAX_KB")
    if to is not None:
        r = replace(r, ocr_timeout_seconds=_non_negative_float("RECOGNITION__OCR_TIMEOUT_SECONDS", to))
    if lang:
        r = replace(r, ocr_lang=lang)
    if ocfg is not None:
        r = replace(r, ocr_config=ocfg)
    if inv is not None:
        r = replace(r, invert=inv.strip().lower() in _TRUE_STRINGS)
    if vis is not None:
        r = replace(r, visualize=vis.strip().lower() in _TRUE_STRINGS)
    if vk is not None:
        r = replace(r, visualize_max_kb=_non_negative_int("RECOGNITION__VISUALIZE_MAX_KB", vk))
    return r


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=_non_negative_int("threads", str(data["threads"])))
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "active_model" in data:
        out = replace(out, active_model=str(data["active_model"]))
    return out


def _merge_recognition(base: RecognitionConfig, data: dict[str, object]) -> RecognitionConfig:
    out = base
    if "ocr_timeout_seconds" in data:
        secs = _non_negative_float("ocr_timeout_seconds", str(data["ocr_timeout_seconds"]))
        out = replace(out, ocr_timeout_seconds=secs)
    if "ocr_lang" in data:
        out = replace(out, ocr_lang=str(data["ocr_lang"]))
    if "ocr_config" in data:
        out = replace(out, ocr_config=str(data["ocr_config"]))
    if "invert" in data:
        out = replace(out, invert=bool(data["invert"]))
    if "visualize" in data:
        out = replace(out, visualize=bool(data["visualize"]))
    if "visualize_max_kb" in data:
        kb = _non_negative_int("visualize_max_kb", str(data["visualize_max_kb"]))
        out = replace(out, visualize_max_kb=kb)
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _non_negative_int(name: str, raw: str) -> int:
    try:
        val = int(raw.strip())
    except ValueError:
        raise RuntimeError(f"{name} must be an integer") from None
    if val < 0:
        raise RuntimeError(f"{name} must be >= 0")
    return val


def _non_negative_float(name: str, raw: str) -> float:
    try:
        val = float(raw.strip())
    except ValueError:
        raise RuntimeError(f"{name} must be a number") from None
    if val < 0.0:
        raise RuntimeError(f"{name} must be >= 0")
    return val
