from __future__ import annotations

import io
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np
import pytest
import torch
from _artifacts import make_manifest, write_model

from digit_reader.errors import ClassificationError, ErrorCode, FeatureSizeError, ModelLoadError
from digit_reader.inference.classifier import (
    WEIGHTS_FILE,
    DigitClassifier,
    build_fresh_state_dict,
    build_model,
    mapped_state_dict,
    save_artifact,
)
from digit_reader.inference.types import ClassificationResult
from digit_reader.logging import _JsonFormatter, get_logger


def _features(seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.random(1296, dtype=np.float32)


def test_load_and_classify_softmax_model(tmp_path: Path) -> None:
    model_dir = write_model(tmp_path)
    clf = DigitClassifier.from_dir(model_dir)
    res = clf.classify(_features())
    assert len(res.scores) == 10
    assert abs(sum(res.scores) - 1.0) < 1e-5
    assert 0 <= res.digit <= 9
    assert res.model_id == "seven_segment_model_mlp"


def test_classify_is_deterministic_and_thread_safe(tmp_path: Path) -> None:
    clf = DigitClassifier.from_dir(write_model(tmp_path))
    feats = _features(3)
    first = clf.classify(feats)
    assert clf.classify(feats) == first
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: clf.classify(feats), range(16)))
    assert all(r == first for r in results)


def test_raw_scores_are_not_renormalized(tmp_path: Path) -> None:
    man = make_manifest(hidden=(), activation="none")
    sd = build_fresh_state_dict(man)
    save_artifact(tmp_path / man.model_id, man, sd)
    clf = DigitClassifier.from_dir(tmp_path / man.model_id)
    feats = _features(1)
    x = torch.from_numpy(feats).reshape(1, 1296)
    expected = (x @ sd["head.weight"].T + sd["head.bias"])[0].tolist()
    got = clf.classify(feats).scores
    assert all(abs(a - b) < 1e-4 for a, b in zip(got, expected, strict=True))


def test_first_maximum_wins_on_ties() -> None:
    man = make_manifest(hidden=(), activation="none")
    model = build_model(man)
    with torch.no_grad():
        model.head.weight.zero_()
        model.head.bias.copy_(torch.tensor([0.5, 0.5, 0, 0, 0, 0, 0, 0, 0, 0]))
    res = DigitClassifier(man, model).classify(_features())
    assert res.digit == 0
    assert res.confidence == pytest.approx(0.5)


def test_argmax_scan_handles_negative_scores() -> None:
    res = ClassificationResult(scores=(-3.0, -2.0, -5.0) + (-9.0,) * 7, model_id="m")
    assert res.digit == 1 and res.confidence == -2.0


def test_wrong_feature_length_raises(tmp_path: Path) -> None:
    clf = DigitClassifier.from_dir(write_model(tmp_path))
    with pytest.raises(FeatureSizeError) as ei:
        _ = clf.classify(np.zeros(1295, dtype=np.float32))
    assert ei.value.expected == 1296 and ei.value.actual == 1295
    with pytest.raises(FeatureSizeError):
        _ = clf.classify(np.zeros((1, 1296), dtype=np.float32))


def test_missing_artifact_is_model_load_error(tmp_path: Path) -> None:
    with pytest.raises(ModelLoadError) as ei:
        _ = DigitClassifier.from_dir(tmp_path / "nope")
    assert ei.value.code is ErrorCode.model_load_failed


def test_corrupt_weights_logged_and_fatal(tmp_path: Path) -> None:
    model_dir = write_model(tmp_path)
    (model_dir / WEIGHTS_FILE).write_bytes(b"\x00\x01bad")
    buf = io.StringIO()
    handler = logging.StreamHandler(buf)
    handler.setFormatter(_JsonFormatter())
    logger = get_logger()
    logger.addHandler(handler)
    try:
        with pytest.raises(ModelLoadError):
            _ = DigitClassifier.from_dir(model_dir)
    finally:
        logger.removeHandler(handler)
    assert "state_dict_load_failed" in buf.getvalue()


def test_corrupt_manifest_is_model_load_error(tmp_path: Path) -> None:
    model_dir = write_model(tmp_path)
    (model_dir / "manifest.json").write_text("not json", encoding="utf-8")
    with pytest.raises(ModelLoadError) as ei:
        _ = DigitClassifier.from_dir(model_dir)
    assert "invalid manifest" in ei.value.message


def test_signature_and_feature_count_mismatch_refused(tmp_path: Path) -> None:
    model_dir = write_model(tmp_path)
    with pytest.raises(ModelLoadError) as ei:
        _ = DigitClassifier.from_dir(model_dir, feature_signature="v1/other")
    assert "trained on features" in ei.value.message
    with pytest.raises(ModelLoadError):
        _ = DigitClassifier.from_dir(model_dir, n_features=1152)


def test_state_dict_shape_mismatch_refused(tmp_path: Path) -> None:
    man = make_manifest(hidden=(32,))
    sd = build_fresh_state_dict(man)
    sd["fc1.weight"] = torch.zeros((32, 1000))
    save_artifact(tmp_path / man.model_id, man, sd)
    with pytest.raises(ModelLoadError) as ei:
        _ = DigitClassifier.from_dir(tmp_path / man.model_id)
    assert "fc1.weight" in ei.value.message

    sd2 = build_fresh_state_dict(man)
    sd2["extra.weight"] = torch.zeros(1)
    save_artifact(tmp_path / man.model_id, man, sd2)
    with pytest.raises(ModelLoadError):
        _ = DigitClassifier.from_dir(tmp_path / man.model_id)


def test_mapped_state_dict_is_emptied_on_exit(tmp_path: Path) -> None:
    man = make_manifest()
    model_dir = write_model(tmp_path, man)
    with mapped_state_dict(model_dir / WEIGHTS_FILE) as sd:
        assert set(sd) == {"fc1.weight", "fc1.bias", "head.weight", "head.bias"}
        held = sd
    assert held == {}


def test_forward_failure_becomes_classification_error() -> None:
    class _Broken:
        def eval(self) -> object:
            return self

        def __call__(self, x: torch.Tensor) -> torch.Tensor:
            raise RuntimeError("mat1 and mat2 shapes cannot be multiplied")

    class _WrongHead:
        def eval(self) -> object:
            return self

        def __call__(self, x: torch.Tensor) -> torch.Tensor:
            return torch.zeros((1, 9))

    man = make_manifest()
    with pytest.raises(ClassificationError) as ei:
        _ = DigitClassifier(man, _Broken()).classify(_features())
    assert ei.value.code is ErrorCode.classification_failed
    with pytest.raises(ClassificationError):
        _ = DigitClassifier(man, _WrongHead()).classify(_features())
