from __future__ import annotations

import json
import pickle
import zipfile
from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Final, Protocol

import numpy as np
import torch
from torch import Tensor, nn

from ..errors import ClassificationError, FeatureSizeError, ModelLoadError
from ..logging import get_logger
from .manifest import ModelManifest
from .types import ClassificationResult, FeatureVector

MANIFEST_FILE: Final[str] = "manifest.json"
WEIGHTS_FILE: Final[str] = "model.pt"
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...


class DigitClassifier:
    """Feed-forward HOG -> digit classifier.

    The wrapped network is put in eval mode once and only ever evaluated
    under ``torch.no_grad()``, so ``classify`` may run on several threads at
    the same time.
    """

    def __init__(self, manifest: ModelManifest, model: TorchModel) -> None:
        self._manifest = manifest
        self._model = model
        self._model.eval()
        self._logger = get_logger()
        torch.set_num_threads(1)

    @classmethod
    def from_dir(
        cls,
        model_dir: Path,
        feature_signature: str | None = None,
        n_features: int | None = None,
    ) -> DigitClassifier:
        manifest_path = model_dir / MANIFEST_FILE
        weights_path = model_dir / WEIGHTS_FILE
        logger = get_logger()
        if not (manifest_path.is_file() and weights_path.is_file()):
            logger.error("model_artifact_missing dir=%s", model_dir.as_posix())
            raise ModelLoadError(f"model artifact not found in {model_dir.as_posix()}")
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError, KeyError) as exc:
            logger.error("manifest_load_failed path=%s error=%s", manifest_path.as_posix(), exc)
            raise ModelLoadError(f"invalid manifest {manifest_path.as_posix()}: {exc}") from None
        if feature_signature is not None and manifest.feature_signature != feature_signature:
            logger.error(
                "feature_signature_mismatch model=%s expected=%s",
                manifest.feature_signature,
                feature_signature,
            )
            raise ModelLoadError(
                f"model {manifest.model_id} was trained on features "
                f"{manifest.feature_signature!r}, extractor produces {feature_signature!r}"
            )
        if n_features is not None and manifest.n_features != n_features:
            raise ModelLoadError(
                f"model {manifest.model_id} expects {manifest.n_features} features, "
                f"extractor produces {n_features}"
            )

        model = build_model(manifest)
        try:
            with mapped_state_dict(weights_path) as sd:
                _validate_state_dict(sd, manifest)
                model.load_state_dict(sd)
        except _LOAD_ERRORS as exc:
            logger.error("state_dict_load_failed path=%s error=%s", weights_path.as_posix(), exc)
            raise ModelLoadError(f"invalid weights {weights_path.as_posix()}: {exc}") from None
        logger.info(
            "model_loaded model_id=%s version=%s hidden=%s",
            manifest.model_id,
            manifest.version,
            "x".join(str(h) for h in manifest.hidden) or "none",
        )
        return cls(manifest, model)

    @property
    def manifest(self) -> ModelManifest:
        return self._manifest

    @property
    def model_id(self) -> str:
        return self._manifest.model_id

    @property
    def n_features(self) -> int:
        return self._manifest.n_features

    def classify(self, features: FeatureVector) -> ClassificationResult:
        n = self._manifest.n_features
        if features.ndim != 1 or int(features.shape[0]) != n:
            raise FeatureSizeError(n, int(features.size), f"shape {tuple(features.shape)}")
        x = torch.from_numpy(np.ascontiguousarray(features, dtype=np.float32)).reshape(1, n)
        try:
            with torch.no_grad():
                out = self._model(x)
        except RuntimeError as exc:
            raise ClassificationError(f"forward pass failed: {exc}") from None
        expected_shape = (1, self._manifest.n_classes)
        if tuple(out.shape) != expected_shape:
            raise ClassificationError(f"model output shape {tuple(out.shape)} != {expected_shape}")
        scores = tuple(float(v) for v in out[0].tolist())
        result = ClassificationResult(scores=scores, model_id=self._manifest.model_id)
        self._logger.debug(
            "classifier_scores digit=%d scores=%s",
            result.digit,
            ";".join(f"{i}:{s:.3f}" for i, s in enumerate(scores)),
        )
        return result


def build_model(manifest: ModelManifest) -> nn.Sequential:
    layers: OrderedDict[str, nn.Module] = OrderedDict()
    prev = manifest.n_features
    for i, width in enumerate(manifest.hidden, start=1):
        layers[f"fc{i}"] = nn.Linear(prev, width)
        layers[f"act{i}"] = nn.ReLU()
        prev = width
    layers["head"] = nn.Linear(prev, manifest.n_classes)
    if manifest.output_activation == "softmax":
        layers["softmax"] = nn.Softmax(dim=1)
    return nn.Sequential(layers)


def build_fresh_state_dict(manifest: ModelManifest) -> dict[str, Tensor]:
    sd_obj = build_model(manifest).state_dict()
    return {str(k): v.detach().clone() for k, v in sd_obj.items()}


def save_artifact(model_dir: Path, manifest: ModelManifest, state_dict: dict[str, Tensor]) -> None:
    model_dir.mkdir(parents=True, exist_ok=True)
    torch.save(state_dict, (model_dir / WEIGHTS_FILE).as_posix())
    (model_dir / MANIFEST_FILE).write_text(json.dumps(manifest.to_dict(), indent=2), encoding="utf-8")


@contextmanager
def mapped_state_dict(path: Path) -> Iterator[dict[str, Tensor]]:
    """Memory-map a saved state dict for the duration of the block.

    Tensors in the yielded dict share storage with the mapped file; copy them
    (``load_state_dict`` does) before leaving the block.
    """
    obj: object = torch.load(
        path.as_posix(), map_location=torch.device("cpu"), weights_only=True, mmap=True
    )
    sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
    if not isinstance(sd_obj, dict):
        raise ValueError("state dict file did not contain a dict")
    sd: dict[str, Tensor] = {}
    for k, v in sd_obj.items():
        if isinstance(k, str) and torch.is_tensor(v):
            sd[k] = v
        else:
            raise ValueError("invalid state dict entry")
    try:
        yield sd
    finally:
        sd.clear()
        sd_obj.clear()
        del obj


def _validate_state_dict(sd: dict[str, Tensor], manifest: ModelManifest) -> None:
    expected: dict[str, tuple[int, ...]] = {}
    prev = manifest.n_features
    for i, width in enumerate(manifest.hidden, start=1):
        expected[f"fc{i}.weight"] = (width, prev)
        expected[f"fc{i}.bias"] = (width,)
        prev = width
    expected["head.weight"] = (manifest.n_classes, prev)
    expected["head.bias"] = (manifest.n_classes,)
    missing = sorted(set(expected) - set(sd))
    if missing:
        raise ValueError(f"missing layers in state dict: {', '.join(missing)}")
    extra = sorted(set(sd) - set(expected))
    if extra:
        raise ValueError(f"unexpected layers in state dict: {', '.join(extra)}")
    for key, shape in expected.items():
        got = tuple(int(d) for d in sd[key].shape)
        if got != shape:
            raise ValueError(f"{key} has shape {got}, expected {shape}")
