from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Literal

OutputActivation = Literal["softmax", "none"]

_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)
_ARCHS: Final[tuple[str, ...]] = ("mlp",)


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    arch: str
    n_features: int
    hidden: tuple[int, ...]
    n_classes: int
    version: str
    created_at: datetime
    feature_signature: str
    output_activation: OutputActivation

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        created_at_str = str(d["created_at"]) if "created_at" in d else ""
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now(UTC)
        n_features = int(str(d.get("n_features", 0)))
        n_classes = int(str(d.get("n_classes", 10)))
        hidden = _parse_hidden(d.get("hidden", []))
        if n_features < 1:
            raise ValueError("n_features must be >= 1")
        if n_classes < 2:
            raise ValueError("n_classes must be >= 2")
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        arch = str(d.get("arch", "")).strip()
        version = str(d.get("version", "")).strip()
        feature_signature = str(d.get("feature_signature", "")).strip()
        if not schema_version or not model_id or not arch or not version or not feature_signature:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        if arch not in _ARCHS:
            raise ValueError(f"unsupported arch {arch!r}")
        activation = str(d.get("output_activation", "softmax")).strip()
        if activation == "softmax":
            act: OutputActivation = "softmax"
        elif activation == "none":
            act = "none"
        else:
            raise ValueError(f"unsupported output_activation {activation!r}")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            arch=arch,
            n_features=n_features,
            hidden=hidden,
            n_classes=n_classes,
            version=version,
            created_at=created,
            feature_signature=feature_signature,
            output_activation=act,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "arch": self.arch,
            "n_features": self.n_features,
            "hidden": list(self.hidden),
            "n_classes": self.n_classes,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "feature_signature": self.feature_signature,
            "output_activation": self.output_activation,
        }


def _parse_hidden(raw: object) -> tuple[int, ...]:
    if not isinstance(raw, list):
        raise ValueError("hidden must be a list of layer widths")
    out: list[int] = []
    for item in raw:
        width = int(str(item))
        if width < 1:
            raise ValueError("hidden layer widths must be >= 1")
        out.append(width)
    return tuple(out)
