from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import cv2
import numpy as np
import numpy.typing as npt
from PIL import Image

from ..errors import FeatureSizeError
from .types import FeatureVector

Size = tuple[int, int]  # (width, height)


@dataclass(frozen=True)
class HogConfig:
    window: Size = (56, 56)
    block: Size = (16, 16)
    block_stride: Size = (8, 8)
    cell: Size = (8, 8)
    nbins: int = 9

    @property
    def blocks_per_window(self) -> Size:
        bx = (self.window[0] - self.block[0]) // self.block_stride[0] + 1
        by = (self.window[1] - self.block[1]) // self.block_stride[1] + 1
        return bx, by

    @property
    def cells_per_block(self) -> int:
        return (self.block[0] // self.cell[0]) * (self.block[1] // self.cell[1])

    @property
    def descriptor_size(self) -> int:
        bx, by = self.blocks_per_window
        return bx * by * self.cells_per_block * self.nbins

    def validate(self) -> None:
        for name, (w, h) in (
            ("window", self.window),
            ("block", self.block),
            ("block_stride", self.block_stride),
            ("cell", self.cell),
        ):
            if w <= 0 or h <= 0:
                raise ValueError(f"{name} must be positive, got {w}x{h}")
        if self.nbins <= 0:
            raise ValueError("nbins must be positive")
        if self.block[0] % self.cell[0] or self.block[1] % self.cell[1]:
            raise ValueError("block must be a multiple of cell")
        if (self.window[0] - self.block[0]) % self.block_stride[0] or (
            self.window[1] - self.block[1]
        ) % self.block_stride[1]:
            raise ValueError("block stride must tile the window")

    def signature(self) -> str:
        return (
            f"hog/win{self.window[0]}x{self.window[1]}"
            f"/block{self.block[0]}x{self.block[1]}"
            f"/stride{self.block_stride[0]}x{self.block_stride[1]}"
            f"/cell{self.cell[0]}x{self.cell[1]}"
            f"/bins{self.nbins}"
        )


class _Descriptor(Protocol):
    def compute(self, img: npt.NDArray[np.uint8]) -> npt.NDArray[np.float32] | None: ...


class HogExtractor:
    """Fixed-geometry HOG extractor; geometry cannot change after construction."""

    def __init__(self, config: HogConfig | None = None, expected_size: int | None = None) -> None:
        cfg = config if config is not None else HogConfig()
        try:
            cfg.validate()
        except ValueError as exc:
            raise FeatureSizeError(
                expected_size if expected_size is not None else 0, None, str(exc)
            ) from None
        size = cfg.descriptor_size
        if expected_size is not None and expected_size != size:
            raise FeatureSizeError(expected_size, size, cfg.signature())
        self._config = cfg
        self._expected = size
        self._descriptor: _Descriptor = cv2.HOGDescriptor(
            cfg.window, cfg.block, cfg.block_stride, cfg.cell, cfg.nbins
        )

    @property
    def config(self) -> HogConfig:
        return self._config

    @property
    def descriptor_size(self) -> int:
        return self._expected

    def extract(self, binary: Image.Image) -> FeatureVector:
        if binary.size != self._config.window:
            w, h = binary.size
            raise FeatureSizeError(
                self._expected,
                None,
                f"input {w}x{h} does not match window "
                f"{self._config.window[0]}x{self._config.window[1]}",
            )
        arr = np.array(binary.convert("L"), dtype=np.uint8)
        raw = self._descriptor.compute(arr)
        if raw is None:
            raise FeatureSizeError(self._expected, None, "descriptor returned nothing")
        features = np.asarray(raw, dtype=np.float32).reshape(-1)
        if features.shape[0] != self._expected:
            raise FeatureSizeError(self._expected, int(features.shape[0]))
        return features
