from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

FeatureVector = npt.NDArray[np.float32]


@dataclass(frozen=True)
class ClassificationResult:
    scores: tuple[float, ...]  # length 10, as produced by the model
    model_id: str

    @property
    def digit(self) -> int:
        # First maximum wins on ties
        top_idx = 0
        best = self.scores[0]
        for i in range(1, len(self.scores)):
            if self.scores[i] > best:
                best = self.scores[i]
                top_idx = i
        return top_idx

    @property
    def confidence(self) -> float:
        return float(self.scores[self.digit])
