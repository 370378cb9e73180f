from __future__ import annotations

from dataclasses import dataclass

from PIL import Image

from ..config import Settings
from ..errors import FeatureSizeError
from ..logging import get_logger
from ..preprocess import PreprocessOptions, preprocess, preprocess_signature, visualize_png
from .classifier import DigitClassifier
from .hog import HogConfig, HogExtractor
from .types import ClassificationResult


@dataclass(frozen=True)
class PipelineOutput:
    result: ClassificationResult
    preview_png: bytes | None


def feature_signature(opts: PreprocessOptions, hog: HogConfig) -> str:
    return f"{preprocess_signature(opts)}+{hog.signature()}"


class DigitPipeline:
    """Preprocess -> HOG -> classify, for a single image."""

    def __init__(
        self,
        classifier: DigitClassifier,
        extractor: HogExtractor | None = None,
        opts: PreprocessOptions | None = None,
    ) -> None:
        self._opts = opts if opts is not None else PreprocessOptions()
        self._extractor = (
            extractor
            if extractor is not None
            else HogExtractor(expected_size=classifier.n_features)
        )
        if self._extractor.descriptor_size != classifier.n_features:
            raise FeatureSizeError(classifier.n_features, self._extractor.descriptor_size)
        self._classifier = classifier

    @classmethod
    def from_settings(cls, settings: Settings, hog: HogConfig | None = None) -> DigitPipeline:
        """Load the active model and bind it to a matching extractor.

        Raises ModelLoadError when the artifact is absent, corrupt or was
        built for a different feature geometry.
        """
        hog_cfg = hog if hog is not None else HogConfig()
        rc = settings.recognition
        opts = PreprocessOptions(
            invert=rc.invert, visualize=rc.visualize, visualize_max_kb=rc.visualize_max_kb
        )
        extractor = HogExtractor(hog_cfg)
        classifier = DigitClassifier.from_dir(
            settings.model.model_dir / settings.model.active_model,
            feature_signature=feature_signature(opts, hog_cfg),
            n_features=extractor.descriptor_size,
        )
        return cls(classifier, extractor=extractor, opts=opts)

    @property
    def classifier(self) -> DigitClassifier:
        return self._classifier

    @property
    def signature(self) -> str:
        return feature_signature(self._opts, self._extractor.config)

    def run(self, img: Image.Image) -> PipelineOutput:
        logger = get_logger()
        logger.debug("fallback_preprocess size=%dx%d mode=%s", img.size[0], img.size[1], img.mode)
        binary = preprocess(img, self._opts)
        preview = (
            visualize_png(binary, self._opts.visualize_max_kb) if self._opts.visualize else None
        )
        features = self._extractor.extract(binary)
        del binary
        result = self._classifier.classify(features)
        return PipelineOutput(result=result, preview_png=preview)
