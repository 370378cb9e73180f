from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Final

from PIL import Image, ImageOps

from .errors import ImageError

TARGET_SIDE: Final[int] = 56
_PREPROCESS_SIGNATURE: Final[str] = "v1/gray601+resize56bilinear+otsu{polarity}"


@dataclass(frozen=True)
class PreprocessOptions:
    invert: bool = False
    visualize: bool = False
    visualize_max_kb: int = 16


def preprocess(img: Image.Image, opts: PreprocessOptions | None = None) -> Image.Image:
    """Turn a decoded color image into the 56x56 binary input of the HOG stage.

    Steps: luma grayscale, bilinear resize ignoring aspect ratio, Otsu
    threshold. Bright pixels become 255 unless ``opts.invert`` is set.
    """
    o = opts if opts is not None else PreprocessOptions()
    width, height = img.size
    if width <= 0 or height <= 0:
        raise ImageError(f"degenerate image dimensions {width}x{height}")
    try:
        gray = _to_grayscale(img)
        resized = gray.resize((TARGET_SIDE, TARGET_SIDE), resample=Image.Resampling.BILINEAR)
        del gray
        return _otsu_binarize(resized, invert=o.invert)
    except (ValueError, OSError) as exc:
        raise ImageError(f"preprocessing failed: {exc}") from None


def preprocess_signature(opts: PreprocessOptions | None = None) -> str:
    o = opts if opts is not None else PreprocessOptions()
    return _PREPROCESS_SIGNATURE.format(polarity="-inv" if o.invert else "")


def visualize_png(img: Image.Image, max_kb: int) -> bytes | None:
    scale = 4
    vis = img.resize((img.size[0] * scale, img.size[1] * scale), resample=Image.Resampling.NEAREST)
    buf = io.BytesIO()
    vis.save(buf, format="PNG", optimize=True)
    b = buf.getvalue()
    if len(b) > max_kb * 1024:
        return None
    return b


def _to_grayscale(img: Image.Image) -> Image.Image:
    if img.mode == "L":
        return img.copy()
    # Alpha is dropped rather than composited, like a plain RGBA->GRAY conversion
    rgb = img if img.mode == "RGB" else img.convert("RGB")
    return ImageOps.grayscale(rgb)


def otsu_threshold(gray: Image.Image) -> int:
    hist = gray.histogram()
    total = sum(hist)
    sum_total = sum(i * hist[i] for i in range(256))
    sum_b = 0
    w_b = 0
    max_var = -1.0
    threshold = 0
    for t in range(256):
        w_b += hist[t]
        if w_b == 0:
            continue
        w_f = total - w_b
        if w_f == 0:
            break
        sum_b += t * hist[t]
        m_b = sum_b / w_b
        m_f = (sum_total - sum_b) / w_f
        var_between = w_b * w_f * (m_b - m_f) * (m_b - m_f)
        if var_between > max_var:
            max_var = var_between
            threshold = t
    return threshold


def _otsu_binarize(gray: Image.Image, invert: bool) -> Image.Image:
    threshold = otsu_threshold(gray)
    hi, lo = (0, 255) if invert else (255, 0)
    return gray.point(lambda p: hi if p > threshold else lo, mode="L")
