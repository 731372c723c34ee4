from __future__ import annotations

import io
import math
from pathlib import PurePosixPath

from PIL import Image, ImageOps, UnidentifiedImageError

from resizepipe.core.config import Settings
from resizepipe.core.errors import CorruptImageError, UnsupportedContentTypeError
from resizepipe.transform.types import OUTPUT_EXTENSIONS, TransformedImage, TransformParams

_DECODED_CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}
_CONTENT_TYPE_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
}
_ALPHA_MODES = {"RGBA", "LA", "PA"}


def normalize_content_type(raw: str | None) -> str:
    if raw is None:
        return ""
    token = raw.split(";", 1)[0].strip().lower()
    return _CONTENT_TYPE_ALIASES.get(token, token)


def params_from_settings(settings: Settings) -> TransformParams:
    return TransformParams(
        max_width=int(settings.max_width),
        max_height=int(settings.max_height),
        allowed_content_types=frozenset(normalize_content_type(item) for item in settings.allowed_content_types),
        output_format=settings.output_format,
        quality=int(settings.output_quality),
        allow_upscale=settings.allow_upscale,
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_target_size(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
    *,
    allow_upscale: bool = False,
) -> tuple[int, int]:
    if width <= 0 or height <= 0:
        raise CorruptImageError(f"Degenerate source dimensions {width}x{height}")
    scale = min(max_width / width, max_height / height)
    if not allow_upscale:
        scale = min(scale, 1.0)
    target_width = max(1, _round_half_up(width * scale))
    target_height = max(1, _round_half_up(height * scale))
    if scale <= 1.0:
        target_width = min(target_width, max_width)
        target_height = min(target_height, max_height)
    return target_width, target_height


def build_derived_key(
    source_key: str,
    width: int,
    height: int,
    *,
    prefix: str = "resized/",
    fallback_extension: str = "jpg",
) -> str:
    name = PurePosixPath(source_key).name
    if not name:
        raise ValueError(f"Source key has no basename: {source_key!r}")
    stem, dot, extension = name.rpartition(".")
    if not dot or not stem or not extension:
        stem, extension = name, fallback_extension
    normalized_prefix = prefix if prefix.endswith("/") else f"{prefix}/"
    return f"{normalized_prefix}{stem}_{width}x{height}.{extension}"


def _decode(data: bytes, declared: str, params: TransformParams) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as opened:
            decoded_type = _DECODED_CONTENT_TYPES.get(opened.format or "")
            if decoded_type is None or decoded_type not in params.allowed_content_types:
                raise CorruptImageError(
                    f"Payload declared as {declared} decodes as {opened.format or 'unknown'}"
                )
            opened.load()
            oriented = ImageOps.exif_transpose(opened)
            return oriented if oriented is not None else opened.copy()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise CorruptImageError(f"Unable to decode image payload: {exc}") from exc


def _prepare_mode(image: Image.Image, output_format: str) -> Image.Image:
    if image.mode == "P":
        image = image.convert("RGBA" if "transparency" in image.info else "RGB")
    if output_format == "jpeg":
        if image.mode in _ALPHA_MODES:
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[-1])
            return background
        if image.mode != "RGB":
            return image.convert("RGB")
        return image
    if image.mode in _ALPHA_MODES and image.mode != "RGBA":
        return image.convert("RGBA")
    if image.mode not in {"RGB", "RGBA"}:
        return image.convert("RGB")
    return image


def _encode(image: Image.Image, params: TransformParams) -> bytes:
    buffer = io.BytesIO()
    if params.output_format == "jpeg":
        image.save(buffer, format="JPEG", quality=params.quality, optimize=True)
    else:
        image.save(buffer, format="WEBP", quality=params.quality, method=4)
    return buffer.getvalue()


def transform(data: bytes, content_type: str | None, params: TransformParams) -> TransformedImage:
    declared = normalize_content_type(content_type)
    if declared not in params.allowed_content_types:
        raise UnsupportedContentTypeError(f"Content type is not allowed: {declared or '<none>'}")
    if not data:
        raise CorruptImageError("Payload is empty")

    image = _decode(data, declared, params)
    source_width, source_height = image.size
    target_width, target_height = compute_target_size(
        source_width,
        source_height,
        params.max_width,
        params.max_height,
        allow_upscale=params.allow_upscale,
    )

    prepared = _prepare_mode(image, params.output_format)
    if prepared.size != (target_width, target_height):
        prepared = prepared.resize((target_width, target_height), Image.Resampling.LANCZOS)

    return TransformedImage(
        data=_encode(prepared, params),
        content_type=params.output_content_type,
        width=target_width,
        height=target_height,
        source_width=source_width,
        source_height=source_height,
    )


def output_extension(params: TransformParams) -> str:
    return OUTPUT_EXTENSIONS[params.output_format]
