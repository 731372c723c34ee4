from __future__ import annotations

from dataclasses import dataclass, field

OUTPUT_CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}
OUTPUT_EXTENSIONS = {
    "jpeg": "jpg",
    "webp": "webp",
}


@dataclass(frozen=True)
class TransformParams:
    max_width: int
    max_height: int
    allowed_content_types: frozenset[str] = field(
        default_factory=lambda: frozenset({"image/jpeg", "image/png", "image/webp"})
    )
    output_format: str = "jpeg"
    quality: int = 85
    allow_upscale: bool = False

    def __post_init__(self) -> None:
        if self.max_width < 1 or self.max_height < 1:
            raise ValueError("max_width and max_height must be >= 1")
        if self.output_format not in OUTPUT_CONTENT_TYPES:
            raise ValueError(f"Unsupported output format: {self.output_format}")
        if not 1 <= self.quality <= 100:
            raise ValueError("quality must be in [1, 100]")

    @property
    def output_content_type(self) -> str:
        return OUTPUT_CONTENT_TYPES[self.output_format]


@dataclass(frozen=True)
class TransformedImage:
    data: bytes
    content_type: str
    width: int
    height: int
    source_width: int
    source_height: int
