"""
libvips conversion engines.

Primary engine (two stages):
    1. decode: vips icc_transform (or vips copy) source -> <tmp>/<name>_intermediate.v
    2. tiling: vips dzsave <intermediate> <staging prefix> --layout dz ...

Decoding once into the native .v format lets dzsave read the pixels with
random access, which is much faster than re-decoding a compressed pyramid
for every tile row.

Fallback engine (one stage):
    vips dzsave <source> <staging prefix> ...

Used when the primary decode stage reports the source as unreadable.
"""

from typing import List, Optional

from ..config import PipelineSettings
from .base import ConversionEngine, ConversionRequest, EngineStage, EngineType

DECODE_BAND = (5.0, 45.0)
TILING_BAND = (50.0, 90.0)


class DzsaveOptions:
    """dzsave options shared by both engines."""

    def __init__(
        self,
        tile_size: int = 256,
        overlap: int = 1,
        tile_format: str = "jpg",
        jpeg_quality: int = 90,
        vips_concurrency: Optional[int] = None,
    ):
        self.tile_size = tile_size
        self.overlap = overlap
        self.tile_format = tile_format
        self.jpeg_quality = jpeg_quality
        self.vips_concurrency = vips_concurrency

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "DzsaveOptions":
        return cls(
            tile_size=settings.tile_size,
            overlap=settings.overlap,
            tile_format=settings.tile_format,
            jpeg_quality=settings.jpeg_quality,
            vips_concurrency=settings.vips_concurrency,
        )

    @property
    def suffix(self) -> str:
        fmt = self.tile_format.lstrip(".").lower()
        if fmt in ("jpg", "jpeg"):
            return f".{fmt}[Q={self.jpeg_quality},strip]"
        return f".{fmt}"

    def common_flags(self) -> List[str]:
        flags = ["--vips-progress"]
        if self.vips_concurrency:
            flags.append(f"--vips-concurrency={self.vips_concurrency}")
        return flags

    def dzsave_args(self, source: str, prefix: str) -> List[str]:
        return [
            "dzsave",
            source,
            prefix,
            "--layout", "dz",
            "--suffix", self.suffix,
            "--overlap", str(self.overlap),
            "--tile-size", str(self.tile_size),
        ] + self.common_flags()


class VipsEngine(ConversionEngine):
    """
    Two-stage vips pipeline: decode to an intermediate, then tile.

    Args:
        binary: vips executable
        options: dzsave options
        icc_transform: Convert to sRGB via the embedded ICC profile in the
            decode stage instead of a plain copy
    """

    def __init__(
        self,
        binary: str = "vips",
        options: Optional[DzsaveOptions] = None,
        icc_transform: bool = False,
    ):
        super().__init__(binary)
        self.options = options or DzsaveOptions()
        self.icc_transform = icc_transform

    @property
    def engine_type(self) -> EngineType:
        return EngineType.VIPS

    def build_stages(self, request: ConversionRequest) -> List[EngineStage]:
        if self.icc_transform:
            decode = [
                self.binary,
                "icc_transform",
                request.source_path,
                request.intermediate_path,
                "srgb",
                "--embedded",
            ]
        else:
            decode = [self.binary, "copy", request.source_path, request.intermediate_path]
        decode += self.options.common_flags()

        tiling = [self.binary] + self.options.dzsave_args(
            request.intermediate_path, request.output_prefix
        )

        return [
            EngineStage(name="decoding", argv=decode, band=DECODE_BAND),
            EngineStage(
                name="tiling",
                argv=tiling,
                band=TILING_BAND,
                tiles_dir=f"{request.output_prefix}_files",
            ),
        ]


class DirectDzsaveEngine(ConversionEngine):
    """Single-stage fallback: dzsave straight from the source file."""

    def __init__(self, binary: str = "vips", options: Optional[DzsaveOptions] = None):
        super().__init__(binary)
        self.options = options or DzsaveOptions()

    @property
    def engine_type(self) -> EngineType:
        return EngineType.VIPS_DIRECT

    def build_stages(self, request: ConversionRequest) -> List[EngineStage]:
        argv = [self.binary] + self.options.dzsave_args(
            request.source_path, request.output_prefix
        )
        return [
            EngineStage(
                name="tiling",
                argv=argv,
                band=(5.0, 90.0),
                tiles_dir=f"{request.output_prefix}_files",
            )
        ]


def build_engines(settings: PipelineSettings):
    """Primary and fallback engines configured from settings."""
    options = DzsaveOptions.from_settings(settings)
    primary = VipsEngine(
        binary=settings.vips_binary,
        options=options,
        icc_transform=settings.icc_transform,
    )
    fallback = DirectDzsaveEngine(
        binary=settings.fallback_binary or settings.vips_binary,
        options=options,
    )
    return primary, fallback
