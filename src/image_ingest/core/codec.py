"""Pillow implementation of the ImageCodec protocol."""

import io
from typing import Optional, Tuple

from PIL import Image, ImageOps, features

from .models import Dimensions

_PIL_FORMATS = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}

# EXIF orientations that swap width and height.
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}


def _to_quality(quality: float) -> int:
    """Map the 0-1 quality scale onto Pillow's 1-100."""
    return max(1, min(100, int(round(quality * 100))))


class PillowImageCodec:
    """Decode, resample and encode images with Pillow."""

    def __init__(self, resample: Image.Resampling = Image.Resampling.LANCZOS):
        self._resample = resample

    def probe(self, data: bytes) -> Tuple[Dimensions, Optional[str]]:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            orientation = img.getexif().get(0x0112, 1)
            if orientation in _TRANSPOSED_ORIENTATIONS:
                width, height = height, width
            return Dimensions(width=width, height=height), img.format

    def decode(self, data: bytes) -> Image.Image:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            oriented = ImageOps.exif_transpose(img)
            has_alpha = "A" in oriented.getbands() or "transparency" in oriented.info
            return oriented.convert("RGBA" if has_alpha else "RGB")

    def resize(self, buffer: Image.Image, width: int, height: int) -> Image.Image:
        if buffer.size == (width, height):
            return buffer
        return buffer.resize((width, height), self._resample)

    def encode(
        self,
        buffer: Image.Image,
        format: str,
        quality: float,
        *,
        progressive: bool = True,
        lossless: bool = False,
        exif: Optional[bytes] = None,
    ) -> bytes:
        pil_format = _PIL_FORMATS.get(format)
        if pil_format is None:
            raise ValueError(f"Unsupported output format: {format}")

        image = buffer
        save_kwargs = {}
        if pil_format == "JPEG":
            if image.mode != "RGB":
                background = Image.new("RGB", image.size, (255, 255, 255))
                if "A" in image.getbands():
                    background.paste(image, mask=image.getchannel("A"))
                else:
                    background.paste(image.convert("RGB"))
                image = background
            save_kwargs.update(
                quality=_to_quality(quality), optimize=True, progressive=progressive
            )
        elif pil_format == "WEBP":
            save_kwargs.update(quality=_to_quality(quality), lossless=lossless, method=4)
        else:
            save_kwargs.update(optimize=True)

        if exif:
            save_kwargs["exif"] = exif

        output_stream = io.BytesIO()
        image.save(output_stream, format=pil_format, **save_kwargs)
        return output_stream.getvalue()

    def supports_encoding(self, format: str) -> bool:
        if format == "webp":
            return bool(features.check("webp"))
        return format in _PIL_FORMATS

    def read_exif(self, data: bytes) -> Optional[bytes]:
        with Image.open(io.BytesIO(data)) as img:
            exif = img.getexif()
            if not exif:
                return None
            # decode() already applied the rotation
            if 0x0112 in exif:
                exif[0x0112] = 1
            return exif.tobytes()
