"""Pure image algorithms: box fitting, step-down schedules, convolution and byte sniffing."""

import math
import re
import struct
from typing import List, Optional, Sequence

import numpy as np
from PIL import Image

from .models import Dimensions, ImageLayout

# 3x3 kernels, applied to RGB only.
SHARPEN_KERNEL = ((0, -1, 0), (-1, 5, -1), (0, -1, 0))
SHARPEN_DIVISOR = 1
NOISE_REDUCTION_KERNEL = ((1, 2, 1), (2, 4, 2), (1, 2, 1))
NOISE_REDUCTION_DIVISOR = 16

EXIF_SCAN_LIMIT = 64 * 1024
EXIF_ORIENTATION_TAG = 0x0112

_APP1_MARKER = b"\xff\xe1"
_EXIF_HEADER = b"Exif\x00\x00"

HEIF_BRANDS = {b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1"}

SUSPICIOUS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"<script",
        r"javascript:",
        r"data:text/html",
        r"vbscript:",
        r"<iframe",
        r"<object",
        r"<embed",
    )
]


def format_file_size(num_bytes: int) -> str:
    """
    Render a byte count for humans.

    >>> format_file_size(0)
    '0 Bytes'
    >>> format_file_size(1536)
    '1.5 KB'
    """
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    index = 0
    while num_bytes >= 1024 ** (index + 1) and index < len(units) - 1:
        index += 1
    value = round(num_bytes / (1024**index), 2)
    return f"{value:g} {units[index]}"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def fit_within(
    original: Dimensions,
    max_width: int,
    max_height: int,
    maintain_aspect_ratio: bool = True,
) -> Dimensions:
    """
    Largest size that fits ``max_width`` x ``max_height``.

    Returns ``original`` unchanged when it already fits.
    """
    if original.width <= max_width and original.height <= max_height:
        return original

    aspect_ratio = original.width / original.height
    target_width: float = min(original.width, max_width)
    target_height: float = min(original.height, max_height)

    if maintain_aspect_ratio:
        if target_width / aspect_ratio > target_height:
            target_width = target_height * aspect_ratio
        else:
            target_height = target_width / aspect_ratio

    return Dimensions(
        width=max(1, round_half_up(target_width)),
        height=max(1, round_half_up(target_height)),
    )


def step_down_schedule(source: Dimensions, target: Dimensions) -> List[Dimensions]:
    """
    Sizes to resample through when shrinking ``source`` to ``target``.

    Halves while either side is more than twice its target, never removing
    more than half of a side in one step, then ends on the exact target.
    """
    steps: List[Dimensions] = []
    width, height = source.width, source.height

    while width > target.width * 2 or height > target.height * 2:
        width = max(target.width, math.ceil(width / 2))
        height = max(target.height, math.ceil(height / 2))
        steps.append(Dimensions(width=width, height=height))

    if (width, height) != (target.width, target.height):
        steps.append(target)
    return steps


def apply_convolution(
    pixels: np.ndarray, kernel: Sequence[Sequence[int]], divisor: int
) -> np.ndarray:
    """
    Convolve the RGB channels of an ``H x W x C`` uint8 array with a 3x3 kernel.

    Border pixels and any channel past the third are copied unchanged.
    """
    if pixels.ndim != 3 or pixels.shape[2] < 3:
        raise ValueError(f"Expected an H x W x C array with RGB channels, got {pixels.shape}")

    output = pixels.copy()
    height, width = pixels.shape[:2]
    if height < 3 or width < 3:
        return output

    source = pixels[:, :, :3].astype(np.float64)
    accumulator = np.zeros((height - 2, width - 2, 3), dtype=np.float64)
    for ky in range(3):
        for kx in range(3):
            weight = kernel[ky][kx]
            if weight:
                accumulator += weight * source[ky : ky + height - 2, kx : kx + width - 2]

    accumulator /= divisor
    output[1:-1, 1:-1, :3] = np.clip(np.rint(accumulator), 0, 255).astype(np.uint8)
    return output


def _convolve_image(img: Image.Image, kernel: Sequence[Sequence[int]], divisor: int) -> Image.Image:
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
    filtered = apply_convolution(np.asarray(img), kernel, divisor)
    return Image.fromarray(filtered)


def sharpen(img: Image.Image) -> Image.Image:
    return _convolve_image(img, SHARPEN_KERNEL, SHARPEN_DIVISOR)


def reduce_noise(img: Image.Image) -> Image.Image:
    return _convolve_image(img, NOISE_REDUCTION_KERNEL, NOISE_REDUCTION_DIVISOR)


def find_exif_segment(data: bytes, limit: int = EXIF_SCAN_LIMIT) -> Optional[int]:
    """Offset of the TIFF header inside the first APP1 Exif segment, if any."""
    header = data[:limit]
    index = header.find(_APP1_MARKER)
    while index != -1:
        if header[index + 4 : index + 10] == _EXIF_HEADER:
            return index + 10
        index = header.find(_APP1_MARKER, index + 1)
    return None


def has_exif(data: bytes, limit: int = EXIF_SCAN_LIMIT) -> bool:
    return find_exif_segment(data, limit) is not None


def read_orientation(data: bytes, limit: int = EXIF_SCAN_LIMIT) -> int:
    """
    EXIF orientation (1-8) from the IFD0 of the Exif segment.

    Falls back to 1 when there is no Exif block or it cannot be parsed.
    """
    tiff_start = find_exif_segment(data, limit)
    if tiff_start is None:
        return 1

    tiff = data[tiff_start:limit]
    byte_order = tiff[:2]
    if byte_order == b"II":
        endian = "<"
    elif byte_order == b"MM":
        endian = ">"
    else:
        return 1

    try:
        (magic,) = struct.unpack(f"{endian}H", tiff[2:4])
        if magic != 42:
            return 1
        (ifd_offset,) = struct.unpack(f"{endian}I", tiff[4:8])
        (entry_count,) = struct.unpack(f"{endian}H", tiff[ifd_offset : ifd_offset + 2])
        for entry in range(entry_count):
            start = ifd_offset + 2 + entry * 12
            tag, field_type = struct.unpack(f"{endian}HH", tiff[start : start + 4])
            if tag == EXIF_ORIENTATION_TAG and field_type == 3:
                (value,) = struct.unpack(f"{endian}H", tiff[start + 8 : start + 10])
                return value if 1 <= value <= 8 else 1
    except struct.error:
        return 1
    return 1


def matches_signature(header: bytes, media_type: str) -> bool:
    """
    Whether the leading bytes agree with the declared media type.

    Unknown media types are accepted.
    """
    if media_type == "image/jpeg":
        return header[:3] == b"\xff\xd8\xff"
    if media_type == "image/png":
        return header[:8] == b"\x89PNG\r\n\x1a\n"
    if media_type == "image/webp":
        return header[:4] == b"RIFF" and header[8:12] == b"WEBP"
    if media_type == "image/heic":
        return header[4:8] == b"ftyp" and header[8:12] in HEIF_BRANDS
    return True


def contains_suspicious_content(sample: str) -> bool:
    return any(pattern.search(sample) for pattern in SUSPICIOUS_PATTERNS)


def classify_layout(width: int, height: int) -> ImageLayout:
    if width > height:
        return ImageLayout.LANDSCAPE
    if height > width:
        return ImageLayout.PORTRAIT
    return ImageLayout.SQUARE
