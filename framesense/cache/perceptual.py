"""Perceptual image hashing with Pillow.

The default hasher is a 64-bit difference hash (dHash): the image is reduced
to a 9x8 grayscale thumbnail and each bit records whether a pixel is brighter
than its right-hand neighbour. Visually similar images differ in few bits, so
Hamming distance between two hashes is a usable similarity measure.

Any callable with the PerceptualHasher signature can replace it; hashes only
need a fixed length for hash_similarity() to compare them.
"""

from __future__ import annotations

import io
from collections.abc import Callable

from PIL import Image

BoundingBox = tuple[int, int, int, int]
PerceptualHasher = Callable[[bytes, BoundingBox | None], str]

HASH_SIZE = 8

# Errors Pillow raises for corrupt, truncated, oversized or unsupported input.
# UnidentifiedImageError is a subclass of OSError.
HASHING_ERRORS: tuple[type[Exception], ...] = (
    OSError,
    ValueError,
    SyntaxError,
    Image.DecompressionBombError,
)


def dhash(image_bytes: bytes, box: BoundingBox | None = None) -> str:
    """Return the 16-hex-char difference hash of an encoded image.

    Args:
        image_bytes: Encoded image (PNG, JPEG, ...)
        box: Optional (left, upper, right, lower) crop applied before hashing

    Returns:
        Lowercase hex string of HASH_SIZE * HASH_SIZE bits

    Raises:
        OSError, ValueError: the bytes are not a decodable image, or the
            crop box is invalid
    """
    with Image.open(io.BytesIO(image_bytes)) as img:
        img.load()
        if box is not None:
            left, upper, right, lower = box
            if right <= left or lower <= upper:
                raise ValueError(f"Empty crop box: {box}")
            img = img.crop(box)
        thumb = img.convert("L").resize(
            (HASH_SIZE + 1, HASH_SIZE),
            Image.Resampling.LANCZOS,
        )
        pixels = thumb.tobytes()

    width = HASH_SIZE + 1
    value = 0
    for row in range(HASH_SIZE):
        for col in range(HASH_SIZE):
            left_px = pixels[row * width + col]
            right_px = pixels[row * width + col + 1]
            value = (value << 1) | int(left_px > right_px)

    return format(value, f"0{HASH_SIZE * HASH_SIZE // 4}x")


def hash_similarity(first: str, second: str) -> float:
    """Percentage match between two equal-length hashes.

    Hex hashes are compared bit by bit (Hamming distance); anything else
    falls back to comparing characters. Hashes of different lengths are
    never similar.
    """
    if not first or len(first) != len(second):
        return 0.0
    try:
        distance = (int(first, 16) ^ int(second, 16)).bit_count()
    except ValueError:
        matches = sum(1 for a, b in zip(first, second) if a == b)
        return round(matches / len(first) * 100, 2)
    bits = len(first) * 4
    return round((1 - distance / bits) * 100, 2)
