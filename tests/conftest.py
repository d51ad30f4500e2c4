"""Shared fixtures: generated images and an in-memory gateway."""
from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Callable, List, Optional

import numpy as np
import pytest
from PIL import Image

from image_codecs import DecodeError, DecodedImage, EncodeError


def noise_image(width: int, height: int, mode: str = "RGB", seed: int = 0) -> Image.Image:
    """Random noise: about as incompressible as an image gets."""
    rng = np.random.default_rng(seed)
    shape = (height, width) if mode == "L" else (height, width, len(mode))
    pixels = rng.integers(0, 256, size=shape, dtype=np.uint8)
    return Image.fromarray(pixels)


def encode_image(img: Image.Image, fmt: str, **params) -> bytes:
    buffer = BytesIO()
    img.save(buffer, format=fmt, **params)
    return buffer.getvalue()


@pytest.fixture
def large_png_bytes() -> bytes:
    """A noise PNG well above the default 1MB ceiling."""
    data = encode_image(noise_image(720, 720), "PNG")
    assert len(data) > 1_000_000
    return data


@pytest.fixture
def photo_jpeg_bytes() -> bytes:
    """A high-quality noise JPEG under the default ceiling."""
    data = encode_image(noise_image(400, 400, seed=1), "JPEG", quality=95)
    assert 100_000 < len(data) < 1_000_000
    return data


@dataclass
class FakeSurface:
    width: int
    height: int


class FakeGateway:
    """
    Gateway double that sizes encodings with a formula instead of pixels.

    ``size_for(width, height, mime_type, quality)`` decides each encoded
    length. ``decode_fails(data, mime_type)`` marks buffers as undecodable.
    """

    def __init__(self, width: int = 100, height: int = 50,
                 size_for: Optional[Callable[[int, int, str, float], int]] = None,
                 decode_fails: Optional[Callable[[bytes, str], bool]] = None,
                 encode_fails: Optional[Callable[[int, int, str, float], bool]] = None,
                 release_raises: bool = False):
        self.width = width
        self.height = height
        self.size_for = size_for or (lambda w, h, mime, q: max(1, int(w * h * q)))
        self.decode_fails = decode_fails or (lambda data, mime: False)
        self.encode_fails = encode_fails or (lambda w, h, mime, q: False)
        self.release_raises = release_raises
        self.encodes: List[tuple] = []
        self.decodes: List[tuple] = []
        self.released: List[FakeSurface] = []
        self.source_surface: Optional[FakeSurface] = None

    def decode(self, data: bytes, mime_type: str) -> DecodedImage:
        self.decodes.append((len(data), mime_type))
        if self.decode_fails(data, mime_type):
            raise DecodeError("fake decode failure")
        surface = FakeSurface(self.width, self.height)
        if self.source_surface is None:
            self.source_surface = surface
        return DecodedImage(width=self.width, height=self.height, surface=surface)

    def resample(self, surface: FakeSurface, width: int, height: int) -> FakeSurface:
        return FakeSurface(width, height)

    def encode(self, surface: FakeSurface, width: int, height: int,
               mime_type: str, quality: float) -> bytes:
        self.encodes.append((width, height, mime_type, quality))
        if self.encode_fails(width, height, mime_type, quality):
            raise EncodeError("fake encode failure")
        return b"x" * self.size_for(width, height, mime_type, quality)

    def release(self, surface: FakeSurface) -> None:
        self.released.append(surface)
        if self.release_raises:
            raise RuntimeError("release failed")

    def releases_of(self, surface: FakeSurface) -> int:
        return sum(1 for s in self.released if s is surface)


def oriented_jpeg(width: int, height: int, orientation: int) -> bytes:
    """A JPEG whose stored pixels need an EXIF rotation to display upright."""
    exif = Image.Exif()
    exif[0x0112] = orientation
    return encode_image(noise_image(width, height, seed=5), "JPEG", quality=95, exif=exif)


def srgb_icc_profile() -> bytes:
    from PIL import ImageCms
    return ImageCms.ImageCmsProfile(ImageCms.createProfile("sRGB")).tobytes()
