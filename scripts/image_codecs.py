"""
Pillow-backed codecs and the decode/encode gateway used by the optimizer.

The optimizer never touches pixels itself: it hands surfaces to a gateway
and gets encoded bytes back. Swapping the gateway swaps the codec library.
"""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)


class OptimizerError(Exception):
    """Base class for errors raised by the codec layer."""


class DecodeError(OptimizerError):
    """Bytes could not be decoded as the declared image type."""


class EncodeError(OptimizerError):
    """A surface could not be encoded to the requested type."""


class UnsupportedFormatError(OptimizerError):
    """No codec is registered for a MIME type."""


def to_pillow_quality(quality: float) -> int:
    """Map a [0, 1] quality onto Pillow's 1..100 integer scale."""
    return max(1, min(100, int(round(quality * 100))))


def color_space(mode: str) -> str:
    if mode == 'CMYK':
        return 'CMYK'
    if mode in ['1', 'L', 'LA', 'I', 'I;16', 'F']:
        return 'GRAY'
    return 'RGB'


def carried_icc_profile(original: Image.Image, prepared: Image.Image) -> Optional[bytes]:
    """
    The source ICC profile, if it still describes the prepared pixels.

    A mode conversion across color spaces (CMYK to RGB, gray to RGB)
    leaves the embedded profile meaningless, so it is dropped.
    """
    icc_profile = original.info.get('icc_profile')
    if not icc_profile:
        return None
    if color_space(original.mode) != color_space(prepared.mode):
        return None
    return icc_profile


class Codec:
    """One image format: how to write a surface and how to read bytes back."""

    mime_types: Tuple[str, ...] = ()
    pil_format: str = ''

    def prepare(self, img: Image.Image) -> Image.Image:
        """Return an image in a mode this format can store."""
        return img

    def save_params(self, quality: float) -> Dict:
        return {'format': self.pil_format}

    def encode(self, img: Image.Image, quality: float) -> bytes:
        prepared = self.prepare(img)
        params = self.save_params(quality)
        icc_profile = carried_icc_profile(img, prepared)
        if icc_profile:
            params['icc_profile'] = icc_profile
        buffer = BytesIO()
        try:
            prepared.save(buffer, **params)
        finally:
            if prepared is not img:
                prepared.close()
        return buffer.getvalue()

    def decode(self, data: bytes) -> Image.Image:
        img = Image.open(BytesIO(data), formats=[self.pil_format])
        try:
            img.load()
            # Bake EXIF orientation into the pixels; the tag is not re-written
            upright = ImageOps.exif_transpose(img)
        except Exception:
            img.close()
            raise
        if upright is not img:
            img.close()
        return upright


class JpegCodec(Codec):
    mime_types = ('image/jpeg', 'image/jpg', 'image/pjpeg')
    pil_format = 'JPEG'

    def prepare(self, img: Image.Image) -> Image.Image:
        # JPEG has no alpha channel and no palette
        if img.mode in ['RGBA', 'LA', 'P', 'PA', '1', 'I', 'I;16', 'F']:
            return img.convert('RGB')
        return img

    def save_params(self, quality: float) -> Dict:
        return {
            'format': 'JPEG',
            'quality': to_pillow_quality(quality),
            'optimize': True,
            'progressive': True,
        }


class PngCodec(Codec):
    """Lossless: the quality argument has nothing to act on."""

    mime_types = ('image/png',)
    pil_format = 'PNG'

    def save_params(self, quality: float) -> Dict:
        return {'format': 'PNG', 'optimize': True}


class WebpCodec(Codec):
    mime_types = ('image/webp',)
    pil_format = 'WEBP'

    def prepare(self, img: Image.Image) -> Image.Image:
        if img.mode in ['RGB', 'RGBA']:
            return img
        has_alpha = 'A' in img.getbands() or 'transparency' in img.info
        return img.convert('RGBA' if has_alpha else 'RGB')

    def save_params(self, quality: float) -> Dict:
        return {
            'format': 'WEBP',
            'quality': to_pillow_quality(quality),
            'lossless': False,
            'method': 4,  # Good balance of speed/compression
        }


_CODECS: Dict[str, Codec] = {}
for _codec in (JpegCodec(), PngCodec(), WebpCodec()):
    for _mime in _codec.mime_types:
        _CODECS[_mime] = _codec


def codec_for(mime_type: str) -> Codec:
    """Resolve the codec for a MIME type (case-insensitive)."""
    codec = _CODECS.get((mime_type or '').strip().lower())
    if codec is None:
        raise UnsupportedFormatError(f"No codec for MIME type {mime_type!r}")
    return codec


@dataclass(frozen=True)
class DecodedImage:
    """A decoded pixel surface and its dimensions."""
    width: int
    height: int
    surface: Image.Image


@runtime_checkable
class ImageGateway(Protocol):
    """What the optimizer needs from a codec library."""

    def decode(self, data: bytes, mime_type: str) -> DecodedImage: ...

    def resample(self, surface: Image.Image, width: int, height: int) -> Image.Image: ...

    def encode(self, surface: Image.Image, width: int, height: int,
               mime_type: str, quality: float) -> bytes: ...

    def release(self, surface: Image.Image) -> None: ...


class PillowGateway:
    """Decode, resample, encode and release surfaces with Pillow."""

    def decode(self, data: bytes, mime_type: str) -> DecodedImage:
        codec = codec_for(mime_type)
        try:
            img = codec.decode(data)
        except Exception as e:
            raise DecodeError(f"Cannot decode {len(data)} bytes as {mime_type}: {e}") from e
        return DecodedImage(width=img.width, height=img.height, surface=img)

    def resample(self, surface: Image.Image, width: int, height: int) -> Image.Image:
        """Return a new surface at the requested size (always a copy)."""
        try:
            img = surface
            # Palette and bilevel images only resize with NEAREST
            if img.mode == 'P':
                img = img.convert('RGBA' if 'transparency' in img.info else 'RGB')
            elif img.mode == '1':
                img = img.convert('L')
            if img.size == (width, height):
                return img.copy() if img is surface else img
            resized = img.resize((width, height), Image.Resampling.LANCZOS)
            if img is not surface:
                img.close()
            return resized
        except Exception as e:
            raise EncodeError(f"Cannot resample to {width}x{height}: {e}") from e

    def encode(self, surface: Image.Image, width: int, height: int,
               mime_type: str, quality: float) -> bytes:
        codec = codec_for(mime_type)
        resized: Optional[Image.Image] = None
        try:
            if surface.size != (width, height):
                resized = self.resample(surface, width, height)
            return codec.encode(resized or surface, quality)
        except EncodeError:
            raise
        except Exception as e:
            raise EncodeError(f"Cannot encode {width}x{height} as {mime_type}: {e}") from e
        finally:
            if resized is not None:
                resized.close()

    def release(self, surface: Image.Image) -> None:
        surface.close()
