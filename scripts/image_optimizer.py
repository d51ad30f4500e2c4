#!/usr/bin/env python3
"""
Adaptive Image Optimizer - Fit images under a byte ceiling at the best quality

Searches resize scales and encoder qualities until a re-encoded image fits,
and never hands back anything larger than (or undecodable compared to) the input.
"""

import argparse
import logging
import math
import mimetypes
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from image_codecs import DecodedImage, ImageGateway, PillowGateway

logger = logging.getLogger(__name__)

# Tuning constants
DEFAULT_SIZE_CEILING = 1_000_000  # 1MB default max size
QUALITY_SEARCH_ITERATIONS = 6  # 6 bisections give ~1.3% quality granularity
UNIVERSAL_LOSSY_MIME = 'image/webp'

FAMILY_NEAR_LOSSLESS = 'near-lossless'
FAMILY_LOSSY = 'lossy'

# Pipelines picked by the classifier
PIPELINE_FAST_PATH = 'fast-path'
PIPELINE_NEAR_LOSSLESS = 'near-lossless'
PIPELINE_LOSSY = 'lossy'
PIPELINE_UNSUPPORTED = 'unsupported'

# Screenshots, diagrams and text: aggressive resampling ruins legibility
NEAR_LOSSLESS_MIME_TYPES = {'image/png'}
LOSSY_MIME_TYPES = {'image/jpeg', 'image/jpg', 'image/pjpeg', 'image/webp'}
# GIF, HEIC, ICO, BMP and anything unknown are passed through untouched

EXTENSION_MIME_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.webp': 'image/webp',
    '.gif': 'image/gif',
    '.heic': 'image/heic',
    '.ico': 'image/x-icon',
}


@dataclass(frozen=True)
class CompressionProfile:
    """Scale ladder and quality search tuning for one format family."""
    name: str
    min_scale: float
    max_scale: float = 1.0
    step_factor: float = 0.85
    max_attempts: int = 6
    quality_lower_bound: float = 0.1
    quality_upper_bound: float = 0.92
    final_forced_quality: float = 0.05
    min_allowed_scale: float = 0.05

    def __post_init__(self):
        for label, value in (('min_scale', self.min_scale),
                             ('max_scale', self.max_scale),
                             ('min_allowed_scale', self.min_allowed_scale)):
            if not 0 < value <= 1:
                raise ValueError(f"{label} must be in (0, 1], got {value}")
        if self.min_scale > self.max_scale:
            raise ValueError("min_scale must not exceed max_scale")
        if not 0 < self.step_factor < 1:
            raise ValueError(f"step_factor must be in (0, 1), got {self.step_factor}")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be non-negative")
        for label, value in (('quality_lower_bound', self.quality_lower_bound),
                             ('quality_upper_bound', self.quality_upper_bound),
                             ('final_forced_quality', self.final_forced_quality)):
            if not 0 <= value <= 1:
                raise ValueError(f"{label} must be in [0, 1], got {value}")
        if self.quality_lower_bound > self.quality_upper_bound:
            raise ValueError("quality_lower_bound must not exceed quality_upper_bound")


LOSSY_PROFILE = CompressionProfile(name=FAMILY_LOSSY, min_scale=0.2)

NEAR_LOSSLESS_PROFILE = CompressionProfile(
    name=FAMILY_NEAR_LOSSLESS,
    min_scale=0.5,
    max_attempts=4,
    quality_lower_bound=0.5,
    final_forced_quality=0.3,
    min_allowed_scale=0.25,
)

DEFAULT_PROFILES = {
    FAMILY_LOSSY: LOSSY_PROFILE,
    FAMILY_NEAR_LOSSLESS: NEAR_LOSSLESS_PROFILE,
}


@dataclass(frozen=True)
class SourceImage:
    """The caller's bytes, as declared. Never mutated."""
    data: bytes
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class EncodingTarget:
    mime_type: str
    size_ceiling: int
    family: str
    profile: CompressionProfile


@dataclass(frozen=True)
class ScaleAttempt:
    index: int
    scale: float
    width: int
    height: int
    forced: bool = False


@dataclass(frozen=True)
class Candidate:
    data: bytes = field(repr=False)
    quality: float
    scale: float

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class OptimizationResult:
    """
    Outcome of one optimization call.

    Attributes:
        data: Bytes to hand back (a candidate, or the original)
        success: True only if the bytes are a smaller, decodable re-encoding
        mime_type: MIME type of ``data``
        original_size: Byte length of the input
    """
    data: bytes = field(repr=False)
    success: bool
    mime_type: str
    original_size: int

    @property
    def optimized_size(self) -> int:
        return len(self.data)

    @property
    def reduction_percent(self) -> float:
        if not self.original_size:
            return 0.0
        return (self.original_size - self.optimized_size) / self.original_size * 100


def normalize_mime(mime_type: Optional[str]) -> str:
    return (mime_type or '').strip().lower()


def classify_format(mime_type: str, size: int, size_ceiling: int,
                    convert_to_webp: bool) -> str:
    """Pick the pipeline for a declared MIME type and byte size."""
    mime = normalize_mime(mime_type)
    if mime in NEAR_LOSSLESS_MIME_TYPES:
        if size <= size_ceiling and not convert_to_webp:
            return PIPELINE_FAST_PATH
        return PIPELINE_NEAR_LOSSLESS
    if mime in LOSSY_MIME_TYPES:
        return PIPELINE_LOSSY
    return PIPELINE_UNSUPPORTED


def release_quietly(gateway: ImageGateway, surface) -> None:
    """Release a surface, ignoring anything the release raises."""
    try:
        gateway.release(surface)
    except Exception:
        logger.debug("Ignoring error while releasing surface", exc_info=True)


def is_decodable(gateway: ImageGateway, data: bytes, mime_type: str) -> bool:
    """Check that encoded bytes round-trip through the decoder."""
    try:
        decoded = gateway.decode(data, mime_type)
    except Exception as e:
        logger.warning(f"Discarding candidate that does not decode as {mime_type}: {e}")
        return False
    release_quietly(gateway, decoded.surface)
    return True


class QualitySearch:
    """Bisect encoder quality at a fixed resolution."""

    def __init__(self, gateway: ImageGateway, iterations: int = QUALITY_SEARCH_ITERATIONS):
        self.gateway = gateway
        self.iterations = iterations

    def search(self, surface, width: int, height: int, mime_type: str,
               size_ceiling: int, quality_lower_bound: float,
               quality_upper_bound: float, scale: float = 1.0) -> Optional[Candidate]:
        """
        Find the highest quality whose encoding stays at or under the ceiling.

        Always performs ``iterations`` encodes. Encoder errors propagate.

        Returns:
            The last candidate at or under the ceiling, or None if none was
        """
        low, high = quality_lower_bound, quality_upper_bound
        best = None

        for _ in range(self.iterations):
            quality = (low + high) / 2
            data = self.gateway.encode(surface, width, height, mime_type, quality)

            if len(data) > size_ceiling:
                high = quality
            else:
                low = quality
                best = Candidate(data=data, quality=quality, scale=scale)

        return best


class ScaleLadder:
    """Walk down a geometric sequence of scales until a candidate beats the original."""

    def __init__(self, gateway: ImageGateway, profile: CompressionProfile,
                 search: Optional[QualitySearch] = None):
        self.gateway = gateway
        self.profile = profile
        self.search = search or QualitySearch(gateway)

    def initial_scale(self, original_size: int, size_ceiling: int) -> float:
        ratio = math.sqrt(size_ceiling / original_size)
        return max(self.profile.min_scale, min(self.profile.max_scale, ratio))

    @staticmethod
    def dimensions(width: int, height: int, scale: float) -> Tuple[int, int]:
        return max(1, round(width * scale)), max(1, round(height * scale))

    def attempts(self, source: SourceImage, size_ceiling: int) -> Iterator[ScaleAttempt]:
        """Yield the regular ladder steps (the forced attempt is not included)."""
        initial = self.initial_scale(source.size, size_ceiling)

        for index in range(self.profile.max_attempts + 1):
            scale = initial * self.profile.step_factor ** index
            if scale <= 0:
                break
            width, height = self.dimensions(source.width, source.height, scale)
            yield ScaleAttempt(index=index, scale=scale, width=width, height=height)

    def forced_attempt(self, source: SourceImage, size_ceiling: int) -> ScaleAttempt:
        initial = self.initial_scale(source.size, size_ceiling)
        index = self.profile.max_attempts + 1
        scale = max(self.profile.min_allowed_scale,
                    initial * self.profile.step_factor ** index)
        width, height = self.dimensions(source.width, source.height, scale)
        return ScaleAttempt(index=index, scale=scale, width=width, height=height, forced=True)

    def run(self, source: SourceImage, decoded: DecodedImage,
            target: EncodingTarget) -> Optional[Candidate]:
        """
        Try each scale in turn, then one forced low-quality attempt.

        The decoded surface is only read; releasing it is up to the caller.

        Returns:
            The first validated candidate smaller than the original, or None
        """
        for attempt in self.attempts(source, target.size_ceiling):
            candidate = self._try(decoded, attempt, target)
            if candidate is not None and self._accept(candidate, source, target):
                logger.debug(f"Accepted {target.mime_type} at scale {attempt.scale:.3f}, "
                             f"quality {candidate.quality:.3f}: {candidate.size} bytes")
                return candidate

        attempt = self.forced_attempt(source, target.size_ceiling)
        candidate = self._try(decoded, attempt, target)
        if candidate is not None and self._accept(candidate, source, target):
            logger.debug(f"Accepted forced attempt at scale {attempt.scale:.3f}: "
                         f"{candidate.size} bytes")
            return candidate

        logger.debug(f"No candidate beat the original {source.size} bytes")
        return None

    def _try(self, decoded: DecodedImage, attempt: ScaleAttempt,
             target: EncodingTarget) -> Optional[Candidate]:
        logger.debug(f"Attempt {attempt.index}: scale {attempt.scale:.3f} "
                     f"-> {attempt.width}x{attempt.height}")
        surface = None
        try:
            surface = self.gateway.resample(decoded.surface, attempt.width, attempt.height)
            if attempt.forced:
                quality = self.profile.final_forced_quality
                data = self.gateway.encode(surface, attempt.width, attempt.height,
                                           target.mime_type, quality)
                return Candidate(data=data, quality=quality, scale=attempt.scale)
            return self.search.search(
                surface, attempt.width, attempt.height, target.mime_type,
                target.size_ceiling, self.profile.quality_lower_bound,
                self.profile.quality_upper_bound, scale=attempt.scale,
            )
        except Exception as e:
            logger.warning(f"Encoding failed at scale {attempt.scale:.3f}: {e}")
            return None
        finally:
            if surface is not None:
                release_quietly(self.gateway, surface)

    def _accept(self, candidate: Candidate, source: SourceImage,
                target: EncodingTarget) -> bool:
        if candidate.size >= source.size:
            return False
        return is_decodable(self.gateway, candidate.data, target.mime_type)


class ResultArbiter:
    """Choose between the original bytes and a surviving candidate."""

    @staticmethod
    def original(source: SourceImage) -> OptimizationResult:
        return OptimizationResult(data=source.data, success=False,
                                  mime_type=source.mime_type,
                                  original_size=source.size)

    def arbitrate(self, source: SourceImage, candidate: Optional[Candidate],
                  target: EncodingTarget) -> OptimizationResult:
        if candidate is None or candidate.size >= source.size:
            return self.original(source)
        return OptimizationResult(data=candidate.data, success=True,
                                  mime_type=target.mime_type,
                                  original_size=source.size)


class ImageOptimizer:
    """Re-encode images to fit a byte ceiling without ever growing them."""

    def __init__(self, gateway: Optional[ImageGateway] = None,
                 size_ceiling: int = DEFAULT_SIZE_CEILING,
                 profiles: Optional[Dict[str, CompressionProfile]] = None):
        self.gateway = gateway or PillowGateway()
        self.size_ceiling = size_ceiling
        self.profiles = dict(DEFAULT_PROFILES)
        if profiles:
            self.profiles.update(profiles)
        self.arbiter = ResultArbiter()

    def optimize(self, data: bytes, mime_type: str, convert_to_webp: bool = False,
                 size_ceiling: Optional[int] = None) -> OptimizationResult:
        """
        Optimize image bytes.

        Args:
            data: Raw input image bytes
            mime_type: Declared MIME type (trusted, not sniffed)
            convert_to_webp: Re-encode to WebP instead of the declared type
            size_ceiling: Target maximum size in bytes

        Returns:
            OptimizationResult; failures show up as success=False, never as errors
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"Expected bytes-like image data, got {type(data).__name__}")
        ceiling = self.size_ceiling if size_ceiling is None else size_ceiling
        if ceiling <= 0:
            raise ValueError(f"Size ceiling must be positive, got {ceiling}")

        source = SourceImage(data=bytes(data), mime_type=mime_type)
        pipeline = classify_format(mime_type, source.size, ceiling, convert_to_webp)

        if pipeline == PIPELINE_FAST_PATH:
            logger.debug(f"{mime_type} already within {ceiling} bytes, kept as-is")
            return self.arbiter.original(source)
        if pipeline == PIPELINE_UNSUPPORTED:
            logger.debug(f"Unsupported format {mime_type!r}, passed through")
            return self.arbiter.original(source)
        if not source.size:
            return self.arbiter.original(source)

        family = FAMILY_NEAR_LOSSLESS if pipeline == PIPELINE_NEAR_LOSSLESS else FAMILY_LOSSY
        target = EncodingTarget(
            mime_type=UNIVERSAL_LOSSY_MIME if convert_to_webp else normalize_mime(mime_type),
            size_ceiling=ceiling,
            family=family,
            profile=self.profiles[family],
        )

        try:
            decoded = self.gateway.decode(source.data, normalize_mime(mime_type))
        except Exception as e:
            logger.warning(f"Cannot decode input, returning original: {e}")
            return self.arbiter.original(source)

        try:
            source = SourceImage(data=source.data, mime_type=mime_type,
                                 width=decoded.width, height=decoded.height)
            ladder = ScaleLadder(self.gateway, target.profile)
            candidate = ladder.run(source, decoded, target)
        finally:
            release_quietly(self.gateway, decoded.surface)

        return self.arbiter.arbitrate(source, candidate, target)


_default_optimizer = ImageOptimizer()


def optimize_image(data: bytes, mime_type: str, convert_to_webp: bool = False,
                   size_ceiling: int = DEFAULT_SIZE_CEILING) -> OptimizationResult:
    """Optimize image bytes with the default Pillow gateway."""
    return _default_optimizer.optimize(data, mime_type, convert_to_webp, size_ceiling)


def guess_mime_type(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext in EXTENSION_MIME_TYPES:
        return EXTENSION_MIME_TYPES[ext]
    return mimetypes.guess_type(path)[0] or ''


def output_filename(name: str, result: OptimizationResult) -> str:
    """Swap the extension to .webp when the bytes were converted."""
    root, ext = os.path.splitext(name)
    if result.success and result.mime_type == UNIVERSAL_LOSSY_MIME and ext.lower() != '.webp':
        return root + '.webp'
    return name


def optimize_file(path: str, convert_to_webp: bool = False,
                  size_ceiling: int = DEFAULT_SIZE_CEILING,
                  optimizer: Optional[ImageOptimizer] = None) -> OptimizationResult:
    """Optimize one file on disk, using its extension as the declared type."""
    with open(path, 'rb') as f:
        data = f.read()
    optimizer = optimizer or _default_optimizer
    return optimizer.optimize(data, guess_mime_type(path), convert_to_webp, size_ceiling)


def process_directory(input_dir: str, output_dir: str,
                      size_ceiling: int = DEFAULT_SIZE_CEILING,
                      convert_to_webp: bool = False,
                      workers: int = 4,
                      file_extensions: Optional[List[str]] = None) -> Dict[str, OptimizationResult]:
    """
    Optimize every matching file under a directory into a mirror tree.

    Args:
        input_dir: Input directory containing images
        output_dir: Output directory for optimized images
        size_ceiling: Target maximum size per image in bytes
        convert_to_webp: Convert supported images to WebP
        workers: Number of files optimized concurrently
        file_extensions: List of file extensions to process

    Returns:
        Dictionary mapping relative input paths to their results
    """
    if file_extensions is None:
        file_extensions = ['.jpg', '.jpeg', '.png', '.webp', '.gif']
    file_extensions = [ext.lower() for ext in file_extensions]

    relative_paths = []
    for root, _, files in os.walk(input_dir):
        for file in sorted(files):
            if os.path.splitext(file)[1].lower() in file_extensions:
                relative_paths.append(os.path.relpath(os.path.join(root, file), input_dir))

    optimizer = ImageOptimizer(size_ceiling=size_ceiling)
    results: Dict[str, OptimizationResult] = {}

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = [
            (rel, pool.submit(optimize_file, os.path.join(input_dir, rel),
                              convert_to_webp, size_ceiling, optimizer))
            for rel in relative_paths
        ]
        for rel, future in futures:
            try:
                result = future.result()
            except OSError as e:
                logger.error(f"Failed to read {rel}: {e}")
                continue

            output_path = os.path.join(output_dir, output_filename(rel, result))
            os.makedirs(os.path.dirname(output_path), exist_ok=True)
            with open(output_path, 'wb') as f:
                f.write(result.data)
            results[rel] = result

            marker = '✅' if result.success else '➖'
            print(f"{marker} {rel}: {result.original_size:,} → {result.optimized_size:,} bytes "
                  f"({result.reduction_percent:.1f}%)")

    _print_summary(results)
    return results


def _print_summary(results: Dict[str, OptimizationResult]) -> None:
    if not results:
        print("No images were processed.")
        return

    total_original = sum(r.original_size for r in results.values())
    total_optimized = sum(r.optimized_size for r in results.values())
    improved = sum(1 for r in results.values() if r.success)
    reduction = (total_original - total_optimized) / total_original * 100 if total_original else 0.0

    print(f"\n{'='*60}")
    print("OPTIMIZATION SUMMARY")
    print(f"{'='*60}")
    print(f"📁 Files processed: {len(results)}")
    print(f"📉 Files reduced: {improved}")
    print(f"💾 Total size: {total_original:,} → {total_optimized:,} bytes")
    print(f"📊 Overall reduction: {reduction:.1f}%")
    print(f"{'='*60}")


def main(argv: Optional[List[str]] = None) -> None:
    """Main function with command line interface."""
    parser = argparse.ArgumentParser(
        description='Adaptive Image Optimizer - Fits images under a size ceiling',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s input_folder output_folder
  %(prog)s input_folder output_folder --max-size 500000
  %(prog)s input_folder output_folder --webp --workers 8
        """
    )

    parser.add_argument('input_dir', help='Input directory containing images')
    parser.add_argument('output_dir', help='Output directory for optimized images')
    parser.add_argument('--max-size', type=int, default=DEFAULT_SIZE_CEILING,
                        help='Target maximum size per image in bytes (default 1000000)')
    parser.add_argument('--webp', action='store_true',
                        help='Convert supported images to WebP')
    parser.add_argument('--workers', type=int, default=4,
                        help='Number of images optimized concurrently')
    parser.add_argument('--extensions', nargs='+',
                        default=['.jpg', '.jpeg', '.png', '.webp', '.gif'],
                        help='File extensions to process')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log every scale and quality attempt')

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')

    if not os.path.isdir(args.input_dir):
        print(f"Error: Input directory '{args.input_dir}' does not exist")
        sys.exit(1)

    if args.max_size <= 0:
        print("Error: Max size must be positive")
        sys.exit(1)

    if args.workers <= 0:
        print("Error: Workers must be positive")
        sys.exit(1)

    os.makedirs(args.output_dir, exist_ok=True)

    print(f"{'='*60}")
    print("ADAPTIVE IMAGE OPTIMIZER")
    print(f"{'='*60}")
    print(f"📂 Input: {args.input_dir}")
    print(f"📂 Output: {args.output_dir}")
    print(f"🎯 Max size: {args.max_size:,} bytes per image")
    print(f"🔄 Convert to WebP: {'yes' if args.webp else 'no'}")
    print(f"{'='*60}")

    process_directory(
        args.input_dir,
        args.output_dir,
        args.max_size,
        args.webp,
        args.workers,
        args.extensions,
    )


if __name__ == "__main__":
    main()
