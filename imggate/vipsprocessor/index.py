import dataclasses
import logging
from logging import Logger
from typing import Callable, Optional, Sequence

import pyvips
from pyvips import Image, Interesting  # type: ignore

from imggate.backend.index import OCTET_STREAM, Blob, Unsupported
from imggate.errors import (
    CorruptImageError,
    ImgGateError,
    ProcessorError,
    UnsupportedParamError
)
from imggate.params.index import Filter, Params, TrimBy
from imggate.typing import ImageMeta

DEFAULT_QUALITY = 80


@dataclasses.dataclass(frozen=True)
class Format:
  name: str
  extension: str
  content_type: str
  has_quality: bool


FORMATS = {
    f.name: f for f in [
        Format('jpeg', '.jpg', 'image/jpeg', True),
        Format('png', '.png', 'image/png', False),
        Format('webp', '.webp', 'image/webp', True),
        Format('gif', '.gif', 'image/gif', False),
        Format('avif', '.avif', 'image/avif', True),
        Format('tiff', '.tiff', 'image/tiff', True),
    ]
}

FORMAT_ALIASES = {
    'jpg': 'jpeg',
    'tif': 'tiff',
    'heif': 'avif',
}

LOADER_FORMATS = {
    'jpegload': 'jpeg',
    'pngload': 'png',
    'webpload': 'webp',
    'gifload': 'gif',
    'heifload': 'avif',
    'tiffload': 'tiff',
}

# Filters that are options of the output rather than pixel operations.
OUTPUT_FILTERS = frozenset(['format', 'quality', 'strip_exif', 'upscale'])

BLUR_FILTERS = frozenset(['blur', 'sharpen'])


def format_of_loader(image: Image) -> Format:
  loader = image.get('vips-loader') if image.get_typeof('vips-loader') != 0 else ''
  for prefix, name in LOADER_FORMATS.items():
    if loader.startswith(prefix):
      return FORMATS[name]
  return FORMATS['jpeg']


def format_of_name(name: str) -> Optional[Format]:
  name = name.lower()
  return FORMATS.get(FORMAT_ALIASES.get(name, name))


def is_unknown_format(e: pyvips.Error) -> bool:
  return 'not in a known format' in str(e)


def to_float(f: Filter, index: int = 0, default: Optional[str] = None) -> float:
  raw = f.arg(index, '' if default is None else default)
  try:
    return float(raw)
  except ValueError:
    raise UnsupportedParamError(f'invalid argument for {f.name}: {raw!r}')


def blur(image: Image, f: Filter) -> Image:
  sigma = to_float(f)
  return image if sigma <= 0 else image.gaussblur(sigma)


def sharpen(image: Image, f: Filter) -> Image:
  sigma = to_float(f, default='1')
  return image if sigma <= 0 else image.sharpen(sigma=sigma)


def grayscale(image: Image, _: Filter) -> Image:
  return image.colourspace('b-w')


def rotate(image: Image, f: Filter) -> Image:
  angle = int(to_float(f)) % 360
  match angle:
    case 90:
      return image.rot90()
    case 180:
      return image.rot180()
    case 270:
      return image.rot270()
    case _:
      return image


def brightness(image: Image, f: Filter) -> Image:
  shift = to_float(f) * 255 / 100
  return image.linear(1.0, shift).cast(image.format)


def contrast(image: Image, f: Filter) -> Image:
  a = 1.0 + to_float(f) / 100
  return image.linear(a, 128.0 * (1.0 - a)).cast(image.format)


PIXEL_FILTERS: dict[str, Callable[[Image, Filter], Image]] = {
    'blur': blur,
    'sharpen': sharpen,
    'grayscale': grayscale,
    'rotate': rotate,
    'brightness': brightness,
    'contrast': contrast,
}


def target_size(image: Image, width: int, height: int) -> tuple[int, int]:
  if width == 0:
    width = max(1, round(image.width * height / image.height))
  if height == 0:
    height = max(1, round(image.height * width / image.width))
  return width, height


def align_offset(space: int, align: str, low: str, high: str) -> int:
  if align == low:
    return 0
  if align == high:
    return space
  return space // 2


class VipsProcessor:

  def __init__(
      self,
      disable_blur: bool = False,
      disabled_filters: Sequence[str] = (),
      max_width: int = 0,
      max_height: int = 0,
      log: Optional[Logger] = None,
  ):
    self.name = 'vips'
    disabled = set(disabled_filters)
    if disable_blur:
      disabled |= BLUR_FILTERS
    self.disabled_filters = frozenset(disabled)
    self.max_width = max_width
    self.max_height = max_height
    self.log = log or logging.getLogger(__name__)

  def load(self, blob: Blob) -> Image | Unsupported | ImgGateError:
    if not (blob.content_type.startswith('image/') or blob.content_type == OCTET_STREAM):
      return Unsupported(f'content type: {blob.content_type}')

    try:
      return Image.new_from_buffer(blob.data, '')
    except pyvips.Error as e:
      if is_unknown_format(e):
        return Unsupported(f'unknown format: {blob.content_type}')
      return CorruptImageError(str(e).strip())

  def trim(self, image: Image, params: Params) -> Image:
    if params.trim_by == TrimBy.BOTTOM_RIGHT:
      background = image.getpoint(image.width - 1, image.height - 1)
    else:
      background = image.getpoint(0, 0)

    kwargs = {'background': background}
    if params.trim_tolerance:
      kwargs['threshold'] = params.trim_tolerance

    left, top, width, height = image.find_trim(**kwargs)
    if width == 0 or height == 0:
      return image
    return image.crop(left, top, width, height)

  def crop(self, image: Image, params: Params) -> Image:
    assert params.crop is not None
    c = params.crop
    left = min(c.left, image.width - 1)
    top = min(c.top, image.height - 1)
    width = min(c.right, image.width) - left
    height = min(c.bottom, image.height) - top
    if width <= 0 or height <= 0:
      return image
    return image.crop(left, top, width, height)

  def resize(self, image: Image, params: Params, upscale: bool) -> Image:
    width, height = params.width, params.height
    if 0 < self.max_width:
      width = min(width, self.max_width) if width else self.max_width
    if 0 < self.max_height:
      height = min(height, self.max_height) if height else self.max_height
    if width == 0 and height == 0:
      return image

    width, height = target_size(image, width, height)

    if params.stretch:
      return image.resize(width / image.width, vscale=height / image.height)

    if params.fit_in:
      scale = min(width / image.width, height / image.height)
      if 1 < scale and not upscale:
        return image
      return image.resize(scale)

    if params.smart:
      scale = max(width / image.width, height / image.height)
      resized = image.resize(scale)
      return resized.smartcrop(
          min(width, resized.width), min(height, resized.height), interesting=Interesting.ATTENTION)

    scale = max(width / image.width, height / image.height)
    resized = image.resize(scale)
    width = min(width, resized.width)
    height = min(height, resized.height)
    left = align_offset(resized.width - width, params.h_align, 'left', 'right')
    top = align_offset(resized.height - height, params.v_align, 'top', 'bottom')
    return resized.crop(left, top, width, height)

  def transform(self, image: Image, params: Params) -> Image:
    image = image.autorot()

    if params.trim:
      image = self.trim(image, params)

    if params.crop is not None:
      image = self.crop(image, params)

    image = self.resize(image, params, params.find_filter('upscale') is not None)

    if params.h_flip:
      image = image.fliphor()

    if params.v_flip:
      image = image.flipver()

    for f in params.filters:
      fn = PIXEL_FILTERS.get(f.name)
      if fn is not None:
        image = fn(image, f)
      elif f.name not in OUTPUT_FILTERS:
        self.log.debug({'message': 'unknown filter ignored', 'filter': f.name})

    return image

  def output_format(self, image: Image, params: Params) -> Format:
    f = params.find_filter('format')
    if f is None:
      return format_of_loader(image)

    fmt = format_of_name(f.arg(0))
    if fmt is None:
      raise UnsupportedParamError(f'unsupported format: {f.arg(0)}')
    return fmt

  def quality(self, params: Params) -> int:
    f = params.find_filter('quality')
    if f is None:
      return DEFAULT_QUALITY
    return max(1, min(100, int(to_float(f))))

  def check_disabled(self, params: Params) -> Optional[UnsupportedParamError]:
    disabled = params.filter_names() & self.disabled_filters
    if disabled:
      return UnsupportedParamError(f'disabled filters: {",".join(sorted(disabled))}')
    return None

  def process(self, blob: Blob, params: Params) -> Blob | Unsupported | ImgGateError:
    if (err := self.check_disabled(params)) is not None:
      return err

    loaded = self.load(blob)
    if not isinstance(loaded, Image):
      return loaded

    try:
      fmt = self.output_format(loaded, params)
      image = self.transform(loaded, params)

      options: dict = {}
      if fmt.has_quality:
        options['Q'] = self.quality(params)
      if params.find_filter('strip_exif') is not None:
        options['strip'] = True

      data: bytes = image.write_to_buffer(fmt.extension, **options)
    except UnsupportedParamError as e:
      return e
    except pyvips.Error as e:
      self.log.warning({'message': 'failed to transform', 'reason': str(e).strip()})
      return CorruptImageError(str(e).strip())

    return Blob(data, fmt.content_type, blob.last_modified)

  def process_meta(self, blob: Blob, params: Params) -> ImageMeta | Unsupported | ImgGateError:
    if (err := self.check_disabled(params)) is not None:
      return err

    loaded = self.load(blob)
    if not isinstance(loaded, Image):
      return loaded

    try:
      fmt = format_of_loader(loaded)
      meta: ImageMeta = {
          'format': fmt.name,
          'content_type': fmt.content_type,
          'width': loaded.width,
          'height': loaded.height,
          'bands': loaded.bands,
      }
      if loaded.get_typeof('orientation') != 0:
        meta['orientation'] = int(loaded.get('orientation'))
    except pyvips.Error as e:
      return ProcessorError(str(e).strip())

    return meta
