import base64
import dataclasses
import hashlib
import hmac
import re
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import quote, unquote

from imggate.errors import InvalidPathError
from imggate.typing import Fingerprint, ImageKey

UNSAFE = 'unsafe'
META = 'meta'
FIT_IN = 'fit-in'
STRETCH = 'stretch'
SMART = 'smart'
FILTERS_PREFIX = 'filters:'

H_ALIGNS = frozenset(['left', 'right', 'center'])
V_ALIGNS = frozenset(['top', 'bottom', 'middle'])

KNOWN_FILTERS = frozenset([
    'blur',
    'brightness',
    'contrast',
    'format',
    'grayscale',
    'quality',
    'rotate',
    'sharpen',
    'strip_exif',
    'upscale',
])

# Characters left as-is when the image key is written back into a path.
IMAGE_SAFE_CHARS = "/:@!$&'()*+,;=-._~"

# URL-safe base64 of an HMAC-SHA1 digest is always 27 characters plus one pad.
hash_re = re.compile(r'[A-Za-z0-9_-]{27}=')
trim_re = re.compile(r'trim(?::(top-left|bottom-right))?(?::(\d+))?')
crop_re = re.compile(r'(\d+)x(\d+):(\d+)x(\d+)')
size_re = re.compile(r'(-)?(\d*)x(-)?(\d*)')
bad_size_re = re.compile(r'-?\d+x[-\w]*')
filter_name_re = re.compile(r'([a-z_][a-z0-9_]*)\(')


class TrimBy(Enum):
  TOP_LEFT = 'top-left'
  BOTTOM_RIGHT = 'bottom-right'


@dataclasses.dataclass(frozen=True)
class Crop:
  left: int
  top: int
  right: int
  bottom: int


@dataclasses.dataclass(frozen=True)
class Filter:
  name: str
  args: Tuple[str, ...] = ()

  def arg(self, index: int, default: str = '') -> str:
    return self.args[index] if index < len(self.args) else default

  def __str__(self) -> str:
    return f'{self.name}({",".join(self.args)})'


@dataclasses.dataclass(frozen=True)
class Params:
  image: ImageKey
  hash: Optional[str] = None
  unsafe: bool = False
  meta: bool = False
  trim: bool = False
  trim_by: TrimBy = TrimBy.TOP_LEFT
  trim_tolerance: int = 0
  crop: Optional[Crop] = None
  fit_in: bool = False
  stretch: bool = False
  width: int = 0
  height: int = 0
  h_flip: bool = False
  v_flip: bool = False
  h_align: str = ''
  v_align: str = ''
  smart: bool = False
  filters: Tuple[Filter, ...] = ()

  def filter_names(self) -> frozenset[str]:
    return frozenset(f.name for f in self.filters)

  def find_filter(self, name: str) -> Optional[Filter]:
    # The last occurrence wins, as it does when filters are applied in order.
    for f in reversed(self.filters):
      if f.name == name:
        return f
    return None


def split_head(rest: str) -> Optional[Tuple[str, str]]:
  """Split off the first path segment, only if more path follows it."""
  if '/' not in rest:
    return None
  seg, tail = rest.split('/', 1)
  return seg, tail


def split_args(raw: str) -> Tuple[str, ...]:
  if raw == '':
    return ()

  args: list[str] = []
  depth = 0
  start = 0
  for i, c in enumerate(raw):
    if c == '(':
      depth += 1
    elif c == ')':
      depth -= 1
    elif c == ',' and depth == 0:
      args.append(raw[start:i])
      start = i + 1
  args.append(raw[start:])
  return tuple(args)


def parse_filters(s: str) -> Tuple[Tuple[Filter, ...], str]:
  """Parse `name(args):name(args)/rest` and return the filters and the rest."""
  filters: list[Filter] = []
  i = 0
  while True:
    m = filter_name_re.match(s, i)
    if m is None:
      raise InvalidPathError(f'invalid filter: {s[i:]}')
    name = m.group(1)
    i = m.end()

    start = i
    depth = 1
    while i < len(s) and 0 < depth:
      if s[i] == '(':
        depth += 1
      elif s[i] == ')':
        depth -= 1
      i += 1
    if depth != 0:
      raise InvalidPathError(f'unbalanced parentheses in filter: {name}')

    filters.append(Filter(name, split_args(s[start:i - 1])))

    if len(s) <= i:
      return tuple(filters), ''
    if s[i] == ':':
      i += 1
      continue
    if s[i] == '/':
      return tuple(filters), s[i + 1:]
    raise InvalidPathError(f'unexpected character after filter {name}: {s[i]}')


def parse(path: str, strict: bool = False) -> Params:
  rest = path.lstrip('/')
  if rest == '':
    raise InvalidPathError('empty path')

  fields: dict = {}

  match split_head(rest):
    case (str() as seg, str() as tail) if seg == UNSAFE:
      fields['unsafe'] = True
      rest = tail
    case (str() as seg, str() as tail) if hash_re.fullmatch(seg):
      fields['hash'] = seg
      rest = tail

  match split_head(rest):
    case (str() as seg, str() as tail) if seg == META:
      fields['meta'] = True
      rest = tail

  match split_head(rest):
    case (str() as seg, str() as tail) if (m := trim_re.fullmatch(seg)) is not None:
      fields['trim'] = True
      if m[1] is not None:
        fields['trim_by'] = TrimBy(m[1])
      if m[2] is not None:
        fields['trim_tolerance'] = int(m[2])
      rest = tail

  match split_head(rest):
    case (str() as seg, str() as tail) if (m := crop_re.fullmatch(seg)) is not None:
      crop = Crop(int(m[1]), int(m[2]), int(m[3]), int(m[4]))
      if crop.right < crop.left or crop.bottom < crop.top:
        raise InvalidPathError(f'invalid crop: {seg}')
      if crop != Crop(0, 0, 0, 0):
        fields['crop'] = crop
      rest = tail

  match split_head(rest):
    case (str() as seg, str() as tail) if seg == FIT_IN:
      fields['fit_in'] = True
      rest = tail

  match split_head(rest):
    case (str() as seg, str() as tail) if seg == STRETCH:
      fields['stretch'] = True
      rest = tail

  match split_head(rest):
    case (str() as seg, str() as tail) if (m := size_re.fullmatch(seg)) is not None:
      fields['h_flip'] = m[1] is not None
      fields['width'] = int(m[2]) if m[2] else 0
      fields['v_flip'] = m[3] is not None
      fields['height'] = int(m[4]) if m[4] else 0
      rest = tail
    case (str() as seg, str()) if bad_size_re.fullmatch(seg):
      raise InvalidPathError(f'non-numeric size: {seg}')

  match split_head(rest):
    case (str() as seg, str() as tail) if seg in H_ALIGNS:
      fields['h_align'] = seg
      rest = tail

  match split_head(rest):
    case (str() as seg, str() as tail) if seg in V_ALIGNS:
      fields['v_align'] = seg
      rest = tail

  match split_head(rest):
    case (str() as seg, str() as tail) if seg == SMART:
      fields['smart'] = True
      rest = tail

  if rest.startswith(FILTERS_PREFIX):
    filters, rest = parse_filters(rest[len(FILTERS_PREFIX):])
    if strict:
      unknown = [f.name for f in filters if f.name not in KNOWN_FILTERS]
      if unknown:
        raise InvalidPathError(f'unknown filters: {",".join(unknown)}')
    fields['filters'] = filters

  image = unquote(rest)
  if image == '':
    raise InvalidPathError('missing image')

  return Params(image=ImageKey(image), **fields)


def fingerprint(params: Params) -> Fingerprint:
  """Canonical path of params without the signature; used to sign and to coalesce."""
  parts: list[str] = []

  if params.meta:
    parts.append(META)

  if params.trim:
    trim = 'trim'
    if params.trim_by != TrimBy.TOP_LEFT:
      trim += f':{params.trim_by.value}'
    if params.trim_tolerance:
      trim += f':{params.trim_tolerance}'
    parts.append(trim)

  if params.crop is not None:
    c = params.crop
    parts.append(f'{c.left}x{c.top}:{c.right}x{c.bottom}')

  if params.fit_in:
    parts.append(FIT_IN)

  if params.stretch:
    parts.append(STRETCH)

  if params.h_flip or params.v_flip or params.width or params.height:
    h = '-' if params.h_flip else ''
    v = '-' if params.v_flip else ''
    parts.append(f'{h}{params.width}x{v}{params.height}')

  if params.h_align:
    parts.append(params.h_align)

  if params.v_align:
    parts.append(params.v_align)

  if params.smart:
    parts.append(SMART)

  if params.filters:
    parts.append(FILTERS_PREFIX + ':'.join(str(f) for f in params.filters))

  parts.append(quote(params.image, safe=IMAGE_SAFE_CHARS))

  return Fingerprint('/'.join(parts))


def sign(fp: str, secret: str) -> str:
  digest = hmac.new(secret.encode(), fp.encode(), hashlib.sha1).digest()
  return base64.urlsafe_b64encode(digest).decode()


def sign_path(path: str, secret: str) -> str:
  fp = fingerprint(parse(path))
  return f'{sign(fp, secret)}/{fp}'


def verify_params(params: Params, secret: str, unsafe_allowed: bool) -> bool:
  if unsafe_allowed and (params.unsafe or secret == ''):
    return True

  if params.hash is None or secret == '':
    return False

  return hmac.compare_digest(params.hash, sign(fingerprint(params), secret))


def verify(path: str, secret: str, unsafe_allowed: bool) -> bool:
  try:
    params = parse(path)
  except InvalidPathError:
    return False
  return verify_params(params, secret, unsafe_allowed)
