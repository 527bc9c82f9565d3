import logging
import re
from logging import Logger
from typing import Mapping, Optional, Sequence

import httpx
from dateutil import parser
from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

import imggate
from imggate.backend.index import OCTET_STREAM, Blob
from imggate.errors import (
    ForbiddenError,
    LoaderError,
    NotFoundError,
    SizeExceededError,
    TransportError
)

# A scheme-less key is fetched over HTTP only if it starts with something like a host name.
host_re = re.compile(r'[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)+(?::\d+)?/')

SCHEMES = ('http', 'https')

MAX_REDIRECTS = 5

# Never forwarded, even when every request header is.
SKIPPED_HEADERS = frozenset([
    'connection',
    'content-length',
    'host',
    'keep-alive',
    'proxy-authorization',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
    'accept-encoding',
])
SKIPPED_HEADER_PREFIXES = ('x-amz', 'x-forwarded-')

# Dropped once a redirect leaves the original host.
CREDENTIAL_HEADERS = frozenset(['authorization', 'cookie'])


class HttpLoader:

  def __init__(
      self,
      client: Optional[httpx.Client] = None,
      allowed_sources: Sequence[str] = (),
      max_allowed_size: int = 0,
      default_scheme: str = 'https',
      timeout: float = 30.0,
      insecure_skip_verify: bool = False,
      user_agent: str = f'imggate/{imggate.version}',
      forward_headers: Sequence[str] = (),
      forward_user_agent: bool = False,
      forward_all_headers: bool = False,
      log: Optional[Logger] = None,
  ):
    self.name = 'http'
    self.client = client or httpx.Client(
        timeout=timeout, verify=not insecure_skip_verify)
    self.allowed_sources = (
        None if len(allowed_sources) == 0 else PathSpec.from_lines(
            GitWildMatchPattern, allowed_sources))
    self.max_allowed_size = max_allowed_size
    self.default_scheme = default_scheme
    self.user_agent = user_agent
    self.forward_headers = frozenset(
        [h.lower() for h in forward_headers] + (['user-agent'] if forward_user_agent else []))
    self.forward_all_headers = forward_all_headers
    self.log = log or logging.getLogger(__name__)

  def to_url(self, key: str) -> Optional[str]:
    if '://' in key:
      scheme = key.split('://', 1)[0].lower()
      return key if scheme in SCHEMES else None

    if self.default_scheme != '' and host_re.match(key):
      return f'{self.default_scheme}://{key}'

    return None

  def can_handle(self, key: str) -> bool:
    return self.to_url(key) is not None

  def is_allowed(self, host: str) -> bool:
    return self.allowed_sources is None or self.allowed_sources.match_file(host)

  def check_url(self, url: str) -> httpx.URL | LoaderError:
    try:
      target = httpx.URL(url)
    except httpx.InvalidURL as e:
      return TransportError(f'invalid url: {e}')

    if target.scheme not in SCHEMES:
      return ForbiddenError(f'scheme not allowed: {url}')
    if not self.is_allowed(target.host):
      return ForbiddenError(f'source not allowed: {target.host}')

    return target

  def request_headers(self, headers: Optional[Mapping[str, str]]) -> dict[str, str]:
    out = {'user-agent': self.user_agent}
    for name, value in (headers or {}).items():
      name = name.lower()
      if self.forward_all_headers:
        if name in SKIPPED_HEADERS or name.startswith(SKIPPED_HEADER_PREFIXES):
          continue
      elif name not in self.forward_headers:
        continue
      out[name] = value
    return out

  def fetch(self, key: str, headers: Optional[Mapping[str, str]] = None) -> Blob | LoaderError:
    url = self.to_url(key)
    if url is None:
      return NotFoundError(f'not an http source: {key}')

    request_headers = self.request_headers(headers)
    origin: Optional[str] = None

    try:
      for _ in range(MAX_REDIRECTS + 1):
        match self.check_url(url):
          case httpx.URL() as target:
            pass
          case LoaderError() as e:
            return e
          case _:
            raise Exception('system error')

        if origin is None:
          origin = target.host
        elif target.host != origin:
          request_headers = {
              k: v for k, v in request_headers.items() if k not in CREDENTIAL_HEADERS
          }

        with self.client.stream(
            'GET', target, headers=request_headers, follow_redirects=False) as res:
          if res.is_redirect:
            url = str(target.join(res.headers['location']))
            self.log.debug({'message': 'redirected', 'from': str(target), 'to': url})
            continue
          return self.read(res, str(target))

      return TransportError(f'too many redirects: {key}')
    except httpx.HTTPError as e:
      return TransportError(f'{type(e).__name__}: {e}')

  def read(self, res: httpx.Response, url: str) -> Blob | LoaderError:
    if res.status_code in [404, 410]:
      return NotFoundError(f'not found: {url}')
    if res.status_code in [401, 403]:
      return ForbiddenError(f'status {res.status_code}: {url}')
    if not res.is_success:
      return TransportError(f'status {res.status_code}: {url}')

    limit = self.max_allowed_size
    length = res.headers.get('content-length', '')
    if 0 < limit and length.isdigit() and limit < int(length):
      return SizeExceededError(f'{length} bytes: {url}')

    buf = bytearray()
    for chunk in res.iter_bytes():
      buf.extend(chunk)
      if 0 < limit and limit < len(buf):
        return SizeExceededError(f'more than {limit} bytes: {url}')

    content_type = res.headers.get('content-type', OCTET_STREAM).split(';')[0].strip()

    last_modified = None
    last_modified_header = res.headers.get('last-modified')
    if last_modified_header is not None:
      try:
        last_modified = parser.parse(last_modified_header)
      except (ValueError, OverflowError):
        self.log.debug({'message': 'invalid last-modified', 'value': last_modified_header})

    return Blob(bytes(buf), content_type or OCTET_STREAM, last_modified)

  def close(self) -> None:
    self.client.close()
