import datetime
import logging
import mimetypes
import os
from logging import Logger
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Mapping, Optional

from imggate.backend.index import OCTET_STREAM, Blob
from imggate.errors import (
    ForbiddenError,
    LoaderError,
    NotFoundError,
    SizeExceededError,
    TransportError
)


def normalize_prefix(prefix: str) -> str:
  prefix = '/' + prefix.strip('/')
  return prefix if prefix == '/' else prefix + '/'


class FileStore:

  def __init__(
      self,
      base_dir: str,
      path_prefix: str = '/',
      max_size: int = 0,
      log: Optional[Logger] = None,
  ):
    self.name = 'file'
    self.base_dir = Path(base_dir).resolve()
    self.path_prefix = normalize_prefix(path_prefix)
    self.max_size = max_size
    self.log = log or logging.getLogger(__name__)

  def can_handle(self, key: str) -> bool:
    return ('/' + key.lstrip('/')).startswith(self.path_prefix)

  def path_of(self, key: str) -> Optional[Path]:
    rel = ('/' + key.lstrip('/'))[len(self.path_prefix):]
    path = (self.base_dir / rel).resolve()
    if path != self.base_dir and self.base_dir not in path.parents:
      return None
    return path

  def fetch(self, key: str, headers: Optional[Mapping[str, str]] = None) -> Blob | LoaderError:
    path = self.path_of(key)
    if path is None:
      return ForbiddenError(f'path outside base dir: {key}')

    try:
      stat = path.stat()
      if not path.is_file():
        return NotFoundError(f'not a file: {key}')
      if 0 < self.max_size and self.max_size < stat.st_size:
        return SizeExceededError(f'{stat.st_size} bytes: {key}')
      data = path.read_bytes()
    except FileNotFoundError:
      return NotFoundError(f'not found: {key}')
    except PermissionError as e:
      return ForbiddenError(str(e))
    except OSError as e:
      return TransportError(str(e))

    return Blob(
        data=data,
        content_type=mimetypes.guess_type(path.name)[0] or OCTET_STREAM,
        last_modified=datetime.datetime.fromtimestamp(stat.st_mtime, datetime.UTC))

  def put(self, key: str, blob: Blob) -> None:
    path = self.path_of(key)
    if path is None or path == self.base_dir:
      raise ValueError(f'invalid storage key: {key}')

    path.parent.mkdir(parents=True, exist_ok=True)
    # Write to a sibling temp file first so readers never see a partial image.
    with NamedTemporaryFile(dir=path.parent, prefix='.tmp-', delete=False) as f:
      f.write(blob.data)
      tmp = f.name
    try:
      os.replace(tmp, path)
    except OSError:
      os.unlink(tmp)
      raise

    self.log.debug({'message': 'stored', 'path': str(path), 'size': len(blob)})
