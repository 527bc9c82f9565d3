import dataclasses
import datetime
from typing import TYPE_CHECKING, Mapping, Optional, Protocol, runtime_checkable

from imggate.errors import ImgGateError, LoaderError
from imggate.typing import ImageKey, ImageMeta

if TYPE_CHECKING:
  from imggate.params.index import Params

OCTET_STREAM = 'application/octet-stream'
JSON_MIME = 'application/json'


@dataclasses.dataclass(frozen=True)
class Blob:
  data: bytes
  content_type: str = OCTET_STREAM
  last_modified: Optional[datetime.datetime] = None

  def __len__(self) -> int:
    return len(self.data)


@dataclasses.dataclass(frozen=True)
class Unsupported:
  """Returned by a processor that cannot handle a blob, so the next one is tried."""
  reason: str


@runtime_checkable
class Loader(Protocol):
  name: str

  def can_handle(self, key: ImageKey) -> bool:
    ...

  def fetch(
      self,
      key: ImageKey,
      headers: Optional[Mapping[str, str]] = None,
  ) -> Blob | LoaderError:
    ...


@runtime_checkable
class Storage(Protocol):
  name: str

  def can_handle(self, key: str) -> bool:
    ...

  def put(self, key: str, blob: Blob) -> None:
    ...


@runtime_checkable
class Processor(Protocol):
  name: str

  def process(self, blob: Blob, params: 'Params') -> Blob | Unsupported | ImgGateError:
    ...

  def process_meta(self, blob: Blob, params: 'Params') -> ImageMeta | Unsupported | ImgGateError:
    ...
