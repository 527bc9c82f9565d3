import dataclasses
import logging
import threading
from concurrent import futures
from logging import Logger
from typing import TYPE_CHECKING, Mapping, Optional, Sequence

from imggate.backend.index import (
    JSON_MIME,
    Blob,
    Loader,
    Processor,
    Storage,
    Unsupported
)
from imggate.errors import (
    ImgGateError,
    LoaderError,
    NotFoundError,
    PersistenceError,
    ProcessorError,
    SizeExceededError,
    TimeoutError_,
    TransportError
)
from imggate.jsonlog import json_dump
from imggate.params.index import Params
from imggate.typing import ImageKey

if TYPE_CHECKING:
  from imggate.engine.index import Deadline


class SourceResolver:

  def __init__(self, loaders: Sequence[Loader], log: Optional[Logger] = None):
    self.loaders = tuple(loaders)
    self.log = log or logging.getLogger(__name__)

  def load(
      self,
      key: ImageKey,
      deadline: Optional['Deadline'] = None,
      headers: Optional[Mapping[str, str]] = None,
  ) -> Blob | ImgGateError:
    failures: list[tuple[str, LoaderError]] = []

    for loader in self.loaders:
      if not loader.can_handle(key):
        continue

      if deadline is not None and deadline.expired():
        self.log.debug({
            'message': 'deadline passed before loader',
            'loader': loader.name,
            'key': key,
            'tried': len(failures),
        })
        return TimeoutError_('request timeout while loading')

      try:
        result = loader.fetch(key, headers)
      except Exception as e:
        result = TransportError(f'{loader.name}: {e}')

      match result:
        case Blob() as blob:
          self.log.debug({'message': 'loaded', 'loader': loader.name, 'key': key, 'size': len(blob)})
          return blob
        case LoaderError() as err:
          self.log.debug({
              'message': 'loader failed',
              'loader': loader.name,
              'key': key,
              'reason': str(err),
          })
          failures.append((loader.name, err))
        case _:
          raise Exception('system error')

    return self.aggregate(key, failures)

  def aggregate(self, key: ImageKey, failures: list[tuple[str, LoaderError]]) -> LoaderError:
    if len(failures) == 0:
      return NotFoundError(f'no loader for: {key}')

    for _, err in failures:
      if isinstance(err, SizeExceededError):
        return err

    for _, err in failures:
      if isinstance(err, NotFoundError):
        return NotFoundError(f'not found: {key}')

    names = ','.join(name for name, _ in failures)
    self.log.warning({
        'message': 'all loaders failed',
        'key': key,
        'loaders': names,
        'reasons': [str(err) for _, err in failures],
    })
    return TransportError(f'all loaders failed: {names}')


class ProcessorChain:

  def __init__(self, processors: Sequence[Processor], log: Optional[Logger] = None):
    self.processors = tuple(processors)
    self.log = log or logging.getLogger(__name__)

  def apply_meta(self, blob: Blob, params: Params) -> Blob | ImgGateError:
    for processor in self.processors:
      try:
        result = processor.process_meta(blob, params)
      except Exception as e:
        self.log.warning({'message': 'failed to read meta', 'processor': processor.name, 'reason': str(e)})
        continue

      match result:
        case Unsupported(reason=reason):
          self.log.debug({'message': 'meta unsupported', 'processor': processor.name, 'reason': reason})
        case ImgGateError() as err:
          self.log.warning({'message': 'meta aborted', 'processor': processor.name, 'reason': str(err)})
          return err
        case dict() as meta:
          return Blob(json_dump(meta).encode(), JSON_MIME, blob.last_modified)
        case _:
          raise Exception('system error')

    return ProcessorError('no processor can read metadata')

  def apply(self, blob: Blob, params: Params) -> Blob | ImgGateError:
    if params.meta:
      return self.apply_meta(blob, params)

    for processor in self.processors:
      try:
        result = processor.process(blob, params)
      except Exception as e:
        self.log.warning({'message': 'failed to process', 'processor': processor.name, 'reason': str(e)})
        continue

      match result:
        case Blob() as out:
          return out
        case Unsupported(reason=reason):
          self.log.debug({'message': 'unsupported', 'processor': processor.name, 'reason': reason})
        case ImgGateError() as err:
          self.log.warning({'message': 'processor aborted', 'processor': processor.name, 'reason': str(err)})
          return err
        case _:
          raise Exception('system error')

    return ProcessorError('no processor can handle the image')


@dataclasses.dataclass
class SaveJob:
  key: str
  futures: list[futures.Future]
  expired: threading.Event = dataclasses.field(default_factory=threading.Event)
  done: threading.Event = dataclasses.field(default_factory=threading.Event)


class ResultWriter:

  def __init__(
      self,
      storages: Sequence[Storage],
      max_workers: int = 4,
      log: Optional[Logger] = None,
  ):
    self.storages = tuple(storages)
    self.log = log or logging.getLogger(__name__)
    self.executor = futures.ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix='imggate-save')

  def put(self, storage: Storage, key: str, blob: Blob) -> bool:
    try:
      storage.put(key, blob)
    except Exception as e:
      err = PersistenceError(f'{storage.name}: {e}')
      self.log.error({'message': 'failed to save', 'storage': storage.name, 'key': key, 'reason': str(err)})
      return False

    self.log.debug({'message': 'saved', 'storage': storage.name, 'key': key, 'size': len(blob)})
    return True

  def accepts(self, storage: Storage, key: str) -> bool:
    try:
      return storage.can_handle(key)
    except Exception as e:
      err = PersistenceError(f'{storage.name}: {e}')
      self.log.error({'message': 'failed to save', 'storage': storage.name, 'key': key, 'reason': str(err)})
      return False

  def save(self, key: str, blob: Blob, timeout: float) -> SaveJob:
    """Schedule `blob` on every storage that accepts `key` and return without waiting."""
    targets = [s for s in self.storages if self.accepts(s, key)]
    job = SaveJob(key, [self.executor.submit(self.put, s, key, blob) for s in targets])

    if len(job.futures) == 0:
      job.done.set()
      return job

    timer = threading.Timer(timeout, self.expire, args=(job,))
    timer.daemon = True

    remaining = [len(job.futures)]
    lock = threading.Lock()

    def on_done(_: futures.Future) -> None:
      with lock:
        remaining[0] -= 1
        finished = remaining[0] == 0
      if finished:
        timer.cancel()
        job.done.set()

    timer.start()
    for f in job.futures:
      f.add_done_callback(on_done)

    return job

  def expire(self, job: SaveJob) -> None:
    if job.done.is_set():
      return

    pending = [f for f in job.futures if not f.done()]
    for f in pending:
      f.cancel()
    job.expired.set()
    self.log.warning({'message': 'save timeout', 'key': job.key, 'pending': len(pending)})

  def close(self, wait: bool = False) -> None:
    self.executor.shutdown(wait=wait, cancel_futures=not wait)
