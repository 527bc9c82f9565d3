import dataclasses
import logging
import time
from concurrent import futures
from http import HTTPStatus
from logging import Logger
from typing import Any, Callable, Mapping, Optional, Self, Tuple

from imggate.backend.index import OCTET_STREAM, Blob, Loader, Processor, Storage
from imggate.chain.index import ProcessorChain, ResultWriter, SaveJob, SourceResolver
from imggate.coalesce.index import RequestCoalescer
from imggate.errors import (
    ImgGateError,
    InternalError,
    InvalidPathError,
    Kind,
    OverloadedError,
    PersistenceError,
    SignatureError,
    TimeoutError_
)
from imggate.params.index import Params, fingerprint, parse, verify_params
from imggate.typing import Fingerprint


@dataclasses.dataclass(eq=True, frozen=True)
class EngineConfig:
  secret: str = ''
  unsafe: bool = False
  request_timeout: float = 30.0
  save_timeout: float = 60.0
  strict: bool = False
  workers: int = 16
  save_workers: int = 4
  coalesce_grace: float = 0.05
  max_in_flight: Optional[int] = None
  loaders: Tuple[Loader, ...] = ()
  processors: Tuple[Processor, ...] = ()
  storages: Tuple[Storage, ...] = ()

  def __post_init__(self) -> None:
    if self.request_timeout <= 0 or self.save_timeout <= 0:
      raise ValueError(
          f'Invalid timeout: request: {self.request_timeout}, save: {self.save_timeout}')
    if self.workers <= 0 or self.save_workers <= 0:
      raise ValueError(f'Invalid workers: {self.workers}, save_workers: {self.save_workers}')
    if self.max_in_flight is not None and self.max_in_flight <= 0:
      raise ValueError(f'Invalid max_in_flight: {self.max_in_flight}')


@dataclasses.dataclass(frozen=True)
class Deadline:
  at: float

  @classmethod
  def after(cls, seconds: float) -> 'Deadline':
    return cls(time.monotonic() + seconds)

  def remaining(self) -> float:
    return max(0.0, self.at - time.monotonic())

  def expired(self) -> bool:
    return self.at <= time.monotonic()


class TimeoutController:

  def __init__(self, executor: futures.Executor, timeout: float):
    self.executor = executor
    self.timeout = timeout

  def run(self, fn: Callable[[Deadline], Any]) -> Any:
    """Run `fn` on the executor and give up waiting once the deadline passes.

    The worker thread is not interrupted; `fn` gets the deadline so it can
    drop intermediate results itself.
    """
    deadline = Deadline.after(self.timeout)
    future = self.executor.submit(fn, deadline)
    try:
      return future.result(timeout=deadline.remaining())
    except futures.TimeoutError:
      future.cancel()
      return TimeoutError_(f'request timeout after {self.timeout}s')


@dataclasses.dataclass(frozen=True)
class Outcome:
  kind: Kind
  status: HTTPStatus
  blob: Optional[Blob] = None
  error: Optional[ImgGateError] = None
  coalesced: bool = False
  save: Optional[SaveJob] = dataclasses.field(default=None, compare=False)

  @classmethod
  def from_result(
      cls,
      result: Blob | ImgGateError,
      coalesced: bool = False,
      save: Optional[SaveJob] = None,
  ) -> 'Outcome':
    match result:
      case Blob() as blob:
        return cls(Kind.SERVED, HTTPStatus.OK, blob=blob, coalesced=coalesced, save=save)
      case ImgGateError() as err:
        return cls(err.kind, err.status, error=err, coalesced=coalesced)
      case _:
        raise Exception('system error')

  @property
  def ok(self) -> bool:
    return self.kind == Kind.SERVED

  @property
  def data(self) -> bytes:
    return b'' if self.blob is None else self.blob.data

  @property
  def content_type(self) -> str:
    return OCTET_STREAM if self.blob is None else self.blob.content_type


class Engine:

  def __init__(self, config: EngineConfig, log: Optional[Logger] = None):
    self.config = config
    self.log = log or logging.getLogger(__name__)
    self.resolver = SourceResolver(config.loaders, self.log)
    self.chain = ProcessorChain(config.processors, self.log)
    self.writer = ResultWriter(config.storages, config.save_workers, self.log)
    self.coalescer = RequestCoalescer(config.coalesce_grace, config.max_in_flight, self.log)
    self.executor = futures.ThreadPoolExecutor(
        max_workers=config.workers, thread_name_prefix='imggate-work')
    self.timeouts = TimeoutController(self.executor, config.request_timeout)

    if config.unsafe:
      self.log.warning({'message': 'unsafe mode enabled, url signatures are not required'})
    elif config.secret == '':
      self.log.warning({'message': 'no secret configured, every request will be rejected'})

  def __enter__(self) -> Self:
    return self

  def __exit__(self, *_: Any) -> None:
    self.close()

  def close(self) -> None:
    self.executor.shutdown(wait=False, cancel_futures=True)
    self.writer.close()

  def load_and_apply(
      self,
      params: Params,
      deadline: Deadline,
      headers: Optional[Mapping[str, str]] = None,
  ) -> Blob | ImgGateError:
    source = self.resolver.load(params.image, deadline, headers)
    if isinstance(source, ImgGateError):
      return source

    if deadline.expired():
      # The response is already a timeout, drop the fetched bytes.
      return TimeoutError_('request timeout while loading')

    return self.chain.apply(source, params)

  def lead(
      self,
      key: Fingerprint,
      params: Params,
      headers: Optional[Mapping[str, str]] = None,
  ) -> Blob | ImgGateError:
    result: Blob | ImgGateError = self.timeouts.run(
        lambda deadline: self.load_and_apply(params, deadline, headers))
    if isinstance(result, TimeoutError_):
      self.log.warning({'message': 'request timeout', 'key': key})
    return result

  def respond(
      self,
      path: str,
      result: Blob | ImgGateError,
      start_ns: int,
      coalesced: bool = False,
      save: Optional[SaveJob] = None,
  ) -> Outcome:
    outcome = Outcome.from_result(result, coalesced, save)
    elapsed_us = (time.time_ns() - start_ns) // 1000

    record = {
        'message': 'responded',
        'path': path,
        'kind': outcome.kind.value,
        'status': int(outcome.status),
        'coalesced': coalesced,
        'elapsed_us': elapsed_us,
    }
    if outcome.error is not None:
      record['reason'] = str(outcome.error)

    if outcome.kind == Kind.UPSTREAM_FAULT:
      self.log.warning(record)
    else:
      self.log.debug(record)

    return outcome

  def save(self, key: Fingerprint, blob: Blob) -> Optional[SaveJob]:
    try:
      return self.writer.save(key, blob, self.config.save_timeout)
    except Exception as e:
      err = PersistenceError(str(e))
      self.log.error({'message': 'failed to schedule save', 'key': key, 'reason': str(err)})
      return None

  def process(
      self,
      path: str,
      unsafe: Optional[bool] = None,
      headers: Optional[Mapping[str, str]] = None,
  ) -> Outcome:
    """Serve `path`. `headers` reach the loaders only and never change the fingerprint."""
    start_ns = time.time_ns()
    unsafe_allowed = self.config.unsafe if unsafe is None else unsafe

    try:
      params = parse(path, strict=self.config.strict)
    except InvalidPathError as e:
      return self.respond(path, e, start_ns)

    if not verify_params(params, self.config.secret, unsafe_allowed):
      reason = 'missing signature' if params.hash is None else 'signature mismatch'
      return self.respond(path, SignatureError(reason), start_ns)

    key = fingerprint(params)

    try:
      call, leader = self.coalescer.begin(key)
    except OverloadedError as e:
      return self.respond(path, e, start_ns)

    if not leader:
      return self.respond(path, self.coalescer.wait(call), start_ns, coalesced=True)

    # Settled in `finally` so followers are released even if the leader dies.
    result: Blob | ImgGateError = InternalError('leader aborted')
    try:
      result = self.lead(key, params, headers)
    except Exception as e:
      self.log.error({'message': 'error during process()', 'path': path, 'reason': str(e)})
      result = InternalError(str(e))
    finally:
      self.coalescer.settle(key, call, result)

    save = self.save(key, result) if isinstance(result, Blob) else None

    return self.respond(path, result, start_ns, save=save)
