import json
import threading
import time
from concurrent import futures
from http import HTTPStatus
from typing import Any, Callable

import pytest

from imggate.backend.index import JSON_MIME, Blob
from imggate.chain.test_index import FakeLoader, FakeProcessor, FakeStorage
from imggate.errors import (
    InternalError,
    Kind,
    NotFoundError,
    SignatureError,
    TransportError,
    UnsupportedParamError
)
from imggate.params.index import sign_path
from imggate.vipsprocessor.index import VipsProcessor

from .index import Engine, EngineConfig

SECRET = 'k'
BLUR_PATH = '200x200/filters:blur(5)/example.com/cat.jpg'
SOURCE = Blob(b'source', 'image/jpeg')
RESIZED = Blob(b'resized', 'image/jpeg')


def wait_until(cond: Callable[[], bool], timeout: float = 2.0) -> None:
  end = time.monotonic() + timeout
  while not cond():
    assert time.monotonic() < end, 'condition not met'
    time.sleep(0.001)


def make_engine(**kwargs: Any) -> Engine:
  kwargs.setdefault('unsafe', True)
  return Engine(EngineConfig(**kwargs))


def test_served() -> None:
  loader = FakeLoader('l', SOURCE)
  processor = FakeProcessor('p', RESIZED)
  storage = FakeStorage('s')

  with make_engine(loaders=(loader,), processors=(processor,), storages=(storage,)) as engine:
    outcome = engine.process('/unsafe/200x200/example.com/cat.jpg')

    assert Kind.SERVED == outcome.kind
    assert HTTPStatus.OK == outcome.status
    assert b'resized' == outcome.data
    assert 'image/jpeg' == outcome.content_type
    assert not outcome.coalesced

    assert outcome.save is not None
    assert outcome.save.done.wait(1)
    assert [('200x200/example.com/cat.jpg', RESIZED)] == storage.puts


def test_signed_and_unsafe_share_key() -> None:
  storage = FakeStorage('s')

  with make_engine(
      secret=SECRET,
      coalesce_grace=0,
      loaders=(FakeLoader('l', SOURCE),),
      processors=(FakeProcessor('p', RESIZED),),
      storages=(storage,)) as engine:
    for path in [sign_path(BLUR_PATH, SECRET), f'unsafe/{BLUR_PATH}']:
      outcome = engine.process(path)
      assert outcome.ok
      assert outcome.save is not None and outcome.save.done.wait(1)

  assert [BLUR_PATH, BLUR_PATH] == [key for key, _ in storage.puts]


@pytest.mark.parametrize(
    'path,unsafe,status,reason', [
        ('', True, HTTPStatus.BAD_REQUEST, None),
        ('unsafe/200xabc/cat.jpg', True, HTTPStatus.BAD_REQUEST, None),
        (f'unsafe/{BLUR_PATH}', False, HTTPStatus.FORBIDDEN, 'missing signature'),
        (BLUR_PATH, False, HTTPStatus.FORBIDDEN, 'missing signature'),
        (sign_path(BLUR_PATH, 'wrong'), False, HTTPStatus.FORBIDDEN, 'signature mismatch'),
    ],
    ids=['empty', 'invalid-size', 'unsafe-denied', 'unsigned', 'wrong-secret'])
def test_client_fault(path: str, unsafe: bool, status: HTTPStatus, reason: Any) -> None:
  loader = FakeLoader('l', SOURCE)

  with make_engine(secret=SECRET, unsafe=unsafe, loaders=(loader,)) as engine:
    outcome = engine.process(path)

  assert Kind.CLIENT_FAULT == outcome.kind
  assert status == outcome.status
  if reason is not None:
    assert SignatureError(reason) == outcome.error
  assert 0 == loader.calls


def test_unsafe_override() -> None:
  with make_engine(
      secret=SECRET,
      unsafe=False,
      loaders=(FakeLoader('l', SOURCE),),
      processors=(FakeProcessor('p', RESIZED),)) as engine:
    assert Kind.CLIENT_FAULT == engine.process(f'unsafe/{BLUR_PATH}').kind
    assert engine.process(f'unsafe/{BLUR_PATH}', unsafe=True).ok


def test_disabled_blur() -> None:
  loader = FakeLoader('l', SOURCE)
  fallback = FakeProcessor('fallback', RESIZED)

  with make_engine(
      secret=SECRET,
      unsafe=False,
      loaders=(loader,),
      processors=(VipsProcessor(disable_blur=True), fallback)) as engine:
    outcome = engine.process('/' + sign_path(BLUR_PATH, SECRET))

  assert Kind.CLIENT_FAULT == outcome.kind
  assert HTTPStatus.BAD_REQUEST == outcome.status
  assert isinstance(outcome.error, UnsupportedParamError)
  assert 'blur' in outcome.error.message
  assert 0 == fallback.calls


@pytest.mark.parametrize(
    'failures,kind,status', [
        ([NotFoundError(), NotFoundError()], Kind.NOT_FOUND, HTTPStatus.NOT_FOUND),
        ([TransportError(), TransportError()], Kind.UPSTREAM_FAULT, HTTPStatus.BAD_GATEWAY),
    ],
    ids=['not-found', 'transport'])
def test_loader_failure(failures: list[Any], kind: Kind, status: HTTPStatus) -> None:
  loaders = tuple(FakeLoader(f'l{i}', f) for i, f in enumerate(failures))
  processor = FakeProcessor('p', RESIZED)

  with make_engine(loaders=loaders, processors=(processor,)) as engine:
    outcome = engine.process('unsafe/example.com/cat.jpg')

  assert kind == outcome.kind
  assert status == outcome.status
  assert 0 == processor.calls


def test_meta() -> None:
  processor = FakeProcessor(
      'p',
      RESIZED,
      meta={
          'format': 'jpeg',
          'content_type': 'image/jpeg',
          'width': 4,
          'height': 3,
          'bands': 3,
      })

  with make_engine(loaders=(FakeLoader('l', SOURCE),), processors=(processor,)) as engine:
    outcome = engine.process('unsafe/meta/example.com/cat.jpg')

  assert outcome.ok
  assert JSON_MIME == outcome.content_type
  assert 4 == json.loads(outcome.data)['width']


def test_concurrent_callers_share_one_fetch() -> None:
  release = threading.Event()
  loader = FakeLoader('l', SOURCE, block=release)
  processor = FakeProcessor('p', RESIZED)
  storage = FakeStorage('s')
  path = 'unsafe/200x200/example.com/cat.jpg'
  key = '200x200/example.com/cat.jpg'

  with make_engine(loaders=(loader,), processors=(processor,), storages=(storage,)) as engine:
    with futures.ThreadPoolExecutor(max_workers=50) as pool:
      fs = [pool.submit(engine.process, path) for _ in range(50)]
      wait_until(lambda: key in engine.coalescer.calls and 49 == engine.coalescer.calls[key].waiters)
      release.set()
      outcomes = [f.result(timeout=2) for f in fs]

    saves = [o.save for o in outcomes if o.save is not None]
    assert 1 == len(saves)
    assert saves[0].done.wait(1)

  assert all(o.ok for o in outcomes)
  assert {b'resized'} == {o.data for o in outcomes}
  assert 49 == sum(o.coalesced for o in outcomes)
  assert 1 == loader.calls
  assert 1 == processor.calls
  assert 1 == len(storage.puts)


def test_request_timeout() -> None:
  release = threading.Event()
  loader = FakeLoader('l', SOURCE, block=release)
  processor = FakeProcessor('p', RESIZED)
  path = 'unsafe/example.com/cat.jpg'
  key = 'example.com/cat.jpg'

  with make_engine(loaders=(loader,), processors=(processor,), request_timeout=0.5) as engine:
    with futures.ThreadPoolExecutor(max_workers=2) as pool:
      leader = pool.submit(engine.process, path)
      wait_until(lambda: key in engine.coalescer.calls)
      follower = pool.submit(engine.process, path)

      start = time.monotonic()
      outcomes = [leader.result(timeout=2), follower.result(timeout=2)]
      assert time.monotonic() - start < 1.0

    release.set()
    wait_until(lambda: 1 == loader.calls)
    time.sleep(0.05)

  assert [Kind.TIMEOUT, Kind.TIMEOUT] == [o.kind for o in outcomes]
  assert [HTTPStatus.GATEWAY_TIMEOUT] * 2 == [o.status for o in outcomes]
  assert outcomes[0].error is outcomes[1].error
  assert 0 == processor.calls


def test_stalled_save() -> None:
  release = threading.Event()
  storage = FakeStorage('s', block=release)

  with make_engine(
      loaders=(FakeLoader('l', SOURCE),),
      processors=(FakeProcessor('p', RESIZED),),
      storages=(storage,),
      save_timeout=0.05) as engine:
    start = time.monotonic()
    outcome = engine.process('unsafe/example.com/cat.jpg')
    assert time.monotonic() - start < 0.5

    assert outcome.ok
    assert b'resized' == outcome.data

    assert outcome.save is not None
    assert outcome.save.expired.wait(1)
    release.set()


def test_crashing_leader_settles_followers(monkeypatch: pytest.MonkeyPatch) -> None:
  path = 'unsafe/example.com/cat.jpg'
  key = 'example.com/cat.jpg'

  with make_engine(loaders=(FakeLoader('l', SOURCE),), processors=(FakeProcessor('p', RESIZED),)) as engine:

    def crash(*_: Any) -> Blob:
      wait_until(lambda: 1 == engine.coalescer.calls[key].waiters)
      raise RuntimeError('boom')

    monkeypatch.setattr(engine.chain, 'apply', crash)

    with futures.ThreadPoolExecutor(max_workers=2) as pool:
      leader = pool.submit(engine.process, path)
      wait_until(lambda: key in engine.coalescer.calls)
      follower = pool.submit(engine.process, path)
      outcomes = [leader.result(timeout=2), follower.result(timeout=2)]

    assert 0 == engine.coalescer.in_flight()
    wait_until(lambda: 0 == len(engine.coalescer))

  assert [InternalError('boom')] * 2 == [o.error for o in outcomes]
  assert [Kind.UPSTREAM_FAULT] * 2 == [o.kind for o in outcomes]


def test_overloaded() -> None:
  release = threading.Event()
  loader = FakeLoader('l', SOURCE, block=release)

  with make_engine(
      loaders=(loader,), processors=(FakeProcessor('p', RESIZED),), max_in_flight=1) as engine:
    with futures.ThreadPoolExecutor(max_workers=1) as pool:
      first = pool.submit(engine.process, 'unsafe/a.jpg')
      wait_until(lambda: 1 == engine.coalescer.in_flight())

      outcome = engine.process('unsafe/b.jpg')
      release.set()

      assert first.result(timeout=2).ok

  assert Kind.OVERLOADED == outcome.kind
  assert HTTPStatus.SERVICE_UNAVAILABLE == outcome.status


@pytest.mark.parametrize(
    'kwargs', [
        {'request_timeout': 0},
        {'save_timeout': -1},
        {'workers': 0},
        {'max_in_flight': 0},
    ],
    ids=['request-timeout', 'save-timeout', 'workers', 'max-in-flight'])
def test_invalid_config(kwargs: dict[str, Any]) -> None:
  with pytest.raises(ValueError):
    EngineConfig(**kwargs)


def test_meta_rejects_disabled_filter() -> None:
  loader = FakeLoader('l', SOURCE)
  fallback = FakeProcessor('fallback', RESIZED, meta={
      'format': 'jpeg',
      'content_type': 'image/jpeg',
      'width': 4,
      'height': 3,
      'bands': 3,
  })

  with make_engine(
      loaders=(loader,), processors=(VipsProcessor(disable_blur=True), fallback)) as engine:
    outcome = engine.process('unsafe/meta/filters:blur(5)/example.com/cat.jpg')

  assert Kind.CLIENT_FAULT == outcome.kind
  assert HTTPStatus.BAD_REQUEST == outcome.status
  assert UnsupportedParamError('disabled filters: blur') == outcome.error
  assert 0 == fallback.meta_calls


def test_save_scheduling_failure_still_serves(monkeypatch: pytest.MonkeyPatch) -> None:
  with make_engine(
      loaders=(FakeLoader('l', SOURCE),),
      processors=(FakeProcessor('p', RESIZED),),
      storages=(FakeStorage('s'),)) as engine:

    def broken(*_: Any) -> Any:
      raise RuntimeError('cannot schedule new futures after shutdown')

    monkeypatch.setattr(engine.writer, 'save', broken)
    outcome = engine.process('unsafe/example.com/cat.jpg')

  assert outcome.ok
  assert b'resized' == outcome.data
  assert outcome.save is None


def test_storage_match_failure_still_serves() -> None:
  broken = FakeStorage('broken', rejects=RuntimeError('bad prefix'))
  ok = FakeStorage('ok')

  with make_engine(
      loaders=(FakeLoader('l', SOURCE),),
      processors=(FakeProcessor('p', RESIZED),),
      storages=(broken, ok)) as engine:
    outcome = engine.process('unsafe/example.com/cat.jpg')

    assert outcome.ok
    assert outcome.save is not None and outcome.save.done.wait(1)

  assert [('example.com/cat.jpg', RESIZED)] == ok.puts


def test_headers_reach_loader_only() -> None:
  loader = FakeLoader('l', SOURCE)
  storage = FakeStorage('s')
  path = 'unsafe/200x200/example.com/cat.jpg'

  with make_engine(
      coalesce_grace=0,
      loaders=(loader,),
      processors=(FakeProcessor('p', RESIZED),),
      storages=(storage,)) as engine:
    for headers in [{'accept': 'image/webp'}, {'accept': 'image/avif'}]:
      outcome = engine.process(path, headers=headers)
      assert outcome.save is not None and outcome.save.done.wait(1)

  assert [{'accept': 'image/webp'}, {'accept': 'image/avif'}] == loader.headers
  assert ['200x200/example.com/cat.jpg'] * 2 == [key for key, _ in storage.puts]


def test_deadline_skips_remaining_loaders() -> None:
  slow = FakeLoader('slow', NotFoundError(), delay=0.3)
  second = FakeLoader('second', SOURCE)

  with make_engine(
      loaders=(slow, second), processors=(FakeProcessor('p', RESIZED),),
      request_timeout=0.1) as engine:
    outcome = engine.process('unsafe/example.com/cat.jpg')
    assert Kind.TIMEOUT == outcome.kind

    wait_until(lambda: 1 == slow.calls)
    time.sleep(0.05)

  assert 0 == second.calls


def test_recent_result_is_shared() -> None:
  assert 0 < EngineConfig().coalesce_grace

  loader = FakeLoader('l', SOURCE)

  with make_engine(
      coalesce_grace=1.0, loaders=(loader,), processors=(FakeProcessor('p', RESIZED),)) as engine:
    first = engine.process('unsafe/example.com/cat.jpg')
    second = engine.process('unsafe/example.com/cat.jpg')

  assert first.ok and second.ok
  assert not first.coalesced
  assert second.coalesced
  assert second.save is None
  assert 1 == loader.calls
