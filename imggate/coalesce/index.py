"""In-flight deduplication of identical requests.

Each fingerprint moves through absent -> running -> settled -> absent. The
first caller for a fingerprint becomes the leader and does the work; callers
arriving while it runs (or within `grace` seconds after it settled) are
followers and receive the leader's result object as-is.
"""

import collections
import logging
import threading
import time
from enum import Enum
from logging import Logger
from typing import Any, Deque, Optional, Tuple

from imggate.errors import OverloadedError


class State(Enum):
  RUNNING = 0
  SETTLED = 1


class Call:

  def __init__(self) -> None:
    self.state = State.RUNNING
    self.event = threading.Event()
    self.result: Any = None
    self.waiters = 0
    self.settled_at = 0.0


class RequestCoalescer:

  def __init__(
      self,
      grace: float = 0.0,
      max_in_flight: Optional[int] = None,
      log: Optional[Logger] = None,
  ):
    self.grace = grace
    self.max_in_flight = max_in_flight
    self.log = log or logging.getLogger(__name__)
    self.lock = threading.Lock()
    self.calls: dict[str, Call] = {}
    self.running = 0
    # Settled calls kept for the grace window, ordered by settle time.
    self.expiry: Deque[Tuple[float, str, Call]] = collections.deque()

  def evict_expired(self, now: float) -> None:
    while self.expiry and self.expiry[0][0] <= now:
      _, key, call = self.expiry.popleft()
      if self.calls.get(key) is call:
        del self.calls[key]

  def begin(self, key: str) -> Tuple[Call, bool]:
    """Return the call for `key` and whether the caller must lead it."""
    with self.lock:
      self.evict_expired(time.monotonic())

      call = self.calls.get(key)
      if call is not None:
        call.waiters += 1
        return call, False

      if self.max_in_flight is not None and self.max_in_flight <= self.running:
        raise OverloadedError(f'too many requests in flight: {self.running}')

      call = Call()
      self.calls[key] = call
      self.running += 1
      return call, True

  def wait(self, call: Call) -> Any:
    call.event.wait()
    return call.result

  def settle(self, key: str, call: Call, result: Any) -> None:
    with self.lock:
      if call.state == State.SETTLED:
        return

      call.result = result
      call.state = State.SETTLED
      call.settled_at = time.monotonic()
      self.running -= 1
      self.evict_expired(call.settled_at)

      if 0 < self.grace:
        self.expiry.append((call.settled_at + self.grace, key, call))
      elif self.calls.get(key) is call:
        del self.calls[key]

    call.event.set()

    if call.waiters:
      self.log.debug({'message': 'coalesced', 'key': key, 'waiters': call.waiters})

  def in_flight(self) -> int:
    with self.lock:
      return self.running

  def __len__(self) -> int:
    with self.lock:
      self.evict_expired(time.monotonic())
      return len(self.calls)
