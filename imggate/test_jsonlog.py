import json
import logging

import imggate

from .jsonlog import ROOT_LOGGER, MyJsonFormatter, init_logging, json_dump


def test_format() -> None:
  record = logging.LogRecord(
      'imggate.engine.index',
      logging.WARNING,
      __file__,
      1, {
          'message': 'request timeout',
          'key': 'テスト.jpg',
      },
      None,
      None)

  line = MyJsonFormatter().format(record)
  out = json.loads(line)

  assert 'request timeout' == out['message']
  assert 'テスト.jpg' == out['key']
  assert 'テスト.jpg' in line
  assert 'WARNING' == out['level']
  assert imggate.version == out['version']
  assert 'imggate.engine.index' == out['logger']
  assert out['_ts'].endswith('Z')


def test_init_logging() -> None:
  log = init_logging(logging.DEBUG)
  init_logging(logging.DEBUG)

  assert ROOT_LOGGER == log.name
  assert logging.DEBUG == log.level
  assert 1 == len(log.handlers)
  assert not log.propagate
  assert logging.WARNING == logging.getLogger('botocore').level


def test_json_dump() -> None:
  assert '{"a":[1,2],"b":"c"}' == json_dump({'b': 'c', 'a': [1, 2]})
