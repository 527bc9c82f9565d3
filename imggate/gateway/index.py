import base64
import dataclasses
import datetime
import logging
import os
from http import HTTPStatus
from logging import Logger
from typing import Any, Mapping, Optional

import boto3

from imggate.backend.index import Loader, Storage
from imggate.engine.index import Engine, EngineConfig, Outcome
from imggate.filestore.index import FileStore
from imggate.httploader.index import HttpLoader
from imggate.jsonlog import init_logging
from imggate.s3store.index import S3Store
from imggate.typing import HttpEvent, HttpPath, HttpResult
from imggate.vipsprocessor.index import VipsProcessor

TRUTHY = frozenset(['1', 'true', 'yes', 'on'])
FALSY = frozenset(['', '0', 'false', 'no', 'off'])


def get_env(environ: Mapping[str, str], name: str, default: str = '') -> str:
  value = environ.get(name, '')
  return default if value == '' else value


def get_bool(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
  value = environ.get(name, '').strip().lower()
  if value == '':
    return default
  if value in TRUTHY:
    return True
  if value in FALSY:
    return False
  raise ValueError(f'invalid boolean for {name}: {value}')


def get_csv(environ: Mapping[str, str], name: str) -> tuple[str, ...]:
  return tuple(s.strip() for s in environ.get(name, '').split(',') if s.strip() != '')


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  secret: str = ''
  unsafe: bool = False
  request_timeout: float = 30.0
  save_timeout: float = 60.0
  debug: bool = False
  path_prefix: str = ''
  vips_disable_blur: bool = False
  vips_disable_filters: tuple[str, ...] = ()
  http_loader_disable: bool = False
  http_loader_allowed_sources: tuple[str, ...] = ()
  http_loader_max_allowed_size: int = 0
  http_loader_insecure_skip_verify: bool = False
  http_loader_forward_headers: tuple[str, ...] = ()
  http_loader_forward_user_agent: bool = False
  http_loader_forward_all_headers: bool = False
  aws_region: str = ''
  s3_loader_bucket: str = ''
  s3_loader_base_dir: str = ''
  s3_loader_path_prefix: str = '/'
  s3_storage_bucket: str = ''
  s3_storage_base_dir: str = ''
  s3_storage_path_prefix: str = '/'
  file_loader_base_dir: str = ''
  file_loader_path_prefix: str = '/'
  file_storage_base_dir: str = ''
  file_storage_path_prefix: str = '/'

  @classmethod
  def from_env(cls, environ: Mapping[str, str]) -> 'Settings':
    try:
      return cls(
          secret=get_env(environ, 'IMGGATE_SECRET'),
          unsafe=get_bool(environ, 'IMGGATE_UNSAFE'),
          request_timeout=float(get_env(environ, 'IMGGATE_REQUEST_TIMEOUT', '30')),
          save_timeout=float(get_env(environ, 'IMGGATE_SAVE_TIMEOUT', '60')),
          debug=get_bool(environ, 'DEBUG'),
          path_prefix=get_env(environ, 'SERVER_PATH_PREFIX').rstrip('/'),
          vips_disable_blur=get_bool(environ, 'VIPS_DISABLE_BLUR'),
          vips_disable_filters=get_csv(environ, 'VIPS_DISABLE_FILTERS'),
          http_loader_disable=get_bool(environ, 'HTTP_LOADER_DISABLE'),
          http_loader_allowed_sources=get_csv(environ, 'HTTP_LOADER_ALLOWED_SOURCES'),
          http_loader_max_allowed_size=int(get_env(environ, 'HTTP_LOADER_MAX_ALLOWED_SIZE', '0')),
          http_loader_insecure_skip_verify=get_bool(
              environ, 'HTTP_LOADER_INSECURE_SKIP_VERIFY_TRANSPORT'),
          http_loader_forward_headers=get_csv(environ, 'HTTP_LOADER_FORWARD_HEADERS'),
          http_loader_forward_user_agent=get_bool(environ, 'HTTP_LOADER_FORWARD_USER_AGENT'),
          http_loader_forward_all_headers=get_bool(environ, 'HTTP_LOADER_FORWARD_ALL_HEADERS'),
          aws_region=get_env(environ, 'AWS_REGION'),
          s3_loader_bucket=get_env(environ, 'S3_LOADER_BUCKET'),
          s3_loader_base_dir=get_env(environ, 'S3_LOADER_BASE_DIR'),
          s3_loader_path_prefix=get_env(environ, 'S3_LOADER_PATH_PREFIX', '/'),
          s3_storage_bucket=get_env(environ, 'S3_STORAGE_BUCKET'),
          s3_storage_base_dir=get_env(environ, 'S3_STORAGE_BASE_DIR'),
          s3_storage_path_prefix=get_env(environ, 'S3_STORAGE_PATH_PREFIX', '/'),
          file_loader_base_dir=get_env(environ, 'FILE_LOADER_BASE_DIR'),
          file_loader_path_prefix=get_env(environ, 'FILE_LOADER_PATH_PREFIX', '/'),
          file_storage_base_dir=get_env(environ, 'FILE_STORAGE_BASE_DIR'),
          file_storage_path_prefix=get_env(environ, 'FILE_STORAGE_PATH_PREFIX', '/'),
      )
    except ValueError as e:
      raise ValueError(f'invalid configuration: {e}') from e


class Gateway:
  instances: dict[Settings, 'Gateway'] = {}

  def __init__(self, log: Logger, settings: Settings, engine: Engine):
    self.log = log
    self.settings = settings
    self.engine = engine

  @classmethod
  def build_engine(cls, log: Logger, settings: Settings) -> Engine:
    loaders: list[Loader] = []
    storages: list[Storage] = []

    if settings.s3_loader_bucket != '' or settings.s3_storage_bucket != '':
      s3 = boto3.client('s3', region_name=settings.aws_region or None)
      if settings.s3_loader_bucket != '':
        loaders.append(
            S3Store(
                s3,
                settings.s3_loader_bucket,
                path_prefix=settings.s3_loader_path_prefix,
                base_dir=settings.s3_loader_base_dir,
                max_size=settings.http_loader_max_allowed_size))
      if settings.s3_storage_bucket != '':
        storages.append(
            S3Store(
                s3,
                settings.s3_storage_bucket,
                path_prefix=settings.s3_storage_path_prefix,
                base_dir=settings.s3_storage_base_dir))

    if settings.file_loader_base_dir != '':
      loaders.append(
          FileStore(
              settings.file_loader_base_dir,
              path_prefix=settings.file_loader_path_prefix,
              max_size=settings.http_loader_max_allowed_size))

    if settings.file_storage_base_dir != '':
      storages.append(
          FileStore(
              settings.file_storage_base_dir, path_prefix=settings.file_storage_path_prefix))

    if not settings.http_loader_disable:
      loaders.append(
          HttpLoader(
              allowed_sources=settings.http_loader_allowed_sources,
              max_allowed_size=settings.http_loader_max_allowed_size,
              timeout=settings.request_timeout,
              insecure_skip_verify=settings.http_loader_insecure_skip_verify,
              forward_headers=settings.http_loader_forward_headers,
              forward_user_agent=settings.http_loader_forward_user_agent,
              forward_all_headers=settings.http_loader_forward_all_headers))

    processor = VipsProcessor(
        disable_blur=settings.vips_disable_blur,
        disabled_filters=settings.vips_disable_filters)

    config = EngineConfig(
        secret=settings.secret,
        unsafe=settings.unsafe,
        request_timeout=settings.request_timeout,
        save_timeout=settings.save_timeout,
        loaders=tuple(loaders),
        processors=(processor,),
        storages=tuple(storages))

    log.info({
        'message': 'engine created',
        'loaders': [loader.name for loader in loaders],
        'storages': [storage.name for storage in storages],
        'unsafe': settings.unsafe,
    })

    return Engine(config, log)

  @classmethod
  def from_env(cls, environ: Mapping[str, str]) -> 'Gateway':
    settings = Settings.from_env(environ)

    if settings not in cls.instances:
      log = init_logging(logging.DEBUG if settings.debug else logging.INFO)
      cls.instances[settings] = cls(log, settings, cls.build_engine(log, settings))

    return cls.instances[settings]

  def strip_prefix(self, path: HttpPath) -> HttpPath:
    prefix = self.settings.path_prefix
    if prefix == '':
      return path
    if not path.startswith(prefix + '/'):
      self.log.error({'message': 'path without prefix passed', 'prefix': prefix, 'path': path})
      return path
    return HttpPath(path[len(prefix):])

  def handle(self, path: HttpPath, headers: Optional[Mapping[str, str]] = None) -> Outcome:
    return self.engine.process(self.strip_prefix(path), headers=headers)


def to_http_result(outcome: Outcome) -> HttpResult:
  if outcome.ok:
    result: HttpResult = {
        'statusCode': int(outcome.status),
        'headers': {
            'content-type': outcome.content_type,
            'cache-control': 'public, max-age=604800',
        },
        'body': base64.b64encode(outcome.data).decode(),
        'isBase64Encoded': True,
    }
    if outcome.blob is not None and outcome.blob.last_modified is not None:
      result['headers']['last-modified'] = outcome.blob.last_modified.astimezone(
          datetime.timezone.utc).strftime('%a, %d %b %Y %H:%M:%S GMT')
    return result

  message = HTTPStatus(outcome.status).phrase if outcome.error is None else outcome.error.message
  return {
      'statusCode': int(outcome.status),
      'headers': {
          'content-type': 'text/plain; charset=utf-8',
          'cache-control': 'no-cache',
      },
      'body': message,
      'isBase64Encoded': False,
  }


def lambda_main(event: HttpEvent, environ: Optional[Mapping[str, Any]] = None) -> HttpResult:
  gateway = Gateway.from_env(os.environ if environ is None else environ)
  outcome = gateway.handle(HttpPath(event['rawPath']), event.get('headers'))
  return to_http_result(outcome)
