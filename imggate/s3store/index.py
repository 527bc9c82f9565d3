import datetime
import logging
from logging import Logger
from typing import Mapping, Optional

from botocore.exceptions import BotoCoreError, ClientError
from dateutil import parser, tz
from mypy_boto3_s3.client import S3Client

from imggate.backend.index import OCTET_STREAM, Blob
from imggate.errors import (
    ForbiddenError,
    LoaderError,
    NotFoundError,
    SizeExceededError,
    TransportError
)
from imggate.filestore.index import normalize_prefix

TIMESTAMP_METADATA = 'original-timestamp'


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


def client_error_code(exception: ClientError) -> str:
  if 'Error' not in exception.response:
    return ''
  return exception.response['Error'].get('Code', '')


def is_not_found_client_error(exception: ClientError) -> bool:
  return client_error_code(exception) in ['404', 'NoSuchKey', 'NoSuchBucket']


def is_forbidden_client_error(exception: ClientError) -> bool:
  return client_error_code(exception) in ['403', 'AccessDenied']


class S3Store:

  def __init__(
      self,
      s3: S3Client,
      bucket: str,
      path_prefix: str = '/',
      base_dir: str = '',
      max_size: int = 0,
      log: Optional[Logger] = None,
  ):
    self.name = f's3:{bucket}'
    self.s3 = s3
    self.bucket = bucket
    self.path_prefix = normalize_prefix(path_prefix)
    self.base_dir = base_dir.strip('/')
    self.max_size = max_size
    self.log = log or logging.getLogger(__name__)

  def can_handle(self, key: str) -> bool:
    return ('/' + key.lstrip('/')).startswith(self.path_prefix)

  def s3_key(self, key: str) -> str:
    rel = ('/' + key.lstrip('/'))[len(self.path_prefix):]
    return rel if self.base_dir == '' else f'{self.base_dir}/{rel}'

  def fetch(self, key: str, headers: Optional[Mapping[str, str]] = None) -> Blob | LoaderError:
    s3_key = self.s3_key(key)
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=s3_key)
      if 0 < self.max_size and self.max_size < res.get('ContentLength', 0):
        res['Body'].close()
        return SizeExceededError(f'{res["ContentLength"]} bytes: {key}')
      data = res['Body'].read()
    except ClientError as e:
      if is_not_found_client_error(e):
        return NotFoundError(f'not found: {self.bucket}/{s3_key}')
      if is_forbidden_client_error(e):
        return ForbiddenError(f'access denied: {self.bucket}/{s3_key}')
      return TransportError(str(e))
    except BotoCoreError as e:
      return TransportError(str(e))

    metadata = res.get('Metadata', {})
    if TIMESTAMP_METADATA in metadata:
      last_modified = parser.parse(metadata[TIMESTAMP_METADATA])
    else:
      last_modified = res.get('LastModified')

    return Blob(
        data=data,
        content_type=res.get('ContentType') or OCTET_STREAM,
        last_modified=last_modified)

  def put(self, key: str, blob: Blob) -> None:
    timestamp = blob.last_modified or get_now()
    s3_key = self.s3_key(key)
    self.s3.put_object(
        Body=blob.data,
        Bucket=self.bucket,
        ContentType=blob.content_type,
        Key=s3_key,
        Metadata={
            TIMESTAMP_METADATA: timestamp.astimezone(
                datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
        })
    self.log.debug({'message': 'stored', 'bucket': self.bucket, 'key': s3_key, 'size': len(blob)})
