from enum import Enum
from http import HTTPStatus


class Kind(Enum):
  SERVED = 'served'
  CLIENT_FAULT = 'client_fault'
  NOT_FOUND = 'not_found'
  UPSTREAM_FAULT = 'upstream_fault'
  TIMEOUT = 'timeout'
  OVERLOADED = 'overloaded'
  PERSISTENCE_FAULT = 'persistence_fault'


class ImgGateError(Exception):
  kind: Kind = Kind.UPSTREAM_FAULT
  status: HTTPStatus = HTTPStatus.BAD_GATEWAY

  def __init__(self, message: str = '') -> None:
    super().__init__(message or self.default_message())
    self.message = message or self.default_message()

  @classmethod
  def default_message(cls) -> str:
    return cls.status.phrase.lower()

  def __eq__(self, other: object) -> bool:
    return type(self) is type(other) and self.message == getattr(other, 'message', None)

  def __hash__(self) -> int:
    return hash((type(self), self.message))


class InvalidPathError(ImgGateError):
  kind = Kind.CLIENT_FAULT
  status = HTTPStatus.BAD_REQUEST


class UnsupportedParamError(ImgGateError):
  kind = Kind.CLIENT_FAULT
  status = HTTPStatus.BAD_REQUEST


class SignatureError(ImgGateError):
  kind = Kind.CLIENT_FAULT
  status = HTTPStatus.FORBIDDEN


class LoaderError(ImgGateError):
  pass


class NotFoundError(LoaderError):
  kind = Kind.NOT_FOUND
  status = HTTPStatus.NOT_FOUND


class ForbiddenError(LoaderError):
  pass


class SizeExceededError(LoaderError):

  @classmethod
  def default_message(cls) -> str:
    return 'maximum size exceeded'


class TransportError(LoaderError):
  pass


class ProcessorError(ImgGateError):
  pass


class CorruptImageError(ProcessorError):

  @classmethod
  def default_message(cls) -> str:
    return 'corrupt image'


class InternalError(ImgGateError):
  pass


class TimeoutError_(ImgGateError):
  kind = Kind.TIMEOUT
  status = HTTPStatus.GATEWAY_TIMEOUT


class OverloadedError(ImgGateError):
  kind = Kind.OVERLOADED
  status = HTTPStatus.SERVICE_UNAVAILABLE


class PersistenceError(ImgGateError):
  kind = Kind.PERSISTENCE_FAULT
  status = HTTPStatus.INTERNAL_SERVER_ERROR
