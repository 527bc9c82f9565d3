from typing import NewType, NotRequired, TypedDict

HttpPath = NewType('HttpPath', str)
ImageKey = NewType('ImageKey', str)
Fingerprint = NewType('Fingerprint', str)


class ImageMeta(TypedDict):
  format: str
  content_type: str
  width: int
  height: int
  bands: int
  orientation: NotRequired[int]


class RequestContext(TypedDict):
  domainName: NotRequired[str]
  requestId: NotRequired[str]


class HttpEvent(TypedDict):
  version: NotRequired[str]
  rawPath: str
  rawQueryString: NotRequired[str]
  headers: NotRequired[dict[str, str]]
  requestContext: NotRequired[RequestContext]


class HttpResult(TypedDict):
  statusCode: int
  headers: dict[str, str]
  body: NotRequired[str]
  isBase64Encoded: NotRequired[bool]
