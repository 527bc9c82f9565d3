from aws_lambda_powertools.utilities.typing import LambdaContext

from imggate.gateway import index as gateway
from imggate.typing import HttpEvent, HttpResult


def http_lambda_handler(
    event: HttpEvent,
    _: LambdaContext,
) -> HttpResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = gateway.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps({k: v for k, v in ret.items() if k != 'body'}))

  return ret
