from importlib import metadata
from pathlib import Path

DIST_NAME = 'imggate'


def get_version() -> str:
  # Source checkouts keep VERSION next to the package, installed wheels only have metadata.
  path = Path(__file__).parent.resolve().with_name('VERSION')
  if path.exists():
    return path.read_text().strip()
  return metadata.version(DIST_NAME)


version = get_version()
