from typing import NewType, NotRequired, TypedDict

SourceRef = NewType('SourceRef', str)
CacheKey = NewType('CacheKey', str)


class FingerprintDict(TypedDict):
  format: NotRequired[str]
  width: NotRequired[int]
  height: NotRequired[int]
  suffix: NotRequired[str]
  sourceFormat: NotRequired[str]


class EtagOptions(TypedDict):
  width: NotRequired[int]
  height: NotRequired[int]
  suffix: NotRequired[str]
