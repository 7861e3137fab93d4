class ConfigError(Exception):
  pass


class SignatureInvalid(Exception):
  pass


class AuthenticationFailed(Exception):
  pass


class PipelineFailure(Exception):
  pass


class SourceUnavailable(PipelineFailure):
  pass


class UnsupportedFormat(PipelineFailure):
  pass


class PersistFailure(PipelineFailure):
  pass
