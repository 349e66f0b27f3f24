"""
Error taxonomy shared by the upstream clients and the HTTP layer.

  FarMapsError
  ├── ConfigurationError          required env value missing (500)
  ├── InvalidRequestError         bad caller input (400)
  └── UpstreamFailure             hub / hydration gave up (502)
      ├── UpstreamRateLimited         429 after attempts exhausted
      ├── UpstreamTransientFailure    5xx / network after attempts exhausted
      └── UpstreamClientError         any other non-2xx, never retried
          └── MalformedResponse       body is not the JSON we expect
"""
from typing import Optional

EXCERPT_LEN = 200


class FarMapsError(Exception):
    status_code = 500


class ConfigurationError(FarMapsError):
    status_code = 500


class InvalidRequestError(FarMapsError):
    status_code = 400


class UpstreamFailure(FarMapsError):
    status_code = 502

    def __init__(
        self,
        service: str,
        message: str,
        status: Optional[int] = None,
        body: str = "",
    ) -> None:
        self.service = service
        self.status = status
        self.excerpt = body[:EXCERPT_LEN] if body else ""
        super().__init__(message)


class UpstreamRateLimited(UpstreamFailure):
    pass


class UpstreamTransientFailure(UpstreamFailure):
    pass


class UpstreamClientError(UpstreamFailure):
    pass


class MalformedResponse(UpstreamClientError):
    pass
