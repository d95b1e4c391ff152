"""Exceptions raised by the upstream HTTP clients."""


class UpstreamError(Exception):
    """An upstream API could not be reached or returned something unusable."""


class UpstreamTimeout(UpstreamError):
    def __init__(self, url: str, timeout_seconds: float):
        super().__init__(f"Upstream timeout after {timeout_seconds}s: {url}")
        self.url = url
        self.timeout_seconds = timeout_seconds


class UpstreamStatusError(UpstreamError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"Upstream error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class UpstreamPayloadError(UpstreamError):
    """The response was JSON but not the shape we expect."""
