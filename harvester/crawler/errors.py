"""Exception types raised by the fetch and extraction layers."""


class FetchError(Exception):
    """Exception raised when a single fetch attempt fails.

    Transient by nature (timeout, network error, challenge page); the ladder
    treats it as a failed validation and escalates.
    """

    pass


class RenderWorkerError(FetchError):
    """Exception raised when the render subprocess fails or returns garbage."""

    pass


class SourceExhaustedError(Exception):
    """Exception raised when every tier failed for a listing page."""

    def __init__(self, url: str, attempts=None):
        self.url = url
        self.attempts = list(attempts or [])
        super().__init__(f"All scraping tiers exhausted for {url}")


class NoArticleLinksError(Exception):
    """Exception raised when a listing page yields no candidate links."""

    def __init__(self, url: str):
        self.url = url
        super().__init__("No article links found")


class InvalidExtractionConfig(ValueError):
    """Exception raised when a selector config fails validation."""

    pass
