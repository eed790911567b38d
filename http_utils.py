from __future__ import annotations

from dataclasses import dataclass

USER_AGENT = "WorkshopModUpdater/1.0"
JSON_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/json",
}
HTML_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}
_DNS_ERROR_TOKENS = (
    "name or service not known",
    "nodename nor servname provided",
    "temporary failure in name resolution",
    "failed to resolve",
    "cannot resolve",
    "getaddrinfo failed",
    "no address associated with hostname",
)


@dataclass
class RetryPolicy:
    """Linear backoff: attempt ``n`` failing sleeps ``n * backoff`` seconds."""

    retries: int = 3
    backoff: float = 1.0

    def __post_init__(self) -> None:
        self.retries = max(0, int(self.retries))
        self.backoff = max(0.0, float(self.backoff))

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def delay_for_attempt(self, attempt: int) -> float:
        if self.backoff <= 0:
            return 0.0
        return self.backoff * attempt


def is_dns_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(token in message for token in _DNS_ERROR_TOKENS)
