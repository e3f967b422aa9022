"""HTTP session, provider retry policy and small formatting helpers."""

from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Callable, Dict

import requests
from requests import Response
from tenacity import (after_log, retry, retry_if_exception,
                      stop_after_attempt, wait_exponential)

from .config import HTTP_MAX_ATTEMPTS


logger = logging.getLogger(__name__)


def get_http_session() -> requests.Session:
    """Session with a desktop browser User-Agent; the caller closes it."""
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                          "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
            "Accept": "*/*",
        }
    )
    return session


class HTTPError(Exception):
    """Non-2xx answer or exhausted retries; `status_code` is None for network errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _raise_for_status(resp: Response) -> None:
    try:
        resp.raise_for_status()
    except requests.RequestException as e:
        raise HTTPError(str(e), status_code=resp.status_code) from e


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, HTTPError):
        return exc.status_code is None or exc.status_code >= 500
    return isinstance(exc, requests.RequestException)


def retryable_request(method: Callable[[requests.Session, str, Dict[str, Any]], Response]) -> Callable[..., Response]:
    """Wrap a `(session, url, **kwargs) -> Response` call with the provider retry policy.

    Connection errors and 5xx answers are retried up to HTTP_MAX_ATTEMPTS
    times with exponential back-off (1 to 10 s). Any other 4xx surfaces at
    once as HTTPError carrying the status code.
    """

    @retry(
        reraise=True,
        stop=stop_after_attempt(HTTP_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_retryable),
        after=after_log(logger, logging.WARNING),
    )
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        response = method(session, url, **kwargs)
        if response.status_code >= 500:
            raise HTTPError(f"Server returned status {response.status_code}", status_code=response.status_code)
        _raise_for_status(response)
        return response

    return wrapper


def string_limit(s: str, n: int) -> str:
    """Truncate `s` to at most `n` characters, marking the cut with '...'."""
    if len(s) > n:
        return s[: max(0, n - 3)] + "..."
    return s


def format_rupiah(amount: int) -> str:
    return "Rp " + f"{int(amount):,}".replace(",", ".")


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


__all__ = [
    "get_http_session",
    "retryable_request",
    "HTTPError",
    "string_limit",
    "format_rupiah",
    "utcnow",
]
