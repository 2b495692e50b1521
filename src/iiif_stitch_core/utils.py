"""Common utility helpers (HTTP, JSON, filesystem)."""

import json
import os
import time
from pathlib import Path

import requests
from requests import RequestException

from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json,application/ld+json,image/webp,image/apng,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Connection": "keep-alive",
}


def build_session() -> requests.Session:
    """Return a `requests.Session` preloaded with the default headers."""
    session = requests.Session()
    session.headers.update(DEFAULT_HEADERS)
    return session


def _sleep_backoff(attempt: int) -> None:
    time.sleep(2**attempt)


def _fetch_json_once(url: str, headers: dict, timeout: int) -> tuple[dict | None, requests.Response | None]:
    resp = requests.get(url, headers=headers, timeout=timeout)
    if resp.status_code == 429:
        return None, resp
    resp.raise_for_status()
    return resp.json(), resp


def _log_request_exception(url: str, exc: RequestException) -> None:
    logger.error("Failed to fetch JSON from %s: %s", url, exc)
    response = getattr(exc, "response", None)
    if response is not None:
        status_code = getattr(response, "status_code", None)
        if status_code is not None:
            logger.error("HTTP Status: %s", status_code)
        response_text = getattr(response, "text", None)
        if response_text:
            logger.debug("Response preview: %s", response_text[:200])


def get_json(url, headers=None, retries=3, timeout=15):
    """Fetches JSON from a URL with retry logic."""
    if headers is None:
        headers = DEFAULT_HEADERS

    logger.debug("Fetching JSON from %s", url)

    for attempt in range(retries):
        try:
            data, _resp = _fetch_json_once(url, headers, timeout)
            if data is not None:
                return data
            wait_time = (2**attempt) * 2
            logger.warning("Rate limited (429) on %s, waiting %ss", url, wait_time)
            time.sleep(wait_time)
        except RequestException as e:
            if attempt == retries - 1:
                _log_request_exception(url, e)
                raise
            logger.warning("Attempt %s/%s failed for %s, retrying...", attempt + 1, retries, url)
            _sleep_backoff(attempt)
        except ValueError as e:
            logger.error("JSON parsing error from %s: %s", url, e)
            raise

    return None


def save_json(path, data):
    """Saves data to a local JSON file."""
    p = Path(path)
    ensure_dir(p.parent)
    with p.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def load_json(path):
    """Loads a JSON file, returns None if not found."""
    p = Path(path)
    if not p.exists():
        return None
    try:
        with p.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


def ensure_dir(path: str | os.PathLike | None):
    """Ensures a directory exists."""
    if not path:
        return
    Path(path).mkdir(parents=True, exist_ok=True)
