from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

RETRY_STATUS = {408, 429, 500, 502, 503, 504}


@dataclass
class HttpConfig:
    user_agent: str
    headers: Dict[str, str] = field(default_factory=dict)
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    max_retries: int = 6
    backoff_base_sec: float = 2.0
    backoff_max_sec: float = 60.0


class HttpClient:
    def __init__(self, cfg: HttpConfig, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": cfg.user_agent, **cfg.headers})

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        timeout = kwargs.pop("timeout", (self.cfg.connect_timeout, self.cfg.read_timeout))

        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.request(method, url, timeout=timeout, **kwargs)
                if resp.status_code in RETRY_STATUS and attempt <= self.cfg.max_retries:
                    self._sleep(attempt, resp)
                    continue
                return resp
            except requests.RequestException:
                if attempt <= self.cfg.max_retries:
                    self._sleep(attempt, None)
                    continue
                raise

    def _sleep(self, attempt: int, resp: Optional[requests.Response]) -> None:
        base = self.cfg.backoff_base_sec * (2 ** (attempt - 1))
        wait = min(base, self.cfg.backoff_max_sec)

        if resp is not None:
            ra = resp.headers.get("Retry-After")
            if ra:
                try:
                    wait = max(wait, float(ra))
                except ValueError:
                    pass

        jitter = random.uniform(0, 0.25 * wait)
        time.sleep(wait + jitter)


class ApiClient:
    """GETs relative paths under one base URL; non-2xx responses raise."""

    def __init__(self, base_url: str, http: HttpClient):
        self.base_url = base_url.rstrip("/") + "/"
        self.http = http

    def url_for(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    def get(self, path: str, params: Dict[str, Any]) -> requests.Response:
        resp = self.http.request("GET", self.url_for(path), params=params)
        resp.raise_for_status()
        return resp


def build_api_client(base_url: str, user_agent: str, token: str | None = None) -> ApiClient:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return ApiClient(base_url, HttpClient(HttpConfig(user_agent=user_agent, headers=headers)))
