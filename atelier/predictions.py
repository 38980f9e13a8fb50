"""Thin client for the hosted prediction API (submit, poll, fetch output).

`submit(model, input) -> Prediction`, `poll(url) -> Prediction`. Only
`succeeded`, `failed` and `canceled` are terminal; any other status means the
job is still running.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
import time
from pathlib import Path
from typing import Any, Dict

import requests
from pydantic import ValidationError

from atelier.config import Settings, get_settings
from atelier.schemas import Prediction

logger = logging.getLogger(__name__)

_RETRY_STATUS = (429, 500, 502, 503, 504)


class PredictionError(RuntimeError):
    """Talking to the prediction API failed.

    `transient` errors (network, 5xx, 429) are worth retrying on a later run;
    the rest (bad token, 4xx, unusable payload) are not.
    """

    def __init__(self, message: str, *, transient: bool = True, status_code: int | None = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


def image_to_data_uri(path: str | Path) -> str:
    p = Path(path)
    mime = mimetypes.guess_type(p.name)[0] or "image/jpeg"
    return f"data:{mime};base64," + base64.b64encode(p.read_bytes()).decode("ascii")


def decode_data_uri(uri: str) -> bytes:
    header, _, payload = uri.partition(",")
    if not payload:
        raise PredictionError("empty data URI", transient=False)
    try:
        if header.endswith(";base64"):
            return base64.b64decode(payload)
        return payload.encode("utf-8")
    except ValueError as e:
        raise PredictionError(f"bad data URI: {e}", transient=False) from e


def first_output_url(output: Any) -> str | None:
    """First file reference in a prediction output (string, list or dict)."""
    if output is None:
        return None
    if isinstance(output, str):
        return output.strip() or None
    if isinstance(output, (list, tuple)):
        for part in output:
            url = first_output_url(part)
            if url:
                return url
        return None
    if isinstance(output, dict):
        for key in ("image", "images", "output", "url"):
            if key in output:
                url = first_output_url(output[key])
                if url:
                    return url
    return None


class PredictionClient:
    def __init__(
        self,
        token: str | None,
        base_url: str = "https://api.replicate.com/v1",
        *,
        timeout: int = 30,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        session: requests.Session | None = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PredictionClient":
        s = settings or get_settings()
        return cls(
            s.api_token,
            s.api_base_url,
            timeout=s.timeout,
            max_retries=s.max_retries,
            retry_backoff=s.retry_backoff,
        )

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            raise PredictionError("REPLICATE_API_TOKEN is not configured", transient=False)
        return {"Authorization": f"Token {self.token}", "Content-Type": "application/json"}

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        headers = self._headers()
        last_err: PredictionError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_err = PredictionError(f"{method} {url}: {e}")
            else:
                if resp.status_code < 400:
                    return resp
                body = (resp.text or "")[:1000]
                err = PredictionError(
                    f"{method} {url}: HTTP {resp.status_code}: {body}",
                    transient=resp.status_code in _RETRY_STATUS,
                    status_code=resp.status_code,
                )
                if not err.transient:
                    raise err
                last_err = err
            if attempt >= self.max_retries:
                break
            delay = self.retry_backoff * (2 ** attempt)
            logger.info("[predictions] retrying %s %s in %.1fs (%s)", method, url, delay, last_err)
            time.sleep(delay)
        if last_err is None:
            raise PredictionError(f"{method} {url}: no attempt made", transient=False)
        raise last_err

    def _prediction(self, resp: requests.Response) -> Prediction:
        try:
            data = resp.json()
        except ValueError as e:
            raise PredictionError(f"non-JSON response: {(resp.text or '')[:200]}") from e
        if not isinstance(data, dict):
            raise PredictionError("prediction response is not an object", transient=False)
        try:
            return Prediction.model_validate(data)
        except ValidationError as e:
            raise PredictionError(f"unexpected prediction payload: {e}", transient=False) from e

    def submit(self, model: str, input: Dict[str, Any]) -> Prediction:
        """Create a prediction without waiting for it."""
        url = f"{self.base_url}/models/{model}/predictions"
        pred = self._prediction(self._request("POST", url, json={"input": input}))
        if not pred.get_url and not pred.is_terminal:
            raise PredictionError("prediction created without a polling URL", transient=False)
        logger.info("[predictions] submitted %s -> %s (%s)", model, pred.id, pred.status)
        return pred

    def poll(self, url: str) -> Prediction:
        return self._prediction(self._request("GET", url))

    def fetch_output(self, output: Any) -> bytes:
        """Download (or decode) the first file in a prediction output."""
        ref = first_output_url(output)
        if not ref:
            raise PredictionError("prediction output has no file", transient=False)
        if ref.startswith("data:"):
            return decode_data_uri(ref)
        try:
            resp = self.session.get(ref, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise PredictionError(f"GET {ref}: {e}") from e
        if resp.status_code >= 400:
            raise PredictionError(f"GET {ref}: HTTP {resp.status_code}",
                                  transient=resp.status_code in _RETRY_STATUS,
                                  status_code=resp.status_code)
        if not resp.content:
            raise PredictionError(f"GET {ref}: empty body")
        return resp.content
