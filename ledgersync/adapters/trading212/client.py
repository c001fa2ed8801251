from __future__ import annotations

import base64
import datetime as dt
import json
import logging
import time
import urllib.parse
from typing import Any, Callable, Optional

from ledgersync.adapters.trading212.parser import parse_transactions
from ledgersync.core.config import DEFAULT_BASE_URL, SyncSettings
from ledgersync.core.net import HttpResponse, Transport, default_transport
from ledgersync.importers.adapters import (
    AccessForbidden,
    BadRequest,
    BrokerAdapter,
    DownloadFailed,
    ExportFailed,
    ExportTimeout,
    FetchFailed,
    NotFound,
    ProviderError,
    RateLimited,
    RequestFailed,
    Unauthorized,
)
from ledgersync.importers.records import TransactionRecord
from ledgersync.utils.rate_limit import key_serial_lock, mask_secret, rate_limit_sleep
from ledgersync.utils.time import format_api_time


log = logging.getLogger(__name__)

USER_AGENT = "ledgersync Trading212 Client"

EXPORT_FINISHED = "Finished"
EXPORT_FAILED = "Failed"


def _body_preview(resp: HttpResponse, limit: int = 300) -> str:
    s = resp.text.strip()
    return s[:limit] + ("..." if len(s) > limit else "")


class Trading212Client(BrokerAdapter):
    """
    Client for the broker's history export API.

    The API is asynchronous: `POST /equity/history/exports` creates a report job, the job
    list is polled until the report is `Finished`, then the CSV is fetched from a
    presigned URL. `fetch_transactions` hides that behind one blocking call.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str | None = None,
        timeout_s: float = 120.0,
        initial_delay_s: float = 10.0,
        poll_interval_s: float = 60.0,
        max_attempts: int = 10,
        export_request_interval_s: float = 30.0,
        transport: Transport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ):
        self.api_key = (api_key or "").strip()
        self.api_secret = (api_secret or "").strip()
        if not self.api_key or not self.api_secret:
            raise Unauthorized("Missing API key/secret for this connection.")
        self.base_url = (base_url or DEFAULT_BASE_URL).strip().rstrip("/")
        self.timeout_s = float(timeout_s)
        self.initial_delay_s = float(initial_delay_s)
        self.poll_interval_s = float(poll_interval_s)
        self.max_attempts = max(1, int(max_attempts))
        self.export_request_interval_s = float(export_request_interval_s)
        self._transport = transport or default_transport
        self._sleep = sleep_fn or time.sleep

    @classmethod
    def from_settings(cls, api_key: str, api_secret: str, settings: SyncSettings, **kwargs: Any) -> "Trading212Client":
        return cls(
            api_key,
            api_secret,
            base_url=settings.base_url,
            timeout_s=settings.request_timeout_s,
            initial_delay_s=settings.initial_delay_s,
            poll_interval_s=settings.poll_interval_s,
            max_attempts=settings.max_attempts,
            export_request_interval_s=settings.export_request_interval_s,
            **kwargs,
        )

    # --- HTTP plumbing ---

    def _auth_headers(self) -> dict[str, str]:
        credentials = base64.b64encode(f"{self.api_key}:{self.api_secret}".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

    def _url(self, path: str) -> str:
        p = (path or "").strip()
        if not p.startswith("/"):
            p = "/" + p
        return self.base_url + p

    def _send(self, method: str, url: str, headers: dict[str, str], body: bytes | None, *, label: str) -> HttpResponse:
        try:
            return self._transport(url, method, headers, body, self.timeout_s)
        except ProviderError:
            log.error("Export API: %s failed (key %s)", label, mask_secret(self.api_key))
            raise
        except Exception as e:
            log.error("Export API: unexpected error during %s: %s: %s", label, type(e).__name__, e)
            raise RequestFailed(f"Exception during {method} request: {e}") from e

    def _request_json(self, method: str, path: str, *, payload: dict[str, Any] | None = None) -> Any:
        label = f"{method} {path}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        resp = self._send(method, self._url(path), self._auth_headers(), body, label=label)
        return self._handle_response(resp, label=label)

    def _handle_response(self, resp: HttpResponse, *, label: str) -> Any:
        status = int(resp.status_code or 0)
        if status in {200, 201}:
            raw = resp.text
            if not raw.strip():
                return {}
            try:
                return json.loads(raw)
            except ValueError as e:
                raise FetchFailed(f"Invalid JSON response for {label}", status_code=status) from e
        if status == 400:
            log.error("Export API: bad request for %s - %s", label, _body_preview(resp))
            raise BadRequest(f"Bad request to export API: {_body_preview(resp)}", status_code=status)
        if status == 401:
            raise Unauthorized("Invalid API credentials", status_code=status)
        if status == 403:
            raise AccessForbidden("Access forbidden - check your API credentials", status_code=status)
        if status == 404:
            raise NotFound("Resource not found", status_code=status)
        if status == 429:
            raise RateLimited("Rate limit exceeded. Please try again later.", status_code=status)
        log.error("Export API: unexpected response for %s - status=%s body=%s", label, status, _body_preview(resp))
        raise FetchFailed(f"Failed to fetch data: {status} - {_body_preview(resp)}", status_code=status)

    # --- Account summary ---

    def get_account_summary(self) -> dict[str, Any]:
        data = self._request_json("GET", "/equity/account/summary")
        if not isinstance(data, dict):
            raise FetchFailed("Unexpected account summary shape")
        return data

    # --- Export protocol ---

    def request_export(self, window_start: Any, window_end: Any) -> int:
        payload = {
            "dataIncluded": {
                "includeTransactions": True,
                "includeOrders": True,
                "includeDividends": True,
            },
            "timeFrom": format_api_time(window_start),
            "timeTo": format_api_time(window_end),
        }
        rate_limit_sleep(
            api_key=self.api_key,
            action="export_request",
            min_interval_s=self.export_request_interval_s,
            sleep_fn=self._sleep,
        )
        data = self._request_json("POST", "/equity/history/exports", payload=payload)
        report_id = data.get("reportId") if isinstance(data, dict) else None
        if report_id is None:
            raise FetchFailed("Export request succeeded but returned no reportId.")
        log.info("Export API: created export %s for %s to %s", report_id, payload["timeFrom"], payload["timeTo"])
        return report_id

    def list_exports(self) -> list[dict[str, Any]]:
        data = self._request_json("GET", "/equity/history/exports")
        if not isinstance(data, list):
            raise FetchFailed("Unexpected export list shape")
        return [x for x in data if isinstance(x, dict)]

    def find_export(self, report_id: Any) -> Optional[dict[str, Any]]:
        for export in self.list_exports():
            if str(export.get("reportId")) == str(report_id):
                return export
        return None

    def await_export(
        self,
        report_id: Any,
        *,
        max_attempts: int | None = None,
        initial_delay_s: float | None = None,
        poll_interval_s: float | None = None,
    ) -> str:
        attempts_allowed = max(1, int(max_attempts if max_attempts is not None else self.max_attempts))
        initial = float(initial_delay_s if initial_delay_s is not None else self.initial_delay_s)
        interval = float(poll_interval_s if poll_interval_s is not None else self.poll_interval_s)

        log.info("Export API: waiting %ss before first check for export %s", initial, report_id)
        self._sleep(initial)

        attempts = 0
        while True:
            attempts += 1
            export = self.find_export(report_id)
            if export is None:
                raise NotFound(f"Export {report_id} not found")

            status = str(export.get("status") or "")
            if status == EXPORT_FINISHED:
                link = export.get("downloadLink")
                if not link:
                    raise ExportFailed(f"Export {report_id} finished without a download link")
                return str(link)
            if status == EXPORT_FAILED:
                raise ExportFailed(f"Export {report_id} failed")
            if attempts >= attempts_allowed:
                raise ExportTimeout(f"Export {report_id} timed out after {attempts_allowed} attempts")

            log.info(
                "Export API: export %s status: %s, waiting %ss (attempt %s/%s)",
                report_id,
                status or "?",
                interval,
                attempts,
                attempts_allowed,
            )
            # Status polling is rate limited after the first GET.
            self._sleep(interval)

    def download_csv(self, download_url: str) -> str:
        host = (urllib.parse.urlparse(download_url).hostname or "").lower()
        # Presigned URL: no auth header.
        resp = self._send("GET", download_url, {"User-Agent": USER_AGENT}, None, label=f"GET report from {host}")
        if int(resp.status_code or 0) != 200:
            raise DownloadFailed(f"Failed to download CSV: {resp.status_code}", status_code=resp.status_code)
        return resp.text

    def download_and_parse(self, download_url: str) -> list[TransactionRecord]:
        return parse_transactions(self.download_csv(download_url))

    def fetch_transactions(self, window_start: dt.datetime, window_end: dt.datetime) -> list[TransactionRecord]:
        # Export creation and polling share a per-key rate limit; serialize them in-process.
        with key_serial_lock(self.api_key):
            report_id = self.request_export(window_start, window_end)
            download_url = self.await_export(report_id)
        records = self.download_and_parse(download_url)
        log.info("Export API: export %s parsed into %s records", report_id, len(records))
        return records
