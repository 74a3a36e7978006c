"""
Moonraker Client
================

Thin async wrapper over the printer's HTTP API.

Only the endpoints the streamer depends on are exposed:
    - printer/objects/query   temperatures, progress, layers, motion
    - server/job_queue/status queued job head
    - server/history/list     most recent job
    - server/files/metadata   slicer metadata per file

Design Rules:
    - Every call returns parsed JSON or raises PrinterApiError
    - Auth is an API key header (X-Api-Key) or a raw Authorization header
"""

import logging
from typing import Optional

import httpx

from printstreamer.config import MoonrakerConfig
from printstreamer.printer.snapshot import PrinterSnapshot, decode_snapshot


logger = logging.getLogger(__name__)


QUERY_OBJECTS = (
    "extruder",
    "heater_bed",
    "print_stats",
    "display_status",
    "virtual_sdcard",
    "gcode_move",
    "motion_report",
)


class PrinterApiError(Exception):
    """Raised when the printer API cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MoonrakerClient:
    """
    Async client for the Moonraker API.

    Example:
        async with httpx.AsyncClient() as http:
            client = MoonrakerClient(settings.moonraker, http)
            snapshot = await client.fetch_snapshot()
    """

    def __init__(self, config: MoonrakerConfig, client: httpx.AsyncClient) -> None:
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout_seconds
        self._client = client
        self._headers = {}
        if config.api_key:
            self._headers["X-Api-Key"] = config.api_key
        if config.auth_header:
            self._headers["Authorization"] = config.auth_header

    async def get_json(self, path: str, params: Optional[dict] = None, query: str = "") -> dict:
        """
        GET a Moonraker endpoint and return the decoded JSON body.

        Args:
            path: Path below the base URL, without a leading slash
            params: Query parameters encoded by httpx
            query: Pre-built query string, for bare keys like ``extruder``

        Raises:
            PrinterApiError: On transport failure, HTTP error or invalid JSON
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        if query:
            url = f"{url}?{query}"
        try:
            response = await self._client.get(
                url, params=params, headers=self._headers, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise PrinterApiError(f"Printer API unreachable: {e}") from e

        if response.status_code >= 400:
            raise PrinterApiError(
                f"Printer API {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise PrinterApiError(f"Printer API {path} returned invalid JSON") from e

    async def query_objects(self) -> dict:
        return await self.get_json("printer/objects/query", query="&".join(QUERY_OBJECTS))

    async def job_queue(self) -> dict:
        return await self.get_json("server/job_queue/status")

    async def history(self, limit: int = 1) -> dict:
        return await self.get_json(
            "server/history/list", params={"limit": limit, "order": "desc"}
        )

    async def file_metadata(self, filename: str) -> dict:
        """Slicer metadata for a gcode file (the ``result`` object)."""
        body = await self.get_json("server/files/metadata", params={"filename": filename})
        result = body.get("result") if isinstance(body, dict) else None
        return result if isinstance(result, dict) else {}

    async def fetch_snapshot(self) -> PrinterSnapshot:
        """
        Query status, queue and history and decode them into one snapshot.

        The queue and history lookups are best effort; only a failing status
        query propagates.
        """
        status = await self.query_objects()

        queue = None
        history = None
        try:
            queue = await self.job_queue()
        except PrinterApiError as e:
            logger.debug(f"Job queue lookup failed: {e}")
        try:
            history = await self.history()
        except PrinterApiError as e:
            logger.debug(f"History lookup failed: {e}")

        return decode_snapshot(status, queue, history)
