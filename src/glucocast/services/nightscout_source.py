"""
Nightscout History Source for glucocast
Handles authentication and paginated reads of glucose entries and treatments
from a Nightscout-compatible API.
"""
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from glucocast.config import Settings, get_settings
from glucocast.exceptions import ConfigurationError, DataFetchError
from glucocast.models.schemas import GlucoseReading, Treatment, TrendDirection

logger = logging.getLogger(__name__)


MAX_PER_REQUEST = 10000


class HistorySource(Protocol):
    """Read-only source of historical readings and treatments."""

    async def fetch_readings(self, start: datetime, end: datetime) -> List[GlucoseReading]:
        ...

    async def fetch_treatments(self, start: datetime, end: datetime) -> List[Treatment]:
        ...


def hash_secret(api_secret: str) -> str:
    """SHA1 hex digest of the API secret, as Nightscout expects."""
    return hashlib.sha1(api_secret.encode("utf-8")).hexdigest()


def _parse_iso(value: str) -> datetime:
    timestamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp


def _from_millis(ms: float) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class NightscoutSource:
    """History source backed by the Nightscout v1 REST API."""

    def __init__(
        self,
        base_url: str,
        api_secret: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Nightscout source.

        Args:
            base_url: Nightscout site URL (e.g., https://example.herokuapp.com)
            api_secret: Plain text API secret (sent SHA1 hashed)
            timeout: Request timeout in seconds
            transport: Optional httpx transport
        """
        if not base_url:
            raise ConfigurationError("Nightscout URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {"Accept": "application/json"}
        if api_secret:
            self.headers["API-SECRET"] = hash_secret(api_secret)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "NightscoutSource":
        settings = settings or get_settings()
        return cls(
            settings.nightscout_url or "",
            settings.nightscout_api_secret,
            timeout=settings.nightscout_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def test_connection(self) -> Tuple[bool, str]:
        """
        Test the connection to the Nightscout API.

        Returns:
            Tuple of (success, message)
        """
        try:
            async with self._client() as client:
                response = await client.get("/api/v1/status.json")
        except httpx.TimeoutException:
            return False, "Connection timeout"
        except httpx.HTTPError as e:
            return False, f"Connection error: {e}"

        if response.status_code == 200:
            return True, "Connection successful"
        if response.status_code == 401:
            return False, "Invalid API secret"
        return False, f"Error: HTTP {response.status_code}"

    async def fetch_readings(self, start: datetime, end: datetime) -> List[GlucoseReading]:
        """
        Fetch sensor glucose entries between start and end (inclusive).

        Raises:
            DataFetchError: On transport, HTTP or payload errors
        """
        def params(page_end: datetime) -> Dict[str, Any]:
            return {
                "find[date][$gte]": int(start.timestamp() * 1000),
                "find[date][$lte]": int(page_end.timestamp() * 1000),
                "count": MAX_PER_REQUEST,
            }

        readings = await self._paginate(
            "/api/v1/entries/sgv.json", params, self._parse_entry, start, end,
            step_back=timedelta(milliseconds=1),
        )
        logger.info(f"Fetched {len(readings)} glucose readings from Nightscout")
        return readings

    async def fetch_treatments(self, start: datetime, end: datetime) -> List[Treatment]:
        """
        Fetch insulin and carb treatments between start and end (inclusive).

        Raises:
            DataFetchError: On transport, HTTP or payload errors
        """
        def params(page_end: datetime) -> Dict[str, Any]:
            return {
                "find[created_at][$gte]": start.astimezone(timezone.utc).isoformat(),
                "find[created_at][$lte]": page_end.astimezone(timezone.utc).isoformat(),
                "count": MAX_PER_REQUEST,
            }

        treatments = await self._paginate(
            "/api/v1/treatments.json", params, self._parse_treatment, start, end,
            step_back=timedelta(seconds=1),
        )
        logger.info(f"Fetched {len(treatments)} treatments from Nightscout")
        return treatments

    async def _paginate(
        self,
        path: str,
        params: Callable[[datetime], Dict[str, Any]],
        parse: Callable[[Dict[str, Any]], Optional[Any]],
        start: datetime,
        end: datetime,
        step_back: timedelta,
    ) -> List[Any]:
        """Page backwards from end until a short page or start is reached."""
        items: Dict[Any, None] = {}
        page_end = end

        try:
            async with self._client() as client:
                while True:
                    response = await client.get(path, params=params(page_end))
                    response.raise_for_status()
                    raw = response.json() or []
                    if not isinstance(raw, list):
                        raise DataFetchError(f"Unexpected payload from {path}")
                    if not raw:
                        break

                    page = []
                    for entry in raw:
                        try:
                            item = parse(entry)
                        except (KeyError, TypeError, ValueError) as e:
                            logger.warning(f"Failed to parse entry from {path}: {e}")
                            continue
                        if item is not None:
                            page.append(item)
                    for item in page:
                        items.setdefault(item, None)

                    if len(raw) < MAX_PER_REQUEST or not page:
                        break

                    # Oldest timestamp is requested again; readings sharing it can span pages
                    oldest = min(item.timestamp for item in page)
                    page_end = oldest if oldest < page_end else oldest - step_back
                    if page_end < start:
                        break
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error fetching {path}: {e}")
            raise DataFetchError(f"Nightscout returned HTTP {e.response.status_code} for {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"Error fetching {path}: {e}")
            raise DataFetchError(f"Nightscout request failed for {path}: {e}") from e
        except ValueError as e:
            raise DataFetchError(f"Invalid JSON from {path}") from e

        return [item for item in items if start <= item.timestamp <= end]

    @staticmethod
    def _parse_entry(entry: Dict[str, Any]) -> Optional[GlucoseReading]:
        """Parse a raw Nightscout entry into a GlucoseReading."""
        sgv = entry.get("sgv")
        if sgv is None or float(sgv) <= 0:
            return None

        if entry.get("date"):
            timestamp = _from_millis(float(entry["date"]))
        elif entry.get("dateString"):
            timestamp = _parse_iso(entry["dateString"])
        else:
            return None

        try:
            trend = TrendDirection(entry.get("direction", "Flat"))
        except ValueError:
            trend = None

        return GlucoseReading(timestamp=timestamp, value=float(sgv), trend=trend)

    @staticmethod
    def _parse_treatment(entry: Dict[str, Any]) -> Optional[Treatment]:
        """Parse a raw Nightscout treatment; entries without insulin or carbs are skipped."""
        insulin = float(entry.get("insulin") or 0)
        carbs = float(entry.get("carbs") or 0)
        if insulin <= 0 and carbs <= 0:
            return None

        if entry.get("created_at"):
            timestamp = _parse_iso(entry["created_at"])
        elif entry.get("mills"):
            timestamp = _from_millis(float(entry["mills"]))
        elif entry.get("date"):
            timestamp = _from_millis(float(entry["date"]))
        else:
            return None

        return Treatment(
            timestamp=timestamp,
            insulin=insulin,
            carbs=carbs,
            id=entry.get("_id"),
            event_type=entry.get("eventType"),
        )
