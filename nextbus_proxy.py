#!/usr/bin/env python3
# 511.org + NWS proxy for the Next Bus display.

import datetime
from dataclasses import dataclass
import json
import locale
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, TypedDict

from dotenv import load_dotenv
from flask import Flask, g, jsonify, make_response, request, Response
import requests

load_dotenv()

log = logging.getLogger("nextbus_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

try:
    locale.setlocale(locale.LC_COLLATE, "")
except locale.Error:
    log.warning("Falling back to the C collation locale")


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def now_ms() -> int:
    return int(time.time() * 1000)


TRANSIT_BASE = os.getenv("TRANSIT_BASE_URL", "http://api.511.org/transit")
WEATHER_BASE = os.getenv("WEATHER_BASE_URL", "https://api.weather.gov")
WEATHER_USER_AGENT = os.getenv("WEATHER_USER_AGENT", "NextBusDisplay/1.0")

API_KEY = os.getenv("API_KEY")

CORS_ALLOWED_ORIGINS = set(
    env_csv(
        "CORS_ALLOWED_ORIGINS",
        "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
    )
)

UPSTREAM_CONNECT_TIMEOUT_SEC = env_float("UPSTREAM_CONNECT_TIMEOUT_SEC", 3.0)
UPSTREAM_READ_TIMEOUT_SEC = env_float("UPSTREAM_READ_TIMEOUT_SEC", 10.0)
UPSTREAM_TIMEOUT = (UPSTREAM_CONNECT_TIMEOUT_SEC, UPSTREAM_READ_TIMEOUT_SEC)

STOPS_CACHE_TTL_SEC = env_int("STOPS_CACHE_TTL_SEC", 24 * 60 * 60)
WEATHER_CACHE_TTL_SEC = env_int("WEATHER_CACHE_TTL_SEC", 15 * 60)

DEFAULT_STOPS = env_csv("DEFAULT_STOPS", "")
DEFAULT_LAT = os.getenv("DEFAULT_LAT")
DEFAULT_LON = os.getenv("DEFAULT_LON")

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("PORT", 3000)

BOM = "\ufeff"

AGENCIES: Tuple[Tuple[str, str], ...] = (
    ("AC", "AC Transit"),
    ("SF", "SF Muni"),
    ("BA", "BART"),
    ("CT", "Caltrain"),
    ("GG", "Golden Gate Transit"),
    ("SM", "SamTrans"),
    ("VTA", "VTA"),
    ("CC", "County Connection"),
    ("EM", "Emery Go-Round"),
    ("PE", "Petaluma Transit"),
    ("SR", "Santa Rosa CityBus"),
    ("WC", "WestCAT"),
)

JsonDict = Dict[str, Any]


class StopPoint(TypedDict, total=False):
    id: str
    Name: str


class ForecastPeriod(TypedDict, total=False):
    temperature: float
    temperatureUnit: str
    shortForecast: str
    icon: str


class WeatherReading(TypedDict):
    temperature: float
    unit: str
    description: str
    icon: str


@dataclass
class CacheEntry:
    value: Any
    fetched_at_ms: int


class InvalidRequest(Exception):
    pass


class ConfigurationError(Exception):
    pass


class UpstreamError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ResponseCache:
    """Key -> CacheEntry map with a single TTL and lazy expiry.

    Entries are only ever replaced whole. Stale entries stay in the map until
    the next successful fetch for the same key overwrites them.
    """

    def __init__(self, ttl_ms: int, clock: Optional[Callable[[], int]] = None) -> None:
        self.ttl_ms = ttl_ms
        self._clock = clock or now_ms
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def is_fresh(entry: CacheEntry, now: int, ttl: int) -> bool:
        return now - entry.fetched_at_ms < ttl

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, value: Any, now: Optional[int] = None) -> CacheEntry:
        entry = CacheEntry(value=value, fetched_at_ms=self._clock() if now is None else now)
        with self._lock:
            self._entries[key] = entry
        return entry

    def lookup(self, key: str, now: Optional[int] = None) -> Optional[CacheEntry]:
        entry = self.get(key)
        if entry is None:
            return None
        if now is None:
            now = self._clock()
        if not self.is_fresh(entry, now, self.ttl_ms):
            return None
        return entry

    def remaining_sec(self, entry: CacheEntry, now: Optional[int] = None) -> int:
        if now is None:
            now = self._clock()
        return max(0, (self.ttl_ms - (now - entry.fetched_at_ms)) // 1000)


stops_cache = ResponseCache(STOPS_CACHE_TTL_SEC * 1000)
weather_cache = ResponseCache(WEATHER_CACHE_TTL_SEC * 1000)

app = Flask(__name__)
session = requests.Session()


def strip_bom(text: str) -> str:
    if text.startswith(BOM):
        return text[1:]
    return text


def require_args(*names: str, message: str) -> Tuple[str, ...]:
    values = tuple(request.args.get(name, "") for name in names)
    if not all(values):
        raise InvalidRequest(message)
    return values


def transit_get_json(path: str, params: Dict[str, str]) -> Any:
    if not API_KEY:
        raise ConfigurationError("API_KEY not configured")
    query = {"api_key": API_KEY, **params, "format": "json"}
    try:
        resp = session.get(f"{TRANSIT_BASE}{path}", params=query, timeout=UPSTREAM_TIMEOUT)
    except requests.RequestException as exc:
        raise UpstreamError("511 API request failed") from exc

    if not resp.ok:
        raise UpstreamError(f"511 API returned {resp.status_code}", resp.status_code)

    # 511 sometimes prefixes the body with a byte-order mark and does not
    # always declare a charset, so decode as UTF-8 regardless of headers.
    try:
        return json.loads(strip_bom(resp.content.decode("utf-8")))
    except ValueError as exc:
        raise UpstreamError("511 API returned invalid JSON") from exc


def weather_get_json(url: str, service_name: str) -> JsonDict:
    try:
        resp = session.get(
            url,
            timeout=UPSTREAM_TIMEOUT,
            headers={"User-Agent": WEATHER_USER_AGENT, "Accept": "application/geo+json"},
        )
    except requests.RequestException as exc:
        raise UpstreamError(f"NWS {service_name} API request failed") from exc

    if not resp.ok:
        raise UpstreamError(
            f"NWS {service_name} API returned {resp.status_code}", resp.status_code
        )
    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamError(f"NWS {service_name} API returned invalid JSON") from exc


def extract_stops(data: Any) -> List[JsonDict]:
    try:
        points: List[StopPoint] = data["Contents"]["dataObjects"]["ScheduledStopPoint"] or []
    except (KeyError, TypeError):
        return []

    stops = [{"id": p.get("id"), "name": p.get("Name") or p.get("id")} for p in points]
    return sort_stops(stops)


def sort_stops(stops: List[JsonDict]) -> List[JsonDict]:
    def collation_key(stop: JsonDict) -> Tuple[str, str]:
        name = str(stop.get("name") or "")
        return locale.strxfrm(name.casefold()), name

    return sorted(stops, key=collation_key)


def fetch_stops(agency: str) -> List[JsonDict]:
    data = transit_get_json("/stops", {"operator_id": agency})
    return extract_stops(data)


def get_stops_cached(agency: str) -> CacheEntry:
    entry = stops_cache.lookup(agency)
    if entry is not None:
        return entry
    return stops_cache.put(agency, fetch_stops(agency))


def fetch_weather(lat: str, lon: str) -> WeatherReading:
    points = weather_get_json(f"{WEATHER_BASE}/points/{lat},{lon}", "points")
    forecast_url = (points.get("properties") or {}).get("forecastHourly")
    if not forecast_url:
        raise UpstreamError("NWS points API returned no forecast URL")

    forecast = weather_get_json(forecast_url, "forecast")
    periods: List[ForecastPeriod] = (forecast.get("properties") or {}).get("periods") or []
    if not periods:
        raise UpstreamError("NWS forecast API returned no periods")

    current = periods[0]
    return {
        "temperature": current.get("temperature"),
        "unit": current.get("temperatureUnit"),
        "description": current.get("shortForecast"),
        "icon": current.get("icon"),
    }


def get_weather_cached(lat: str, lon: str) -> CacheEntry:
    cache_key = f"{lat},{lon}"
    entry = weather_cache.lookup(cache_key)
    if entry is not None:
        return entry
    return weather_cache.put(cache_key, fetch_weather(lat, lon))


def parse_default_stops(items: List[str]) -> List[JsonDict]:
    stops: List[JsonDict] = []
    for item in items:
        parts = [part.strip() for part in item.split(":", 2)]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            log.warning("Ignoring malformed DEFAULT_STOPS entry: %r", item)
            continue
        stop: JsonDict = {"agency": parts[0], "stopCode": parts[1]}
        if len(parts) == 3 and parts[2]:
            stop["name"] = parts[2]
        stops.append(stop)
    return stops


def default_config() -> JsonDict:
    location = None
    if DEFAULT_LAT and DEFAULT_LON:
        location = {"lat": DEFAULT_LAT, "lon": DEFAULT_LON}
    return {"stops": parse_default_stops(DEFAULT_STOPS), "location": location}


def add_cache_headers(resp: Response, ttl_sec: int) -> Response:
    resp.headers["Cache-Control"] = f"max-age={ttl_sec}"
    return resp


def error_response(status: int, message: str) -> Response:
    resp = jsonify({"error": message})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


def upstream_failure(label: str, exc: Exception) -> Response:
    log.error("%s error: %s", label, exc)
    return error_response(500, str(exc))


def unexpected_failure(label: str) -> Response:
    log.exception("%s failed unexpectedly", label)
    return error_response(500, "Unexpected error")


@app.before_request
def start_timer() -> Optional[Response]:
    g.started_at = time.monotonic()
    if request.path.startswith("/api/") and request.method == "OPTIONS":
        return make_response("", 204)
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    origin = request.headers.get("Origin")
    if origin and origin in CORS_ALLOWED_ORIGINS:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Max-Age"] = "600"

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")

    started_at = g.get("started_at")
    elapsed_ms = (time.monotonic() - started_at) * 1000 if started_at is not None else 0.0
    log.info(
        "%s %s %s %s %.1f ms",
        datetime.datetime.now(datetime.timezone.utc).isoformat(),
        request.method,
        request.full_path.rstrip("?"),
        resp.status_code,
        elapsed_ms,
    )
    return resp


@app.route("/api/arrivals", methods=["GET", "OPTIONS"])
def arrivals() -> Response:
    try:
        agency, stop_code = require_args(
            "agency", "stopCode", message="agency and stopCode are required"
        )
        data = transit_get_json("/StopMonitoring", {"agency": agency, "stopCode": stop_code})
    except InvalidRequest as exc:
        return error_response(400, str(exc))
    except (ConfigurationError, UpstreamError) as exc:
        return upstream_failure("Arrivals API", exc)
    except Exception:
        return unexpected_failure("Arrivals API")

    # Arrivals are time-sensitive and never cached.
    resp = jsonify(data)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.route("/api/stops", methods=["GET", "OPTIONS"])
def stops() -> Response:
    try:
        (agency,) = require_args("agency", message="agency is required")
        if not API_KEY:
            raise ConfigurationError("API_KEY not configured")
        entry = get_stops_cached(agency)
    except InvalidRequest as exc:
        return error_response(400, str(exc))
    except (ConfigurationError, UpstreamError) as exc:
        return upstream_failure("Stops API", exc)
    except Exception:
        return unexpected_failure("Stops API")

    resp = jsonify(entry.value)
    return add_cache_headers(resp, stops_cache.remaining_sec(entry))


@app.route("/api/weather", methods=["GET", "OPTIONS"])
def weather() -> Response:
    try:
        lat, lon = require_args("lat", "lon", message="lat and lon are required")
        entry = get_weather_cached(lat, lon)
    except InvalidRequest as exc:
        return error_response(400, str(exc))
    except UpstreamError as exc:
        return upstream_failure("Weather API", exc)
    except Exception:
        return unexpected_failure("Weather API")

    resp = jsonify(entry.value)
    return add_cache_headers(resp, weather_cache.remaining_sec(entry))


@app.route("/api/agencies", methods=["GET", "OPTIONS"])
def agencies() -> Response:
    return jsonify([{"id": agency_id, "name": name} for agency_id, name in AGENCIES])


@app.route("/api/config", methods=["GET", "OPTIONS"])
def config() -> Response:
    return jsonify(default_config())


def main() -> None:
    log.info("Next Bus server running on http://%s:%s", APP_HOST, APP_PORT)
    app.run(host=APP_HOST, port=APP_PORT)


if __name__ == "__main__":
    main()
