#!/usr/bin/env python3
# Polling kiosk renderer for the Next Bus proxy.

import argparse
from concurrent.futures import ThreadPoolExecutor
import datetime
from dataclasses import dataclass, field
import json
import logging
import math
import os
import random
import sys
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
import requests

load_dotenv()

log = logging.getLogger("nextbus_display")

MAX_ARRIVALS = 2
REFRESH_INTERVAL_SEC = 60
WEATHER_INTERVAL_SEC = REFRESH_INTERVAL_SEC * 5

PROXY_URL = os.getenv("DISPLAY_PROXY_URL", "http://localhost:3000")
PREFS_PATH = os.getenv("DISPLAY_PREFS_PATH", os.path.expanduser("~/.nextbus.json"))
REQUEST_TIMEOUT = (3.0, 10.0)

GREETINGS = (
    "Have a great day!",
    "You're doing great!",
    "Make today amazing!",
    "You've got this!",
    "Today is full of possibilities!",
    "Be kind to yourself today.",
    "Good things are coming your way!",
    "You make the world brighter!",
    "Believe in yourself!",
    "Every day is a fresh start.",
    "You are appreciated!",
    "Keep being awesome!",
    "Smile, you're wonderful!",
    "Today is going to be a good day!",
    "You bring joy to others!",
    "Take a deep breath. You've got this.",
    "The best is yet to come!",
    "You are stronger than you think!",
    "Wishing you a beautiful day!",
    "Remember to take breaks!",
)

JsonDict = Dict[str, Any]


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class Stop:
    agency: str
    stop_code: str
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: JsonDict) -> "Stop":
        return cls(
            agency=str(data["agency"]),
            stop_code=str(data["stopCode"]),
            name=data.get("name") or None,
        )

    def to_dict(self) -> JsonDict:
        out: JsonDict = {"agency": self.agency, "stopCode": self.stop_code}
        if self.name:
            out["name"] = self.name
        return out

    @property
    def label(self) -> str:
        return self.name or self.stop_code


@dataclass
class Arrival:
    route: str
    destination: str
    minutes_until: Optional[int]


@dataclass
class StopResult:
    stop: Stop
    arrivals: List[Arrival] = field(default_factory=list)
    error: bool = False


def parse_timestamp(value: str) -> datetime.datetime:
    parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def minutes_until(expected: Optional[str], now: datetime.datetime) -> Optional[int]:
    """Whole minutes from ``now`` to ``expected``, never negative.

    Returns None when there is no usable timestamp.
    """
    if not expected:
        return None
    try:
        arrival = parse_timestamp(expected)
    except (AttributeError, TypeError, ValueError):
        return None
    diff_ms = (arrival - now).total_seconds() * 1000
    # Halves round up: 90 seconds shows as 2 min.
    minutes = math.floor(diff_ms / 60000 + 0.5)
    return max(0, minutes)


def parse_arrivals(
    payload: Any, now: datetime.datetime, limit: int = MAX_ARRIVALS
) -> List[Arrival]:
    """Pull up to ``limit`` arrivals out of a StopMonitoring payload.

    A payload missing any of the nested fields yields an empty list so the
    stop renders as having no arrivals.
    """
    arrivals: List[Arrival] = []
    try:
        monitoring = payload["ServiceDelivery"]["StopMonitoringDelivery"]
        visits = monitoring.get("MonitoredStopVisit") or []
        for visit in visits[:limit]:
            journey = visit["MonitoredVehicleJourney"]
            call = journey["MonitoredCall"]
            expected = (
                call.get("ExpectedArrivalTime")
                or call.get("ExpectedDepartureTime")
                or call.get("AimedArrivalTime")
            )
            arrivals.append(
                Arrival(
                    route=journey.get("PublishedLineName") or journey.get("LineRef"),
                    destination=journey.get("DestinationName") or "",
                    minutes_until=minutes_until(expected, now),
                )
            )
    except (KeyError, TypeError, AttributeError) as exc:
        log.warning("Parse error: %r", exc)
        return []
    return arrivals


class ProxyClient:
    def __init__(self, base_url: str = PROXY_URL, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        resp = self.session.get(f"{self.base_url}{path}", params=params, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        return resp.json()

    def fetch_config(self) -> JsonDict:
        return self._get("/api/config")

    def fetch_arrivals(self, stop: Stop) -> Any:
        return self._get("/api/arrivals", {"agency": stop.agency, "stopCode": stop.stop_code})

    def fetch_weather(self, location: JsonDict) -> JsonDict:
        return self._get(
            "/api/weather", {"lat": str(location["lat"]), "lon": str(location["lon"])}
        )

    def fetch_agencies(self) -> List[JsonDict]:
        return self._get("/api/agencies")

    def fetch_stops(self, agency: str) -> List[JsonDict]:
        return self._get("/api/stops", {"agency": agency})


class Preferences:
    """Locally persisted overrides for the server's default stops and location."""

    STOPS_KEY = "stops"
    LOCATION_KEY = "location"

    def __init__(self, path: str = PREFS_PATH) -> None:
        self.path = path

    def _load(self) -> JsonDict:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            log.warning("Ignoring unreadable preferences %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _store(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        with open(self.path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)

    def stops(self, default: List[Stop]) -> List[Stop]:
        stored = self._load().get(self.STOPS_KEY)
        if stored:
            try:
                return [Stop.from_dict(item) for item in stored]
            except (KeyError, TypeError) as exc:
                log.warning("Ignoring malformed stored stops: %r", exc)
        return default

    def location(self, default: Optional[JsonDict]) -> Optional[JsonDict]:
        stored = self._load().get(self.LOCATION_KEY)
        return stored if stored else default

    def save_stops(self, stops: List[Stop]) -> None:
        self._store(self.STOPS_KEY, [stop.to_dict() for stop in stops])

    def save_location(self, location: Optional[JsonDict]) -> None:
        self._store(self.LOCATION_KEY, location)


def server_stops(config: JsonDict) -> List[Stop]:
    stops: List[Stop] = []
    for item in config.get("stops") or []:
        try:
            stops.append(Stop.from_dict(item))
        except (KeyError, TypeError):
            log.warning("Ignoring malformed server stop: %r", item)
    return stops


class ConfigureError(Exception):
    pass


def add_stop(client: ProxyClient, preferences: Preferences, agency: str, stop_code: str) -> Stop:
    """Validate a stop against the proxy and append it to the saved stop list.

    The saved list starts from whatever the display currently shows, so the
    first addition keeps the server's default stops.
    """
    agencies = {item["id"]: item["name"] for item in client.fetch_agencies()}
    if agency not in agencies:
        raise ConfigureError(f"Unknown agency: {agency}")

    match = next((item for item in client.fetch_stops(agency) if item.get("id") == stop_code), None)
    if match is None:
        raise ConfigureError(f"Unknown stop {stop_code} for {agencies[agency]}")

    stop = Stop(agency, stop_code, match.get("name") or None)
    current = preferences.stops(server_stops(client.fetch_config()))
    kept = [s for s in current if (s.agency, s.stop_code) != (agency, stop_code)]
    preferences.save_stops(kept + [stop])
    return stop


def remove_stop(client: ProxyClient, preferences: Preferences, agency: str, stop_code: str) -> bool:
    current = preferences.stops(server_stops(client.fetch_config()))
    kept = [s for s in current if (s.agency, s.stop_code) != (agency, stop_code)]
    if len(kept) == len(current):
        return False
    # An empty saved list falls back to the server defaults.
    preferences.save_stops(kept)
    return True


def refresh_stops(
    client: ProxyClient,
    stops: List[Stop],
    now: Optional[Callable[[], datetime.datetime]] = None,
) -> List[StopResult]:
    """Fetch every stop concurrently and wait for all of them to settle.

    Results keep the configured stop order. A stop whose fetch fails is
    reported with no arrivals instead of failing the whole pass.
    """
    clock = now or utc_now
    if not stops:
        return []

    with ThreadPoolExecutor(max_workers=len(stops)) as pool:
        futures = [pool.submit(client.fetch_arrivals, stop) for stop in stops]

    results: List[StopResult] = []
    for stop, future in zip(stops, futures):
        try:
            payload = future.result()
        except Exception as exc:
            log.warning("Arrivals for %s/%s failed: %s", stop.agency, stop.stop_code, exc)
            results.append(StopResult(stop=stop, error=True))
            continue
        results.append(StopResult(stop=stop, arrivals=parse_arrivals(payload, clock())))
    return results


def format_time(arrival: Arrival) -> str:
    if arrival.minutes_until is None:
        return ""
    if arrival.minutes_until == 0:
        return "Now"
    return f"{arrival.minutes_until} min"


def format_updated(moment: datetime.datetime) -> str:
    hours = moment.hour % 12 or 12
    ampm = "PM" if moment.hour >= 12 else "AM"
    return f"Updated {hours}:{moment.minute:02d} {ampm}"


def render_board(
    results: List[StopResult],
    weather: Optional[JsonDict],
    now: datetime.datetime,
) -> List[str]:
    lines: List[str] = []
    if weather:
        lines.append(f"{weather.get('temperature')}°{weather.get('unit')} {weather.get('description')}")

    if not results:
        lines.append("No stops configured.")
        return lines

    for result in results:
        lines.append(result.stop.label)
        if not result.arrivals:
            lines.append("  No arrivals scheduled")
            continue
        for arrival in result.arrivals:
            lines.append(f"  {arrival.route}  {arrival.destination}  {format_time(arrival)}".rstrip())
    lines.append(format_updated(now))
    return lines


class DisplayLoop:
    """Periodic refresh of arrivals and weather.

    Cycles run one at a time on the calling thread. A cycle that takes longer
    than the interval pushes the next one back instead of overlapping it.
    """

    def __init__(
        self,
        client: ProxyClient,
        preferences: Preferences,
        output: Callable[[str], None] = print,
        refresh_interval: float = REFRESH_INTERVAL_SEC,
        weather_interval: float = WEATHER_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
        local_now: Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        self.client = client
        self.preferences = preferences
        self.output = output
        self.refresh_interval = refresh_interval
        self.weather_interval = weather_interval
        self.clock = clock
        self.local_now = local_now
        self.server_config: JsonDict = {"stops": [], "location": None}
        self.weather: Optional[JsonDict] = None
        self.greeting = random.choice(GREETINGS)
        self._next_weather_at: Optional[float] = None
        self._stop = threading.Event()

    def load_config(self) -> None:
        try:
            self.server_config = self.client.fetch_config()
        except (requests.RequestException, ValueError) as exc:
            log.warning("Could not load server config: %s", exc)

    def stops(self) -> List[Stop]:
        return self.preferences.stops(server_stops(self.server_config))

    def location(self) -> Optional[JsonDict]:
        return self.preferences.location(self.server_config.get("location"))

    def refresh_weather(self) -> None:
        location = self.location()
        if not location:
            self.weather = None
            return
        try:
            self.weather = self.client.fetch_weather(location)
        except (requests.RequestException, ValueError, KeyError) as exc:
            log.warning("Weather refresh failed: %s", exc)
            self.weather = None

    def run_once(self) -> List[str]:
        now = self.clock()
        if self._next_weather_at is None or now >= self._next_weather_at:
            self.refresh_weather()
            self._next_weather_at = now + self.weather_interval

        results = refresh_stops(self.client, self.stops())
        lines = render_board(results, self.weather, self.local_now())
        self.output("\n".join(lines))
        return lines

    def stop(self) -> None:
        self._stop.set()

    def run(self, cycles: Optional[int] = None) -> None:
        self.load_config()
        self.output(self.greeting)
        done = 0
        while not self._stop.is_set():
            started = self.clock()
            self.run_once()
            done += 1
            if cycles is not None and done >= cycles:
                break
            elapsed = self.clock() - started
            self._stop.wait(max(0.0, self.refresh_interval - elapsed))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nextbus-display", description=__doc__)
    parser.add_argument("--proxy-url", default=PROXY_URL)
    parser.add_argument("--prefs", default=PREFS_PATH, help="local preferences file")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="show the arrivals board (default)")
    sub.add_parser("agencies", help="list supported agencies")
    stops_cmd = sub.add_parser("stops", help="list the stops of an agency")
    stops_cmd.add_argument("agency")
    for name, help_text in (("add", "add a stop to the board"), ("remove", "remove a stop")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("agency")
        cmd.add_argument("stop_code")
    location_cmd = sub.add_parser("location", help="set or clear the weather location")
    location_cmd.add_argument("lat", nargs="?")
    location_cmd.add_argument("lon", nargs="?")
    location_cmd.add_argument("--clear", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None, client: Optional[ProxyClient] = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    parser = build_parser()
    args = parser.parse_args(argv)
    client = client or ProxyClient(args.proxy_url)
    preferences = Preferences(args.prefs)

    try:
        if args.command == "agencies":
            for agency in client.fetch_agencies():
                print(f"{agency['id']}\t{agency['name']}")
        elif args.command == "stops":
            for stop in client.fetch_stops(args.agency):
                print(f"{stop['id']}\t{stop['name']}")
        elif args.command == "add":
            stop = add_stop(client, preferences, args.agency, args.stop_code)
            print(f"Added {stop.label} ({stop.agency} {stop.stop_code})")
        elif args.command == "remove":
            if not remove_stop(client, preferences, args.agency, args.stop_code):
                raise ConfigureError(f"Stop {args.agency} {args.stop_code} is not on the board")
            print(f"Removed {args.agency} {args.stop_code}")
        elif args.command == "location":
            if args.clear:
                preferences.save_location(None)
            elif args.lat and args.lon:
                preferences.save_location({"lat": args.lat, "lon": args.lon})
            else:
                parser.error("location needs LAT and LON, or --clear")
        else:
            loop = DisplayLoop(client, preferences)
            try:
                loop.run()
            except KeyboardInterrupt:
                loop.stop()
    except (ConfigureError, requests.RequestException) as exc:
        log.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
