"""Anomaly record sinks.

Rejected readings are written to an append-only sink. The InfluxDB sink writes
line protocol over HTTP; the memory sink is used in development and tests.
Configuration is read from options.json with a .env fallback.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod

import requests
from dotenv import load_dotenv

from .exceptions import SinkError
from .models import AnomalyRecord

_LOGGER = logging.getLogger(__name__)

MEASUREMENT = "device_anomaly"


class AnomalySink(ABC):
    """Write-only destination for anomaly records."""

    @abstractmethod
    def insert(self, record: AnomalyRecord):
        """Persist one record. Raises SinkError on failure."""


class MemoryAnomalySink(AnomalySink):
    """Keeps records in a list; never fails."""

    def __init__(self):
        self.records: list[AnomalyRecord] = []
        self._lock = threading.Lock()

    def insert(self, record: AnomalyRecord):
        with self._lock:
            self.records.append(record)

    def __len__(self) -> int:
        return len(self.records)


def get_influxdb_config(options_path: str = "/data/options.json") -> dict:
    """Load InfluxDB config from options.json or fallback to .env."""
    config = {"url": "", "database": "", "username": "", "password": ""}

    # 1. Try load from add-on options.json
    try:
        if os.path.exists(options_path):
            with open(options_path) as f:
                options = json.load(f)
            influxdb_config = options.get("influxdb", {})
            config.update({key: influxdb_config.get(key, "") for key in config})
            _LOGGER.debug("Loaded InfluxDB config from options.json")
    except (OSError, ValueError) as e:
        _LOGGER.warning("Failed to load options.json: %s", str(e))

    # 2. Fallback to .env if necessary
    if not config["url"] or not config["database"]:
        load_dotenv()
        config.update(
            {
                "url": os.getenv("INFLUXDB_URL", ""),
                "database": os.getenv("INFLUXDB_DB", ""),
                "username": os.getenv("INFLUXDB_USER", ""),
                "password": os.getenv("INFLUXDB_PASSWORD", ""),
            }
        )
        _LOGGER.debug("Loaded InfluxDB config from .env file")

    if not config["url"] or not config["database"]:
        _LOGGER.error("InfluxDB configuration is incomplete.")

    return config


def _escape_tag(value) -> str:
    return str(value).replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def to_line_protocol(record: AnomalyRecord) -> str:
    """Format a record as one InfluxDB line protocol point (server assigns the timestamp)."""
    tags = {
        "device": record.device_id,
        "zone": record.zone_id,
        "section": record.section_id,
        "reason": record.reason,
        "fault_type": record.fault_type or "NONE",
    }
    tag_str = ",".join(f"{key}={_escape_tag(value)}" for key, value in tags.items())
    field_str = ",".join(
        [
            f"invalid={'true' if record.invalid else 'false'}",
            f"deviation_percent={float(record.deviation_percent)}",
            f"temperature={float(record.temperature)}",
            f"humidity={float(record.humidity)}",
        ]
    )
    return f"{MEASUREMENT},{tag_str} {field_str}"


class InfluxDBAnomalySink(AnomalySink):
    """Writes anomaly records to an InfluxDB 1.x ``/write`` endpoint."""

    def __init__(
        self,
        url: str,
        database: str,
        username: str = "",
        password: str = "",
        timeout: float = 10,
    ):
        self.url = url.rstrip("/")
        self.database = database
        self.timeout = timeout
        # Create a session for connection pooling
        self.session = requests.Session()
        if username:
            self.session.auth = (username, password)

    @classmethod
    def from_config(cls, config: dict | None = None) -> "InfluxDBAnomalySink":
        config = config if config and config.get("url") else get_influxdb_config()
        return cls(
            url=config.get("url", ""),
            database=config.get("database", ""),
            username=config.get("username", ""),
            password=config.get("password", ""),
        )

    def insert(self, record: AnomalyRecord):
        """Write one record.

        Raises:
            SinkError: If the write is rejected or InfluxDB is unreachable
        """
        try:
            response = self.session.post(
                f"{self.url}/write",
                params={"db": self.database},
                data=to_line_protocol(record).encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SinkError(f"Error connecting to InfluxDB: {e}") from e

        if response.status_code not in (200, 204):
            raise SinkError(f"InfluxDB error: {response.status_code} {response.text}")

        _LOGGER.debug("Wrote anomaly for %s to InfluxDB", record.device_id)


def build_sink(influxdb: dict | None) -> AnomalySink:
    """Pick the InfluxDB sink when enabled in settings, otherwise keep records in memory."""
    if influxdb and influxdb.get("enabled"):
        sink = InfluxDBAnomalySink.from_config(influxdb)
        _LOGGER.info("Persisting anomalies to InfluxDB at %s", sink.url)
        return sink

    _LOGGER.info("Persisting anomalies in memory")
    return MemoryAnomalySink()
