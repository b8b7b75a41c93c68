"""Provider connectors.

A connector turns a provider's API into RawObservations. Optional
features are declared by inheriting the capability interfaces
``HealthCheckable`` and ``CacheClearable``; the source registry checks
them at registration time.
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import requests

from .config import config
from .errors import SourceValidationError
from .models import WILDCARD, DataSource, RawObservation, to_naive_utc

logger = logging.getLogger(__name__)


@dataclass
class SourceQuery:
    """What a single provider is asked for."""
    diseases: list[str]
    regions: list[str]
    start: datetime
    end: datetime

    def to_params(self) -> dict:
        return {
            "diseases": ",".join(self.diseases),
            "regions": ",".join(self.regions),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


class ProviderConnector(ABC):
    """Abstract provider connector."""

    source_id: str

    @abstractmethod
    def fetch(self, query: SourceQuery) -> list[RawObservation]:
        """Fetch observations. Blocking; raises SourceError subclasses or requests errors."""
        pass


class HealthCheckable(ABC):
    """Connector can report whether its provider is reachable."""

    @abstractmethod
    def health_check(self) -> bool:
        pass


class CacheClearable(ABC):
    """Connector keeps a response cache that can be dropped."""

    @abstractmethod
    def clear_cache(self) -> None:
        pass


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO string, epoch seconds or datetime into naive UTC."""
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_naive_utc(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp: {value!r}")


class JSONAPIConnector(ProviderConnector, HealthCheckable, CacheClearable):
    """Connector for providers exposing observations as JSON over HTTP."""

    DEFAULT_FIELDS = {
        "disease": "disease",
        "region": "region",
        "timestamp": "timestamp",
        "value": "value",
        "unit": "unit",
        "confidence": "confidence",
    }

    def __init__(
        self,
        source_id: str,
        base_url: str,
        endpoint: str = "",
        fields: dict | None = None,
        params: dict | None = None,
        records_path: str | None = None,
        health_path: str | None = None,
        headers: dict | None = None,
        timeout: float | None = None,
        default_unit: str | None = None,
        session: requests.Session | None = None,
        cache_ttl: float | None = None,
        cache_max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source_id = source_id
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint.lstrip("/")
        self.fields = {**self.DEFAULT_FIELDS, **(fields or {})}
        self.params = dict(params or {})
        self.records_path = records_path
        self.health_path = health_path
        self.timeout = timeout or config.SOURCE_HTTP_TIMEOUT
        self.default_unit = default_unit or config.DEFAULT_CANONICAL_UNIT

        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if headers:
            self.session.headers.update(headers)

        # A TTL of 0 turns caching off
        self.cache_ttl = config.SOURCE_CACHE_TTL_SECONDS if cache_ttl is None else cache_ttl
        self.cache_max_entries = cache_max_entries or config.SOURCE_CACHE_MAX_ENTRIES
        self._clock = clock
        self._cache: OrderedDict[str, tuple[float, list[RawObservation]]] = OrderedDict()
        self._cache_lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path}" if path else self.base_url

    def _get(self, path: str, params: dict | None = None) -> Any:
        """GET request returning decoded JSON."""
        response = self.session.get(self._url(path), params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def fetch(self, query: SourceQuery) -> list[RawObservation]:
        params = {**self.params, **query.to_params()}
        cache_key = json.dumps(params, sort_keys=True)
        cached = self._cached(cache_key)
        if cached is not None:
            logger.debug(f"{self.source_id}: serving {len(cached)} observations from cache")
            return list(cached)

        payload = self._get(self.endpoint, params)
        observations = [self._parse_record(r) for r in self._extract_records(payload)]

        self._store(cache_key, observations)
        logger.debug(f"{self.source_id}: fetched {len(observations)} observations")
        return list(observations)

    def _cached(self, key: str) -> list[RawObservation] | None:
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, observations = entry
            if self._clock() - stored_at >= self.cache_ttl:
                del self._cache[key]
                return None
            return observations

    def _store(self, key: str, observations: list[RawObservation]) -> None:
        if self.cache_ttl <= 0:
            return
        with self._cache_lock:
            now = self._clock()
            # Entries are kept oldest first
            while self._cache:
                oldest, (stored_at, _) = next(iter(self._cache.items()))
                if now - stored_at < self.cache_ttl:
                    break
                del self._cache[oldest]
            self._cache[key] = (now, observations)
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_max_entries:
                self._cache.popitem(last=False)

    def _extract_records(self, payload: Any) -> list[dict]:
        """Locate the list of records inside the response body."""
        node = payload
        if self.records_path:
            for key in self.records_path.split("."):
                if not isinstance(node, dict) or key not in node:
                    raise SourceValidationError(
                        self.source_id, f"records path '{self.records_path}' not found"
                    )
                node = node[key]
        elif isinstance(node, dict):
            for key in ("data", "results", "observations"):
                if isinstance(node.get(key), list):
                    node = node[key]
                    break

        if not isinstance(node, list):
            raise SourceValidationError(self.source_id, "response does not contain a record list")
        return node

    def _parse_record(self, record: dict) -> RawObservation:
        f = self.fields
        try:
            raw_value = record[f["value"]]
            if raw_value is None:
                raise ValueError("null value")
            confidence = record.get(f["confidence"])
            return RawObservation(
                source_id=self.source_id,
                disease_id=str(record[f["disease"]]),
                region=str(record[f["region"]]),
                timestamp=parse_timestamp(record[f["timestamp"]]),
                value=float(raw_value),
                unit=str(record.get(f["unit"]) or self.default_unit),
                confidence=1.0 if confidence is None else min(1.0, max(0.0, float(confidence))),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SourceValidationError(self.source_id, f"malformed record {record!r}: {e}") from e

    def health_check(self) -> bool:
        """Check if the provider answers on its health endpoint."""
        try:
            response = self.session.get(
                self._url(self.health_path or ""), timeout=self.timeout
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning(f"Health check failed for {self.source_id}: {e}")
            return False

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def close(self) -> None:
        self.session.close()


def _expand(value: Any) -> Any:
    """Expand ${VAR} references in string values."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    return value


def source_from_entry(entry: dict) -> tuple[DataSource, JSONAPIConnector]:
    """Build a DataSource and its connector from one configuration entry."""
    for key in ("id", "base_url"):
        if not entry.get(key):
            raise ValueError(f"Source entry is missing '{key}': {entry!r}")

    source = DataSource(
        id=entry["id"],
        name=entry.get("name", entry["id"]),
        diseases=frozenset(entry.get("diseases") or [WILDCARD]),
        regions=frozenset(entry.get("regions") or [WILDCARD]),
        reliability=float(entry.get("reliability", config.DEFAULT_RELIABILITY)),
        historical_error=float(entry.get("historical_error", config.DEFAULT_RELATIVE_ERROR)),
        active=bool(entry.get("active", True)),
    )
    connector = JSONAPIConnector(
        source_id=source.id,
        base_url=_expand(entry["base_url"]),
        endpoint=entry.get("endpoint", ""),
        fields=entry.get("fields"),
        params=_expand(entry.get("params")),
        records_path=entry.get("records_path"),
        health_path=entry.get("health_path"),
        headers=_expand(entry.get("headers")),
        timeout=entry.get("timeout"),
        default_unit=entry.get("unit"),
        cache_ttl=entry.get("cache_ttl"),
        cache_max_entries=entry.get("cache_max_entries"),
    )
    return source, connector


def load_sources_config(path: str | Path | None = None) -> list[tuple[DataSource, JSONAPIConnector]]:
    """Load provider definitions from a JSON file.

    The file holds either a list of source entries or an object with a
    ``sources`` list.
    """
    path = Path(path or config.SOURCES_CONFIG_PATH or "").expanduser()
    if not path.is_file():
        raise FileNotFoundError(f"Sources configuration not found: {path}")

    with open(path) as f:
        data = json.load(f)

    entries = data.get("sources", []) if isinstance(data, dict) else data
    pairs = [source_from_entry(entry) for entry in entries]
    logger.info(f"Loaded {len(pairs)} sources from {path}")
    return pairs
