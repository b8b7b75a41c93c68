"""
Tests for the JSON provider connector and source configuration loading.
"""

import json
from dataclasses import replace
from datetime import datetime
from unittest.mock import MagicMock

import pytest
import requests

from surveillance_src.config import config
from surveillance_src.connectors import (
    CacheClearable,
    HealthCheckable,
    JSONAPIConnector,
    SourceQuery,
    load_sources_config,
    parse_timestamp,
    source_from_entry,
)
from surveillance_src.errors import SourceAuthFailure, SourceValidationError
from surveillance_src.resilience import classify_error

from factories import DAY, T0, FakeClock


@pytest.fixture
def query():
    return SourceQuery(diseases=["flu"], regions=["north"], start=T0, end=T0 + 7 * DAY)


@pytest.fixture
def session():
    session = MagicMock()
    session.headers = {}
    return session


def _respond(session, payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    session.get.return_value = response
    return response


RECORDS = [
    {"disease": "flu", "region": "north", "timestamp": "2024-03-01T12:00:00Z",
     "value": 42, "unit": "cases", "confidence": 0.8},
    {"disease": "flu", "region": "north", "timestamp": "2024-03-02T12:00:00+02:00",
     "value": "17.5"},
]


class TestParseTimestamp:
    def test_iso_with_zulu(self):
        assert parse_timestamp("2024-03-01T12:00:00Z") == datetime(2024, 3, 1, 12)

    def test_iso_with_offset_is_converted_to_utc(self):
        assert parse_timestamp("2024-03-01T12:00:00+02:00") == datetime(2024, 3, 1, 10)

    def test_epoch_seconds(self):
        assert parse_timestamp(0) == datetime(1970, 1, 1)

    def test_rejects_other_types(self):
        with pytest.raises(ValueError):
            parse_timestamp([2024, 3, 1])


class TestJSONAPIConnector:
    """Fetching and parsing provider responses."""

    def test_declares_capabilities(self, session):
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session)
        assert isinstance(connector, HealthCheckable)
        assert isinstance(connector, CacheClearable)

    def test_fetch_parses_records(self, session, query):
        _respond(session, {"data": RECORDS})
        connector = JSONAPIConnector("cdc", "https://api.example.org/", "/v1/observations",
                                     session=session)

        observations = connector.fetch(query)

        assert len(observations) == 2
        first, second = observations
        assert first.source_id == "cdc"
        assert first.timestamp == datetime(2024, 3, 1, 12)
        assert first.value == 42.0
        assert first.confidence == 0.8
        assert second.value == 17.5
        assert second.timestamp == datetime(2024, 3, 2, 10)
        assert second.confidence == 1.0

        url = session.get.call_args.args[0]
        params = session.get.call_args.kwargs["params"]
        assert url == "https://api.example.org/v1/observations"
        assert params["diseases"] == "flu"
        assert params["start"] == T0.isoformat()

    def test_custom_field_names_and_records_path(self, session, query):
        _respond(session, {"payload": {"rows": [
            {"condition": "flu", "area": "north", "date": "2024-03-01", "count": 3},
        ]}})
        connector = JSONAPIConnector(
            "who", "https://who.example.org",
            fields={"disease": "condition", "region": "area", "timestamp": "date", "value": "count"},
            records_path="payload.rows",
            default_unit="cases",
            session=session,
        )

        [obs] = connector.fetch(query)
        assert obs.disease_id == "flu"
        assert obs.region == "north"
        assert obs.unit == "cases"

    def test_confidence_is_clamped(self, session, query):
        _respond(session, [dict(RECORDS[0], confidence=3)])
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session)
        assert connector.fetch(query)[0].confidence == 1.0

    def test_responses_are_cached_until_cleared(self, session, query):
        _respond(session, {"data": RECORDS})
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session)

        connector.fetch(query)
        connector.fetch(query)
        assert session.get.call_count == 1

        connector.clear_cache()
        connector.fetch(query)
        assert session.get.call_count == 2

    def test_cached_responses_expire(self, session, query):
        _respond(session, {"data": RECORDS})
        clock = FakeClock()
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session,
                                     cache_ttl=60, clock=clock)

        connector.fetch(query)
        clock.advance(59)
        connector.fetch(query)
        assert session.get.call_count == 1

        clock.advance(1)
        connector.fetch(query)
        assert session.get.call_count == 2

    def test_cache_keeps_newest_entries(self, session, query):
        _respond(session, {"data": RECORDS})
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session,
                                     cache_max_entries=2, clock=FakeClock())
        queries = [replace(query, end=query.end + i * DAY) for i in range(3)]

        for q in queries:
            connector.fetch(q)
        connector.fetch(queries[2])
        assert session.get.call_count == 3

        connector.fetch(queries[0])
        assert session.get.call_count == 4

    def test_zero_ttl_disables_cache(self, session, query):
        _respond(session, {"data": RECORDS})
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session,
                                     cache_ttl=0)

        connector.fetch(query)
        connector.fetch(query)
        assert session.get.call_count == 2

    def test_null_value_is_malformed(self, session, query):
        _respond(session, {"data": [dict(RECORDS[0], value=None)]})
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session)
        with pytest.raises(SourceValidationError):
            connector.fetch(query)

    def test_missing_record_list_is_malformed(self, session, query):
        _respond(session, {"status": "ok"})
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session)
        with pytest.raises(SourceValidationError):
            connector.fetch(query)

    def test_http_errors_propagate(self, session, query):
        denied = requests.Response()
        denied.status_code = 401
        response = _respond(session, {})
        response.raise_for_status.side_effect = requests.HTTPError("401", response=denied)
        connector = JSONAPIConnector("cdc", "https://api.example.org", session=session)

        with pytest.raises(requests.HTTPError) as exc_info:
            connector.fetch(query)
        assert isinstance(classify_error(exc_info.value, "cdc"), SourceAuthFailure)

    def test_health_check(self, session):
        _respond(session, {"status": "ok"})
        connector = JSONAPIConnector("cdc", "https://api.example.org", health_path="health",
                                     session=session)
        assert connector.health_check() is True
        assert session.get.call_args.args[0] == "https://api.example.org/health"

        session.get.side_effect = requests.ConnectionError("refused")
        assert connector.health_check() is False


class TestLoadSourcesConfig:
    """Reading provider definitions from JSON."""

    def test_load_sources(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CDC_TOKEN", "secret-token")
        path = tmp_path / "sources.json"
        path.write_text(json.dumps({"sources": [
            {
                "id": "cdc",
                "name": "CDC FluView",
                "base_url": "https://cdc.example.org",
                "endpoint": "fluview",
                "diseases": ["flu"],
                "regions": ["north", "south"],
                "reliability": 0.95,
                "headers": {"Authorization": "Bearer ${CDC_TOKEN}"},
            },
            {"id": "who", "base_url": "https://who.example.org", "cache_ttl": 0,
             "cache_max_entries": 4},
        ]}))

        pairs = load_sources_config(path)

        assert [s.id for s, _ in pairs] == ["cdc", "who"]
        cdc, connector = pairs[0]
        assert cdc.name == "CDC FluView"
        assert cdc.reliability == 0.95
        assert cdc.regions == frozenset({"north", "south"})
        assert connector.session.headers["Authorization"] == "Bearer secret-token"

        who, who_connector = pairs[1]
        assert who.covers(["measles"], ["anywhere"])
        assert who_connector.cache_ttl == 0
        assert who_connector.cache_max_entries == 4
        assert connector.cache_ttl == config.SOURCE_CACHE_TTL_SECONDS

    def test_list_form(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_text(json.dumps([{"id": "cdc", "base_url": "https://cdc.example.org"}]))
        assert len(load_sources_config(path)) == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_sources_config(tmp_path / "absent.json")

    def test_entry_requires_base_url(self):
        with pytest.raises(ValueError):
            source_from_entry({"id": "cdc"})
