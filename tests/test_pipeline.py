"""Tests for pipeline wiring and the Kafka publisher."""

import json
import logging

import pytest
from kafka.errors import KafkaError, KafkaTimeoutError

from reaction_shield.lib import kafka_client
from reaction_shield.lib.config import Settings
from reaction_shield.lib.store import Keys
from reaction_shield.lib.kafka_client import MessageBroker
from reaction_shield.pipeline import Pipeline


@pytest.fixture
def pipeline(store, broker, clock):
    return Pipeline(Settings(), store=store, broker=broker, clock=clock)


# --- Pipeline ---


def test_handle_submission_returns_json_data(pipeline):
    result = pipeline.handle_submission({"user_id": "u1", "reaction_time": 212.3, "ip_address": "10.0.0.1"})
    assert result["action"] == "accept"
    assert result["verdict"] == "pass"
    assert result["accepted"] is True
    assert result["rate_limit"]["allowed"] is True


def test_handle_submission_with_session_and_device(pipeline, clock):
    result = pipeline.handle_submission({
        "user_id": "u1",
        "reaction_time": 95.5,
        "session": {"user_id": "u1", "session_start": clock.ms - 60_000},
        "device": {"is_mobile": True},
    })
    assert result["action"] == "flag"
    assert "MOBILE_IMPOSSIBLE_PRECISION" in result["validation"]["flags"]


def test_handle_submission_instant_reject_publishes_critical_event(pipeline, broker, clock):
    result = pipeline.handle_submission({
        "user_id": "u1",
        "reaction_time": 212.3,
        "session": {"user_id": "u1", "session_start": clock.ms - 100},
    })
    assert result["action"] == "reject"
    assert broker.critical_events[0]["type"] == "impossible_time"


def test_whitelist_level_from_payload(pipeline):
    for _ in range(10):
        pipeline.handle_submission({"user_id": "u1", "reaction_time": 230.5})
    result = pipeline.handle_submission({"user_id": "u1", "reaction_time": 230.5, "whitelist_level": "verified"})
    assert result["rate_limit"]["allowed"] is True


def test_numeric_user_id_is_coerced(pipeline):
    result = pipeline.handle_submission({"user_id": 42, "reaction_time": 212.3})
    assert result["user_id"] == "42"
    assert result["action"] == "accept"


def test_string_game_start_time_is_coerced(pipeline, clock):
    result = pipeline.handle_submission({
        "user_id": "u1", "reaction_time": 212.3, "game_start_time": str(clock.ms - 10_000)
    })
    assert result["action"] == "accept"

    result = pipeline.handle_submission({
        "user_id": "u1", "reaction_time": 212.3, "game_start_time": str(clock.ms)
    })
    assert "GAME_TOO_SHORT" in result["validation"]["flags"]


def test_malformed_game_start_time_is_rejected(pipeline, store):
    result = pipeline.handle_submission({"user_id": "u1", "reaction_time": 212.3, "game_start_time": "soon"})
    assert result["action"] == "reject"
    assert result["verdict"] == "fail"
    assert result["rate_limit"] is None
    assert result["reasons"][0].startswith("Invalid game_start_time")
    assert store.get(Keys.history("u1")) is None


@pytest.mark.parametrize("payload", [
    {"reaction_time": 212.3},
    {"user_id": "u1", "reaction_time": 212.3, "whitelist_level": "root"},
    ["u1", 212.3],
])
def test_malformed_payload_is_rejected(pipeline, payload):
    result = pipeline.handle_submission(payload)
    assert result["action"] == "reject"
    assert result["accepted"] is False
    assert result["reasons"]


def test_huge_integer_from_json_is_rejected(pipeline):
    payload = json.loads('{"user_id": "u1", "reaction_time": 1' + '0' * 400 + '}')
    result = pipeline.handle_submission(payload)
    assert result["action"] == "reject"
    assert result["reaction_time"] is None
    assert result["validation"]["flags"] == ["INVALID_NUMBER"]


def test_services_share_one_store(pipeline, store):
    assert pipeline.submissions.store is store
    assert pipeline.rate_limiter.penalties.store is store
    assert pipeline.monitor.broker is not None


# --- Kafka publisher ---


class FakeFuture:
    """Resolved immediately; callbacks run on registration like kafka-python's Future."""

    def __init__(self, error=None):
        self.error = error

    def get(self, timeout=None):
        raise AssertionError("publish must not wait on the broker")

    def add_callback(self, f, *args):
        if self.error is None:
            f(*args, type("Metadata", (), {"partition": 0, "offset": 42})())
        return self

    def add_errback(self, f, *args):
        if self.error is not None:
            f(*args, self.error)
        return self


class FakeProducer:
    def __init__(self, **config):
        self.config = config
        self.sent = []
        self.fail_on_send = False
        self.fail_on_delivery = False
        self.flushed = False
        self.closed = False

    def send(self, topic, value=None, key=None):
        if self.fail_on_send:
            raise KafkaTimeoutError("metadata unavailable")
        self.sent.append((topic, value, key))
        return FakeFuture(KafkaError("broker down") if self.fail_on_delivery else None)

    def flush(self):
        self.flushed = True

    def close(self):
        self.closed = True


@pytest.fixture
def kafka_broker(monkeypatch):
    monkeypatch.setattr(kafka_client, "KafkaProducer", FakeProducer)
    return MessageBroker.from_settings(Settings(security_alert_topic="shield-alerts", kafka_max_block_ms=250))


def test_producer_config(kafka_broker):
    assert kafka_broker.producer.config["acks"] == "all"
    assert kafka_broker.producer.config["max_block_ms"] == 250


def test_publish_alert_keys_by_type(kafka_broker):
    assert kafka_broker.publish_alert({"type": "critical_violations", "message": "5 critical"}) is True
    assert kafka_broker.producer.sent == [
        ("shield-alerts", {"type": "critical_violations", "message": "5 critical"}, "critical_violations")
    ]


def test_publish_critical_event_wraps_event(kafka_broker):
    kafka_broker.publish_critical_event({"user_id": "u1", "type": "bot_detection"})
    topic, value, key = kafka_broker.producer.sent[0]
    assert value["kind"] == "critical_event"
    assert key == "u1"


def test_publish_failure_returns_false(kafka_broker):
    kafka_broker.producer.fail_on_send = True
    assert kafka_broker.publish_alert({"type": "anomaly_spike"}) is False


def test_delivery_failure_is_logged_not_raised(kafka_broker, caplog):
    kafka_broker.producer.fail_on_delivery = True
    with caplog.at_level(logging.ERROR, logger="reaction_shield.lib.kafka_client"):
        assert kafka_broker.publish_alert({"type": "anomaly_spike"}) is True
    assert "Failed to deliver message to shield-alerts" in caplog.text


def test_close_flushes(kafka_broker):
    kafka_broker.close()
    assert kafka_broker.producer.flushed is True
    assert kafka_broker.producer.closed is True
