# tests/test_purchase_limit.py

import fakeredis
import pytest
import redis
from unittest.mock import Mock
from fastapi.testclient import TestClient
from starlette.requests import Request
from store_api.main import app
from store_api.purchase_limit import (
    can_purchase, record_purchase, get_client_ip, format_time_remaining, PURCHASE_TIMEOUT_SECONDS
)

client = TestClient(app)


def make_request(headers: dict, peer: tuple | None = ("10.1.1.1", 5000)) -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(key.lower().encode(), value.encode()) for key, value in headers.items()],
        "client": peer,
    })


@pytest.fixture(name="redis_client")
def redis_client_fixture():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


def test_can_purchase_until_limit(redis_client):
    assert can_purchase(redis_client, "1.2.3.4").allowed is True

    record_purchase(redis_client, "1.2.3.4")
    info = can_purchase(redis_client, "1.2.3.4")
    assert info.allowed is True
    assert info.current_purchases == 1

    record_purchase(redis_client, "1.2.3.4")
    info = can_purchase(redis_client, "1.2.3.4")
    assert info.allowed is False
    assert info.current_purchases == 2
    assert info.limit == 2
    assert 0 < info.timeout_remaining <= PURCHASE_TIMEOUT_SECONDS


def test_record_purchase_keeps_first_window(redis_client):
    record_purchase(redis_client, "1.2.3.4")
    redis_client.expire("purchase_limit:1.2.3.4", 100)

    record_purchase(redis_client, "1.2.3.4")

    assert redis_client.ttl("purchase_limit:1.2.3.4") <= 100


def test_can_purchase_fails_open():
    broken = Mock()
    broken.get.side_effect = redis.ConnectionError("redis is down")

    info = can_purchase(broken, "1.2.3.4")

    assert info.allowed is True
    assert info.current_purchases == 0


def test_record_purchase_swallows_redis_errors():
    broken = Mock()
    broken.incr.side_effect = redis.ConnectionError("redis is down")

    record_purchase(broken, "1.2.3.4")  # must not raise


def test_get_client_ip_header_precedence():
    assert get_client_ip(make_request({"x-forwarded-for": "203.0.113.9, 10.0.0.1", "x-real-ip": "1.1.1.1"})) == "203.0.113.9"
    assert get_client_ip(make_request({"x-real-ip": "1.1.1.1", "x-client-ip": "2.2.2.2"})) == "1.1.1.1"
    assert get_client_ip(make_request({"x-client-ip": "2.2.2.2"})) == "2.2.2.2"
    assert get_client_ip(make_request({})) == "10.1.1.1"
    assert get_client_ip(make_request({}, peer=None)) == "unknown"


@pytest.mark.parametrize("seconds, expected", [
    (0, "0 minutes"),
    (-5, "0 minutes"),
    (60, "1 minute"),
    (1500, "25 minutes"),
    (3600, "1 hour and 0 minutes"),
    (3960, "1 hour and 6 minutes"),
    (7260, "2 hours and 1 minute"),
])
def test_format_time_remaining(seconds, expected):
    assert format_time_remaining(seconds) == expected


def test_purchase_limit_check_endpoint(fake_redis):
    headers = {"x-forwarded-for": "198.51.100.23"}

    response = client.get("/purchase-limit/check", headers=headers)
    assert response.status_code == 200
    assert response.json() == {
        "allowed": True,
        "current_purchases": 0,
        "limit": 2,
        "timeout_remaining": None,
        "timeout_formatted": None,
    }

    fake_redis.set("purchase_limit:198.51.100.23", 2, ex=1500)
    body = client.get("/purchase-limit/check", headers=headers).json()
    assert body["allowed"] is False
    assert body["current_purchases"] == 2
    assert body["timeout_formatted"] in ("25 minutes", "24 minutes")
