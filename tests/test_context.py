"""Tests for request metadata extraction."""
from aiohttp.test_utils import make_mocked_request

from credential_vault.context import RequestContext


def test_forwarded_for_first_hop():
    request = make_mocked_request("GET", "/", headers={
        "X-Forwarded-For": " 198.51.100.7 , 10.0.0.1",
        "X-Real-IP": "10.0.0.2",
        "User-Agent": "Mozilla/5.0",
    })
    context = RequestContext.from_request(request)
    assert context.ip_address == "198.51.100.7"
    assert context.user_agent == "Mozilla/5.0"


def test_real_ip():
    request = make_mocked_request("GET", "/", headers={"X-Real-IP": "10.0.0.2"})
    assert RequestContext.from_request(request).ip_address == "10.0.0.2"


def test_unknown_defaults():
    request = make_mocked_request("GET", "/")
    context = RequestContext.from_request(request)
    assert context.ip_address == "unknown"
    assert context.user_agent == "unknown"
