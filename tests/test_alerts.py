import pytest
import requests

from track_charts.alerts import AlertSender


class _Response:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture
def posts(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json, timeout))
        return _Response()

    monkeypatch.setattr("track_charts.alerts.requests.post", fake_post)
    return calls


def test_disabled_alerts_only_log(posts):
    sender = AlertSender({'alerts': {'enabled': False, 'webhook_url': "http://hooks.local/x"}})
    assert sender.send("chartUpdate job failed", "boom") is False
    assert posts == []


def test_enabled_alerts_post_webhook(posts):
    sender = AlertSender({'alerts': {'enabled': True, 'webhook_url': "http://hooks.local/x", 'timeout_sec': 3}})
    assert sender.send("Chart system health", "No charts generated today") is True
    assert posts == [
        ("http://hooks.local/x", {'text': "[Chart system health] No charts generated today"}, 3),
    ]


def test_failed_delivery_is_not_raised(monkeypatch):
    calls = []

    def failing_post(url, json=None, timeout=None):
        calls.append(url)
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr("track_charts.alerts.requests.post", failing_post)
    monkeypatch.setattr("track_charts.utils.time.sleep", lambda seconds: None)

    sender = AlertSender({'alerts': {'enabled': True, 'webhook_url': "http://hooks.local/x"}})
    assert sender.send("cleanup job failed", "disk full") is False
    assert len(calls) == 3
