"""Shared pytest fixtures for vstream-driver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import DriverConfig  # noqa: E402


class FakeClock:
    """Clock that advances only when slept on; records every sleep."""

    def __init__(self):
        self.time = 0.0
        self.sleeps = []

    def now(self):
        return self.time

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.time += seconds


class FakeTransport:
    """Scripted stand-in for Transport.

    Replies are registered per (method, resource). Each call consumes the
    next reply; the last one repeats. Exception replies are raised.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method, resource, *replies):
        self.routes[(method, resource)] = list(replies)
        return self

    def _reply(self, method, resource, payload=None):
        self.calls.append((method, resource, payload))
        replies = self.routes.get((method, resource))
        if replies is None:
            raise AssertionError(f"unexpected {method} {resource}")
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def get_json(self, resource):
        return self._reply('GET', resource)

    def post_json(self, resource, payload=None):
        return self._reply('POST', resource, payload)

    def post(self, resource, body=''):
        return 200, self._reply('POST', resource, body)

    def count(self, method, resource):
        return sum(1 for m, r, _ in self.calls if (m, r) == (method, resource))

    def payload(self, method, resource):
        """Payload of the last call to (method, resource)."""
        for m, r, p in reversed(self.calls):
            if (m, r) == (method, resource):
                return p
        raise AssertionError(f"{method} {resource} was never called")

    def resources(self, method=None):
        return [r for m, r, _ in self.calls if method is None or m == method]


def task_ref(task_id):
    """Compute-call response referencing a task."""
    return {'Headers': {'MessageId': task_id}}


def task_done(result=None):
    return {'State': 4, 'Result': result}


def task_failed(errors):
    return {'State': 1, 'Errors': errors}


TASK_PENDING = {'State': 2}


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def driver_config(monkeypatch):
    """DriverConfig with defaults and no environment overrides."""
    for var in ('VSTREAM_ENDPOINT', 'VSTREAM_ACCESS_KEY', 'VSTREAM_SECRET_KEY', 'VSTREAM_CONFIG_DIR'):
        monkeypatch.delenv(var, raising=False)
    config = DriverConfig(
        endpoint='https://cloud.example.test/api',
        access_key='AKTEST',
        tenant_id='tenant-1',
    )
    config.set_secret_key('s3cr3t')
    return config


@pytest.fixture
def config_dir(tmp_path):
    """Create a temporary config directory with driver.yaml and secrets.yaml."""
    (tmp_path / 'driver.yaml').write_text("""
endpoint: https://cloud.example.test/api
region: EU1
tenant_id: tenant-1
access_key: AKTEST
secret_key: primary
defaults:
  poll_interval: 5
  stop_timeout: 120
  not_found_policy: sentinel
  chunk_size: 4096
""")
    (tmp_path / 'secrets.yaml').write_text("""
api_keys:
  primary: "s3cr3t"
  AKTEST: "fallback"
""")
    return tmp_path
