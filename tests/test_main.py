import asyncio
import base64
import sys
sys.path.insert(0, '.')

import pytest

from config.settings import ConfigurationError, Settings
from ingest.backpack_rest import TransportError
from main import TradingSystem

SECRET = base64.b64encode(b'\x03' * 32).decode()


class FakeOrchestrator:
    def __init__(self, init_error=None, run_error=None, run_forever=False):
        self.init_error = init_error
        self.run_error = run_error
        self.run_forever = run_forever

    async def initialize(self):
        if self.init_error is not None:
            raise self.init_error

    async def run(self):
        if self.run_forever:
            await asyncio.sleep(10)
        await asyncio.sleep(0.01)
        if self.run_error is not None:
            raise self.run_error


class FakeFeed:
    def __init__(self, error=None, end_after=None):
        self.error = error
        self.end_after = end_after
        self.stopped = False

    async def run(self):
        if self.end_after is None:
            await asyncio.sleep(10)
        await asyncio.sleep(self.end_after)
        if self.error is not None:
            raise self.error

    async def stop(self):
        self.stopped = True


class FakePoller:
    def __init__(self, error):
        self.error = error
        self.stopped = False

    async def start(self):
        await asyncio.sleep(0.01)
        raise self.error

    async def stop(self):
        self.stopped = True


class FakeTransport:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class RecordingAlerts:
    def __init__(self):
        self.sent = []

    async def fatal_alert(self, component, reason):
        self.sent.append(('fatal', component))

    async def feed_exit_alert(self, reason):
        self.sent.append(('feed_exit', reason))


def _system(orchestrator, feed):
    settings = Settings.from_config({'exchange': {'api_key': 'key', 'api_secret': SECRET}})
    system = TradingSystem(settings)
    system.orchestrator = orchestrator
    system.feed = feed
    system.transport = FakeTransport()
    system.alerts = RecordingAlerts()
    return system


def test_missing_credentials_are_a_configuration_error():
    with pytest.raises(ConfigurationError):
        TradingSystem(Settings.from_config({}))


def test_strategy_completion_exits_cleanly():
    system = _system(FakeOrchestrator(), FakeFeed())
    assert asyncio.run(system.run()) == 0
    assert system.feed.stopped
    assert system.transport.closed
    assert system.alerts.sent == []


def test_strategy_failure_exits_with_error():
    system = _system(FakeOrchestrator(run_error=RuntimeError('boom')), FakeFeed())
    assert asyncio.run(system.run()) == 1
    assert system.alerts.sent == [('fatal', 'strategy')]


def test_feed_exit_stops_the_process():
    error = TransportError('market_feed', OSError('reset'))
    system = _system(FakeOrchestrator(run_forever=True), FakeFeed(error=error, end_after=0.01))
    assert asyncio.run(system.run()) == 0
    assert system.alerts.sent[0][0] == 'feed_exit'
    assert system.transport.closed


def test_leverage_failure_aborts_startup():
    system = _system(FakeOrchestrator(init_error=TransportError('set_leverage', OSError('down'))), FakeFeed())
    assert asyncio.run(system.run()) == 1
    assert system.alerts.sent == [('fatal', 'startup')]
    assert system.transport.closed


def test_poller_failure_is_not_reported_as_feed_exit():
    system = _system(FakeOrchestrator(run_forever=True), FakeFeed())
    system.poller = FakePoller(RuntimeError('unexpected payload'))
    assert asyncio.run(system.run()) == 1
    assert system.alerts.sent == [('fatal', 'poller')]
    assert system.poller.stopped
    assert system.feed.stopped
