import sys
sys.path.insert(0, '.')

import pytest

from config.config_loader import Config
from config.settings import ConfigurationError, Settings


CONFIG_YAML = """
exchange:
  symbol: SOL_USDC_PERP
  api_key: ${TEST_BP_KEY}
  api_secret: ${TEST_BP_MISSING_SECRET}
  leverage: "3"
execution:
  quantity: "2.5"
  open_timeout_s: 1.5
  price_decimals: 3
websocket:
  reconnect_attempts: 2
  reconnect_backoff: [0.5, 1]
poller:
  enabled: true
  limit: 50
monitoring:
  log_level: debug
  prometheus_port: 9105
"""


def test_defaults_from_empty_mapping():
    settings = Settings.from_config({})
    assert settings.symbol == 'APT_USDC_PERP'
    assert settings.exchange.base_url == 'https://api.backpack.exchange'
    assert settings.exchange.signing_window_ms == 5000
    assert settings.execution.quantity == '100.0'
    assert settings.execution.open_timeout_s == 5.0
    assert settings.execution.phase_interval_s == 120.0
    assert settings.execution.price_decimals is None
    assert settings.execution.fallback_on_sizing_query_failure is True
    assert settings.execution.fatal_on_reconcile_query_failure is True
    assert settings.websocket.reconnect_attempts == 0
    assert settings.poller.enabled is False
    assert settings.monitoring.prometheus_port is None


def test_yaml_config_with_env_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv('TEST_BP_KEY', 'key-from-env')
    monkeypatch.delenv('TEST_BP_MISSING_SECRET', raising=False)
    path = tmp_path / 'config.yaml'
    path.write_text(CONFIG_YAML)

    cfg = Config(str(path))
    assert cfg.exchange.symbol == 'SOL_USDC_PERP'
    assert cfg.get('missing', 'fallback') == 'fallback'

    settings = Settings.from_config(cfg)
    assert settings.exchange.api_key == 'key-from-env'
    # unresolved placeholders count as unset
    assert settings.exchange.api_secret is None
    assert settings.exchange.leverage == '3'
    assert settings.execution.quantity == '2.5'
    assert settings.execution.open_timeout_s == 1.5
    assert settings.execution.close_timeout_s == 5.0
    assert settings.execution.price_decimals == 3
    assert settings.websocket.reconnect_backoff == (0.5, 1.0)
    assert settings.poller.enabled is True
    assert settings.poller.limit == 50
    assert settings.monitoring.log_level == 'DEBUG'
    assert settings.monitoring.prometheus_port == 9105


def test_config_env_override_path(tmp_path, monkeypatch):
    path = tmp_path / 'alt.yaml'
    path.write_text('exchange:\n  symbol: ETH_USDC_PERP\n')
    monkeypatch.setenv('BP_CONFIG', str(path))
    assert Config().exchange.symbol == 'ETH_USDC_PERP'


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'nope.yaml'))


@pytest.mark.parametrize('source', [
    {'execution': {'quantity': 'lots'}},
    {'execution': {'quantity': '0'}},
    {'execution': {'open_timeout_s': 0}},
    {'execution': {'phase_interval_s': -1}},
    {'exchange': {'leverage': 'x'}},
    {'websocket': {'reconnect_attempts': -2}},
    {'monitoring': {'log_level': 'LOUD'}},
    {'monitoring': {'prometheus_port': 'metrics'}},
    {'monitoring': {'prometheus_port': 70000}},
    {'poller': {'enabled': 'sometimes'}},
])
def test_invalid_values_raise_configuration_error(source):
    with pytest.raises(ConfigurationError):
        Settings.from_config(source)


def test_shipped_config_builds_settings():
    settings = Settings.from_config(Config())
    assert settings.symbol == 'APT_USDC_PERP'
    assert settings.execution.order_event_buffer == 32


def test_env_expanded_flags_parse_as_booleans(tmp_path, monkeypatch):
    monkeypatch.setenv('TEST_BP_FALLBACK', 'false')
    monkeypatch.setenv('TEST_BP_POLLER', 'True')
    monkeypatch.setenv('TEST_BP_PORT', '9200')
    path = tmp_path / 'flags.yaml'
    path.write_text(
        'execution:\n'
        '  fallback_on_sizing_query_failure: ${TEST_BP_FALLBACK}\n'
        '  fatal_on_reconcile_query_failure: "no"\n'
        'poller:\n'
        '  enabled: ${TEST_BP_POLLER}\n'
        'monitoring:\n'
        '  prometheus_port: ${TEST_BP_PORT}\n'
    )
    settings = Settings.from_config(Config(str(path)))
    assert settings.execution.fallback_on_sizing_query_failure is False
    assert settings.execution.fatal_on_reconcile_query_failure is False
    assert settings.poller.enabled is True
    assert settings.monitoring.prometheus_port == 9200


def test_unset_port_placeholder_disables_metrics(tmp_path, monkeypatch):
    monkeypatch.delenv('TEST_BP_UNSET_PORT', raising=False)
    path = tmp_path / 'port.yaml'
    path.write_text('monitoring:\n  prometheus_port: ${TEST_BP_UNSET_PORT}\n')
    assert Settings.from_config(Config(str(path))).monitoring.prometheus_port is None
