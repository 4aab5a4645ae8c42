"""
Immutable runtime settings built once from the YAML configuration.

Components receive the relevant section at construction; nothing below the
bootstrap reads the global config object.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple


class ConfigurationError(Exception):
    """Invalid configuration or key material. Fatal at startup."""


def _section(source: Any, name: str) -> Dict[str, Any]:
    if source is None:
        return {}
    if hasattr(source, 'to_dict'):
        source = source.to_dict()
    value = source.get(name) if isinstance(source, Mapping) else None
    return dict(value) if isinstance(value, Mapping) else {}


def _unresolved(value: Any) -> bool:
    return isinstance(value, str) and value.startswith('${') and value.endswith('}')


def _optional_str(value: Any) -> Optional[str]:
    if value is None or _unresolved(value):
        return None
    text = str(value).strip()
    return text or None


def _positive(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc
    if number <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value!r}")
    return number


def _non_negative(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc
    if number < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value!r}")
    return number


_TRUE_WORDS = {'true', 'yes', 'on', '1'}
_FALSE_WORDS = {'false', 'no', 'off', '0'}


def _flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _port(name: str, value: Any) -> Optional[int]:
    if value is None or _unresolved(value) or str(value).strip() == '':
        return None
    try:
        port = int(str(value).strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a port number, got {value!r}") from exc
    if not 0 < port < 65536:
        raise ConfigurationError(f"{name} must be between 1 and 65535, got {value!r}")
    return port


def _decimal_text(name: str, value: Any) -> str:
    text = str(value).strip()
    try:
        number = Decimal(text)
    except InvalidOperation as exc:
        raise ConfigurationError(f"{name} must be a decimal string, got {value!r}") from exc
    if not number.is_finite() or number <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value!r}")
    return text


@dataclass(frozen=True)
class ExchangeSettings:
    base_url: str = 'https://api.backpack.exchange'
    ws_url: str = 'wss://ws.backpack.exchange/'
    symbol: str = 'APT_USDC_PERP'
    api_key: Optional[str] = None
    api_secret: Optional[str] = field(default=None, repr=False)
    leverage: str = '1'
    signing_window_ms: int = 5000
    http_timeout_s: float = 15.0


@dataclass(frozen=True)
class ExecutionSettings:
    quantity: str = '100.0'
    open_timeout_s: float = 5.0
    close_timeout_s: float = 5.0
    phase_interval_s: float = 120.0
    price_decimals: Optional[int] = None
    order_event_buffer: int = 32
    # Pre-placement sizing query failure: fall back to ``quantity`` (True) or abort.
    fallback_on_sizing_query_failure: bool = True
    # Post-partial reconciliation query failure: abort (True) or retry the attempt.
    fatal_on_reconcile_query_failure: bool = True


@dataclass(frozen=True)
class WebSocketSettings:
    reconnect_attempts: int = 0
    reconnect_backoff: Tuple[float, ...] = (1.0, 2.0, 5.0)


@dataclass(frozen=True)
class PollerSettings:
    enabled: bool = False
    interval_s: float = 1.0
    limit: int = 20


@dataclass(frozen=True)
class MonitoringSettings:
    log_level: str = 'INFO'
    log_format: Optional[str] = None
    prometheus_port: Optional[int] = None
    alert_webhook: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    exchange: ExchangeSettings = field(default_factory=ExchangeSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    websocket: WebSocketSettings = field(default_factory=WebSocketSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    @property
    def symbol(self) -> str:
        return self.exchange.symbol

    @classmethod
    def from_config(cls, source: Any) -> 'Settings':
        """Build settings from a ``Config`` object or a plain nested mapping."""
        exchange = _section(source, 'exchange')
        execution = _section(source, 'execution')
        websocket = _section(source, 'websocket')
        poller = _section(source, 'poller')
        monitoring = _section(source, 'monitoring')

        ex_defaults = ExchangeSettings()
        exec_defaults = ExecutionSettings()
        ws_defaults = WebSocketSettings()
        poll_defaults = PollerSettings()
        mon_defaults = MonitoringSettings()

        price_decimals = execution.get('price_decimals', exec_defaults.price_decimals)
        if price_decimals is not None:
            price_decimals = int(_non_negative('execution.price_decimals', price_decimals))

        log_level = str(monitoring.get('log_level') or mon_defaults.log_level).upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ConfigurationError(f"Unknown log level {log_level!r}")

        port = monitoring.get('prometheus_port')
        backoff = websocket.get('reconnect_backoff', ws_defaults.reconnect_backoff) or ws_defaults.reconnect_backoff

        return cls(
            exchange=ExchangeSettings(
                base_url=str(exchange.get('base_url') or ex_defaults.base_url).rstrip('/'),
                ws_url=str(exchange.get('ws_url') or ex_defaults.ws_url),
                symbol=str(exchange.get('symbol') or ex_defaults.symbol),
                api_key=_optional_str(exchange.get('api_key')),
                api_secret=_optional_str(exchange.get('api_secret')),
                leverage=_decimal_text('exchange.leverage', exchange.get('leverage', ex_defaults.leverage)),
                signing_window_ms=int(_positive(
                    'exchange.signing_window_ms',
                    exchange.get('signing_window_ms', ex_defaults.signing_window_ms),
                )),
                http_timeout_s=_positive(
                    'exchange.http_timeout_s',
                    exchange.get('http_timeout_s', ex_defaults.http_timeout_s),
                ),
            ),
            execution=ExecutionSettings(
                quantity=_decimal_text('execution.quantity', execution.get('quantity', exec_defaults.quantity)),
                open_timeout_s=_positive(
                    'execution.open_timeout_s',
                    execution.get('open_timeout_s', exec_defaults.open_timeout_s),
                ),
                close_timeout_s=_positive(
                    'execution.close_timeout_s',
                    execution.get('close_timeout_s', exec_defaults.close_timeout_s),
                ),
                phase_interval_s=_non_negative(
                    'execution.phase_interval_s',
                    execution.get('phase_interval_s', exec_defaults.phase_interval_s),
                ),
                price_decimals=price_decimals,
                order_event_buffer=int(_positive(
                    'execution.order_event_buffer',
                    execution.get('order_event_buffer', exec_defaults.order_event_buffer),
                )),
                fallback_on_sizing_query_failure=_flag('execution.fallback_on_sizing_query_failure', execution.get(
                    'fallback_on_sizing_query_failure',
                    exec_defaults.fallback_on_sizing_query_failure,
                )),
                fatal_on_reconcile_query_failure=_flag('execution.fatal_on_reconcile_query_failure', execution.get(
                    'fatal_on_reconcile_query_failure',
                    exec_defaults.fatal_on_reconcile_query_failure,
                )),
            ),
            websocket=WebSocketSettings(
                reconnect_attempts=int(_non_negative(
                    'websocket.reconnect_attempts',
                    websocket.get('reconnect_attempts', ws_defaults.reconnect_attempts),
                )),
                reconnect_backoff=tuple(
                    _non_negative('websocket.reconnect_backoff', delay) for delay in backoff
                ),
            ),
            poller=PollerSettings(
                enabled=_flag('poller.enabled', poller.get('enabled', poll_defaults.enabled)),
                interval_s=_positive('poller.interval_s', poller.get('interval_s', poll_defaults.interval_s)),
                limit=int(_positive('poller.limit', poller.get('limit', poll_defaults.limit))),
            ),
            monitoring=MonitoringSettings(
                log_level=log_level,
                log_format=_optional_str(monitoring.get('log_format')),
                prometheus_port=_port('monitoring.prometheus_port', port),
                alert_webhook=_optional_str(monitoring.get('alert_webhook')),
            ),
        )
