from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class SyncConfig:
    reload_backoff_initial_ms: int = 250
    reload_backoff_max_ms: int = 10_000
    degraded_after_failures: int = 3
    reconnect_backoff_initial_ms: int = 500
    reconnect_backoff_max_ms: int = 15_000
    max_name_length: int = 20

    def reload_delay_s(self, failures: int) -> float:
        return _backoff_s(self.reload_backoff_initial_ms, self.reload_backoff_max_ms, failures)

    def reconnect_delay_s(self, failures: int) -> float:
        return _backoff_s(self.reconnect_backoff_initial_ms, self.reconnect_backoff_max_ms, failures)


def _backoff_s(initial_ms: int, max_ms: int, failures: int) -> float:
    exponent = max(failures - 1, 0)
    delay_ms = min(initial_ms * (2 ** min(exponent, 16)), max_ms)
    return max(delay_ms, 0) / 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_sync_config_from_env() -> SyncConfig:
    reload_initial = _parse_non_negative_int("CHATSYNC_RELOAD_BACKOFF_INITIAL_MS", 250)
    reload_max = _parse_non_negative_int("CHATSYNC_RELOAD_BACKOFF_MAX_MS", 10_000)
    degraded_after = _parse_positive_int("CHATSYNC_DEGRADED_AFTER_FAILURES", 3)
    reconnect_initial = _parse_non_negative_int("CHATSYNC_RECONNECT_BACKOFF_INITIAL_MS", 500)
    reconnect_max = _parse_non_negative_int("CHATSYNC_RECONNECT_BACKOFF_MAX_MS", 15_000)
    max_name_length = _parse_positive_int("CHATSYNC_MAX_NAME_LENGTH", 20)
    return SyncConfig(
        reload_backoff_initial_ms=reload_initial,
        reload_backoff_max_ms=max(reload_initial, reload_max),
        degraded_after_failures=degraded_after,
        reconnect_backoff_initial_ms=reconnect_initial,
        reconnect_backoff_max_ms=max(reconnect_initial, reconnect_max),
        max_name_length=max_name_length,
    )
