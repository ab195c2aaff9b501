"""
tally.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for the tuning knobs of the batch jobs (timezone
defaults, retry bounds, timeouts, freeze window).  Secrets such as
``DATABASE_URL`` and ``RESEND_API_KEY`` stay in the environment / ``.env``.

Usage::

    from tally.config import load_config

    cfg = load_config()            # reads ./config.yaml by default
    print(cfg.default_timezone)    # "Asia/Seoul"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from tally import constants


@dataclass(frozen=True, slots=True)
class TallyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Scheduling
    default_timezone: str = constants.DEFAULT_TIMEZONE
    default_schedule_hour: int = constants.DEFAULT_SCHEDULE_HOUR
    max_recipients: int = constants.MAX_RECIPIENTS

    # External calls
    render_timeout_seconds: float = constants.RENDER_TIMEOUT_SECONDS
    delivery_timeout_seconds: float = constants.DELIVERY_TIMEOUT_SECONDS
    delivery_max_attempts: int = constants.DELIVERY_MAX_ATTEMPTS
    delivery_base_delay: float = constants.DELIVERY_BASE_DELAY

    # Batch jobs
    freeze_window_days: int = constants.FREEZE_WINDOW_DAYS
    dispatch_workers: int = constants.DISPATCH_WORKERS

    # Optional
    report_base_url: str | None = None  # Linked from report emails when set


def load_config(path: str | Path = "config.yaml") -> TallyConfig:
    """Read *path* and return a :class:`TallyConfig` instance.

    Keys missing from the file fall back to the defaults in
    :mod:`tally.constants`.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a numeric bound is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = TallyConfig()
    cfg = TallyConfig(
        default_timezone=str(raw.get("default_timezone", defaults.default_timezone)),
        default_schedule_hour=int(
            raw.get("default_schedule_hour", defaults.default_schedule_hour)
        ),
        max_recipients=int(raw.get("max_recipients", defaults.max_recipients)),
        render_timeout_seconds=float(
            raw.get("render_timeout_seconds", defaults.render_timeout_seconds)
        ),
        delivery_timeout_seconds=float(
            raw.get("delivery_timeout_seconds", defaults.delivery_timeout_seconds)
        ),
        delivery_max_attempts=int(
            raw.get("delivery_max_attempts", defaults.delivery_max_attempts)
        ),
        delivery_base_delay=float(
            raw.get("delivery_base_delay", defaults.delivery_base_delay)
        ),
        freeze_window_days=int(raw.get("freeze_window_days", defaults.freeze_window_days)),
        dispatch_workers=int(raw.get("dispatch_workers", defaults.dispatch_workers)),
        report_base_url=raw.get("report_base_url") or None,
    )

    if cfg.delivery_max_attempts < 1:
        raise ValueError("delivery_max_attempts must be at least 1")
    if cfg.dispatch_workers < 1:
        raise ValueError("dispatch_workers must be at least 1")
    if not 0 <= cfg.default_schedule_hour <= 23:
        raise ValueError("default_schedule_hour must be between 0 and 23")
    return cfg
