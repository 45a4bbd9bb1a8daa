"""Datetime helpers."""

from __future__ import annotations

import os

import pendulum

DEFAULT_TZ = "UTC"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def isoformat_now() -> str:
    return now_in_tz().isoformat()


def timestamp_slug(moment: pendulum.DateTime | None = None) -> str:
    """Filesystem-safe UTC stamp, sortable and precise to the microsecond."""
    moment = (moment or pendulum.now("UTC")).in_timezone("UTC")
    return moment.format("YYYYMMDD[T]HHmmss.SSSSSS[Z]")
