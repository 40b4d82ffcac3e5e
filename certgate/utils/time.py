#!/usr/bin/env python3
#
# certgate/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time and duration utilities."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
	"": 1,
	"s": 1,
	"m": 60,
	"h": 3600,
	"d": 86400,
}


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def parse_duration(value: str) -> timedelta:
	"""Parse a duration such as ``30d``, ``12h``, ``45m``, ``90s`` or ``3600``.

	A bare number is read as seconds.

	Raises:
		ValueError: If the value is empty, negative or has an unknown unit
	"""
	m = _DURATION_RE.match(value or "")
	if not m:
		raise ValueError(f"Invalid duration: {value!r}")
	amount = float(m.group(1))
	unit = m.group(2).lower()
	return timedelta(seconds=amount * _DURATION_UNITS[unit])


def format_remaining(delta: timedelta) -> str:
	"""Render a remaining-validity delta for log lines (e.g. ``12d 3h``)."""
	total = int(delta.total_seconds())
	sign = "-" if total < 0 else ""
	total = abs(total)
	days, rest = divmod(total, 86400)
	hours = rest // 3600
	return f"{sign}{days}d {hours}h"
