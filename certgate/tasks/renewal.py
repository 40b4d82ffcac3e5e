#!/usr/bin/env python3
#
# certgate/tasks/renewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Background renewal loop for the managed domains."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ..storage.base import normalize_domain
from ..utils.time import utcnow

if TYPE_CHECKING:
	from ..certs.cache import CertificateManager

_log = logging.getLogger(__name__)

__all__ = ["RenewalScheduler", "DomainState"]

# Minimum allowed interval to prevent tight loops
_MIN_INTERVAL = 1.0
_BACKOFF_BASE = 30.0
_MAX_BACKOFF = 300.0


@dataclass
class DomainState:
	"""Renewal bookkeeping for one domain."""
	domain: str
	last_attempt: datetime | None = None
	last_success: datetime | None = None
	run_count: int = 0
	fail_count: int = 0
	last_error: str | None = None


class RenewalScheduler:
	"""Runs the cache gate for every managed domain at a fixed interval.

	The cache gate only reissues inside the renewal window, so a pass over
	healthy certificates costs one storage read per domain. After a pass with
	failures the next pass comes sooner, backing off exponentially up to five
	minutes (never later than the regular interval).

	Usage::

		scheduler = RenewalScheduler(manager, cfg.managed_domains, cfg.renewal_check_interval)
		await scheduler.start()          # on startup
		await scheduler.stop_graceful()  # on shutdown
	"""

	def __init__(
		self,
		manager: CertificateManager,
		domains: Iterable[str],
		interval: timedelta | float,
		*,
		run_on_start: bool = True,
	) -> None:
		seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
		if seconds < _MIN_INTERVAL:
			raise ValueError(f"interval must be >= {_MIN_INTERVAL}s, got {seconds}")
		self.manager = manager
		self.domains = tuple(dict.fromkeys(normalize_domain(d) for d in domains))
		self.interval_seconds = seconds
		self.run_on_start = run_on_start
		self.states = {d: DomainState(domain=d) for d in self.domains}
		self.consecutive_failures = 0
		self._task: asyncio.Task | None = None
		self._stop_event: asyncio.Event | None = None

	@property
	def is_running(self) -> bool:
		return self._task is not None and not self._task.done()

	def next_delay(self) -> float:
		"""Seconds until the next pass given the current failure streak."""
		if self.consecutive_failures == 0:
			return self.interval_seconds
		backoff = min(_BACKOFF_BASE * 2 ** (self.consecutive_failures - 1), _MAX_BACKOFF)
		return min(backoff, self.interval_seconds)

	async def run_once(self) -> dict[str, bool]:
		"""One renewal pass. Returns domain -> certificate available."""
		if not self.domains:
			return {}

		started = utcnow()
		_log.info("RENEWAL pass started for %d domain(s)", len(self.domains))
		results = await self.manager.renew(self.domains)

		outcome: dict[str, bool] = {}
		for domain in self.domains:
			state = self.states[domain]
			state.last_attempt = started
			state.run_count += 1
			if results.get(domain) is not None:
				state.last_success = utcnow()
				state.last_error = None
				outcome[domain] = True
			else:
				state.fail_count += 1
				failure = self.manager.last_failure(domain)
				state.last_error = f"{failure.category}: {failure}" if failure else "unknown error"
				outcome[domain] = False

		failed = [d for d, ok in outcome.items() if not ok]
		if failed:
			self.consecutive_failures += 1
			_log.error("RENEWAL pass finished with %d failure(s): %s", len(failed), ", ".join(failed))
		else:
			self.consecutive_failures = 0
			_log.info("RENEWAL pass finished, all %d certificate(s) usable", len(outcome))
		return outcome

	async def start(self) -> None:
		"""Start the loop as a background task (needs a running event loop)."""
		if self.is_running:
			return
		self._stop_event = asyncio.Event()
		self._task = asyncio.create_task(self._run_loop(), name="renewal")
		_log.info(
			"RENEWAL started domains=%d interval=%ds",
			len(self.domains), self.interval_seconds,
		)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Signal the loop to stop, cancelling it if it does not finish in time."""
		task = self._task
		if task is None:
			return
		if self._stop_event is not None:
			self._stop_event.set()

		if not task.done():
			done, _ = await asyncio.wait({task}, timeout=timeout)
			if not done:
				_log.warning("RENEWAL did not stop gracefully, forcing cancel")
				task.cancel()
				await asyncio.gather(task, return_exceptions=True)
		self._task = None
		_log.info("RENEWAL stopped")

	async def _wait(self, delay: float) -> bool:
		"""Sleep up to ``delay`` seconds. True when a stop was requested."""
		assert self._stop_event is not None
		try:
			await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
			return True
		except asyncio.TimeoutError:
			return False

	async def _run_loop(self) -> None:
		assert self._stop_event is not None
		delay: float = 0.0 if self.run_on_start else self.interval_seconds
		while not self._stop_event.is_set():
			if await self._wait(delay):
				break
			try:
				await self.run_once()
			except Exception:
				self.consecutive_failures += 1
				_log.exception("RENEWAL pass crashed")
			delay = self.next_delay()
			if self.consecutive_failures:
				_log.warning("RENEWAL next pass in %.0fs (failure streak %d)", delay, self.consecutive_failures)
