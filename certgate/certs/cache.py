#!/usr/bin/env python3
#
# certgate/certs/cache.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate cache gate.

Serves a stored certificate while it has more validity left than the renewal
period and runs a fresh ACME issuance otherwise. Concurrent requests for the
same domain share one lookup/issuance.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from ..acme.errors import AcmeError, PackagingError
from ..storage.base import normalize_domain
from ..utils.time import format_remaining, utcnow
from .archive import ArchiveDecodeError, CertificateHandle, load_archive

if TYPE_CHECKING:
	from ..acme.engine import IssuanceEngine
	from ..storage.base import CertStorage

_log = logging.getLogger(__name__)

__all__ = ["CertificateManager"]


class CertificateManager:
	"""Cache gate in front of the issuance engine."""

	def __init__(
		self,
		storage: CertStorage,
		engine: IssuanceEngine,
		*,
		archive_password: str,
		renewal_period: timedelta,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self.storage = storage
		self.engine = engine
		self.renewal_period = renewal_period
		self._archive_password = archive_password
		self._clock = clock
		self._inflight: dict[str, asyncio.Task] = {}
		self._failures: dict[str, AcmeError] = {}

	def needs_renewal(self, handle: CertificateHandle, now: Optional[datetime] = None) -> bool:
		"""True once the remaining validity is no longer above the renewal period."""
		return handle.remaining(now or self._clock()) <= self.renewal_period

	def last_failure(self, domain: str) -> Optional[AcmeError]:
		"""Typed error of the most recent failed issuance, cleared on success."""
		return self._failures.get(normalize_domain(domain))

	def is_pending(self, domain: str) -> bool:
		return normalize_domain(domain) in self._inflight

	async def cached_certificate(self, domain: str) -> Optional[CertificateHandle]:
		"""Decode the stored certificate without ever issuing."""
		data = await self.storage.get_certificate(normalize_domain(domain))
		if data is None:
			return None
		try:
			return load_archive(data, self._archive_password)
		except ArchiveDecodeError as exc:
			_log.warning("Stored certificate for %s cannot be decoded: %s", domain, exc)
			return None

	async def get_certificate(self, domain: str) -> Optional[CertificateHandle]:
		"""Return a usable certificate for ``domain`` or ``None`` when issuance failed."""
		domain = normalize_domain(domain)
		task = self._inflight.get(domain)
		if task is None:
			task = asyncio.create_task(self._resolve(domain), name=f"certificate:{domain}")
			self._inflight[domain] = task
			task.add_done_callback(lambda t, d=domain: self._forget(d, t))
		else:
			_log.debug("Joining in-flight certificate request for %s", domain)
		# A cancelled caller must not cancel the work other callers wait on
		return await asyncio.shield(task)

	def _forget(self, domain: str, task: asyncio.Task) -> None:
		if self._inflight.get(domain) is task:
			del self._inflight[domain]
		if not task.cancelled() and task.exception() is not None:
			_log.debug("Certificate request for %s raised %r", domain, task.exception())

	async def _resolve(self, domain: str) -> Optional[CertificateHandle]:
		data = await self.storage.get_certificate(domain)
		if data is None:
			_log.info("No certificate stored for %s, issuing", domain)
		else:
			try:
				handle = load_archive(data, self._archive_password)
			except ArchiveDecodeError as exc:
				_log.warning("Stored certificate for %s cannot be decoded, reissuing: %s", domain, exc)
			else:
				remaining = handle.remaining(self._clock())
				if remaining > self.renewal_period:
					_log.debug("Reusing certificate for %s (%s left)", domain, format_remaining(remaining))
					return handle
				_log.info(
					"Certificate for %s has %s left, inside the %s renewal window, reissuing",
					domain, format_remaining(remaining), format_remaining(self.renewal_period),
				)

		result = await self.engine.issue(domain)
		if not result.ok:
			self._fail(domain, result.error or AcmeError("Issuance returned no archive"))
			return None

		try:
			handle = load_archive(result.archive, self._archive_password)
		except ArchiveDecodeError as exc:
			self._fail(domain, PackagingError(f"Issued archive cannot be decoded: {exc}"))
			return None

		await self.storage.store_certificate(domain, result.archive)
		self._failures.pop(domain, None)
		_log.info(
			"Certificate for %s stored (expires %s, %s)",
			domain, handle.not_after.isoformat(), handle.fingerprint,
		)
		return handle

	def _fail(self, domain: str, error: AcmeError) -> None:
		self._failures[domain] = error
		_log.error("Could not obtain a certificate for %s (%s): %s", domain, error.category, error)

	async def renew(self, domains: Iterable[str]) -> dict[str, Optional[CertificateHandle]]:
		"""Run the gate for several domains at once.

		Unexpected exceptions are logged and reported as ``None`` for that domain.
		"""
		names = list(dict.fromkeys(normalize_domain(d) for d in domains))
		results = await asyncio.gather(
			*(self.get_certificate(d) for d in names),
			return_exceptions=True,
		)
		outcome: dict[str, Optional[CertificateHandle]] = {}
		for domain, result in zip(names, results):
			if isinstance(result, BaseException):
				if isinstance(result, asyncio.CancelledError):
					raise result
				_log.error("Certificate check for %s failed", domain, exc_info=result)
				outcome[domain] = None
			else:
				outcome[domain] = result
		return outcome
