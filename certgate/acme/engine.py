#!/usr/bin/env python3
#
# certgate/acme/engine.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME issuance flow for a single domain.

One call to :meth:`IssuanceEngine.issue` walks the whole order:
directory, account, order, authorization, HTTP-01 challenge, validation,
polling, CSR finalization, download and PKCS#12 packaging. Every step is one
awaited round trip; nothing runs in parallel inside an issuance.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import httpx
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec

from ..certs.archive import build_archive
from ..certs.keys import DEFAULT_KEY_SIZE, CsrSubject, build_csr, generate_private_key
from ..utils import vault
from .client import ACMEClient, account_key_from_pem, account_key_to_pem, generate_account_key
from .errors import AcmeError, AcmeProtocolError, PackagingError, ValidationTimeoutError

if TYPE_CHECKING:
	from ..storage.base import CertStorage
	from ..utils.config import Config

_log = logging.getLogger(__name__)

POLL_ATTEMPTS = 5
POLL_STEP_SECONDS = 5.0

__all__ = [
	"AcmeSettings",
	"IssuanceEngine",
	"IssueResult",
	"challenge_token",
]


@dataclass(frozen=True)
class AcmeSettings:
	"""Everything the engine needs to talk to one ACME server."""
	directory_url: str
	contact_email: str
	archive_password: str
	subject: CsrSubject = field(default_factory=CsrSubject)
	key_size: int = DEFAULT_KEY_SIZE
	poll_attempts: int = POLL_ATTEMPTS
	poll_step: float = POLL_STEP_SECONDS
	strict_validation: bool = True
	reuse_account_key: bool = False

	@classmethod
	def from_config(cls, cfg: Config) -> AcmeSettings:
		return cls(
			directory_url=cfg.acme_directory_url,
			contact_email=cfg.contact_email,
			archive_password=cfg.archive_password,
			subject=cfg.csr_subject,
			strict_validation=cfg.strict_validation,
			reuse_account_key=cfg.reuse_account_key,
		)


@dataclass(frozen=True)
class IssueResult:
	"""Outcome of one issuance attempt."""
	domain: str
	archive: Optional[bytes] = None
	error: Optional[AcmeError] = None

	@property
	def ok(self) -> bool:
		return self.archive is not None and self.error is None


def challenge_token(key_authorization: str) -> str:
	"""Token part of a key authorization (everything before the first dot)."""
	return key_authorization.split(".", 1)[0]


class IssuanceEngine:
	"""Issues single-domain certificates over ACME with HTTP-01."""

	def __init__(
		self,
		settings: AcmeSettings,
		storage: CertStorage,
		*,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	) -> None:
		self.settings = settings
		self.storage = storage
		self._transport = transport
		self._sleep = sleep

	async def issue(self, domain: str) -> IssueResult:
		"""Run one issuance for ``domain``. Failures come back typed, never raised."""
		try:
			archive = await self._issue(domain)
		except AcmeError as exc:
			_log.error(
				"ISSUE failed domain=%s acme_uri=%s category=%s: %s",
				domain, self.settings.directory_url, exc.category, exc,
			)
			return IssueResult(domain=domain, error=exc)
		_log.info("ISSUE succeeded domain=%s acme_uri=%s", domain, self.settings.directory_url)
		return IssueResult(domain=domain, archive=archive)

	async def _issue(self, domain: str) -> bytes:
		settings = self.settings
		account_key, is_stored = await self._account_key()

		async with ACMEClient(settings.directory_url, account_key, transport=self._transport) as client:
			await client.fetch_directory()
			await client.register_account(settings.contact_email)
			if settings.reuse_account_key and not is_stored:
				await self._store_account_key(account_key)

			order_url, order = await client.new_order(domain)
			_log.info("Created order for %s: %s", domain, order_url)

			authorizations = order.get("authorizations") or []
			if not authorizations:
				raise AcmeProtocolError(f"Order for {domain} has no authorizations")
			if not isinstance(authorizations[0], str):
				raise AcmeProtocolError(f"Order for {domain} has a malformed authorization URL")
			authorization = await client.get_authorization(authorizations[0])
			challenge = client.http01_challenge(authorization)
			token = challenge_token(challenge.key_authorization)

			await self.storage.publish_challenge_response(token, challenge.key_authorization)
			_log.debug("Published challenge token %s for %s", token, domain)
			try:
				await client.respond_to_challenge(challenge.url)

				ready = await self.poll_order(client, order_url)
				if ready is None:
					if settings.strict_validation:
						raise ValidationTimeoutError(
							f"Order for {domain} was not ready after {settings.poll_attempts} attempts"
						)
					_log.warning("Order for %s never reported ready, finalizing anyway", domain)
					ready = order

				return await self._generate(client, domain, order_url, ready)
			finally:
				try:
					await self.storage.remove_challenge_response(token)
				except Exception:
					_log.warning("Could not remove challenge token %s for %s", token, domain, exc_info=True)

	async def poll_order(
		self,
		client: ACMEClient,
		order_url: str,
		target: str = "ready",
	) -> Optional[dict]:
		"""Poll an order until it reaches ``target``.

		Attempt ``i`` waits ``poll_step * i`` seconds before fetching, so the
		default schedule is 0, 5, 10, 15 and 20 seconds. Returns ``None`` when
		every attempt saw a different status.
		"""
		status = None
		for attempt in range(self.settings.poll_attempts):
			await self._sleep(self.settings.poll_step * attempt)
			order = await client.fetch_order(order_url)
			status = order.get("status")
			if status == target:
				return order
			_log.debug("Order %s is %s (attempt %d), waiting for %s", order_url, status, attempt + 1, target)

		_log.warning("Order %s stayed %s, gave up waiting for %s", order_url, status, target)
		return None

	async def _generate(self, client: ACMEClient, domain: str, order_url: str, order: dict) -> bytes:
		settings = self.settings
		finalize_url = order.get("finalize")
		if not finalize_url:
			raise AcmeProtocolError(f"Order for {domain} has no finalize URL")

		try:
			private_key = generate_private_key(settings.key_size)
			csr_der = build_csr(private_key, domain, settings.subject)
		except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
			raise PackagingError(f"Cannot build CSR for {domain}: {exc}") from exc

		order = await client.finalize_order(finalize_url, csr_der)
		if order.get("status") != "valid":
			valid = await self.poll_order(client, order_url, target="valid")
			if valid is None:
				raise ValidationTimeoutError(f"Certificate for {domain} was not issued in time")
			order = valid

		cert_url = order.get("certificate")
		if not cert_url:
			raise AcmeProtocolError(f"Valid order for {domain} has no certificate URL")
		chain_pem = await client.download_certificate(cert_url)

		try:
			return build_archive(chain_pem, private_key, domain, settings.archive_password)
		except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
			raise PackagingError(f"Cannot package certificate for {domain}: {exc}") from exc

	# -----------------------------------------------------------------------
	# Account key reuse
	# -----------------------------------------------------------------------

	def _account_name(self) -> str:
		raw = f"{self.settings.directory_url}|{self.settings.contact_email}"
		return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

	async def _account_key(self) -> tuple[ec.EllipticCurvePrivateKey, bool]:
		"""Return the account key and whether it came from storage."""
		if not self.settings.reuse_account_key:
			return generate_account_key(), False

		sealed = await self.storage.get_account_key(self._account_name())
		if sealed:
			try:
				pem = vault.unseal(sealed, self.settings.archive_password)
				return account_key_from_pem(pem), True
			except ValueError as exc:
				_log.warning("Stored ACME account key is unusable, creating a new one: %s", exc)
		return generate_account_key(), False

	async def _store_account_key(self, key: ec.EllipticCurvePrivateKey) -> None:
		sealed = vault.seal(account_key_to_pem(key), self.settings.archive_password)
		await self.storage.store_account_key(self._account_name(), sealed)
		_log.info("Stored ACME account key for %s", self.settings.contact_email)
