#!/usr/bin/env python3
#
# tests/conftest.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Shared fixtures: an in-process ACME server, a throw-away CA and archives."""

from __future__ import annotations

import base64
import functools
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certgate.acme.engine import AcmeSettings, IssuanceEngine
from certgate.certs.archive import build_archive
from certgate.storage.memory import MemoryStorage

ARCHIVE_PASSWORD = "correct horse battery staple"
CONTACT_EMAIL = "admin@certgate.io"
ACME_BASE = "https://acme.test"
DIRECTORY_URL = f"{ACME_BASE}/directory"
CHALLENGE_TOKEN = "evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA"


def _b64decode(value: str) -> bytes:
	return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


@functools.lru_cache(maxsize=1)
def issuing_ca() -> tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
	"""Self-signed issuing CA shared by the whole session."""
	key = ec.generate_private_key(ec.SECP256R1())
	name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "CertGate Test CA")])
	now = datetime.now(timezone.utc)
	cert = (
		x509.CertificateBuilder()
		.subject_name(name)
		.issuer_name(name)
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(now - timedelta(days=1))
		.not_valid_after(now + timedelta(days=3650))
		.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
		.sign(key, hashes.SHA256())
	)
	return key, cert


def sign_leaf(
	public_key,
	subject: x509.Name,
	domain: str,
	*,
	not_before: datetime,
	not_after: datetime,
) -> x509.Certificate:
	ca_key, ca_cert = issuing_ca()
	return (
		x509.CertificateBuilder()
		.subject_name(subject)
		.issuer_name(ca_cert.subject)
		.public_key(public_key)
		.serial_number(x509.random_serial_number())
		.not_valid_before(not_before)
		.not_valid_after(not_after)
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
		.sign(ca_key, hashes.SHA256())
	)


def make_archive(
	domain: str,
	*,
	remaining: timedelta,
	password: str = ARCHIVE_PASSWORD,
) -> bytes:
	"""Archive for ``domain`` whose certificate expires ``remaining`` from now."""
	_, ca_cert = issuing_ca()
	key = ec.generate_private_key(ec.SECP256R1())
	now = datetime.now(timezone.utc)
	leaf = sign_leaf(
		key.public_key(),
		x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]),
		domain,
		not_before=now - timedelta(days=60),
		not_after=now + remaining,
	)
	chain_pem = leaf.public_bytes(serialization.Encoding.PEM) + ca_cert.public_bytes(serialization.Encoding.PEM)
	return build_archive(chain_pem, key, domain, password)


class FakeAcmeServer:
	"""Just enough of RFC 8555 for one single-domain HTTP-01 order.

	Knobs:
		ready_on_attempt: zero-based poll index at which the order turns ready
			(``None`` keeps it pending forever)
		bad_nonce_once: reject the first signed request with ``badNonce``
		corrupt_chain: serve a certificate chain that does not parse
		storage: when set, the key authorization visible in it is recorded at
			the moment validation is triggered
	"""

	def __init__(
		self,
		*,
		ready_on_attempt: Optional[int] = 0,
		bad_nonce_once: bool = False,
		corrupt_chain: bool = False,
		storage=None,
		validity: timedelta = timedelta(days=90),
	) -> None:
		self.ready_on_attempt = ready_on_attempt
		self.bad_nonce_once = bad_nonce_once
		self.corrupt_chain = corrupt_chain
		self.storage = storage
		self.validity = validity

		self.requests: list[tuple[str, str]] = []
		self.events: list[str] = []
		self.order_polls = 0
		self.domain: Optional[str] = None
		self.csr: Optional[x509.CertificateSigningRequest] = None
		self.chain_pem: Optional[bytes] = None
		self.published_at_validation: Optional[str] = None
		self.jwk: Optional[dict] = None
		self._nonce_counter = 0
		self._issued_nonces: set[str] = set()
		self._finalized = False

	# -- plumbing ------------------------------------------------------------

	def transport(self) -> httpx.MockTransport:
		return httpx.MockTransport(self.handler)

	def _new_nonce(self) -> str:
		self._nonce_counter += 1
		nonce = f"nonce-{self._nonce_counter}"
		self._issued_nonces.add(nonce)
		return nonce

	def _reply(self, status_code: int, body=None, *, headers: Optional[dict] = None, content: Optional[bytes] = None) -> httpx.Response:
		all_headers = {"Replay-Nonce": self._new_nonce()}
		if headers:
			all_headers.update(headers)
		if content is not None:
			return httpx.Response(status_code, content=content, headers=all_headers)
		return httpx.Response(status_code, json=body, headers=all_headers)

	def _problem(self, status_code: int, error: str, detail: str) -> httpx.Response:
		return self._reply(
			status_code,
			{"type": f"urn:ietf:params:acme:error:{error}", "detail": detail},
		)

	def _order(self, status: str) -> dict:
		order = {
			"status": status,
			"identifiers": [{"type": "dns", "value": self.domain}],
			"authorizations": [f"{ACME_BASE}/authz/1"],
			"finalize": f"{ACME_BASE}/order/1/finalize",
		}
		if status == "valid":
			order["certificate"] = f"{ACME_BASE}/cert/1"
		return order

	# -- request handling ----------------------------------------------------

	async def handler(self, request: httpx.Request) -> httpx.Response:
		path = request.url.path
		self.requests.append((request.method, path))

		if path == "/directory":
			return httpx.Response(200, json={
				"newNonce": f"{ACME_BASE}/new-nonce",
				"newAccount": f"{ACME_BASE}/new-acct",
				"newOrder": f"{ACME_BASE}/new-order",
			})
		if path == "/new-nonce":
			return self._reply(200 if request.method == "HEAD" else 204, content=b"")

		if request.method != "POST":
			return httpx.Response(405)

		body = json.loads(request.content)
		protected = json.loads(_b64decode(body["protected"]))
		payload = json.loads(_b64decode(body["payload"])) if body["payload"] else None

		assert request.headers["Content-Type"] == "application/jose+json"
		assert protected["alg"] == "ES256"
		assert protected["url"] == str(request.url)

		nonce = protected["nonce"]
		if self.bad_nonce_once:
			self.bad_nonce_once = False
			self._issued_nonces.discard(nonce)
			return self._problem(400, "badNonce", "JWS has an invalid anti-replay nonce")
		if nonce not in self._issued_nonces:
			return self._problem(400, "badNonce", "Unknown or reused nonce")
		self._issued_nonces.discard(nonce)

		if path == "/new-acct":
			assert payload["termsOfServiceAgreed"] is True
			self.jwk = protected["jwk"]
			self.events.append("account")
			return self._reply(201, {"status": "valid"}, headers={"Location": f"{ACME_BASE}/acct/1"})

		assert protected["kid"] == f"{ACME_BASE}/acct/1"

		if path == "/new-order":
			identifiers = payload["identifiers"]
			assert len(identifiers) == 1 and identifiers[0]["type"] == "dns"
			self.domain = identifiers[0]["value"]
			self.events.append("order")
			return self._reply(201, self._order("pending"), headers={"Location": f"{ACME_BASE}/order/1"})

		if path == "/authz/1":
			self.events.append("authorization")
			return self._reply(200, {
				"status": "pending",
				"identifier": {"type": "dns", "value": self.domain},
				"challenges": [
					{"type": "dns-01", "url": f"{ACME_BASE}/chall/2", "token": "dns-token", "status": "pending"},
					{"type": "http-01", "url": f"{ACME_BASE}/chall/1", "token": CHALLENGE_TOKEN, "status": "pending"},
				],
			})

		if path == "/chall/1":
			assert payload == {}
			self.events.append("validate")
			if self.storage is not None:
				self.published_at_validation = await self.storage.get_challenge_response(CHALLENGE_TOKEN)
			return self._reply(200, {"type": "http-01", "status": "processing", "token": CHALLENGE_TOKEN})

		if path == "/order/1":
			assert payload is None
			if self._finalized:
				return self._reply(200, self._order("valid"))
			attempt = self.order_polls
			self.order_polls += 1
			self.events.append(f"poll:{attempt}")
			ready = self.ready_on_attempt is not None and attempt >= self.ready_on_attempt
			return self._reply(200, self._order("ready" if ready else "pending"))

		if path == "/order/1/finalize":
			self.events.append("finalize")
			ready = self.ready_on_attempt is not None and self.order_polls > self.ready_on_attempt
			if not ready:
				return self._problem(403, "orderNotReady", "Order is not ready for finalization")
			self.csr = x509.load_der_x509_csr(_b64decode(payload["csr"]))
			self._issue_chain()
			self._finalized = True
			return self._reply(200, self._order("valid"), headers={"Location": f"{ACME_BASE}/order/1"})

		if path == "/cert/1":
			assert request.headers["Accept"] == "application/pem-certificate-chain"
			self.events.append("download")
			return self._reply(
				200,
				content=self.chain_pem,
				headers={"Content-Type": "application/pem-certificate-chain"},
			)

		return httpx.Response(404)

	def _issue_chain(self) -> None:
		if self.corrupt_chain:
			self.chain_pem = b"-----BEGIN CERTIFICATE-----\nbm90IGEgY2VydGlmaWNhdGU=\n-----END CERTIFICATE-----\n"
			return
		_, ca_cert = issuing_ca()
		now = datetime.now(timezone.utc)
		leaf = sign_leaf(
			self.csr.public_key(),
			self.csr.subject,
			self.domain,
			not_before=now - timedelta(minutes=5),
			not_after=now + self.validity,
		)
		self.chain_pem = leaf.public_bytes(serialization.Encoding.PEM) + ca_cert.public_bytes(serialization.Encoding.PEM)


class SleepRecorder:
	"""Stand-in for ``asyncio.sleep`` that records the requested delays."""

	def __init__(self) -> None:
		self.delays: list[float] = []

	async def __call__(self, delay: float) -> None:
		self.delays.append(delay)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def storage() -> MemoryStorage:
	return MemoryStorage()


@pytest.fixture
def sleeper() -> SleepRecorder:
	return SleepRecorder()


@pytest.fixture
def settings() -> AcmeSettings:
	return AcmeSettings(
		directory_url=DIRECTORY_URL,
		contact_email=CONTACT_EMAIL,
		archive_password=ARCHIVE_PASSWORD,
	)


@pytest.fixture
def make_engine(settings, storage, sleeper):
	"""Build an engine wired to a fake ACME server."""

	def _make(server: FakeAcmeServer, **overrides) -> IssuanceEngine:
		engine_settings = settings
		if overrides:
			engine_settings = replace(settings, **overrides)
		return IssuanceEngine(
			engine_settings,
			storage,
			transport=server.transport(),
			sleep=sleeper,
		)

	return _make
