#!/usr/bin/env python3
#
# tests/test_engine.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Issuance engine against an in-process ACME server."""

from __future__ import annotations

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtensionOID, NameOID

from certgate.acme.client import ACMEClient, _jwk_thumbprint
from certgate.acme.engine import IssuanceEngine, challenge_token
from certgate.acme.errors import (
	AcmeNetworkError,
	AcmeProtocolError,
	PackagingError,
	ValidationTimeoutError,
)
from certgate.certs.archive import load_archive
from certgate.utils import vault

from conftest import ARCHIVE_PASSWORD, CHALLENGE_TOKEN, DIRECTORY_URL, FakeAcmeServer


def test_challenge_token_is_text_before_first_dot():
	assert challenge_token("abc123.xyz789") == "abc123"
	assert challenge_token("abc123.xyz.789") == "abc123"
	assert challenge_token("nodot") == "nodot"


@pytest.mark.asyncio
async def test_issue_publishes_challenge_before_validation(make_engine, storage):
	server = FakeAcmeServer(storage=storage)
	engine = make_engine(server)

	result = await engine.issue("example.com")

	assert result.ok
	expected = f"{CHALLENGE_TOKEN}.{_jwk_thumbprint(server.jwk)}"
	assert server.published_at_validation == expected
	# Removed again once the attempt is over
	assert await storage.get_challenge_response(CHALLENGE_TOKEN) is None


@pytest.mark.asyncio
async def test_poll_schedule_is_linear_five_second_steps(make_engine, sleeper):
	server = FakeAcmeServer(ready_on_attempt=None)
	engine = make_engine(server)

	result = await engine.issue("example.com")

	assert sleeper.delays == [0, 5, 10, 15, 20]
	assert server.order_polls == 5
	assert not result.ok
	assert isinstance(result.error, ValidationTimeoutError)
	assert result.error.category == "validation_timeout"
	# Strict mode never reaches finalization
	assert "finalize" not in server.events


@pytest.mark.asyncio
async def test_lenient_mode_finalizes_after_exhaustion(make_engine, sleeper):
	server = FakeAcmeServer(ready_on_attempt=None)
	engine = make_engine(server, strict_validation=False)

	result = await engine.issue("example.com")

	assert sleeper.delays == [0, 5, 10, 15, 20]
	assert "finalize" in server.events
	# The server refuses an order that was never ready
	assert isinstance(result.error, AcmeProtocolError)
	assert result.error.error_type == "urn:ietf:params:acme:error:orderNotReady"
	assert result.error.status_code == 403


@pytest.mark.asyncio
async def test_issue_end_to_end_example_com(make_engine, storage, sleeper):
	server = FakeAcmeServer(ready_on_attempt=2, storage=storage)
	engine = make_engine(server)

	result = await engine.issue("example.com")

	assert result.ok, result.error
	assert result.domain == "example.com"
	assert sleeper.delays == [0, 5, 10]
	assert server.events == [
		"account",
		"order",
		"authorization",
		"validate",
		"poll:0",
		"poll:1",
		"poll:2",
		"finalize",
		"download",
	]

	handle = load_archive(result.archive, ARCHIVE_PASSWORD)
	assert handle.common_name == "example.com"
	assert handle.issuer == "CertGate Test CA"
	assert len(handle.chain) == 1
	assert isinstance(handle.private_key, rsa.RSAPrivateKey)
	assert handle.private_key.key_size == 2048


@pytest.mark.asyncio
async def test_csr_carries_subject_and_single_san(make_engine):
	server = FakeAcmeServer()
	engine = make_engine(server)

	result = await engine.issue("shop.example.com")

	assert result.ok
	csr = server.csr
	assert csr.is_signature_valid
	assert csr.signature_hash_algorithm.name == "sha256"

	def attr(oid):
		return csr.subject.get_attributes_for_oid(oid)[0].value

	assert attr(NameOID.COUNTRY_NAME) == "US"
	assert attr(NameOID.STATE_OR_PROVINCE_NAME) == "FL"
	assert attr(NameOID.LOCALITY_NAME) == "Tampa"
	assert attr(NameOID.ORGANIZATION_NAME) == "Software Logistics"
	assert attr(NameOID.ORGANIZATIONAL_UNIT_NAME) == "Hosting"
	assert attr(NameOID.COMMON_NAME) == "shop.example.com"

	san = csr.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
	assert [name.value for name in san] == ["shop.example.com"]


@pytest.mark.asyncio
async def test_bad_nonce_is_retried_once(make_engine):
	server = FakeAcmeServer(bad_nonce_once=True)
	engine = make_engine(server)

	result = await engine.issue("example.com")

	assert result.ok, result.error
	assert server.requests.count(("POST", "/new-acct")) == 2


@pytest.mark.asyncio
async def test_unparseable_chain_is_a_packaging_failure(make_engine, storage):
	server = FakeAcmeServer(corrupt_chain=True)
	engine = make_engine(server)

	result = await engine.issue("example.com")

	assert not result.ok
	assert result.archive is None
	assert isinstance(result.error, PackagingError)
	assert result.error.category == "packaging"
	assert storage.certificates == {}
	assert storage.challenges == {}


@pytest.mark.asyncio
async def test_transport_failure_is_a_network_error(settings, storage, sleeper):
	def refuse(request: httpx.Request) -> httpx.Response:
		raise httpx.ConnectError("connection refused", request=request)

	engine = IssuanceEngine(settings, storage, transport=httpx.MockTransport(refuse), sleep=sleeper)

	result = await engine.issue("example.com")

	assert isinstance(result.error, AcmeNetworkError)
	assert result.error.category == "network"


@pytest.mark.asyncio
async def test_account_key_is_sealed_and_reused(make_engine, storage):
	first = FakeAcmeServer()
	result = await make_engine(first, reuse_account_key=True).issue("example.com")
	assert result.ok

	assert len(storage.account_keys) == 1
	sealed = next(iter(storage.account_keys.values()))
	assert vault.is_sealed(sealed)
	assert b"PRIVATE KEY" in vault.unseal(sealed, ARCHIVE_PASSWORD)

	second = FakeAcmeServer()
	result = await make_engine(second, reuse_account_key=True).issue("example.com")
	assert result.ok
	assert second.jwk == first.jwk


@pytest.mark.asyncio
async def test_ephemeral_account_by_default(make_engine, storage):
	first = FakeAcmeServer()
	second = FakeAcmeServer()
	assert (await make_engine(first).issue("example.com")).ok
	assert (await make_engine(second).issue("example.com")).ok

	assert first.jwk != second.jwk
	assert storage.account_keys == {}


@pytest.mark.asyncio
async def test_client_reports_acme_problem_details():
	def reject(request: httpx.Request) -> httpx.Response:
		if request.url.path == "/directory":
			return httpx.Response(200, json={
				"newNonce": "https://acme.test/new-nonce",
				"newAccount": "https://acme.test/new-acct",
				"newOrder": "https://acme.test/new-order",
			})
		if request.url.path == "/new-nonce":
			return httpx.Response(200, headers={"Replay-Nonce": "n1"})
		return httpx.Response(
			403,
			json={"type": "urn:ietf:params:acme:error:unauthorized", "detail": "Account is deactivated"},
			headers={"Replay-Nonce": "n2"},
		)

	async with ACMEClient(DIRECTORY_URL, transport=httpx.MockTransport(reject)) as client:
		await client.fetch_directory()
		with pytest.raises(AcmeProtocolError) as excinfo:
			await client.register_account("admin@certgate.io")

	error = excinfo.value
	assert error.status_code == 403
	assert error.error_type == "urn:ietf:params:acme:error:unauthorized"
	assert "Account is deactivated" in str(error)
	assert not error.is_bad_nonce


@pytest.mark.asyncio
async def test_challenge_cleanup_failure_keeps_issued_archive(make_engine, storage, monkeypatch):
	async def disk_full(token: str) -> None:
		raise OSError("disk full")

	monkeypatch.setattr(storage, "remove_challenge_response", disk_full)
	engine = make_engine(FakeAcmeServer())

	result = await engine.issue("example.com")

	assert result.ok, result.error
	assert load_archive(result.archive, ARCHIVE_PASSWORD).common_name == "example.com"


class _MalformedAuthzServer(FakeAcmeServer):
	"""Strips one field from every challenge in the authorization."""

	def __init__(self, field: str) -> None:
		super().__init__()
		self.field = field

	async def handler(self, request: httpx.Request) -> httpx.Response:
		response = await super().handler(request)
		if request.url.path != "/authz/1":
			return response
		body = response.json()
		for challenge in body["challenges"]:
			challenge.pop(self.field, None)
		return self._reply(response.status_code, body)


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["token", "url"])
async def test_malformed_http01_challenge_is_a_protocol_error(make_engine, storage, field):
	server = _MalformedAuthzServer(field)
	engine = make_engine(server)

	result = await engine.issue("example.com")

	assert not result.ok
	assert isinstance(result.error, AcmeProtocolError)
	assert result.error.category == "protocol"
	assert "validate" not in server.events
	assert storage.challenges == {}


class _BadAuthzUrlServer(FakeAcmeServer):
	"""Returns an order whose authorization entry is not a URL string."""

	def _order(self, status: str) -> dict:
		order = super()._order(status)
		order["authorizations"] = [{"url": order["authorizations"][0]}]
		return order


@pytest.mark.asyncio
async def test_non_string_authorization_is_a_protocol_error(make_engine):
	server = _BadAuthzUrlServer()

	result = await make_engine(server).issue("example.com")

	assert isinstance(result.error, AcmeProtocolError)
	assert "authorization" not in server.events
