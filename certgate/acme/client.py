#!/usr/bin/env python3
#
# certgate/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight ACME v2 client (RFC 8555, HTTP-01 only)."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from .errors import AcmeNetworkError, AcmeProtocolError

_log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

_JOSE_CONTENT_TYPE = "application/jose+json"
_PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _sha256(data: bytes) -> bytes:
	return hashlib.sha256(data).digest()


def _jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if "kty" not in jwk:
		raise ValueError("Missing kty in JWK")

	if jwk["kty"] == "EC":
		canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	elif jwk["kty"] == "RSA":
		canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	else:
		raise ValueError(f"Unsupported key type: {jwk['kty']}")

	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return _b64url(_sha256(canonical_json.encode("utf-8")))


def generate_account_key() -> ec.EllipticCurvePrivateKey:
	"""Generate a new P-256 account key."""
	return ec.generate_private_key(ec.SECP256R1())


def account_key_to_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	)


def account_key_from_pem(key_pem: bytes) -> ec.EllipticCurvePrivateKey:
	key = serialization.load_pem_private_key(key_pem, password=None)
	if not isinstance(key, ec.EllipticCurvePrivateKey):
		raise ValueError("Account key is not an EC key")
	return key


@dataclass(frozen=True)
class Http01Challenge:
	"""An HTTP-01 challenge of one authorization."""
	url: str
	token: str
	key_authorization: str


class ACMEClient:
	"""Lightweight ACME v2 client.

	One instance is one session: open it with ``async with``, call
	:meth:`fetch_directory` and :meth:`register_account`, then work through
	the order.
	"""

	def __init__(
		self,
		directory_url: str,
		account_key: Optional[ec.EllipticCurvePrivateKey] = None,
		*,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		timeout: float = DEFAULT_TIMEOUT,
	):
		self.directory_url = directory_url
		self.account_key = account_key or generate_account_key()
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.account_url: Optional[str] = None
		self.http_client: Optional[httpx.AsyncClient] = None
		self._transport = transport
		self._timeout = timeout

	async def __aenter__(self):
		self.http_client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
		return self

	async def __aexit__(self, *args):
		if self.http_client:
			await self.http_client.aclose()
			self.http_client = None

	def _require_client(self) -> httpx.AsyncClient:
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		return self.http_client

	def _endpoint(self, name: str) -> str:
		url = self.directory.get(name)
		if not url:
			raise AcmeProtocolError(f"ACME directory has no {name!r} endpoint")
		return url

	async def fetch_directory(self) -> dict:
		"""Fetch the ACME directory."""
		http = self._require_client()
		try:
			resp = await http.get(self.directory_url)
		except httpx.HTTPError as exc:
			raise AcmeNetworkError(f"Cannot reach ACME directory {self.directory_url}: {exc}") from exc
		if resp.status_code != 200:
			raise AcmeProtocolError.from_response("Failed to fetch directory", resp)
		try:
			self.directory = resp.json()
		except ValueError as exc:
			raise AcmeProtocolError(f"ACME directory is not JSON: {exc}") from exc
		return self.directory

	async def _get_nonce(self) -> str:
		"""Get a fresh nonce with fallback."""
		http = self._require_client()

		if self.nonce:
			nonce = self.nonce
			self.nonce = None
			return nonce

		url = self._endpoint("newNonce")
		try:
			resp = await http.head(url)
			if "Replay-Nonce" in resp.headers:
				return resp.headers["Replay-Nonce"]
		except httpx.HTTPError as exc:
			_log.debug("HEAD %s failed (%s), retrying with GET", url, exc)

		try:
			resp = await http.get(url)
		except httpx.HTTPError as exc:
			raise AcmeNetworkError(f"Cannot obtain ACME nonce: {exc}") from exc
		if "Replay-Nonce" not in resp.headers:
			raise AcmeProtocolError("Failed to obtain ACME nonce", status_code=resp.status_code)
		return resp.headers["Replay-Nonce"]

	def jwk(self) -> dict:
		"""JWK representation of the account key."""
		numbers = self.account_key.public_key().public_numbers()

		# P-256 coordinates are 32 bytes each
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": _b64url(numbers.x.to_bytes(32, "big")),
			"y": _b64url(numbers.y.to_bytes(32, "big")),
		}

	def thumbprint(self) -> str:
		return _jwk_thumbprint(self.jwk())

	def _sign_payload(self, payload: bytes) -> bytes:
		"""Sign with the account key (ES256, raw r || s)."""
		sig_der = self.account_key.sign(payload, ec.ECDSA(hashes.SHA256()))
		r, s = decode_dss_signature(sig_der)
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")

	async def _post_jws(self, url: str, payload: Optional[dict], headers: Optional[dict]) -> httpx.Response:
		http = self._require_client()
		nonce = await self._get_nonce()

		protected = {
			"alg": "ES256",
			"nonce": nonce,
			"url": url,
		}
		if self.account_url:
			protected["kid"] = self.account_url
		else:
			protected["jwk"] = self.jwk()

		protected_b64 = _b64url(json.dumps(protected).encode("utf-8"))
		# POST-as-GET carries an empty payload
		payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode("utf-8"))

		signing_input = f"{protected_b64}.{payload_b64}".encode("ascii")
		body = {
			"protected": protected_b64,
			"payload": payload_b64,
			"signature": _b64url(self._sign_payload(signing_input)),
		}

		request_headers = {"Content-Type": _JOSE_CONTENT_TYPE}
		if headers:
			request_headers.update(headers)
		try:
			resp = await http.post(url, content=json.dumps(body), headers=request_headers)
		except httpx.HTTPError as exc:
			raise AcmeNetworkError(f"POST {url} failed: {exc}") from exc

		if "Replay-Nonce" in resp.headers:
			self.nonce = resp.headers["Replay-Nonce"]
		return resp

	async def _signed_request(
		self,
		url: str,
		payload: Optional[dict],
		*,
		action: str,
		expected: tuple[int, ...] = (200,),
		headers: Optional[dict] = None,
	) -> httpx.Response:
		"""Make a signed JWS request, retrying once on a stale nonce."""
		resp = await self._post_jws(url, payload, headers)
		if resp.status_code in expected:
			return resp

		error = AcmeProtocolError.from_response(action, resp)
		if not error.is_bad_nonce:
			raise error

		_log.debug("ACME rejected nonce for %s, retrying once", url)
		resp = await self._post_jws(url, payload, headers)
		if resp.status_code not in expected:
			raise AcmeProtocolError.from_response(action, resp)
		return resp

	@staticmethod
	def _json(resp: httpx.Response, action: str) -> dict:
		try:
			data = resp.json()
		except ValueError as exc:
			raise AcmeProtocolError(f"{action}: response is not JSON", status_code=resp.status_code) from exc
		if not isinstance(data, dict):
			raise AcmeProtocolError(f"{action}: unexpected response body", status_code=resp.status_code)
		return data

	async def register_account(self, email: str) -> str:
		"""Register an account (the server returns the existing one for a known key)."""
		payload = {
			"termsOfServiceAgreed": True,
			"contact": [f"mailto:{email}"],
		}
		resp = await self._signed_request(
			self._endpoint("newAccount"),
			payload,
			action="Failed to register account",
			expected=(200, 201),
		)

		account_url = resp.headers.get("Location")
		if not account_url:
			raise AcmeProtocolError("No account URL in response", status_code=resp.status_code)
		self.account_url = account_url
		if resp.status_code == 200:
			_log.info("Using existing ACME account: %s", account_url)
		else:
			_log.info("Registered new ACME account: %s", account_url)
		return account_url

	async def new_order(self, domain: str) -> tuple[str, dict]:
		"""Create a new certificate order for one domain."""
		payload = {
			"identifiers": [{"type": "dns", "value": domain}],
		}
		resp = await self._signed_request(
			self._endpoint("newOrder"),
			payload,
			action="Failed to create order",
			expected=(200, 201),
		)

		order_url = resp.headers.get("Location")
		if not order_url:
			raise AcmeProtocolError("No order URL in response", status_code=resp.status_code)
		return order_url, self._json(resp, "Failed to create order")

	async def get_authorization(self, auth_url: str) -> dict:
		"""Get authorization details including challenges."""
		resp = await self._signed_request(auth_url, None, action="Failed to get authorization")
		return self._json(resp, "Failed to get authorization")

	def http01_challenge(self, authorization: dict) -> Http01Challenge:
		"""Pick the HTTP-01 challenge and compute its key authorization."""
		for challenge in authorization.get("challenges") or []:
			if isinstance(challenge, dict) and challenge.get("type") == "http-01":
				token = challenge.get("token")
				url = challenge.get("url")
				if not isinstance(token, str) or not token or not isinstance(url, str) or not url:
					raise AcmeProtocolError("HTTP-01 challenge has no token/url")
				return Http01Challenge(
					url=url,
					token=token,
					key_authorization=f"{token}.{self.thumbprint()}",
				)

		raise AcmeProtocolError("No HTTP-01 challenge found")

	async def respond_to_challenge(self, challenge_url: str) -> dict:
		"""Tell the ACME server the challenge response is in place."""
		resp = await self._signed_request(
			challenge_url,
			{},
			action="Failed to respond to challenge",
			expected=(200, 202),
		)
		return self._json(resp, "Failed to respond to challenge")

	async def fetch_order(self, order_url: str) -> dict:
		"""Fetch the current order resource."""
		resp = await self._signed_request(order_url, None, action="Failed to poll order")
		return self._json(resp, "Failed to poll order")

	async def finalize_order(self, finalize_url: str, csr_der: bytes) -> dict:
		"""Submit the CSR for a ready order."""
		resp = await self._signed_request(
			finalize_url,
			{"csr": _b64url(csr_der)},
			action="Failed to finalize order",
			expected=(200, 201),
		)
		return self._json(resp, "Failed to finalize order")

	async def download_certificate(self, cert_url: str) -> bytes:
		"""Download the issued chain as PEM (leaf first)."""
		resp = await self._signed_request(
			cert_url,
			None,
			action="Failed to download certificate",
			headers={"Accept": _PEM_CHAIN_CONTENT_TYPE},
		)
		if b"-----BEGIN CERTIFICATE-----" not in resp.content:
			raise AcmeProtocolError("Certificate download returned no PEM data", status_code=resp.status_code)
		return resp.content
