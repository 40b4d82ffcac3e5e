#!/usr/bin/env python3
#
# certgate/acme/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Typed failures of an issuance attempt."""

from __future__ import annotations

import httpx


class AcmeError(Exception):
	"""Base class for every issuance failure."""
	category = "acme"


class AcmeNetworkError(AcmeError):
	"""The ACME server could not be reached or the transfer broke off."""
	category = "network"


class AcmeProtocolError(AcmeError):
	"""The ACME server rejected a request or returned an unusable resource."""
	category = "protocol"

	def __init__(
		self,
		message: str,
		*,
		status_code: int | None = None,
		error_type: str | None = None,
		detail: str | None = None,
	) -> None:
		super().__init__(message)
		self.status_code = status_code
		self.error_type = error_type
		self.detail = detail

	@property
	def is_bad_nonce(self) -> bool:
		return self.error_type == "urn:ietf:params:acme:error:badNonce"

	@classmethod
	def from_response(cls, action: str, resp: httpx.Response) -> AcmeProtocolError:
		"""Build an error from an RFC 7807 problem document (or plain body)."""
		error_type: str | None = None
		detail: str | None = None
		try:
			problem = resp.json()
		except ValueError:
			problem = None
		if isinstance(problem, dict):
			error_type = problem.get("type") or None
			detail = problem.get("detail") or None
		if detail:
			text = f"{detail} ({error_type})" if error_type else detail
		else:
			text = resp.text or f"HTTP {resp.status_code}"
		return cls(
			f"{action}: {text}",
			status_code=resp.status_code,
			error_type=error_type,
			detail=detail,
		)


class ValidationTimeoutError(AcmeError):
	"""The order never reached the expected status within the poll budget."""
	category = "validation_timeout"


class PackagingError(AcmeError):
	"""Key generation, CSR construction or archive packaging failed."""
	category = "packaging"
