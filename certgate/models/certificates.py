#!/usr/bin/env python3
#
# certgate/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate-related Pydantic models."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..certs.archive import CertificateHandle

# RFC 1123 hostname
DOMAIN_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"


class IssueRequest(BaseModel):
	"""Request a certificate for one domain."""
	domain: str = Field(..., min_length=1, max_length=253)

	@field_validator("domain", mode="before")
	@classmethod
	def normalize(cls, v):
		return v.strip().lower() if isinstance(v, str) else v

	@field_validator("domain")
	@classmethod
	def domain_valid(cls, v: str) -> str:
		if not re.fullmatch(DOMAIN_PATTERN, v):
			raise ValueError("Domain must be a valid hostname")
		return v


class CertificateInfo(BaseModel):
	"""Public view of a stored certificate (never the key)."""
	domain: str
	common_name: Optional[str] = None
	issuer: Optional[str] = None
	serial: Optional[str] = None
	fingerprint: Optional[str] = None
	issued_at: Optional[str] = None
	expires_at: Optional[str] = None
	days_until_expiry: Optional[int] = None
	needs_renewal: bool = False

	@classmethod
	def from_handle(
		cls,
		domain: str,
		handle: CertificateHandle,
		*,
		now: datetime,
		needs_renewal: bool,
	) -> CertificateInfo:
		return cls(
			domain=domain,
			common_name=handle.common_name,
			issuer=handle.issuer,
			serial=handle.serial,
			fingerprint=handle.fingerprint,
			issued_at=handle.not_before.isoformat(),
			expires_at=handle.not_after.isoformat(),
			days_until_expiry=handle.remaining(now).days,
			needs_renewal=needs_renewal,
		)


class RenewalStatus(BaseModel):
	"""Per-domain state of the renewal loop."""
	domain: str
	exists: bool = False
	expires_at: Optional[str] = None
	days_until_expiry: Optional[int] = None
	needs_renewal: bool = True
	pending: bool = False
	last_attempt: Optional[str] = None
	last_success: Optional[str] = None
	fail_count: int = 0
	last_error: Optional[str] = None
