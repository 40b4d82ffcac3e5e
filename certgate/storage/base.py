#!/usr/bin/env python3
#
# certgate/storage/base.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Storage contract shared by the cache gate, the engine and the responder."""

from __future__ import annotations

import re
from typing import Optional, Protocol, runtime_checkable

# Challenge response lifetime in seconds (10 minutes)
CHALLENGE_TTL = 600

# RFC 1123 hostname, lower case after normalisation
_DOMAIN_RE = re.compile(
	r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?)*$"
)
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


def normalize_domain(domain: str) -> str:
	return domain.strip().lower()


def is_valid_domain(domain: str) -> bool:
	return 0 < len(domain) <= 253 and bool(_DOMAIN_RE.match(domain))


def is_valid_token(token: str) -> bool:
	return bool(token) and len(token) <= 256 and bool(_TOKEN_RE.match(token))


@runtime_checkable
class CertStorage(Protocol):
	"""Key-value persistence for certificate archives and challenge responses.

	Certificates are keyed by bare domain name, challenge responses by ACME
	token. Writes overwrite; the last write wins.
	"""

	async def get_certificate(self, domain: str) -> Optional[bytes]: ...

	async def store_certificate(self, domain: str, archive: bytes) -> None: ...

	async def publish_challenge_response(self, token: str, key_authorization: str) -> None: ...

	async def get_challenge_response(self, token: str) -> Optional[str]: ...

	async def remove_challenge_response(self, token: str) -> None: ...

	async def get_account_key(self, name: str) -> Optional[str]: ...

	async def store_account_key(self, name: str, sealed: str) -> None: ...
