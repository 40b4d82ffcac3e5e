#!/usr/bin/env python3
#
# certgate/storage/memory.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process storage. Good for a single worker and for tests."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Optional

from .base import CHALLENGE_TTL, normalize_domain


class MemoryStorage:
	"""Dict-backed :class:`CertStorage`. Challenge responses expire after a TTL."""

	def __init__(
		self,
		*,
		challenge_ttl: float = CHALLENGE_TTL,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.certificates: dict[str, bytes] = {}
		self.challenges: dict[str, tuple[str, float]] = {}
		self.account_keys: dict[str, str] = {}
		self._challenge_ttl = challenge_ttl
		self._clock = clock

	async def get_certificate(self, domain: str) -> Optional[bytes]:
		return self.certificates.get(normalize_domain(domain))

	async def store_certificate(self, domain: str, archive: bytes) -> None:
		self.certificates[normalize_domain(domain)] = archive

	async def publish_challenge_response(self, token: str, key_authorization: str) -> None:
		self.challenges[token] = (key_authorization, self._clock() + self._challenge_ttl)

	async def get_challenge_response(self, token: str) -> Optional[str]:
		entry = self.challenges.get(token)
		if entry is None:
			return None
		key_authorization, expires = entry
		if expires <= self._clock():
			self.challenges.pop(token, None)
			return None
		return key_authorization

	async def remove_challenge_response(self, token: str) -> None:
		self.challenges.pop(token, None)

	async def get_account_key(self, name: str) -> Optional[str]:
		return self.account_keys.get(name)

	async def store_account_key(self, name: str, sealed: str) -> None:
		self.account_keys[name] = sealed
