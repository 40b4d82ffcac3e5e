#!/usr/bin/env python3
#
# certgate/storage/files.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Filesystem storage shared by every worker process.

Layout below the storage root::

	<domain>/certificate.pfx    PKCS#12 archive (0600)
	.challenges.json            pending HTTP-01 responses with expiry
	.accounts/<name>.key        vault-sealed ACME account keys (0600)
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional

from .base import CHALLENGE_TTL, is_valid_domain, normalize_domain

_log = logging.getLogger(__name__)

CERTIFICATE_FILE = "certificate.pfx"
CHALLENGE_FILE = ".challenges.json"
ACCOUNTS_DIR = ".accounts"

_ACCOUNT_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def _write_private(path: Path, data: bytes) -> None:
	"""Write ``data`` to ``path`` atomically with owner-only permissions."""
	tmp = path.with_name(f".{path.name}.tmp")
	fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
	try:
		with os.fdopen(fd, "wb") as f:
			f.write(data)
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp, path)
	except OSError:
		tmp.unlink(missing_ok=True)
		raise
	path.chmod(0o600)


def _live_entries(challenges: object, now: float) -> dict[str, dict]:
	if not isinstance(challenges, dict):
		return {}
	return {
		token: entry
		for token, entry in challenges.items()
		if isinstance(entry, dict) and entry.get("expires", 0) > now
	}


class FileStorage:
	"""Directory-backed :class:`CertStorage`.

	Blocking file work runs in a thread so the event loop keeps serving
	validation requests while an archive is written.
	"""

	def __init__(self, root: Path, *, challenge_ttl: float = CHALLENGE_TTL) -> None:
		self.root = Path(root)
		self.root.mkdir(parents=True, exist_ok=True)
		self._challenge_ttl = challenge_ttl

	# -----------------------------------------------------------------------
	# Certificates
	# -----------------------------------------------------------------------

	def _certificate_path(self, domain: str) -> Path:
		domain = normalize_domain(domain)
		# Domain becomes a directory name, so reject anything that is not a hostname
		if not is_valid_domain(domain):
			raise ValueError(f"Invalid domain name: {domain!r}")
		return self.root / domain / CERTIFICATE_FILE

	def _read_certificate(self, domain: str) -> Optional[bytes]:
		path = self._certificate_path(domain)
		try:
			return path.read_bytes()
		except FileNotFoundError:
			return None

	def _write_certificate(self, domain: str, archive: bytes) -> None:
		path = self._certificate_path(domain)
		path.parent.mkdir(parents=True, exist_ok=True)
		_write_private(path, archive)
		_log.info("Saved certificate archive for %s to %s", normalize_domain(domain), path)

	async def get_certificate(self, domain: str) -> Optional[bytes]:
		return await asyncio.to_thread(self._read_certificate, domain)

	async def store_certificate(self, domain: str, archive: bytes) -> None:
		await asyncio.to_thread(self._write_certificate, domain, archive)

	# -----------------------------------------------------------------------
	# Challenge responses (file-based with TTL, locked for multi-worker use)
	# -----------------------------------------------------------------------

	@property
	def challenge_file(self) -> Path:
		return self.root / CHALLENGE_FILE

	def _update_challenges(self, token: str, key_authorization: Optional[str]) -> None:
		"""Add (or with ``None`` remove) one challenge under an exclusive lock."""
		self.challenge_file.touch(mode=0o600, exist_ok=True)
		with open(self.challenge_file, "r+", encoding="utf-8") as f:
			fcntl.flock(f.fileno(), fcntl.LOCK_EX)
			content = f.read()
			try:
				challenges = json.loads(content) if content else {}
			except ValueError:
				_log.warning("Discarding unreadable challenge file %s", self.challenge_file)
				challenges = {}

			now = time.time()
			live = _live_entries(challenges, now)
			if key_authorization is None:
				live.pop(token, None)
			else:
				live[token] = {
					"key_auth": key_authorization,
					"expires": now + self._challenge_ttl,
				}

			f.seek(0)
			f.truncate()
			f.write(json.dumps(live))
			f.flush()
			# Lock is released when the file is closed

	def _read_challenge(self, token: str) -> Optional[str]:
		try:
			with open(self.challenge_file, "r", encoding="utf-8") as f:
				fcntl.flock(f.fileno(), fcntl.LOCK_SH)
				content = f.read()
		except FileNotFoundError:
			return None
		try:
			challenges = json.loads(content) if content else {}
		except ValueError:
			return None
		entry = _live_entries(challenges, time.time()).get(token)
		return entry.get("key_auth") if entry else None

	async def publish_challenge_response(self, token: str, key_authorization: str) -> None:
		await asyncio.to_thread(self._update_challenges, token, key_authorization)

	async def get_challenge_response(self, token: str) -> Optional[str]:
		return await asyncio.to_thread(self._read_challenge, token)

	async def remove_challenge_response(self, token: str) -> None:
		await asyncio.to_thread(self._update_challenges, token, None)

	# -----------------------------------------------------------------------
	# ACME account keys
	# -----------------------------------------------------------------------

	def _account_path(self, name: str) -> Path:
		if not _ACCOUNT_NAME_RE.match(name):
			raise ValueError(f"Invalid account key name: {name!r}")
		return self.root / ACCOUNTS_DIR / f"{name}.key"

	def _read_account_key(self, name: str) -> Optional[str]:
		try:
			return self._account_path(name).read_text(encoding="ascii").strip()
		except FileNotFoundError:
			return None

	def _write_account_key(self, name: str, sealed: str) -> None:
		path = self._account_path(name)
		path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
		_write_private(path, sealed.encode("ascii"))

	async def get_account_key(self, name: str) -> Optional[str]:
		return await asyncio.to_thread(self._read_account_key, name)

	async def store_account_key(self, name: str, sealed: str) -> None:
		await asyncio.to_thread(self._write_account_key, name, sealed)
