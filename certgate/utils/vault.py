#!/usr/bin/env python3
#
# certgate/utils/vault.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""
Fernet sealing for ACME account keys kept in storage.

Each sealed value gets its own Fernet key derived from:
  - A random 16-byte salt (stored alongside the ciphertext)
  - The archive password (pepper) from CERTGATE_ARCHIVE_PASSWORD

Storage format:  "vault:1:<salt_hex>:<fernet_token>"
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os

from cryptography.fernet import Fernet, InvalidToken

_log = logging.getLogger(__name__)

_VAULT_PREFIX = "vault:1:"
_SALT_BYTES = 16
_ITERATIONS = 480_000


class VaultError(ValueError):
	"""Raised when a sealed value cannot be opened."""


def _derive_key(pepper: str, salt: bytes) -> bytes:
	dk = hashlib.pbkdf2_hmac("sha256", pepper.encode("utf-8"), salt, iterations=_ITERATIONS)
	# Fernet wants a url-safe base64 32-byte key
	return base64.urlsafe_b64encode(dk)


def seal(plaintext: bytes, pepper: str) -> str:
	"""Encrypt ``plaintext`` into a vault-formatted string."""
	if not pepper:
		raise ValueError("Archive password is not set")
	salt = os.urandom(_SALT_BYTES)
	token = Fernet(_derive_key(pepper, salt)).encrypt(plaintext)
	return f"{_VAULT_PREFIX}{salt.hex()}:{token.decode('ascii')}"


def unseal(stored: str, pepper: str) -> bytes:
	"""Decrypt a value produced by :func:`seal`.

	Raises:
		VaultError: On a foreign format, a wrong pepper or tampered data
	"""
	if not pepper:
		raise ValueError("Archive password is not set")
	if not is_sealed(stored):
		raise VaultError("Value is not vault-sealed")

	try:
		salt_hex, fernet_token = stored[len(_VAULT_PREFIX):].split(":", 1)
		salt = bytes.fromhex(salt_hex)
		if len(salt) != _SALT_BYTES:
			raise ValueError("Invalid salt length")
		return Fernet(_derive_key(pepper, salt)).decrypt(fernet_token.encode("ascii"))
	except (InvalidToken, ValueError) as exc:
		_log.warning("vault unseal failed: %s", type(exc).__name__)
		raise VaultError("Cannot unseal value - wrong CERTGATE_ARCHIVE_PASSWORD?") from exc


def is_sealed(value: str | None) -> bool:
	return bool(value and value.startswith(_VAULT_PREFIX))
