#!/usr/bin/env python3
#
# certgate/certs/archive.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""PKCS#12 certificate archives.

An archive bundles the private key, the leaf certificate and the issuer chain,
encrypted with the configured archive password. It is the only form in which
certificates are handed to storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

__all__ = [
	"ArchiveDecodeError",
	"CertificateHandle",
	"build_archive",
	"load_archive",
]


class ArchiveDecodeError(Exception):
	"""Raised when a stored archive cannot be opened with the archive password."""


@dataclass(frozen=True)
class CertificateHandle:
	"""A decoded certificate archive."""
	archive: bytes
	certificate: x509.Certificate
	private_key: PrivateKeyTypes
	chain: tuple[x509.Certificate, ...] = ()

	@property
	def not_before(self) -> datetime:
		return self.certificate.not_valid_before_utc

	@property
	def not_after(self) -> datetime:
		return self.certificate.not_valid_after_utc

	@property
	def common_name(self) -> str | None:
		attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
		return str(attrs[0].value) if attrs else None

	@property
	def issuer(self) -> str | None:
		attrs = self.certificate.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
		return str(attrs[0].value) if attrs else None

	@property
	def fingerprint(self) -> str:
		return f"sha256:{self.certificate.fingerprint(hashes.SHA256()).hex()}"

	@property
	def serial(self) -> str:
		return format(self.certificate.serial_number, "x")

	def remaining(self, now: datetime) -> timedelta:
		"""Validity left at ``now``."""
		return self.not_after - now

	def fullchain_pem(self) -> bytes:
		return b"".join(
			cert.public_bytes(serialization.Encoding.PEM)
			for cert in (self.certificate, *self.chain)
		)

	def private_key_pem(self) -> bytes:
		return self.private_key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)


def build_archive(
	chain_pem: bytes,
	private_key: PrivateKeyTypes,
	friendly_name: str,
	password: str,
) -> bytes:
	"""Package a PEM chain (leaf first) and its key into an encrypted PKCS#12 blob.

	Raises:
		ValueError: If the chain holds no certificate or the password is empty
	"""
	if not password:
		raise ValueError("Archive password must not be empty")
	certs = x509.load_pem_x509_certificates(chain_pem)
	if not certs:
		raise ValueError("No certificates found in chain")
	leaf, intermediates = certs[0], certs[1:]
	return pkcs12.serialize_key_and_certificates(
		name=friendly_name.encode("utf-8"),
		key=private_key,
		cert=leaf,
		cas=intermediates or None,
		encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
	)


def load_archive(data: bytes, password: str) -> CertificateHandle:
	"""Open an archive produced by :func:`build_archive`.

	Raises:
		ArchiveDecodeError: On a wrong password, corrupt data or a missing key/certificate
	"""
	try:
		bundle = pkcs12.load_pkcs12(data, password.encode("utf-8"))
	except (ValueError, TypeError) as exc:
		raise ArchiveDecodeError(f"Cannot open certificate archive: {exc}") from exc

	if bundle.cert is None or bundle.key is None:
		raise ArchiveDecodeError("Certificate archive is missing its certificate or private key")

	return CertificateHandle(
		archive=data,
		certificate=bundle.cert.certificate,
		private_key=bundle.key,
		chain=tuple(c.certificate for c in bundle.additional_certs),
	)
