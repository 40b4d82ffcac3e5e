#!/usr/bin/env python3
#
# certgate/certs/keys.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate key generation and CSR construction."""

from __future__ import annotations

from dataclasses import dataclass

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

DEFAULT_KEY_SIZE = 2048


@dataclass(frozen=True)
class CsrSubject:
	"""Fixed subject fields for every CSR. The common name is always the domain."""
	country: str = "US"
	state: str = "FL"
	locality: str = "Tampa"
	organization: str = "Software Logistics"
	organizational_unit: str = "Hosting"

	def to_name(self, common_name: str) -> x509.Name:
		attributes = [
			(NameOID.COUNTRY_NAME, self.country),
			(NameOID.STATE_OR_PROVINCE_NAME, self.state),
			(NameOID.LOCALITY_NAME, self.locality),
			(NameOID.ORGANIZATION_NAME, self.organization),
			(NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit),
		]
		# Empty fields are left out of the subject entirely
		name = [x509.NameAttribute(oid, value) for oid, value in attributes if value]
		name.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
		return x509.Name(name)


def generate_private_key(key_size: int = DEFAULT_KEY_SIZE) -> rsa.RSAPrivateKey:
	"""Generate a fresh RSA key for one certificate."""
	return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def build_csr(private_key: rsa.RSAPrivateKey, domain: str, subject: CsrSubject) -> bytes:
	"""Build a SHA-256 signed CSR for a single domain and return it DER encoded.

	The domain is repeated as the only SAN entry (required by Let's Encrypt).
	"""
	csr = (
		x509.CertificateSigningRequestBuilder()
		.subject_name(subject.to_name(domain))
		.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(domain)]),
			critical=False,
		)
		.sign(private_key, hashes.SHA256())
	)
	return csr.public_bytes(serialization.Encoding.DER)
