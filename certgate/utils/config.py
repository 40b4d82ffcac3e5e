#!/usr/bin/env python3
#
# certgate/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and app-level defaults."""

from __future__ import annotations

import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from pydantic import EmailStr, TypeAdapter, ValidationError

from ..certs.keys import CsrSubject
from .time import parse_duration

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Fixed constants
# ---------------------------------------------------------------------------
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

DEFAULT_RENEWAL_PERIOD = "30d"
DEFAULT_RENEWAL_CHECK_INTERVAL = "12h"

_EMAIL = TypeAdapter(EmailStr)
_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	base_dir: Path
	data_dir: Path
	certs_dir: Path
	acme_directory_url: str
	contact_email: str
	archive_password: str
	renewal_period: timedelta
	renewal_check_interval: timedelta
	csr_subject: CsrSubject = field(default_factory=CsrSubject)
	managed_domains: tuple[str, ...] = ()
	reuse_account_key: bool = False
	strict_validation: bool = True
	http_host: str = "0.0.0.0"
	http_port: int = 80
	log_level: str = "INFO"


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from certgate.env.

	Blank lines, comments and ``export`` prefixes are handled. Variables that
	are already set in the environment are never overridden.
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "certgate.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#"):
			continue
		if "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		if not key:
			continue
		os.environ.setdefault(key, _parse_value(value))


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in _TRUTHY


def _env_duration(name: str, default: str) -> timedelta:
	raw = os.getenv(name, default)
	try:
		value = parse_duration(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{name}: {exc}") from exc
	if value.total_seconds() <= 0:
		raise ConfigValidationError(f"{name} must be greater than zero, got {raw!r}")
	return value


def _parse_domains(raw: str) -> tuple[str, ...]:
	domains: list[str] = []
	for item in raw.split(","):
		domain = item.strip().lower()
		if domain and domain not in domains:
			domains.append(domain)
	return tuple(domains)


def _load_subject() -> CsrSubject:
	defaults = CsrSubject()
	subject = CsrSubject(
		country=os.getenv("CSR_COUNTRY", defaults.country).strip().upper(),
		state=os.getenv("CSR_STATE", defaults.state).strip(),
		locality=os.getenv("CSR_LOCALITY", defaults.locality).strip(),
		organization=os.getenv("CSR_ORGANIZATION", defaults.organization).strip(),
		organizational_unit=os.getenv("CSR_ORGANIZATIONAL_UNIT", defaults.organizational_unit).strip(),
	)
	if len(subject.country) != 2:
		raise ConfigValidationError(
			f"CSR_COUNTRY must be a two-letter country code, got {subject.country!r}"
		)
	return subject


def load_config() -> Config:
	"""Load configuration from environment variables (optionally via certgate.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(os.getenv("CERTGATE_DATA_DIR", str(project_root / "data"))).resolve()
	certs_dir = (data_dir / "certs").resolve()
	try:
		for d in (data_dir, certs_dir):
			if d.exists() and not d.is_dir():
				raise ConfigValidationError(f"Path exists but is not a directory: {d}")
			d.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create data directories: {exc}") from exc

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	directory_url = os.getenv("ACME_DIRECTORY_URL", "").strip()
	if not directory_url:
		directory_url = ACME_DIRECTORY_STAGING if _env_bool("ACME_STAGING", False) else ACME_DIRECTORY_PROD
	if not directory_url.startswith(("https://", "http://")):
		raise ConfigValidationError(f"ACME_DIRECTORY_URL must be an http(s) URL, got {directory_url!r}")

	contact_email = os.getenv("ACME_EMAIL", "").strip().lower()
	if not contact_email:
		raise ConfigValidationError("ACME_EMAIL is not set - required for ACME account registration")
	try:
		_EMAIL.validate_python(contact_email)
	except ValidationError as exc:
		raise ConfigValidationError(f"ACME_EMAIL is not a valid address: {contact_email!r}") from exc

	archive_password = os.getenv("CERTGATE_ARCHIVE_PASSWORD", "")
	if not archive_password:
		if "pytest" not in sys.modules and "PYTEST_CURRENT_TEST" not in os.environ:
			raise ConfigValidationError(
				"CERTGATE_ARCHIVE_PASSWORD is not set. "
				"Refusing to start without an archive password. "
				"Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
			)
		archive_password = "test-only-password-do-not-use-in-production"
		_log.debug("Using test-only archive password")

	try:
		http_port = int(os.getenv("HTTP_PORT", "80"))
	except ValueError as exc:
		raise ConfigValidationError(f"HTTP_PORT must be an integer: {exc}") from exc
	if not (1 <= http_port <= 65535):
		raise ConfigValidationError(f"HTTP_PORT must be between 1 and 65535, got {http_port}")

	return Config(
		base_dir=project_root,
		data_dir=data_dir,
		certs_dir=certs_dir,
		acme_directory_url=directory_url,
		contact_email=contact_email,
		archive_password=archive_password,
		renewal_period=_env_duration("RENEWAL_PERIOD", DEFAULT_RENEWAL_PERIOD),
		renewal_check_interval=_env_duration("RENEWAL_CHECK_INTERVAL", DEFAULT_RENEWAL_CHECK_INTERVAL),
		csr_subject=_load_subject(),
		managed_domains=_parse_domains(os.getenv("CERTGATE_DOMAINS", "")),
		reuse_account_key=_env_bool("ACME_REUSE_ACCOUNT_KEY", False),
		strict_validation=_env_bool("ACME_STRICT_VALIDATION", True),
		http_host=os.getenv("HTTP_HOST", "0.0.0.0"),
		http_port=http_port,
		log_level=log_level,
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None
