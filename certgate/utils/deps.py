#!/usr/bin/env python3
#
# certgate/utils/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from fastapi import Request

if TYPE_CHECKING:
	from ..certs.cache import CertificateManager
	from ..storage.base import CertStorage
	from ..tasks.renewal import RenewalScheduler
	from .config import Config


def get_config(request: Request) -> Config:
	"""Get the application configuration from app state."""
	return request.app.state.cfg


def get_storage(request: Request) -> CertStorage:
	return request.app.state.storage


def get_manager(request: Request) -> CertificateManager:
	"""Get the certificate cache gate from app state."""
	return request.app.state.manager


def get_scheduler(request: Request) -> Optional[RenewalScheduler]:
	return getattr(request.app.state, "scheduler", None)
