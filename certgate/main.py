#!/usr/bin/env python3
#
# certgate/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and lifespan."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .acme.engine import AcmeSettings, IssuanceEngine
from .api import acme as acme_api
from .certs.cache import CertificateManager
from .storage.files import FileStorage
from .tasks.renewal import RenewalScheduler
from .utils.config import Config, load_config
from .utils.rate_limit import limiter

_log = logging.getLogger(__name__)

_LOG_COLORS = {
	"DEBUG": "\033[36m",
	"INFO": "\033[32m",
	"WARNING": "\033[33m",
	"ERROR": "\033[31m",
	"CRITICAL": "\033[1;31m",
}
_RESET = "\033[0m"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		if orig_levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[orig_levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the entire application."""
	level = getattr(logging, log_level, logging.INFO)

	if sys.stdout.isatty():
		formatter: logging.Formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
			datefmt=DATE_FORMAT,
		)
	else:
		formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

	# force=True drops handlers installed earlier (e.g. by uvicorn)
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Every ACME round trip would otherwise log at INFO
	for name in ("httpcore", "httpx"):
		logging.getLogger(name).setLevel(logging.WARNING)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Wire storage, engine, cache gate and renewal loop for the app lifetime."""
	cfg: Config = app.state.cfg

	storage = FileStorage(cfg.certs_dir)
	engine = IssuanceEngine(AcmeSettings.from_config(cfg), storage)
	manager = CertificateManager(
		storage,
		engine,
		archive_password=cfg.archive_password,
		renewal_period=cfg.renewal_period,
	)
	scheduler = RenewalScheduler(manager, cfg.managed_domains, cfg.renewal_check_interval)

	app.state.storage = storage
	app.state.manager = manager
	app.state.scheduler = scheduler

	_log.info(
		"CertGate starting acme_uri=%s domains=%d renewal_period=%s",
		cfg.acme_directory_url, len(cfg.managed_domains), cfg.renewal_period,
	)
	if cfg.managed_domains:
		await scheduler.start()
	else:
		_log.info("No CERTGATE_DOMAINS configured, renewal loop disabled")

	try:
		yield
	finally:
		await scheduler.stop_graceful()
		_log.info("CertGate shutdown complete")


def create_app(cfg: Config | None = None) -> FastAPI:
	"""Application factory for CertGate."""
	cfg = cfg or load_config()
	_setup_logging(cfg.log_level)

	app = FastAPI(
		title="CertGate",
		description="ACME certificate lifecycle manager",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)
	app.state.cfg = cfg

	# Rate limiting
	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

	# ─── ROUTES ──────────────────────────────────────────────
	app.include_router(acme_api.challenge_router)
	app.include_router(acme_api.router, prefix="/api")

	return app
