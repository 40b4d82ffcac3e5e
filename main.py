#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# CertGate - ACME certificate lifecycle manager
# Local entry point
#

import os

import uvicorn
from certgate.main import DATE_FORMAT, LOG_FORMAT
from certgate.utils.config import load_config

# Uvicorn logging dict-config that reuses the same format as the app
_UVICORN_LOG_CONFIG: dict = {
	"version": 1,
	"disable_existing_loggers": False,
	"formatters": {
		"default": {
			"format": LOG_FORMAT,
			"datefmt": DATE_FORMAT,
		},
		"access": {
			"format": LOG_FORMAT,
			"datefmt": DATE_FORMAT,
		},
	},
	"handlers": {
		"default": {
			"formatter": "default",
			"class": "logging.StreamHandler",
			"stream": "ext://sys.stderr",
		},
		"access": {
			"formatter": "access",
			"class": "logging.StreamHandler",
			"stream": "ext://sys.stdout",
		},
	},
	"loggers": {
		"uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
		"uvicorn.error": {"level": "INFO"},
		"uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
	},
}

if __name__ == "__main__":
	cfg = load_config()

	# Set levels in the uvicorn log-config to match the app
	_level = cfg.log_level.upper()
	for _logger in _UVICORN_LOG_CONFIG["loggers"].values():
		_logger["level"] = _level

	uvicorn.run(
		"certgate:create_app",
		host=cfg.http_host,
		port=cfg.http_port,
		reload=os.environ.get("CERTGATE_DEV_RELOAD", "").lower() in ("1", "true", "yes"),
		factory=True,
		log_config=_UVICORN_LOG_CONFIG,
	)
