#!/usr/bin/env python3
"""
Diagnostic Logger for the AZ failover controller

Configures process-wide logging and records the warnings and errors of a
single drill, with context, so they can be returned alongside its result.
"""

import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger("azfailover.diagnostic")


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = None):
    """Install stdout (and optionally file) handlers on the root logger."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # boto request logging drowns out the drill progress
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class DiagnosticLogger:
    """Collects errors and warnings raised during one drill."""

    def __init__(self, name: str = "azfailover.diagnostic"):
        self.start_time = datetime.now()
        self.errors = []
        self.warnings = []
        self.logger = logging.getLogger(name)

    def log_error(self, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log an error with context."""
        self.errors.append({
            'timestamp': datetime.now().isoformat(),
            'error': error_msg,
            'context': context or {}
        })
        self.logger.error(f"ERROR: {error_msg}")
        if context:
            self.logger.error(f"Context: {json.dumps(context, default=str)}")

    def log_warning(self, warning_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log a warning with context."""
        self.warnings.append({
            'timestamp': datetime.now().isoformat(),
            'warning': warning_msg,
            'context': context or {}
        })
        self.logger.warning(f"WARNING: {warning_msg}")
        if context:
            self.logger.warning(f"Context: {json.dumps(context, default=str)}")

    def log_success(self, success_msg: str):
        self.logger.info(f"SUCCESS: {success_msg}")

    def generate_report(self) -> Dict[str, Any]:
        return {
            'start_time': self.start_time.isoformat(),
            'end_time': datetime.now().isoformat(),
            'errors': self.errors,
            'warnings': self.warnings,
            'total_errors': len(self.errors),
            'total_warnings': len(self.warnings)
        }
