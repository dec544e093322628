#!/usr/bin/env python3
"""
Ledger Engine Entry Point

Starts the FastAPI server with the ledger engine, configured from LEDGER_*
environment variables.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from ledger_engine.api import run_server
from ledger_engine.config import get_config
from ledger_engine.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info("Starting Ledger Engine on %s:%s (storage: %s, default tenant: %s)",
                config.api_host, config.api_port, config.storage_backend, config.default_tenant)

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down Ledger Engine")
