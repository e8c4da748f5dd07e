#!/usr/bin/env python3
"""
Repayment Engine Entry Point

Starts the FastAPI server with host, port and logging taken from the
REPAYMENT_* environment configuration.
"""

import sys

from repayment_engine.api import run_server
from repayment_engine.config import get_config
from repayment_engine.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("Starting Repayment Engine...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, log_level=config.log_level)
    except KeyboardInterrupt:
        print("\nShutting down Repayment Engine...")
    except Exception as e:
        logger.exception("Error starting server")
        print(f"Error starting server: {e}")
        sys.exit(1)
