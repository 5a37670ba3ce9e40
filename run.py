#!/usr/bin/env python3
"""
Collections Engine Entry Point

Loads configuration and the assignment policy, then starts the FastAPI
server. An invalid rule set stops start-up.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from collections_core.api import run_server
from collections_core.config import get_config
from collections_core.errors import RuleSetValidationError
from collections_core.logging_config import setup_logging
from collections_core.seed import seed_demo_data
from collections_core.system import CollectionsSystem


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    try:
        system = CollectionsSystem(config)
    except RuleSetValidationError as e:
        logger.critical(f"Refusing to start with an invalid rule set: {e}")
        sys.exit(1)

    if config.seed_demo_data:
        seed_demo_data(system)

    logger.info(f"API available at http://{config.api_host}:{config.api_port} (docs at /docs)")

    try:
        run_server(system, host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down collections engine")
    finally:
        system.close()
