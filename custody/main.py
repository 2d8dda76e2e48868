"""CLI entrypoint for the identity and custody service."""
from __future__ import annotations

import logging
import sys

from .api import create_app, run_api
from .config import load_settings
from .engine import IdentityCustodyEngine
from .errors import ConfigError

CONFIG_ERROR_EXIT_CODE = 2


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def main() -> int:
    configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting identity and custody service")
    try:
        settings = load_settings()
        engine = IdentityCustodyEngine.from_settings(settings)
    except ConfigError as exc:
        logger.critical("Refusing to start: %s", exc)
        return CONFIG_ERROR_EXIT_CODE

    logger.info(
        "Custody engine ready (default_chains=%s, single_use_challenges=%s)",
        ",".join(settings.default_chains),
        settings.challenge_single_use,
    )
    app = create_app(engine, settings)
    run_api(app, settings)
    return 0


if __name__ == "__main__":
    sys.exit(main())
