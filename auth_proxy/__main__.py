import logging

import uvicorn

from auth_proxy.config import ConfigurationError, load_config
from auth_proxy.server import create_app
from auth_proxy.telemetry import configure_tracing

logger = logging.getLogger("uvicorn.error")


def main() -> None:
    # Until uvicorn installs its handlers.
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:     %(message)s")
    try:
        config = load_config()
    except ConfigurationError as e:
        logger.error(f"[Config] {e.message}")
        raise SystemExit(1)

    config.log_summary()
    configure_tracing(config)
    logger.info(
        f"[Startup] Log in at http://localhost:{config.port}/planka-login?email=user@example.com"
    )
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
