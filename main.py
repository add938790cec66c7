import locale
import sys

from app import build_services, create_app
from config import AppConfig, load_config
from errors import ConfigurationError
from logger import setup_logging, get_logger, start_metrics_server


def setup_environment() -> AppConfig:
    """Load configuration, configure logging and start the metrics server."""
    config = load_config()
    config.cache.cache_file.parent.mkdir(parents=True, exist_ok=True)

    setup_logging(config.log_level)
    logger = get_logger(__name__)
    try:
        # Channel names sort with the deployment locale's collation
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as e:
        logger.warning("System collation locale unavailable, sorting by code point", error=str(e))
    logger.info("Application starting",
                llm_provider=config.api.llm_provider,
                cache_file=str(config.cache.cache_file),
                cache_ttl=config.cache.ttl)

    start_metrics_server(config.metrics_port)
    return config


def main() -> None:
    """Main application entry point."""
    try:
        config = setup_environment()
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        for step in e.details.get("steps", []):
            print(f"  - {step}", file=sys.stderr)
        sys.exit(1)

    logger = get_logger(__name__)
    services = build_services(config)
    app = create_app(services)
    try:
        app.run(host=config.host, port=config.port, threaded=True)
    finally:
        services.cache.close()
        logger.info("Application stopped")


if __name__ == "__main__":
    main()
