import uvicorn
from dotenv import load_dotenv
from loguru import logger

from chat_bridge.app_config import load_json_config, parse_app_config, resolve_runtime_env
from chat_bridge.bootstrap import build_runtime
from chat_bridge.logging_config import setup_logging
from chat_bridge.server import create_app


def main() -> None:
    load_dotenv()

    app_config = parse_app_config(load_json_config())
    log_descriptions = setup_logging(level=app_config.log_level, consumers=app_config.log_consumers)
    for description in log_descriptions:
        logger.info(f"Logging: {description}")

    runtime = build_runtime(app_config, resolve_runtime_env())
    if not runtime.providers:
        logger.warning("No provider API keys configured: every ask and edit request will be rejected")

    uvicorn.run(
        create_app(runtime),
        host=app_config.host,
        port=app_config.port,
        log_level=app_config.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
