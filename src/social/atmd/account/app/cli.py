import json
import logging
from logging.config import dictConfig
import os

from aiohttp import web


def configure_logging():
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        level=logging.DEBUG if os.getenv("DEBUG", "").lower() == "true" else logging.INFO,
    )


def invoke():
    configure_logging()

    from social.atmd.account.app.server import start_web_server
    from social.atmd.account.app.config import Settings

    settings = Settings()  # type: ignore
    web.run_app(start_web_server(settings), port=settings.http_port)


if __name__ == "__main__":
    invoke()
