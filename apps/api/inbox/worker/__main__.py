from __future__ import annotations

import logging

from inbox.core.config import get_settings
from inbox.core.deps import channel_client_factory
from inbox.core.http import build_http_client
from inbox.core.otel import setup_worker_otel
from inbox.services.replies import HttpReplyGenerator
from inbox.worker.runner import WorkerConfig, run_worker_forever


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    settings = get_settings()
    setup_worker_otel(settings=settings)
    with build_http_client() as http_client:
        run_worker_forever(
            WorkerConfig(batch_size=settings.RUN_OUTBOUND_MAX_BATCH),
            reply_generator=HttpReplyGenerator(
                http_client,
                url=settings.REPLY_GENERATOR_URL,
                token=settings.REPLY_GENERATOR_TOKEN,
            ),
            client_for=channel_client_factory(http_client=http_client, settings=settings),
        )


if __name__ == "__main__":
    main()
