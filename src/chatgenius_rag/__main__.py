"""
Entry point: python -m chatgenius_rag

Builds the services, then serves the API with uvicorn.
"""

import uvicorn

from .api import create_app
from .config import load_settings
from .container import build_container
from .utils.logger import setup_logging, get_logger


def main() -> None:
    setup_logging()
    logger = get_logger("chatgenius_rag")

    settings = load_settings()
    container = build_container(settings)

    logger.info("=" * 50)
    logger.info("ChatGenius RAG service")
    logger.info("=" * 50)
    logger.info(f"Message source: {settings.message_source}")
    logger.info(f"Embedding model: {settings.embedding_model} ({settings.embedding_dimensions}d)")
    logger.info(f"Answer model: {settings.llm_model}")
    logger.info(f"Re-embedding every {settings.reembed_interval_minutes} min")
    if not settings.api_tokens:
        logger.warning("RAG_API_TOKENS is empty: every authenticated endpoint will return 401")

    uvicorn.run(
        create_app(container),
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
