import logging

from src.settings import settings

FORMATO = "[DFE] %(asctime)s %(levelname)s %(name)s %(message)s"


def configurar_logging() -> logging.Logger:
    """Handler único no logger ``dfe``; todos os ``dfe.*`` propagam para ele."""
    logger = logging.getLogger("dfe")
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter(FORMATO))
        logger.addHandler(h)
    logger.setLevel(logging.DEBUG if settings.DFE_DEBUG else settings.LOG_LEVEL.upper())
    return logger
