import logging
from app.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

def configure_logging(level: str = None):
    """Configure root logging once at startup."""
    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=LOG_FORMAT)
    # httpx logs every RPC request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
