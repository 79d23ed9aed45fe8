import logging
from contextvars import ContextVar
from .config import settings

# set per request by the HTTP middleware, "-" for background tasks
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

def _install_request_id_factory():
    base_factory = logging.getLogRecordFactory()
    if getattr(base_factory, "_adds_request_id", False):
        return

    def factory(*args, **kwargs):
        record = base_factory(*args, **kwargs)
        record.request_id = request_id_ctx.get()
        return record

    factory._adds_request_id = True
    logging.setLogRecordFactory(factory)

def setup_logging():
    _install_request_id_factory()
    logging.basicConfig(
        level=logging.DEBUG if settings.ENV == "local" else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s",
    )
    # boto and Pillow are chatty at DEBUG (signing steps, PNG chunk dumps)
    for noisy in ("botocore", "boto3", "urllib3", "PIL"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
