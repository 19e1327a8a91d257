"""Logging filter that stamps records with the current request id."""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` to every record.

    Records emitted outside a request (management commands, startup) get
    ``"-"`` so ``%(request_id)s`` always resolves in the formatter. A value
    already set through ``extra=`` is left alone.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
