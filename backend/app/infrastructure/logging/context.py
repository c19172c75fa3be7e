from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
# Set by workers to the inbound event, domain event or dispatcher run being handled.
_correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_request_id(request_id: str | None) -> object:
    return _request_id_ctx.set(request_id)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def reset_request_id(token: object) -> None:
    _request_id_ctx.reset(token)


def set_correlation_id(correlation_id: str | None) -> object:
    return _correlation_id_ctx.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id_ctx.get()


def reset_correlation_id(token: object) -> None:
    _correlation_id_ctx.reset(token)
