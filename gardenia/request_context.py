from contextvars import ContextVar

request_id_ctx: ContextVar[str | None] = ContextVar("request_id_ctx", default=None)
