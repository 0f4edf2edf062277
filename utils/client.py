from flask import request


def client_ip() -> str:
    # first hop of X-Forwarded-For is client supplied, so treat it as a hint only
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.remote_addr or "unknown"


def user_agent() -> str:
    return (request.headers.get("User-Agent") or "")[:255]
