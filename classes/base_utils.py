# classes/base_utils.py


import math
import re
from datetime import datetime, timezone

from classes.settings import logger


class ApiError(Exception):
    """
    Raised by handlers to end a request with a JSON error envelope:
        {"error": message, "code": code}
    """

    def __init__(self, status: int, message: str, code: str | None = None, extra: dict | None = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.code = code or _default_code(status)
        self.extra = extra or {}

    def to_body(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.extra)
        return body


def _default_code(status: int) -> str:
    return {
        400: "bad_request",
        401: "auth_required",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        429: "rate_limited",
        502: "upstream_error",
    }.get(status, "internal_error")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_email(email: str | None) -> str:
    if not email or "@" not in email:
        return "unknown"
    local, domain = email.split("@", 1)
    return f"{local[:3]}***@{domain}"


def parse_int(value, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed or default


def paginate(page, limit, *, default_limit: int = 20, max_limit: int = 50) -> tuple[int, int, int]:
    """
    Clamp raw page/limit query values and return (page, limit, offset).
    """
    page = max(1, parse_int(page, 1))
    limit = min(max_limit, max(1, parse_int(limit, default_limit)))
    return page, limit, (page - 1) * limit


def pagination_block(page: int, limit: int, total: int) -> dict:
    total = total or 0
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNextPage": page < total_pages,
        "hasPreviousPage": page > 1,
    }


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class BaseUtils():
    SessionFactory: None

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None, end_value=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            start = f"\033[{color_code}m"
            end = "\033[0m"
            text = f"{start}{text}{end}"
        logger.info(str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code or '')

    # -----------------------
    # DB plumbing
    # -----------------------

    def _session(self):
        return self.SessionFactory()
