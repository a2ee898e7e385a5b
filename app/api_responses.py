import math
from typing import Any, Optional


def success_response(data: Any, message: Optional[str] = None) -> dict:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def paginated_response(data: list, pagination: dict, message: Optional[str] = None) -> dict:
    body = {"success": True, "data": data, "pagination": pagination}
    if message:
        body["message"] = message
    return body


def error_body(message: str, code: str, status_code: int) -> dict:
    return {
        "success": False,
        "error": {"message": message, "code": code, "statusCode": status_code},
    }


def calculate_pagination(page: int, limit: int, total: int) -> dict:
    pages = math.ceil(total / limit) if limit else 0
    return {
        "page": max(1, page),
        "limit": max(1, limit),
        "total": total,
        "pages": max(1, pages),
    }
