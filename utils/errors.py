# /utils/errors.py
# Application errors carry an HTTP status; main.py turns them into {"status": "error", "message": ...}.
from dataclasses import dataclass


@dataclass
class AppError(Exception):
    status_code: int
    message: str

    def __str__(self) -> str:
        return f"{self.status_code}: {self.message}"


def bad_request(msg: str) -> AppError:
    return AppError(400, msg)


def unauthorized(msg: str) -> AppError:
    return AppError(401, msg)


def forbidden(msg: str) -> AppError:
    return AppError(403, msg)


def not_found(msg: str) -> AppError:
    return AppError(404, msg)


def rate_limited(msg: str) -> AppError:
    return AppError(429, msg)


def not_implemented(msg: str) -> AppError:
    return AppError(501, msg)


def upstream_error(msg: str) -> AppError:
    return AppError(502, msg)
