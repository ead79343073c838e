"""Application errors, their mapping to gRPC status codes, and the build version."""

from __future__ import annotations

import json
from enum import IntEnum
from http import HTTPStatus
from typing import Any

SERVICE_NAME = "call_center"
CURRENT_VERSION = "24.02.0"
BUILD_NUMBER = "0"


class AppError(Exception):
    """An error raised by the service, carrying an HTTP-style status code."""

    def __init__(
        self,
        where: str,
        error_id: str,
        params: dict[str, Any] | None = None,
        details: str = "",
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
    ) -> None:
        self.where = where
        self.error_id = error_id
        self.params = dict(params or {})
        self.details = details
        self.status_code = int(status_code)
        super().__init__(str(self))

    def __str__(self) -> str:
        text = f"{self.where}: {self.error_id}"
        if self.details:
            text += f", {self.details}"
        return text

    def to_json(self) -> str:
        """Serialise the error as a JSON object."""
        return json.dumps(
            {
                "id": self.error_id,
                "where": self.where,
                "detail": self.details,
                "status_code": self.status_code,
                "params": self.params,
            }
        )


class GrpcCode(IntEnum):
    """The gRPC status codes the service reports."""

    OK = 0
    INVALID_ARGUMENT = 3
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    INTERNAL = 13
    UNAUTHENTICATED = 16


class GrpcStatusError(Exception):
    """An error ready to be returned to a gRPC caller."""

    def __init__(self, code: GrpcCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code.name}: {message}")


_HTTP_TO_GRPC = {
    HTTPStatus.BAD_REQUEST: GrpcCode.INVALID_ARGUMENT,
    HTTPStatus.ACCEPTED: GrpcCode.RESOURCE_EXHAUSTED,
    HTTPStatus.UNAUTHORIZED: GrpcCode.UNAUTHENTICATED,
    HTTPStatus.FORBIDDEN: GrpcCode.PERMISSION_DENIED,
}


def http_code_to_grpc(code: int) -> GrpcCode:
    """Map an HTTP status code to the gRPC code reported for it."""
    return _HTTP_TO_GRPC.get(code, GrpcCode.INTERNAL)


def to_grpc_status(err: BaseException) -> BaseException:
    """Convert an AppError into a GrpcStatusError; other errors pass unchanged."""
    if isinstance(err, AppError):
        return GrpcStatusError(http_code_to_grpc(err.status_code), err.to_json())
    return err


def version() -> str:
    """Return the server build version string."""
    return f"{CURRENT_VERSION} [build:{BUILD_NUMBER}]"