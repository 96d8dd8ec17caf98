"""
Error taxonomy shared by the engine, the HTTP server and the shell.

Batch operations never raise these for a single failing item; they are
raised by single-target operations (control one workload, read or write one
config file) and by the gateway itself.
"""

from enum import Enum
from typing import Dict, Optional


class ManagerError(Exception):
    """Base class for every error the engine raises on purpose."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.details: Dict = {}

    def to_dict(self) -> dict:
        body = {"error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(ManagerError):
    """Identifier (workload, service, script) unknown to the catalog."""

    kind = "not_found"


class ConfigIOError(ManagerError):
    """A configuration file could not be read or written."""

    kind = "io_error"


class AdvisorUnavailable(ManagerError):
    """The suggestion advisor could not be reached or gave no usable answer."""

    kind = "advisor_unavailable"


class GatewayErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    COMMAND_FAILED = "command_failed"


class GatewayError(ManagerError):
    """A hypervisor call failed.

    `output` holds whatever stdout/stderr was captured, including the partial
    output of a command that timed out.
    """

    def __init__(
        self,
        kind: GatewayErrorKind,
        message: str,
        exit_code: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message)
        self.error_kind = kind
        self.exit_code = exit_code
        self.output = output

    @property
    def kind(self) -> str:  # type: ignore[override]
        return self.error_kind.value

    @classmethod
    def timeout(cls, what: str, seconds: float, output: str = "") -> "GatewayError":
        return cls(GatewayErrorKind.TIMEOUT, f"{what} timed out after {seconds:g}s", output=output)

    @classmethod
    def command_failed(cls, what: str, exit_code: int, output: str = "") -> "GatewayError":
        detail = output.strip().splitlines()[-1] if output.strip() else "no output"
        return cls(
            GatewayErrorKind.COMMAND_FAILED,
            f"{what} exited with {exit_code}: {detail}",
            exit_code=exit_code,
            output=output,
        )

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.exit_code is not None:
            body["exit_code"] = self.exit_code
        return body
