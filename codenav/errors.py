"""
Error taxonomy for the navigation tools.

Every failure a query can hit is a ToolError carrying a stable code, a short
message and optional recovery hints. The bulk executor turns these into
per-query error results:
- validation errors: rejected before any I/O
- path errors: outside allowed roots, missing, wrong entry type
- execution errors: binary missing, non-zero exit, timeout
- protocol errors: symbol not found, language server failures
"""

from typing import List, Optional


class ToolError(Exception):
    """Base class for errors that are reported back as a query result."""

    code = "toolExecutionFailed"

    def __init__(self, message: str, hints: Optional[List[str]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hints = list(hints or [])
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"errorCode": self.code, "error": self.message}


class ValidationError(ToolError):
    code = "validationFailed"


class BatchValidationError(ValidationError):
    """Raised to the caller when a batch is empty or exceeds its cap."""

    code = "batchValidationFailed"


class PathValidationError(ToolError):
    code = "pathValidationFailed"


class FileAccessError(ToolError):
    code = "fileAccessFailed"


class FileNotFoundInWorkspace(FileAccessError):
    code = "file_not_found"


class FileTooLargeError(ToolError):
    code = "fileTooLarge"


class PaginationRequiredError(ToolError):
    code = "paginationRequired"


class CommandError(ToolError):
    code = "commandExecutionFailed"


class BinaryNotFoundError(CommandError):
    pass


class CommandFailedError(CommandError):
    def __init__(self, message: str, returncode: Optional[int] = None, hints: Optional[List[str]] = None):
        super().__init__(message, hints=hints)
        self.returncode = returncode


class CommandTimeoutError(CommandError):
    code = "commandTimeout"

    def __init__(self, command: str, timeout: float):
        super().__init__(f"{command} timed out after {timeout:g}s.")
        self.command = command
        self.timeout = timeout


class SymbolNotFoundError(ToolError):
    """Symbol absent within the search radius around the line hint."""

    code = "symbol_not_found"

    def __init__(self, symbol_name: str, line_hint: int, reason: str, search_radius: int):
        super().__init__(
            f"Symbol '{symbol_name}' not found near line {line_hint}: {reason}"
        )
        self.symbol_name = symbol_name
        self.line_hint = line_hint
        self.reason = reason
        self.search_radius = search_radius

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "symbolName": self.symbol_name,
            "lineHint": self.line_hint,
            "searchRadius": self.search_radius,
        })
        return data


class LspUnavailableError(ToolError):
    code = "lspUnavailable"


class LspProtocolError(ToolError):
    code = "lspRequestFailed"

    def __init__(self, message: str, rpc_code: Optional[int] = None, data=None):
        super().__init__(message)
        self.rpc_code = rpc_code
        self.data = data


class ServerConfigError(ToolError):
    code = "serverConfigInvalid"


class QueryCancelledError(ToolError):
    code = "queryCancelled"
