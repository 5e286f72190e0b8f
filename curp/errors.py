"""Error types raised by the protocol client and server."""

from __future__ import annotations


class RpcError(Exception):
    """An I/O failure met during rpc communication."""

    def __init__(self, cause: OSError | None = None) -> None:
        super().__init__(cause)
        self.cause = cause

    def __str__(self) -> str:
        return "meet io related error"


class ServerError(Exception):
    """Server side error; raised directly for I/O failures."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return "meet io related error"


class RpcServiceError(ServerError):
    """The rpc service reported an error."""

    def __str__(self) -> str:
        return "rpc service error"


class ParsingError(ServerError):
    """A value could not be parsed."""

    def __str__(self) -> str:
        return f"parsing error: {self.detail}"


class ProposeError(Exception):
    """An error met during the propose phase.

    Instances compare equal when they are of the same kind and carry the
    same message, and they survive serialization.
    """

    _template = "{}"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self._template.format(self.message)

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.args == other.args  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class KeyConflictError(ProposeError):
    """The command conflicts with keys in the speculative pool."""

    _template = "key conflict error"


class DuplicatedError(ProposeError):
    """The command has already been proposed before."""

    _template = "duplicated, the cmd might have already been proposed"


class ExecutionError(ProposeError):
    """The command failed to execute."""

    _template = "command execution error {}"


class SyncedError(ProposeError):
    """Syncing the command to the followers failed."""

    _template = "syncing error {}"


class ProposeRpcError(ProposeError):
    """The rpc carrying the proposal failed."""

    _template = "rpc error: {}"


class RpcStatusError(ProposeError):
    """The rpc returned a failure status."""

    _template = "rpc status: {}"


class EncodeError(ProposeError):
    """A value could not be encoded or decoded."""

    _template = "encode error: {}"


class ProtocolError(ProposeError):
    """The peers did not follow the protocol."""

    _template = "protocol error {}"