"""Result codes and the exception hierarchy.

Every exception raised by pytaxis carries a ``code`` from :class:`ResultCode`,
so callers that speak in result codes (resource-layer adapters, task bodies)
and callers that speak in exceptions see the same taxonomy.

Design: Dependency-Free Leaf Module
    Models, storage and executor all import from here; this module imports
    nothing from the package.
"""

from __future__ import annotations

from enum import IntEnum


class ResultCode(IntEnum):
    """Standard result codes shared with the resource access layer."""

    SUCCESS = 0
    ERROR = -1
    INVALID_HANDLE = -2
    PERMISSION_DENIED = -3
    NOT_FOUND = -4
    ALREADY_EXISTS = -5
    TIMEOUT = -6
    INVALID_PARAM = -7
    OUT_OF_MEMORY = -8
    NOT_SUPPORTED = -9

    @property
    def is_success(self) -> bool:
        return self is ResultCode.SUCCESS

    def __str__(self) -> str:
        return self.name


class TaxisError(Exception):
    """Base class for all pytaxis errors.

    Errors are values: each subclass pins a result code so the error can be
    recorded in a TaskResult or returned across a result-code boundary.
    """

    code: ResultCode = ResultCode.ERROR

    def __init__(self, message: str = "", code: ResultCode | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class NotFoundError(TaxisError):
    """Unknown workflow, execution, task or template."""

    code = ResultCode.NOT_FOUND


class AlreadyExistsError(TaxisError):
    """Duplicate workflow, task or template name."""

    code = ResultCode.ALREADY_EXISTS


class InvalidParamError(TaxisError):
    """Malformed input: bad task graph, bad argument, bad document."""

    code = ResultCode.INVALID_PARAM


class InvalidStateError(InvalidParamError):
    """A control call asked for a transition the execution cannot make."""

    def __init__(self, execution_id: str, current: object, requested: str):
        super().__init__(
            f"Execution {execution_id} cannot {requested} while {current}"
        )
        self.execution_id = execution_id
        self.current = current
        self.requested = requested


class CycleError(InvalidParamError):
    """The dependency relation contains a cycle.

    Attributes:
        cycle: Task names along the cycle, first name repeated at the end
    """

    def __init__(self, cycle: list[str]):
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnknownDependencyError(InvalidParamError):
    """A task depends on a name that is not a task of the same workflow."""

    def __init__(self, task_name: str, missing: str):
        super().__init__(f"Task '{task_name}' depends on unknown task '{missing}'")
        self.task_name = task_name
        self.missing = missing


class TaskTimeoutError(TaxisError):
    """A task attempt exceeded its deadline."""

    code = ResultCode.TIMEOUT


class PermissionDeniedError(TaxisError):
    """Collaborator layer refused access (propagated through a task outcome)."""

    code = ResultCode.PERMISSION_DENIED


class NotSupportedError(TaxisError):
    """Collaborator layer does not support the operation."""

    code = ResultCode.NOT_SUPPORTED


class TaskError(TaxisError):
    """Raised by task executables to fail an attempt with a specific code.

    Example:
        class SensorOffline(TaskError):
            pass

        # Transient - the task is retried while its budget lasts
        raise TaskError("sensor busy", code=ResultCode.TIMEOUT)

        # Permanent - retries stop immediately
        raise TaskError("no such actuator", code=ResultCode.NOT_FOUND, retryable=False)
    """

    def __init__(
        self,
        message: str = "",
        code: ResultCode | None = None,
        retryable: bool = True,
    ):
        super().__init__(message, code)
        self._retryable = retryable

    def is_retryable(self) -> bool:
        """Return False to stop retrying regardless of the remaining budget."""
        return self._retryable


class TaskCancelledError(TaxisError):
    """Raised inside a task body that observed cooperative cancellation."""


_CODE_TO_ERROR: dict[ResultCode, type[TaxisError]] = {
    ResultCode.NOT_FOUND: NotFoundError,
    ResultCode.ALREADY_EXISTS: AlreadyExistsError,
    ResultCode.INVALID_PARAM: InvalidParamError,
    ResultCode.TIMEOUT: TaskTimeoutError,
    ResultCode.PERMISSION_DENIED: PermissionDeniedError,
    ResultCode.NOT_SUPPORTED: NotSupportedError,
}


def error_for_code(code: ResultCode, message: str = "") -> TaxisError:
    """Build the exception matching a result code.

    Raises:
        ValueError: If code is SUCCESS (success is not an error)
    """
    if code is ResultCode.SUCCESS:
        raise ValueError("ResultCode.SUCCESS does not describe an error")
    error_cls = _CODE_TO_ERROR.get(code)
    if error_cls is None:
        return TaxisError(message or str(code), code=code)
    return error_cls(message or str(code))
