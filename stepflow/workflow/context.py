"""Runtime state passed explicitly to every executor and evaluator call.

RuntimeState is the default context holder: run data, variables and an
optional live automation session. Hosts may supply their own object with the
same accessors. The core never persists it.

StagedState is a transactional view over a RuntimeState. Each executor
attempt writes into its own view; the dispatcher commits the view only once
the step's final outcome is known, so writes from failed or abandoned
attempts never reach the shared state.
"""

import copy
from typing import Any, Callable, Optional, Protocol, runtime_checkable

# Base values a staged view copies on first read
_COPY_ON_READ = (dict, list, set)


@runtime_checkable
class AutomationSession(Protocol):
    """Subset of a browser automation page the core relies on."""

    async def evaluate(self, expression: str) -> Any: ...

    async def wait_for_selector(self, selector: str, *, state: str, timeout: float) -> Any: ...


class RuntimeState:
    """Run data, variables and session handle for exactly one run."""

    def __init__(
        self,
        data: Optional[dict[str, Any]] = None,
        variables: Optional[dict[str, Any]] = None,
        session: Any = None,
    ):
        self._data: dict[str, Any] = dict(data or {})
        self._variables: dict[str, Any] = dict(variables or {})
        self._session = session
        self._tracer: Optional[Callable[[str], None]] = None

    def get_data(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set_data(self, key: str, value: Any) -> None:
        self._data[key] = value

    def has_variable(self, key: str) -> bool:
        return key in self._variables

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self._variables.get(key, default)

    def set_variable(self, key: str, value: Any) -> None:
        self._variables[key] = value

    def all_data(self) -> dict[str, Any]:
        return dict(self._data)

    def all_variables(self) -> dict[str, Any]:
        return dict(self._variables)

    def get_session(self) -> Any:
        return self._session

    def set_session(self, session: Any) -> None:
        self._session = session

    def set_tracer(self, tracer: Optional[Callable[[str], None]]) -> None:
        """Route trace() lines into the run's per-node trace log."""
        self._tracer = tracer

    def trace(self, message: str) -> None:
        if self._tracer is not None:
            self._tracer(message)

    def stage(self) -> "StagedState":
        return StagedState(self)


class StagedState:
    """Write-buffering view over a RuntimeState.

    Writes stay local until commit(). Containers read from the base state
    (dicts, lists, sets) are copied into the view on first read, so in-place
    edits behave like writes: commit() applies them and discard() drops
    them. The session handle is shared: it is not run data.
    """

    def __init__(self, base):
        self._base = base
        self._data: dict[str, Any] = {}
        self._variables: dict[str, Any] = {}
        self._data_reads: dict[str, Any] = {}
        self._variable_reads: dict[str, Any] = {}
        self.committed = False

    def get_data(self, key: str, default: Any = None) -> Any:
        if key in self._data:
            return self._data[key]
        value = self._read(self._data_reads, key, self._base.get_data)
        return default if value is None else value

    def set_data(self, key: str, value: Any) -> None:
        self._data_reads.pop(key, None)
        self._data[key] = value

    def has_variable(self, key: str) -> bool:
        if key in self._variables:
            return True
        has = getattr(self._base, "has_variable", None)
        if has is not None:
            return has(key)
        return self._base.get_variable(key) is not None

    def get_variable(self, key: str, default: Any = None) -> Any:
        if key in self._variables:
            return self._variables[key]
        value = self._read(self._variable_reads, key, self._base.get_variable)
        return default if value is None else value

    def set_variable(self, key: str, value: Any) -> None:
        self._variable_reads.pop(key, None)
        self._variables[key] = value

    @staticmethod
    def _read(reads: dict[str, Any], key: str, base_get: Callable[[str], Any]) -> Any:
        if key in reads:
            return reads[key]
        value = base_get(key)
        if isinstance(value, _COPY_ON_READ):
            try:
                value = copy.deepcopy(value)
            except (TypeError, copy.Error):
                # Containers holding uncopyable handles stay shared
                return value
            reads[key] = value
        return value

    def all_data(self) -> dict[str, Any]:
        keys = {**self._base.all_data(), **self._data}
        return {key: self.get_data(key) for key in keys}

    def all_variables(self) -> dict[str, Any]:
        keys = {**self._base.all_variables(), **self._variables}
        return {key: self.get_variable(key) for key in keys}

    def get_session(self) -> Any:
        return self._base.get_session()

    def trace(self, message: str) -> None:
        trace = getattr(self._base, "trace", None)
        if trace is not None:
            trace(message)

    def stage(self) -> "StagedState":
        return StagedState(self)

    @property
    def has_writes(self) -> bool:
        return bool(self._data or self._variables or self._changed_reads())

    @property
    def pending_writes(self) -> dict[str, dict[str, Any]]:
        data_edits, variable_edits = self._changed_reads()
        return {
            "data": {**data_edits, **self._data},
            "variables": {**variable_edits, **self._variables},
        }

    def _changed_reads(self) -> tuple[dict[str, Any], dict[str, Any]]:
        data = {k: v for k, v in self._data_reads.items() if v != self._base.get_data(k)}
        variables = {k: v for k, v in self._variable_reads.items() if v != self._base.get_variable(k)}
        return data, variables

    def commit(self) -> bool:
        """Apply buffered writes and in-place edits to the base state.

        Returns True if anything was written.
        """
        if self.committed:
            return False
        writes = self.pending_writes
        for key, value in writes["data"].items():
            self._base.set_data(key, value)
        for key, value in writes["variables"].items():
            self._base.set_variable(key, value)
        self.committed = True
        return bool(writes["data"] or writes["variables"])

    def discard(self) -> None:
        self._data.clear()
        self._variables.clear()
        self._data_reads.clear()
        self._variable_reads.clear()
