"""Read-only, per-request data handed to tool handlers but never to the oracle."""

from types import MappingProxyType
from typing import (
    Any,
    Iterable,
    Iterator,
    Mapping,
)

from toolloop.core.errors import MissingExecutionContext


class ExecutionContext(Mapping[str, Any]):
    """
    Immutable mapping built by the host once per request.

    The same instance is passed by reference to every tool invocation of that request and is
    discarded afterwards.  Nothing in the loop serialises it into a message; values only reach the
    oracle when a handler chooses to return them.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None, **values: Any) -> None:
        merged = dict(data or {})
        merged.update(values)
        self._data: Mapping[str, Any] = MappingProxyType(merged)

    def __getitem__(self, key: str) -> Any:
        try:
            return self._data[key]
        except KeyError:
            raise MissingExecutionContext([key]) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def ensure(self, keys: Iterable[str]) -> None:
        """Raise ``MissingExecutionContext`` listing every key in *keys* that is absent."""
        missing = [key for key in keys if key not in self._data]
        if missing:
            raise MissingExecutionContext(missing)

    def redact(self, text: str, placeholder: str = "[redacted]") -> str:
        """Return *text* with the string form of every context value replaced by *placeholder*."""
        secrets = {str(value) for value in self._data.values()}
        # Longest values first; shorter ones may be substrings of them.
        for secret in sorted(secrets, key=len, reverse=True):
            if secret:
                text = text.replace(secret, placeholder)
        return text

    def __repr__(self) -> str:
        # Values stay out of logs and tracebacks.
        return f"ExecutionContext(keys={sorted(self._data)})"


def as_context(value: "ExecutionContext | Mapping[str, Any] | None") -> ExecutionContext:
    """Wrap a plain mapping (or nothing) into an ``ExecutionContext``."""
    if isinstance(value, ExecutionContext):
        return value
    return ExecutionContext(value or {})
