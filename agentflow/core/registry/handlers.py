# agentflow/core/registry/handlers.py
from __future__ import annotations

from typing import Dict, Generic, Iterator, MutableMapping, TypeVar

from agentflow.core.errors import ErrorCode, RegistryError

T = TypeVar('T')


class NotRegistered(RegistryError, KeyError):
    """Raised when a key is not present in a registry.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, key: str, kind: str = 'entry') -> None:
        RegistryError.__init__(
            self,
            message=f"{kind} '{key}' not registered",
            code=ErrorCode.NOT_REGISTERED,
            notes=[f"requested {kind}: '{key}'"],
            help_text=f'register the {kind} before starting workers or runs',
        )
        self.key = key

    def __str__(self) -> str:
        return RegistryError.__str__(self)


class DuplicateRegistrationError(RegistryError):
    """Raised when a key is registered twice."""

    def __init__(self, key: str, kind: str = 'entry') -> None:
        super().__init__(
            message=f"duplicate {kind} '{key}'",
            code=ErrorCode.DUPLICATE_REGISTRATION,
            help_text=f'each {kind} key must be unique; use replace=True to swap it',
        )
        self.key = key


class Registry(MutableMapping[str, T], Generic[T]):
    """Name -> object mapping with loud failures on unknown and duplicate keys.

    Backs the process handler registry (runner kind / operation -> handler)
    and the listener loader registry (listener type -> loader).
    """

    def __init__(self, kind: str = 'entry', initial: Dict[str, T] | None = None) -> None:
        self.kind = kind
        self._data: Dict[str, T] = dict(initial or {})

    def __getitem__(self, key: str) -> T:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key, self.kind)

    def __setitem__(self, key: str, value: T) -> None:
        if key in self._data:
            raise DuplicateRegistrationError(key, self.kind)
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, key: str, value: T, *, replace: bool = False) -> T:
        """Insert `value` under `key`; refuses duplicates unless replace=True."""
        if key in self._data and not replace:
            raise DuplicateRegistrationError(key, self.kind)
        self._data[key] = value
        return value

    def unregister(self, key: str) -> None:
        self._data.pop(key, None)
