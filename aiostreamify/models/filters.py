"""Filter configuration model."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from mashumaro.mixins.orjson import DataClassORJSONMixin


@dataclass(frozen=True)
class FilterConfig(DataClassORJSONMixin):
    """
    Named audio filter parameters.

    A value, not an entity: every mutator returns a new FilterConfig and the wrapped
    mapping is never changed in place. Setting a filter to None removes it.
    """

    values: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def __contains__(self, key: object) -> bool:
        return key in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def get(self, key: str, default: Any = None) -> Any:
        """Return a filter value, or default when it is not set."""
        return self.values.get(key, default)

    def items(self) -> Iterator[tuple[str, Any]]:
        """Iterate over (name, value) pairs."""
        return iter(self.values.items())

    def __len__(self) -> int:
        return len(self.values)

    def with_filter(self, name: str, value: Any) -> FilterConfig:
        """Return a copy with one filter set (or removed when value is None)."""
        values = dict(self.values)
        if value is None:
            values.pop(name, None)
        else:
            values[name] = value
        return FilterConfig(values)

    def without(self, *names: str) -> FilterConfig:
        """Return a copy without the given filters."""
        return FilterConfig({k: v for k, v in self.values.items() if k not in names})

    def merged(self, other: Mapping[str, Any]) -> FilterConfig:
        """Return a copy with other's entries layered on top."""
        values = dict(self.values)
        for name, value in other.items():
            if value is None:
                values.pop(name, None)
            else:
                values[name] = value
        return FilterConfig(values)

    def describe(self) -> str:
        """Human readable filter chain, used for debug logging."""
        return " -> ".join(f"[{name} ({value})]" for name, value in self.values.items())


@dataclass(frozen=True)
class EffectPreset(DataClassORJSONMixin):
    """A named effect preset applied at an intensity between 0 and 1."""

    name: str
    intensity: float = 1.0
