"""Declared attributes and persisted identifier of one managed resource."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

from reconciler.exceptions import InvalidValue, MissingField


class ResourceData:
    """What the host hands to a controller call.

    ``attributes`` holds the declared values; a key that is missing or set to
    ``None`` was not declared. Values reflected back from the live system are
    written with ``set`` and recorded in ``reflected``. ``id`` is the persisted
    identifier; an empty string means the resource is absent.
    """

    def __init__(self, kind: str, attributes: Optional[Mapping[str, Any]] = None, resource_id: str = "") -> None:
        self.kind = kind
        self.attributes: Dict[str, Any] = dict(attributes or {})
        self.reflected: Dict[str, Any] = {}
        self.id = resource_id

    def get(self, key: str, default: Any = None) -> Any:
        value = self.attributes.get(key)
        return default if value is None else value

    def get_ok(self, key: str) -> Tuple[Any, bool]:
        value = self.attributes.get(key)
        return value, value is not None

    def require(self, key: str) -> Any:
        value, ok = self.get_ok(key)
        if not ok:
            raise MissingField(key, self.kind)
        return value

    def require_int(self, key: str) -> int:
        value = self.require(key)
        if isinstance(value, bool):
            raise InvalidValue(f"{self.kind}: '{key}' must be an integer (got {value!r})")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InvalidValue(f"{self.kind}: '{key}' must be an integer (got {value!r})")

    def set(self, key: str, value: Any) -> None:
        self.attributes[key] = value
        self.reflected[key] = value

    def set_id(self, resource_id: str) -> None:
        self.id = resource_id

    @property
    def exists(self) -> bool:
        return bool(self.id)

    def __repr__(self) -> str:
        return f"ResourceData(kind={self.kind!r}, id={self.id!r}, attributes={self.attributes!r})"
