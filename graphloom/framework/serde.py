# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""JSON encoding of checkpoint values.

Plain JSON loses type information for the values graphs usually keep in
state (pydantic models such as messages, tuples, sets). The serializer
wraps those in tagged objects so persistent checkpointers hand back the
same types they were given.

Decoding only resolves model classes this process has already encoded or
registered, or that live under an allowed module prefix; a stored
checkpoint never triggers arbitrary imports.

Tagged forms:
    {"__model__": "pkg.module:ClassName", "data": {...}}
    {"__tuple__": [...]}
    {"__set__": [...]}
"""

from __future__ import annotations

import importlib
import json
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Type

from pydantic import BaseModel

MODEL_TAG = "__model__"
TUPLE_TAG = "__tuple__"
SET_TAG = "__set__"

DEFAULT_ALLOWED_MODULES = ("graphloom",)

_MODEL_REGISTRY: Dict[str, Type[BaseModel]] = {}


def model_path(cls: type) -> str:
    return f"{cls.__module__}:{cls.__qualname__}"


def register_model(cls: Type[BaseModel]) -> Type[BaseModel]:
    """Allow ``cls`` to be decoded from stored checkpoints. Usable as a decorator."""
    if not (isinstance(cls, type) and issubclass(cls, BaseModel)):
        raise TypeError(f"{cls!r} is not a pydantic model")
    _MODEL_REGISTRY[model_path(cls)] = cls
    return cls


class JsonSerializer:
    """Round-trips state values through JSON text.

    Args:
        allowed_modules: Extra module prefixes whose models may be imported
            while decoding, on top of graphloom's own
    """

    def __init__(self, allowed_modules: Optional[Sequence[str]] = None):
        self.allowed_modules = DEFAULT_ALLOWED_MODULES + tuple(allowed_modules or ())

    def _encode(self, value: Any) -> Any:
        if isinstance(value, BaseModel):
            cls = register_model(type(value))
            return {
                MODEL_TAG: model_path(cls),
                "data": self._encode(value.model_dump(mode="python")),
            }
        if isinstance(value, Enum):
            return self._encode(value.value)
        if isinstance(value, dict):
            return {str(k): self._encode(v) for k, v in value.items()}
        if isinstance(value, tuple):
            return {TUPLE_TAG: [self._encode(v) for v in value]}
        if isinstance(value, (set, frozenset)):
            return {SET_TAG: [self._encode(v) for v in sorted(value, key=repr)]}
        if isinstance(value, list):
            return [self._encode(v) for v in value]
        return value

    def _decode(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self._decode(v) for v in value]
        if not isinstance(value, dict):
            return value
        if MODEL_TAG in value and len(value) == 2 and "data" in value:
            cls = self._resolve_model(value[MODEL_TAG])
            return cls.model_validate(self._decode(value["data"]))
        if len(value) == 1 and TUPLE_TAG in value:
            return tuple(self._decode(v) for v in value[TUPLE_TAG])
        if len(value) == 1 and SET_TAG in value:
            return {self._decode(v) for v in value[SET_TAG]}
        return {k: self._decode(v) for k, v in value.items()}

    def dumps(self, value: Any) -> str:
        return json.dumps(self._encode(value), default=str)

    def loads(self, text: str) -> Any:
        return self._decode(json.loads(text))

    def to_jsonable(self, value: Any) -> Any:
        """Encode without rendering to text (for JSON file storage)."""
        return self._encode(value)

    def from_jsonable(self, data: Any) -> Any:
        return self._decode(data)

    def _resolve_model(self, path: str) -> Type[BaseModel]:
        if path in _MODEL_REGISTRY:
            return _MODEL_REGISTRY[path]
        module_name, _, qualname = path.partition(":")
        if not any(
            module_name == prefix or module_name.startswith(prefix + ".")
            for prefix in self.allowed_modules
        ):
            raise TypeError(
                f"Refusing to load model {path}: register it with register_model() "
                "or add its module to allowed_modules"
            )
        obj: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            obj = getattr(obj, part)
        return register_model(obj)


__all__ = ["JsonSerializer", "register_model", "DEFAULT_ALLOWED_MODULES"]
