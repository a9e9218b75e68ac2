"""Weight initializers selectable by name."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from jax.nn import initializers


class Initializers(Enum):
    """Variable initializers, valued by their Keras class names."""
    GLOROT_UNIFORM = "GlorotUniform"
    GLOROT_NORMAL = "GlorotNormal"
    HE_UNIFORM = "HeUniform"
    HE_NORMAL = "HeNormal"
    LECUN_UNIFORM = "LecunUniform"
    LECUN_NORMAL = "LecunNormal"
    ZEROS = "Zeros"
    ONES = "Ones"

    def build(self) -> Callable[..., Any]:
        """Return a ``(key, shape, dtype) -> array`` initializer."""
        return _FACTORIES[self]()

    def to_config(self) -> dict[str, Any]:
        return {"class_name": self.value, "config": {}}

    @classmethod
    def from_config(cls, config: dict[str, Any] | str) -> "Initializers":
        name = config["class_name"] if isinstance(config, dict) else config
        return cls(name)


_FACTORIES = {
    Initializers.GLOROT_UNIFORM: initializers.glorot_uniform,
    Initializers.GLOROT_NORMAL: initializers.glorot_normal,
    Initializers.HE_UNIFORM: initializers.he_uniform,
    Initializers.HE_NORMAL: initializers.he_normal,
    Initializers.LECUN_UNIFORM: initializers.lecun_uniform,
    Initializers.LECUN_NORMAL: initializers.lecun_normal,
    Initializers.ZEROS: lambda: initializers.zeros,
    Initializers.ONES: lambda: initializers.ones,
}
