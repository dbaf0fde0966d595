"""Tools module."""

from enum import Enum

import numpy as np
import numpy.typing as npt

from skaggregate.exceptions import DimensionMismatch


class AutoEnum(str, Enum):
    """Base Enum class whose auto values are the lowercase member names."""

    @staticmethod
    def _generate_next_value_(
        name: str, start: int, count: int, last_values: list
    ) -> str:
        return name.lower()

    @classmethod
    def has(cls, value: str) -> bool:
        """Check if a value is in the Enum."""
        return value in cls._value2member_map_

    @classmethod
    def from_name(
        cls, value: "str | AutoEnum", aliases: dict[str, str] | None = None
    ) -> "AutoEnum":
        """Resolve a member from its value, ignoring case, '_' and '-'.

        Raises
        ------
        KeyError
            If no member matches.
        """
        if isinstance(value, cls):
            return value
        key = _normalize(str(value))
        for member in cls:
            if _normalize(member.value) == key:
                return member
        if aliases is not None and key in aliases:
            return cls(aliases[key])
        raise KeyError(value)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}.{self.name}>"

    def __str__(self) -> str:
        return self.value


def _normalize(value: str) -> str:
    return value.lower().replace("_", "").replace("-", "").replace(" ", "")


def input_to_array(
    items: npt.ArrayLike | float | None,
    n_experts: int,
    fill_value: float,
    name: str,
) -> np.ndarray:
    """Convert a scalar or 1D array-like into an array of shape (n_experts,).

    Parameters
    ----------
    items : float | array-like of shape (n_experts,) | None
        Input to convert. A scalar is broadcast, None is filled with
        `fill_value`.
    n_experts : int
        Expected length.
    fill_value : float
        Value used when `items` is None.
    name : str
        Name used in error messages.

    Returns
    -------
    ndarray of shape (n_experts,)
    """
    if items is None:
        return np.full(n_experts, fill_value, dtype=float)
    if np.isscalar(items):
        return np.full(n_experts, float(items), dtype=float)
    arr = np.asarray(items, dtype=float)
    if arr.shape != (n_experts,):
        raise DimensionMismatch(
            f"{name} must be a scalar or have shape ({n_experts},), got {arr.shape}"
        )
    return arr
