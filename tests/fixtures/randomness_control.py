"""Scripted replacement for secrets.randbelow"""

from typing import Iterable, List, Tuple


class ScriptedRandbelow:
    """
    Returns the scripted values in order and records every bound it was asked for.
    Raises if a value falls outside the requested range, so a script can never
    produce a draw the real generator could not.
    """

    def __init__(self, values: Iterable[int]):
        self._values = list(values)
        self.calls: List[Tuple[int, int]] = []

    def __call__(self, bound: int) -> int:
        if not self._values:
            raise AssertionError(f"randbelow({bound}) called more times than scripted")
        value = self._values.pop(0)
        if not 0 <= value < bound:
            raise AssertionError(f"scripted value {value} outside randbelow({bound})")
        self.calls.append((bound, value))
        return value
