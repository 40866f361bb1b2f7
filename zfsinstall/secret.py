#!/usr/bin/env python3
# Secret Handle
# Wraps passwords and passphrases so they only ever reach a child's stdin


class Secret:
    """A secret string that never shows up in reprs, logs or argv.

    The value is released through ``reveal()`` only, and the command runner
    passes it to the child process over an anonymous stdin pipe.
    """

    def __init__(self, value=""):
        self._value = value or ""

    def reveal(self):
        return self._value

    def __bool__(self):
        return bool(self._value)

    def __len__(self):
        return len(self._value)

    def __eq__(self, other):
        if isinstance(other, Secret):
            return self._value == other._value
        return NotImplemented

    def __hash__(self):
        return hash(self._value)

    def __repr__(self):
        return "Secret('')" if not self._value else "Secret('********')"

    __str__ = __repr__
