from __future__ import annotations

REDACTED = "[SECRET]"


class Secret:
    """Mutable buffer for private keys and passphrases.

    Formatting, repr and pickling never reveal the contents. Callers zero the
    buffer once the operation that consumed it has finished, including on
    error paths; ``with secret:`` does that automatically.
    """

    __slots__ = ("_buf",)

    def __init__(self, data: bytes | bytearray | None = None):
        self._buf = bytearray(data or b"")

    @classmethod
    def from_str(cls, value: str | None) -> "Secret":
        return cls((value or "").encode("utf-8"))

    def copy(self) -> "Secret":
        return Secret(self._buf)

    def reveal(self) -> str:
        """Decoded copy of the contents; keep its lifetime short."""
        return self._buf.decode("utf-8")

    def zero(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._buf = bytearray()

    @property
    def is_zeroed(self) -> bool:
        return not any(self._buf)

    def __bool__(self) -> bool:
        return bool(self._buf)

    def __len__(self) -> int:
        return len(self._buf)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Secret):
            return NotImplemented
        return self._buf == other._buf

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return REDACTED

    __str__ = __repr__

    def __format__(self, spec: str) -> str:
        return REDACTED

    def __reduce__(self):
        raise TypeError("Secret values cannot be serialized")

    def __enter__(self) -> "Secret":
        return self

    def __exit__(self, *exc) -> None:
        self.zero()
