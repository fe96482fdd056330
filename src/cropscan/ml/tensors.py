"""Scoped ownership of numeric buffers.

Every array produced while normalizing an image or running a forward pass is
wrapped in a :class:`Tensor` registered with a :class:`BufferTracker`. A
:class:`TensorScope` owns the tensors created through it and releases all of
them when the ``with`` block exits, whether it returns or raises. The one
tensor a function hands back to its caller is detached from the scope first.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType

    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class BufferTracker:
    """Counts live tracked buffers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: int = 0
        self._allocated: int = 0

    def _acquire(self) -> None:
        with self._lock:
            self._live += 1
            self._allocated += 1

    def _release(self) -> None:
        with self._lock:
            self._live -= 1

    @property
    def live_count(self) -> int:
        """Number of tensors created and not yet released."""
        with self._lock:
            return self._live

    @property
    def allocated_count(self) -> int:
        """Total number of tensors ever created."""
        with self._lock:
            return self._allocated


class Tensor:
    """A numpy array whose lifetime is tracked."""

    __slots__ = ("_array", "_tracker", "name")

    def __init__(self, array: NDArray[np.generic], tracker: BufferTracker, name: str = "tensor") -> None:
        self._array: NDArray[np.generic] | None = array
        self._tracker = tracker
        self.name = name
        tracker._acquire()

    @property
    def data(self) -> NDArray[np.generic]:
        if self._array is None:
            raise RuntimeError(f"Tensor '{self.name}' used after release")
        return self._array

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def released(self) -> bool:
        return self._array is None

    def release(self) -> None:
        """Drop the buffer. Calls after the first are ignored."""
        if self._array is None:
            return
        self._array = None
        self._tracker._release()

    def __enter__(self) -> Tensor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        if self._array is None:
            return f"Tensor({self.name!r}, released)"
        return f"Tensor({self.name!r}, shape={self._array.shape}, dtype={self._array.dtype})"


class TensorScope:
    """Owns tensors for the duration of a ``with`` block."""

    def __init__(self, tracker: BufferTracker) -> None:
        self._tracker = tracker
        self._owned: list[Tensor] = []

    def track(self, array: NDArray[np.generic], name: str = "tensor") -> Tensor:
        """Wrap ``array`` in a tensor owned by this scope."""
        tensor = Tensor(array, self._tracker, name)
        self._owned.append(tensor)
        return tensor

    def adopt(self, tensor: Tensor) -> Tensor:
        """Take ownership of a tensor created elsewhere."""
        if tensor not in self._owned:
            self._owned.append(tensor)
        return tensor

    def detach(self, tensor: Tensor) -> Tensor:
        """Hand ``tensor`` to the caller; the scope will no longer release it."""
        self._owned.remove(tensor)
        return tensor

    def __enter__(self) -> TensorScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        while self._owned:
            self._owned.pop().release()
