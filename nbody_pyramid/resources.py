"""
nbody_pyramid.resources

Explicit ownership of the buffers a kernel reads and writes.

Every kernel slot holds a :class:`Resource` tagged either :class:`Owned`
(allocated by the kernel, released by its ``dispose()``) or :class:`Borrowed`
(supplied by the caller, never released by the kernel). The rule applied when
a kernel is constructed or rewired:

* output omitted (``None``)        -> the kernel allocates and owns the buffer;
* input omitted (``None``)         -> the slot stays empty until it is wired;
* a bare array or ``Borrowed(x)``  -> borrowed, including ``Borrowed(None)``,
  the explicit "leave this empty, it will be wired later" handle;
* ``Owned(x)``                     -> ownership of ``x`` is handed to the kernel.
"""
from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Optional

from ._backend import Device, dtype_for, is_on_device
from .errors import ConfigurationError, MissingResourceError

logger = logging.getLogger(__name__)

__all__ = ["Ownership", "Resource", "Owned", "Borrowed", "adopt", "Kernel"]


class Ownership(enum.Enum):
    OWNED = "owned"
    BORROWED = "borrowed"


class Resource:
    """A device buffer (or ``None``) with an ownership tag."""

    ownership: Ownership

    __slots__ = ("array",)

    def __init__(self, array: Any = None):
        self.array = array

    @property
    def is_owned(self) -> bool:
        return self.ownership is Ownership.OWNED

    @property
    def is_empty(self) -> bool:
        return self.array is None

    def release(self) -> None:
        """Drop the buffer if owned. Borrowed buffers are left untouched."""
        if self.is_owned:
            self.array = None

    def __repr__(self) -> str:
        what = "None" if self.array is None else f"{type(self.array).__name__}{tuple(self.array.shape)}"
        return f"{type(self).__name__}({what})"


class Owned(Resource):
    __slots__ = ()
    ownership = Ownership.OWNED


class Borrowed(Resource):
    __slots__ = ()
    ownership = Ownership.BORROWED


def adopt(value: Any, allocate: Optional[Callable[[], Any]] = None) -> Resource:
    """Apply the ownership rule to a constructor argument.

    *allocate* is given for outputs only; an omitted input stays empty.
    """
    if isinstance(value, Resource):
        return value
    if value is None:
        return Owned(allocate()) if allocate is not None else Borrowed(None)
    return Borrowed(value)


class Kernel:
    """Base class for the solver's compute passes.

    Subclasses declare their slots in ``_slots`` and their mandatory ones in
    ``_required``; ``run()`` must start with :meth:`_require`. Slots are
    exposed as plain attributes holding the underlying array; assigning an
    array rewires the slot as borrowed, releasing a previously owned buffer.
    """

    _slots: tuple[str, ...] = ()
    _required: tuple[str, ...] = ()

    def __init__(self, device: Device, precision: str):
        object.__setattr__(self, "_resources", {})
        self.device = device
        self.precision = precision
        self.render_count = 0
        self._disposed = False

    # -- slot plumbing -----------------------------------------------------

    def _bind(self, name: str, value: Any, allocate: Optional[Callable[[], Any]] = None) -> None:
        self._resources[name] = adopt(value, allocate)

    def resource(self, name: str) -> Resource:
        return self._resources[name]

    def __getattr__(self, name: str):
        resources = self.__dict__.get("_resources", {})
        if name in resources:
            return resources[name].array
        raise AttributeError(f"{type(self).__name__!s} has no attribute {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        if name in type(self)._slots:
            old = self._resources.get(name)
            if old is not None and old.array is not value:
                old.release()
            self._resources[name] = value if isinstance(value, Resource) else Borrowed(value)
        else:
            object.__setattr__(self, name, value)

    def _require(self, *extra: str) -> None:
        missing = [n for n in self._required + extra if self._resources[n].is_empty]
        if missing:
            raise MissingResourceError(type(self).__name__, missing)

    def _check(self, name: str, shape: tuple) -> None:
        """Validate a bound buffer: shape (``None`` matches any extent),
        C-contiguity, dtype and device."""
        arr = self._resources[name].array
        if arr is None:
            return
        where = f"{type(self).__name__}.{name}"
        actual = tuple(arr.shape)
        if len(actual) != len(shape) or any(s is not None and s != a for s, a in zip(shape, actual)):
            raise ConfigurationError(f"{where}: expected shape {shape}, got {actual}")
        if arr.dtype != dtype_for(self.precision):
            raise ConfigurationError(f"{where}: expected dtype {self.precision}, got {arr.dtype}")
        if not arr.flags.c_contiguous:
            raise ConfigurationError(f"{where}: array must be C-contiguous")
        if not is_on_device(self.device, arr):
            raise ConfigurationError(f"{where}: array does not live on {self.device}")

    # -- lifecycle ---------------------------------------------------------

    def run(self) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def dispose(self) -> None:
        """Release owned buffers; borrowed ones are only unlinked. Idempotent."""
        if self._disposed:
            return
        for name, res in self._resources.items():
            res.release()
            self._resources[name] = Borrowed(None)
        self._release_scratch()
        self._disposed = True
        logger.debug("%s disposed", type(self).__name__)

    def _release_scratch(self) -> None:
        """Hook for subclasses holding private scratch buffers."""

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.dispose()
