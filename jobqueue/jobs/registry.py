"""Job and callback registries.

Both map stable string names to Python objects so that payloads and batch/chain
callbacks can be persisted as plain references and resolved by any worker.
"""

import importlib
import inspect
from typing import Any, Callable, Optional, Union, overload

from jobqueue.errors import CallbackNotSerializableError
from jobqueue.jobs.base import Job

Callback = Callable[..., Any]


def reference_for(obj: Any) -> str:
    """Importable "module:QualName" reference for a class or function."""
    return f"{obj.__module__}:{obj.__qualname__}"


def import_reference(ref: str) -> Any:
    """Import an object from a "module:QualName" reference.

    Raises:
        KeyError: If the reference is malformed or cannot be imported.
    """
    module_name, sep, qualname = ref.partition(":")
    if not sep or not module_name or not qualname:
        raise KeyError(f"Not an importable reference: {ref!r}")
    try:
        obj: Any = importlib.import_module(module_name)
        for attr in qualname.split("."):
            obj = getattr(obj, attr)
    except (ImportError, AttributeError) as e:
        raise KeyError(f"Cannot import {ref!r}: {e}") from e
    return obj


class JobRegistry:
    """Registry mapping job type names to Job classes."""

    def __init__(self):
        self._jobs: dict[str, type[Job]] = {}
        self._names: dict[type[Job], str] = {}

    def register(self, job_cls: type[Job], name: Optional[str] = None) -> str:
        """Register a Job class. Returns the name it is stored under."""
        if not (isinstance(job_cls, type) and issubclass(job_cls, Job)):
            raise TypeError(f"{job_cls!r} is not a Job subclass")
        name = name or reference_for(job_cls)
        self._jobs[name] = job_cls
        self._names[job_cls] = name
        return name

    @overload
    def job(self, name_or_cls: type[Job]) -> type[Job]: ...

    @overload
    def job(
        self, name_or_cls: Optional[str] = None
    ) -> Callable[[type[Job]], type[Job]]: ...

    def job(self, name_or_cls=None):
        """Decorator to register a Job class, bare or with an explicit name."""
        if isinstance(name_or_cls, type):
            self.register(name_or_cls)
            return name_or_cls

        def decorator(cls: type[Job]) -> type[Job]:
            self.register(cls, name_or_cls)
            return cls

        return decorator

    def name_for(self, job: Union[Job, type[Job]]) -> str:
        """Name a job instance or class is persisted under."""
        cls = job if isinstance(job, type) else type(job)
        return self._names.get(cls) or reference_for(cls)

    def resolve(self, name: str) -> type[Job]:
        """Get the Job class for a name. Raises KeyError if not found."""
        if name in self._jobs:
            return self._jobs[name]
        cls = import_reference(name)
        if not (isinstance(cls, type) and issubclass(cls, Job)):
            raise KeyError(f"{name!r} does not name a Job subclass")
        return cls

    def __contains__(self, name: str) -> bool:
        return name in self._jobs


class CallbackRegistry:
    """Named callbacks for batch and chain completion hooks.

    Only named references are persisted; closures and lambdas cannot survive
    a process boundary and are rejected up front.
    """

    def __init__(self):
        self._callbacks: dict[str, Callback] = {}

    def register(self, name: str, fn: Callback) -> None:
        self._callbacks[name] = fn

    def callback(self, name: Optional[str] = None) -> Callable[[Callback], Callback]:
        """Decorator to register a callback."""

        def decorator(fn: Callback) -> Callback:
            self.register(name or reference_for(fn), fn)
            return fn

        return decorator

    def reference(self, callback: Union[str, Callback]) -> str:
        """Persistable reference for a callback name or function."""
        if isinstance(callback, str):
            return callback
        for name, fn in self._callbacks.items():
            if fn == callback:
                return name
        qualname = getattr(callback, "__qualname__", "")
        # Methods bound to an instance resolve back to the unbound function
        bound_to_instance = inspect.ismethod(callback) and not isinstance(
            callback.__self__, type
        )
        if (
            bound_to_instance
            or not qualname
            or "<lambda>" in qualname
            or "<locals>" in qualname
        ):
            raise CallbackNotSerializableError(
                f"Callback {callback!r} is not a named module-level function; "
                "register it or pass a module-level function"
            )
        return reference_for(callback)

    def resolve(self, ref: str) -> Callback:
        """Get the callable for a reference. Raises KeyError if not found."""
        if ref in self._callbacks:
            return self._callbacks[ref]
        fn = import_reference(ref)
        if not callable(fn):
            raise KeyError(f"{ref!r} is not callable")
        return fn


# Global registry instances
default_registry = JobRegistry()
default_callbacks = CallbackRegistry()
