"""
Fuzz target identity and invocation.

A fuzz target is a method on a class with a no-argument constructor that
accepts the raw input bytes. Discovery is left to callers; this module
only names targets and turns a name into a callable.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

from .config import RunMode, TargetOverrides
from .errors import TargetResolutionError

TargetCallable = Callable[[bytes], Any]

_OVERRIDES_ATTR = "__fuzz_target_overrides__"


def fuzz_target(
    func: Optional[Callable[..., Any]] = None,
    *,
    max_fuzz_time: float | str | timedelta | None = None,
    max_heap_size_mb: Optional[int] = None,
    dump_coverage: Optional[bool] = None,
    keep_going: Optional[int] = None,
    run_modes: Iterable[RunMode | str] | str | None = None,
):
    """
    Mark a method as a fuzz target, optionally overriding run-wide options.

    Usage:
        class ParserTargets:
            @fuzz_target(max_fuzz_time="10s", keep_going=2)
            def parse(self, data: bytes) -> None:
                ...
    """
    overrides = TargetOverrides(
        max_fuzz_time=max_fuzz_time,
        max_heap_size_mb=max_heap_size_mb,
        dump_coverage=dump_coverage,
        keep_going=keep_going,
        run_modes=tuple(run_modes) if run_modes is not None and not isinstance(run_modes, str) else run_modes,
    )

    def decorate(f: Callable[..., Any]) -> Callable[..., Any]:
        setattr(f, _OVERRIDES_ATTR, overrides)
        return f

    if func is not None:
        return decorate(func)
    return decorate


def is_fuzz_target(func: Any) -> bool:
    return hasattr(func, _OVERRIDES_ATTR)


@dataclass(frozen=True)
class FuzzTargetId:
    """Stable (declaring type, method) identity of a fuzz target."""

    module: str
    class_name: str
    method: str

    @property
    def declaring_type(self) -> str:
        return f"{self.module}.{self.class_name}"

    @property
    def full_name(self) -> str:
        return f"{self.declaring_type}.{self.method}"

    def __str__(self) -> str:
        return self.full_name

    @classmethod
    def parse(cls, text: str) -> "FuzzTargetId":
        """Parse ``"package.module:ClassName.method"``."""
        module, sep, rest = text.partition(":")
        class_name, dot, method = rest.rpartition(".")
        if not sep or not dot or not module or not class_name or not method:
            raise TargetResolutionError(
                f"Invalid target '{text}', expected 'package.module:ClassName.method'"
            )
        return cls(module=module, class_name=class_name, method=method)

    def _resolve_class(self) -> type:
        try:
            obj: Any = importlib.import_module(self.module)
        except Exception as e:
            raise TargetResolutionError(f"Cannot import module '{self.module}': {e}") from e
        for part in self.class_name.split("."):
            try:
                obj = getattr(obj, part)
            except AttributeError as e:
                raise TargetResolutionError(
                    f"'{self.declaring_type}' not found for target {self.full_name}"
                ) from e
        if not isinstance(obj, type):
            raise TargetResolutionError(f"'{self.declaring_type}' is not a class")
        return obj

    def overrides(self) -> TargetOverrides:
        """Per-target overrides declared with ``fuzz_target``, if any."""
        klass = self._resolve_class()
        func = getattr(klass, self.method, None)
        if func is None:
            raise TargetResolutionError(f"Method '{self.method}' not found on {self.declaring_type}")
        if not is_fuzz_target(func):
            return TargetOverrides()
        return getattr(func, _OVERRIDES_ATTR)

    def resolve(self) -> TargetCallable:
        """Instantiate the declaring class and return the bound target."""
        klass = self._resolve_class()
        try:
            instance = klass()
        except Exception as e:
            raise TargetResolutionError(f"Cannot instantiate {self.declaring_type}: {e}") from e
        bound = getattr(instance, self.method, None)
        if not callable(bound):
            raise TargetResolutionError(f"'{self.full_name}' is not callable")
        return bound
