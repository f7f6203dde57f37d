from __future__ import annotations

import re
from dataclasses import dataclass, fields
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

import yaml

from .errors import ConfigurationError

ENV_PREFIX = "FUZZORCH_"
SUPPORTED_ENGINES = ("atheris",)


class RunMode(str, Enum):
    """How a fuzz target is exercised."""

    FUZZING = "fuzzing"  # generate new inputs with the engine
    REGRESSION = "regression"  # replay known crashes and corpus only


@dataclass(frozen=True)
class GlobalOptions:
    """Options shared by every fuzz target of a run."""

    work_dir: Path
    instrument: tuple[str, ...]
    hooks: bool = False
    custom_hook_excludes: tuple[str, ...] = ()
    detailed_logging: bool = False
    fuzz_engine: str = "atheris"


@dataclass(frozen=True)
class TargetOptions:
    """Options that a single fuzz target may override."""

    max_fuzz_time: float  # seconds
    max_heap_size_mb: int = 4096  # 0 disables the limit
    dump_coverage: bool = False
    keep_going: int = 1  # new clusters needed to stop early, 0 = never
    run_modes: frozenset[RunMode] = frozenset({RunMode.FUZZING})


@dataclass(frozen=True)
class EngineOptions:
    """Engine-specific knobs."""

    rss_limit_mb: int = 0
    clustering_oracle: Optional[str] = None  # "module:callable"
    cluster_frames: int = 3


@dataclass(frozen=True)
class TargetOverrides:
    """Per-target values attached with the ``fuzz_target`` decorator."""

    max_fuzz_time: float | str | timedelta | None = None
    max_heap_size_mb: Optional[int] = None
    dump_coverage: Optional[bool] = None
    keep_going: Optional[int] = None
    run_modes: Iterable[RunMode | str] | str | None = None

    def as_options(self) -> dict[str, Any]:
        """Non-empty overrides keyed by configuration option name."""
        options: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            name = "max_single_target_fuzz_time" if f.name == "max_fuzz_time" else f.name
            options[name] = value
        return options


# ============================================================================
# Value parsers
# ============================================================================

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds), ``timedelta`` and strings such as
    ``"30"``, ``"30s"``, ``"5m"`` or ``"1h30m"``.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("-"):
            # Negative durations are still durations; validation rejects them later
            return -parse_duration(text[1:])
        pos = 0
        total = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos and text[pos:match.start()].strip():
                break
            unit = (match.group(2) or "s").lower()
            total += float(match.group(1)) * _DURATION_UNITS[unit]
            pos = match.end()
        if text and pos == len(text):
            return total
    raise ConfigurationError(f"Invalid duration: {value!r}")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ConfigurationError(f"Invalid boolean: {value!r}")


def _parse_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    if isinstance(value, Iterable):
        return tuple(str(item) for item in value)
    raise ConfigurationError(f"Invalid list: {value!r}")


def _parse_int(value: Any, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid integer: {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid integer: {value!r}") from e
    if number < minimum:
        raise ConfigurationError(f"Expected an integer >= {minimum}, got {number}")
    return number


def _parse_non_negative_int(value: Any) -> int:
    return _parse_int(value, 0)


def _parse_positive_int(value: Any) -> int:
    return _parse_int(value, 1)


def _parse_path(value: Any) -> Path:
    try:
        return Path(value).expanduser().resolve()
    except (TypeError, OSError, RuntimeError) as e:
        raise ConfigurationError(f"Cannot resolve path {value!r}: {e}") from e


def _parse_run_modes(value: Any) -> frozenset[RunMode]:
    if isinstance(value, RunMode):
        value = [value]
    if not isinstance(value, str) and isinstance(value, Iterable):
        value = [item.value if isinstance(item, RunMode) else item for item in value]
    items = _parse_list(value)
    try:
        modes = frozenset(RunMode(item.lower()) for item in items)
    except ValueError as e:
        raise ConfigurationError(f"Invalid run mode in {value!r}") from e
    if not modes:
        raise ConfigurationError("At least one run mode is required")
    return modes


def _parse_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_engine(value: Any) -> str:
    engine = str(value).strip().lower()
    if engine not in SUPPORTED_ENGINES:
        raise ConfigurationError(
            f"Unsupported fuzz engine {value!r}; expected one of {', '.join(SUPPORTED_ENGINES)}"
        )
    return engine


_REQUIRED = object()

# option name -> (section, parser, default)
_OPTIONS: dict[str, tuple[str, Callable[[Any], Any], Any]] = {
    "work_dir": ("global", _parse_path, _REQUIRED),
    "instrument": ("global", _parse_list, _REQUIRED),
    "hooks": ("global", _parse_bool, False),
    "custom_hook_excludes": ("global", _parse_list, ()),
    "detailed_logging": ("global", _parse_bool, False),
    "fuzz_engine": ("global", _parse_engine, "atheris"),
    "max_single_target_fuzz_time": ("target", parse_duration, _REQUIRED),
    "max_heap_size_mb": ("target", _parse_non_negative_int, 4096),
    "dump_coverage": ("target", _parse_bool, False),
    "keep_going": ("target", _parse_non_negative_int, 1),
    "run_modes": ("target", _parse_run_modes, frozenset({RunMode.FUZZING})),
    "rss_limit_mb": ("engine", _parse_non_negative_int, 0),
    "clustering_oracle": ("engine", _parse_optional_str, None),
    "cluster_frames": ("engine", _parse_positive_int, 3),
}

OPTION_NAMES = frozenset(_OPTIONS)


# ============================================================================
# Builder
# ============================================================================


class ConfigBuilder:
    """
    Single-assignment builder for ``RunConfiguration``.

    Every option may be assigned at most once; unknown names and repeated
    assignments fail immediately with ``ConfigurationError``.

    Usage:
        def init(b):
            b.work_dir = "fuzz-work"
            b.instrument = ["mypkg.**"]
            b.max_single_target_fuzz_time = "30s"

        config = ConfigBuilder.build(init)
    """

    def __init__(self) -> None:
        object.__setattr__(self, "_values", {})

    def __setattr__(self, name: str, value: Any) -> None:
        if name not in OPTION_NAMES:
            raise ConfigurationError(f"Unknown configuration option '{name}'")
        if name in self._values:
            raise ConfigurationError(f"Configuration option '{name}' is assigned more than once")
        self._values[name] = value

    def __getattr__(self, name: str) -> Any:
        if name in OPTION_NAMES:
            try:
                return self._values[name]
            except KeyError:
                raise AttributeError(f"Configuration option '{name}' is not set") from None
        raise AttributeError(name)

    @classmethod
    def build(cls, initializer: Callable[["ConfigBuilder"], Any]) -> "RunConfiguration":
        builder = cls()
        initializer(builder)
        return builder._validate()

    def _validate(self) -> "RunConfiguration":
        missing = [
            name
            for name, (_, _, default) in _OPTIONS.items()
            if default is _REQUIRED and name not in self._values
        ]
        if missing:
            raise ConfigurationError(
                "Missing required configuration option(s): " + ", ".join(sorted(missing))
            )

        sections: dict[str, dict[str, Any]] = {"global": {}, "target": {}, "engine": {}}
        for name, (section, parser, default) in _OPTIONS.items():
            if name in self._values:
                value = parser(self._values[name])
            else:
                value = default
            sections[section][name] = value

        target = sections["target"]
        max_time = target.pop("max_single_target_fuzz_time")
        if RunMode.FUZZING in target["run_modes"] and max_time <= 0:
            raise ConfigurationError(
                f"max_single_target_fuzz_time must be positive when fuzzing, got {max_time}s"
            )

        return RunConfiguration(
            global_options=GlobalOptions(**sections["global"]),
            target=TargetOptions(max_fuzz_time=max_time, **target),
            engine=EngineOptions(**sections["engine"]),
        )


# ============================================================================
# Immutable configuration
# ============================================================================


@dataclass(frozen=True)
class RunConfiguration:
    """Validated, read-only configuration threaded through every component."""

    global_options: GlobalOptions
    target: TargetOptions
    engine: EngineOptions

    @property
    def work_dir(self) -> Path:
        return self.global_options.work_dir

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "RunConfiguration":
        """Build from a flat ``{option name: value}`` mapping."""

        def init(builder: ConfigBuilder) -> None:
            for name, value in options.items():
                setattr(builder, name, value)

        return ConfigBuilder.build(init)

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "RunConfiguration":
        return cls.from_options(load_env_options(environ))

    def to_options(self) -> dict[str, Any]:
        g, t, e = self.global_options, self.target, self.engine
        options: dict[str, Any] = {
            "work_dir": g.work_dir,
            "instrument": g.instrument,
            "hooks": g.hooks,
            "custom_hook_excludes": g.custom_hook_excludes,
            "detailed_logging": g.detailed_logging,
            "fuzz_engine": g.fuzz_engine,
            "max_single_target_fuzz_time": t.max_fuzz_time,
            "max_heap_size_mb": t.max_heap_size_mb,
            "dump_coverage": t.dump_coverage,
            "keep_going": t.keep_going,
            "run_modes": sorted(m.value for m in t.run_modes),
            "rss_limit_mb": e.rss_limit_mb,
            "cluster_frames": e.cluster_frames,
        }
        if e.clustering_oracle:
            options["clustering_oracle"] = e.clustering_oracle
        return options

    def to_env(self) -> dict[str, str]:
        """Flat ``FUZZORCH_*`` variables understood by ``from_env``."""
        env: dict[str, str] = {}
        for name, value in self.to_options().items():
            if isinstance(value, bool):
                text = "true" if value else "false"
            elif isinstance(value, (list, tuple)):
                text = ",".join(str(v) for v in value)
            else:
                text = str(value)
            env[ENV_PREFIX + name.upper()] = text
        return env

    def with_overrides(self, overrides: TargetOverrides) -> "RunConfiguration":
        """
        Apply per-target overrides.

        A value set on the target replaces the run-wide value outright;
        an unset value falls back to the run-wide one.
        """
        changes = overrides.as_options()
        if not changes:
            return self
        options = self.to_options()
        options.update(changes)
        return RunConfiguration.from_options(options)


# ============================================================================
# Configuration sources
# ============================================================================


def load_env_options(environ: Mapping[str, str]) -> dict[str, str]:
    """Collect ``FUZZORCH_<OPTION>`` variables."""
    options: dict[str, str] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in OPTION_NAMES:
            options[name] = value
    return options


def load_yaml_options(path: Path) -> dict[str, Any]:
    """
    Read options from a YAML file.

    Keys may be flat or grouped under ``global``/``target``/``engine``
    sections; both forms flatten to option names.
    """
    try:
        payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")

    options: dict[str, Any] = {}
    for key, value in payload.items():
        if key in ("global", "target", "engine") and isinstance(value, dict):
            options.update(value)
        else:
            options[key] = value
    # Relative work dirs are relative to the file, not the cwd
    work_dir = options.get("work_dir")
    if isinstance(work_dir, str) and not Path(work_dir).expanduser().is_absolute():
        options["work_dir"] = str(Path(path).resolve().parent / work_dir)
    return options


def merge_layers(*layers: Mapping[str, Any]) -> dict[str, Any]:
    """Combine option layers, later (more specific) layers replace earlier ones."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for name, value in layer.items():
            if value is not None:
                merged[name] = value
    return merged
