"""Tests for the run configuration model."""

import sys
import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fuzzorch.src.config import (
    ConfigBuilder,
    RunConfiguration,
    RunMode,
    TargetOverrides,
    load_env_options,
    load_yaml_options,
    merge_layers,
    parse_duration,
)
from fuzzorch.src.errors import ConfigurationError, TargetResolutionError
from fuzzorch.src.targets import FuzzTargetId, fuzz_target, is_fuzz_target

REQUIRED = {
    "work_dir": "/tmp/fuzz-work",
    "instrument": ["mypkg.**"],
    "max_single_target_fuzz_time": "30s",
}


def _initializer(options):
    def init(builder):
        for name, value in options.items():
            setattr(builder, name, value)

    return init


class TestConfigBuilder:
    def test_build_with_required_options(self):
        config = ConfigBuilder.build(_initializer(REQUIRED))

        assert config.work_dir == Path("/tmp/fuzz-work").resolve()
        assert config.global_options.instrument == ("mypkg.**",)
        assert config.target.max_fuzz_time == 30.0
        # Defaults
        assert config.target.keep_going == 1
        assert config.target.max_heap_size_mb == 4096
        assert config.target.run_modes == frozenset({RunMode.FUZZING})
        assert config.global_options.fuzz_engine == "atheris"
        assert config.engine.rss_limit_mb == 0
        assert config.engine.cluster_frames == 3

    @pytest.mark.parametrize("missing", sorted(REQUIRED))
    def test_missing_required_option_fails(self, missing):
        options = {k: v for k, v in REQUIRED.items() if k != missing}
        with pytest.raises(ConfigurationError, match=missing):
            ConfigBuilder.build(_initializer(options))

    @pytest.mark.parametrize("name", ["work_dir", "keep_going", "hooks", "run_modes"])
    def test_double_assignment_fails(self, name):
        values = {"work_dir": "/tmp/a", "keep_going": 2, "hooks": True, "run_modes": ["fuzzing"]}

        def init(builder):
            for option, value in REQUIRED.items():
                if option != name:
                    setattr(builder, option, value)
            setattr(builder, name, values[name])
            setattr(builder, name, values[name])

        with pytest.raises(ConfigurationError, match="more than once"):
            ConfigBuilder.build(init)

    def test_double_assignment_fails_before_required_assigned(self):
        def init(builder):
            builder.keep_going = 1
            builder.keep_going = 1

        with pytest.raises(ConfigurationError, match="more than once"):
            ConfigBuilder.build(init)

    def test_unknown_option_fails(self):
        def init(builder):
            builder.max_fuzz_tme = "30s"

        with pytest.raises(ConfigurationError, match="Unknown"):
            ConfigBuilder.build(init)

    @pytest.mark.parametrize("value", [0, "0s", -5, "-1m"])
    def test_non_positive_time_fails_when_fuzzing(self, value):
        with pytest.raises(ConfigurationError, match="positive"):
            ConfigBuilder.build(_initializer({**REQUIRED, "max_single_target_fuzz_time": value}))

    def test_zero_time_allowed_for_regression_only(self):
        config = ConfigBuilder.build(
            _initializer({**REQUIRED, "max_single_target_fuzz_time": 0, "run_modes": ["regression"]})
        )
        assert config.target.max_fuzz_time == 0
        assert config.target.run_modes == frozenset({RunMode.REGRESSION})

    @pytest.mark.parametrize(
        "name,value",
        [
            ("keep_going", -1),
            ("run_modes", []),
            ("run_modes", ["sometimes"]),
            ("fuzz_engine", "libfuzzer"),
            ("hooks", "maybe"),
            ("cluster_frames", 0),
        ],
    )
    def test_invalid_values_fail(self, name, value):
        with pytest.raises(ConfigurationError):
            ConfigBuilder.build(_initializer({**REQUIRED, name: value}))

    def test_builder_reads_back_assigned_values(self):
        seen = {}

        def init(builder):
            builder.work_dir = "/tmp/x"
            seen["work_dir"] = builder.work_dir
            with pytest.raises(AttributeError):
                builder.instrument

        with pytest.raises(ConfigurationError):
            ConfigBuilder.build(init)
        assert seen["work_dir"] == "/tmp/x"


@pytest.mark.parametrize(
    "value,expected",
    [
        (30, 30.0),
        (1.5, 1.5),
        ("45", 45.0),
        ("30s", 30.0),
        ("5m", 300.0),
        ("1h30m", 5400.0),
        ("250ms", 0.25),
        (timedelta(minutes=2), 120.0),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "soon", "5 parsecs", True, None])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ConfigurationError):
        parse_duration(value)


def test_env_round_trip():
    config = RunConfiguration.from_options(
        {
            **REQUIRED,
            "instrument": ["a.**", "b.*"],
            "hooks": True,
            "custom_hook_excludes": ["a.vendored"],
            "keep_going": 0,
            "run_modes": ["fuzzing", "regression"],
            "clustering_oracle": "mypkg.oracle:cluster",
        }
    )
    env = config.to_env()

    assert env["FUZZORCH_INSTRUMENT"] == "a.**,b.*"
    assert env["FUZZORCH_HOOKS"] == "true"
    assert env["FUZZORCH_RUN_MODES"] == "fuzzing,regression"
    assert RunConfiguration.from_env({**env, "UNRELATED": "1", "FUZZORCH_NOT_AN_OPTION": "x"}) == config


def test_with_overrides_replaces_not_merges():
    config = RunConfiguration.from_options({**REQUIRED, "run_modes": ["fuzzing", "regression"]})
    overridden = config.with_overrides(TargetOverrides(max_fuzz_time="10s", run_modes=["regression"]))

    assert overridden.target.max_fuzz_time == 10.0
    assert overridden.target.run_modes == frozenset({RunMode.REGRESSION})
    assert overridden.target.keep_going == config.target.keep_going
    assert overridden.global_options == config.global_options
    assert config.with_overrides(TargetOverrides()) is config


def test_with_overrides_revalidates():
    config = RunConfiguration.from_options(REQUIRED)
    with pytest.raises(ConfigurationError):
        config.with_overrides(TargetOverrides(max_fuzz_time=0))


def test_load_env_options():
    options = load_env_options({"FUZZORCH_KEEP_GOING": "3", "FUZZORCH_BOGUS": "1", "PATH": "/bin"})
    assert options == {"keep_going": "3"}


def test_load_yaml_options_sections_and_relative_work_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "fuzz.yaml"
        path.write_text(
            "global:\n"
            "  work_dir: work\n"
            "  instrument: [mypkg.**]\n"
            "target:\n"
            "  max_single_target_fuzz_time: 2m\n"
            "  keep_going: 2\n"
            "rss_limit_mb: 2048\n"
        )
        options = load_yaml_options(path)

        assert options["work_dir"] == str(path.resolve().parent / "work")
        assert options["keep_going"] == 2
        assert options["rss_limit_mb"] == 2048
        config = RunConfiguration.from_options(options)
        assert config.target.max_fuzz_time == 120.0


def test_load_yaml_options_errors():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(ConfigurationError):
            load_yaml_options(Path(tmpdir) / "missing.yaml")

        bad = Path(tmpdir) / "bad.yaml"
        bad.write_text("global: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_yaml_options(bad)

        scalar = Path(tmpdir) / "scalar.yaml"
        scalar.write_text("just a string\n")
        with pytest.raises(ConfigurationError):
            load_yaml_options(scalar)

        empty = Path(tmpdir) / "empty.yaml"
        empty.write_text("")
        assert load_yaml_options(empty) == {}


def test_merge_layers_more_specific_wins():
    merged = merge_layers(
        {"keep_going": 1, "work_dir": "/a"},
        {"keep_going": "2"},
        {"keep_going": None, "hooks": True},
    )
    assert merged == {"keep_going": "2", "work_dir": "/a", "hooks": True}


class Targets:
    @fuzz_target(max_fuzz_time="1m", keep_going=0)
    def decorated(self, data: bytes) -> None:
        pass

    @fuzz_target
    def bare(self, data: bytes) -> None:
        pass

    def plain(self, data: bytes) -> None:
        pass


class TestFuzzTargetId:
    def test_names(self):
        target = FuzzTargetId("pkg.mod", "Parser", "parse")
        assert target.declaring_type == "pkg.mod.Parser"
        assert target.full_name == "pkg.mod.Parser.parse"
        assert str(target) == target.full_name

    def test_parse(self):
        assert FuzzTargetId.parse("pkg.mod:Parser.parse") == FuzzTargetId("pkg.mod", "Parser", "parse")
        assert FuzzTargetId.parse("m:Outer.Inner.run") == FuzzTargetId("m", "Outer.Inner", "run")
        for text in ("pkg.mod.Parser.parse", "pkg.mod:parse", ":Parser.parse"):
            with pytest.raises(TargetResolutionError):
                FuzzTargetId.parse(text)

    def test_overrides_from_decorator(self):
        decorated = FuzzTargetId(__name__, "Targets", "decorated")
        overrides = decorated.overrides()
        assert overrides.as_options() == {"max_single_target_fuzz_time": "1m", "keep_going": 0}
        assert FuzzTargetId(__name__, "Targets", "bare").overrides() == TargetOverrides()
        assert FuzzTargetId(__name__, "Targets", "plain").overrides() == TargetOverrides()
        assert is_fuzz_target(Targets.bare)
        assert not is_fuzz_target(Targets.plain)

    def test_resolve_returns_bound_method(self):
        func = FuzzTargetId(__name__, "Targets", "plain").resolve()
        assert func(b"data") is None
        assert isinstance(func.__self__, Targets)

    def test_resolve_errors(self):
        with pytest.raises(TargetResolutionError):
            FuzzTargetId("no_such_module_anywhere", "X", "y").resolve()
        with pytest.raises(TargetResolutionError):
            FuzzTargetId(__name__, "Missing", "plain").resolve()
        with pytest.raises(TargetResolutionError):
            FuzzTargetId(__name__, "Targets", "missing").resolve()
        with pytest.raises(TargetResolutionError):
            FuzzTargetId(__name__, "REQUIRED", "plain").resolve()
