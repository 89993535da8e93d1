import pytest

from canopysim.env import EngineSettings, FT_TO_M, unit_scale


def test_unit_scale():
    assert unit_scale("m") == 1.0
    assert unit_scale("ft") == FT_TO_M
    with pytest.raises(ValueError):
        unit_scale("furlong")


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("CANOPY_RESOLUTION", "0.5")
    monkeypatch.setenv("PLACEMENT_PROFILE", " DENSE ")
    monkeypatch.setenv("OPT_MAX_ITER", "7")
    s = EngineSettings.from_env()
    assert s.canopy_resolution == 0.5
    assert s.placement_profile == "dense"
    assert s.max_iterations == 7


def test_blank_env_values_use_defaults(monkeypatch):
    monkeypatch.setenv("CANOPY_HEIGHT", "  ")
    monkeypatch.setenv("SOLVER_WORKERS", "")
    s = EngineSettings.from_env()
    assert s.canopy_height == 3.0
    assert s.solver_workers == 1


@pytest.mark.parametrize("name, value", [("CANOPY_HEIGHT", "tall"), ("OPT_MAX_ITER", "7.5"), ("SOLVER_WORKERS", "many")])
def test_malformed_env_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        EngineSettings.from_env()


def test_explicit_overrides_win(monkeypatch):
    monkeypatch.setenv("PHOTOPERIOD_H", "18")
    s = EngineSettings.from_env(photoperiod_hours=12.0, canopy_height=None)
    assert s.photoperiod_hours == 12.0
    assert s.canopy_height == 3.0


def test_unknown_override_rejected():
    with pytest.raises(TypeError):
        EngineSettings.from_env(colour="red")
