import pytest

from spectral_lan_controller.models import LightSource, SpectralPoint, SpectralProfile
from spectral_lan_controller.spectral import (
    active_sources,
    compute_graph,
    compute_resultant_curve,
    initial_slider_values,
    normalize,
    scale_by_master,
    slider_value,
    to_pwm,
)


def _profile() -> SpectralProfile:
    return SpectralProfile(
        sources=(
            LightSource(name="Red", color="#FF0000", intensity_factor=1.0, initial_power=100),
            LightSource(name="Blue", color="#0000FF", intensity_factor=0.5, initial_power=40),
            LightSource(name="UV", color="#8000FF", intensity_factor=1.0, initial_power=0),
        ),
        spectrum=(
            SpectralPoint(wavelength=420, intensities={"Red": 0.1, "Blue": 0.9, "UV": 0.3}),
            SpectralPoint(wavelength=530, intensities={"Red": 0.3, "Blue": 0.2}),
            SpectralPoint(wavelength=660, intensities={"Red": 0.8, "Blue": 0.05}),
        ),
    )


def test_resultant_equals_single_active_source() -> None:
    curve = compute_resultant_curve(_profile(), {"Red": 1.0, "Blue": 0.0})

    assert [wavelength for wavelength, _ in curve] == [420, 530, 660]
    assert [raw for _, raw in curve] == pytest.approx([0.1, 0.3, 0.8])
    graph = normalize(curve)
    assert max(point.intensity for point in graph) == pytest.approx(1.0)


def test_intensity_factor_weights_contribution() -> None:
    curve = compute_resultant_curve(_profile(), {"Blue": 1.0})

    assert curve[0][1] == pytest.approx(0.45)


def test_missing_slider_entries_count_as_zero() -> None:
    curve = compute_resultant_curve(_profile(), {})

    assert all(raw == 0 for _, raw in curve)


def test_normalize_zero_curve_never_divides() -> None:
    graph = normalize([(400.0, 0.0), (500.0, 0.0)])

    assert [point.intensity for point in graph] == [0.0, 0.0]


@pytest.mark.parametrize(
    "values",
    [
        {"Red": 0.2, "Blue": 0.7, "UV": 1.0},
        {"Red": 1.0, "Blue": 1.0, "UV": 1.0},
        {"Blue": 0.01},
    ],
)
def test_graph_stays_in_unit_range_with_a_peak(values) -> None:
    graph = compute_graph(_profile(), values)

    assert all(0.0 <= point.intensity <= 1.0 for point in graph)
    assert any(point.intensity == pytest.approx(1.0) for point in graph)


def test_to_pwm_bounds_and_rounding() -> None:
    assert to_pwm(0) == 0
    assert to_pwm(1) == 255
    assert to_pwm(0.5) == 128
    assert to_pwm(-0.3) == 0
    assert to_pwm(1.7) == 255


def test_to_pwm_is_monotonic() -> None:
    samples = [step / 1000 for step in range(1001)]
    converted = [to_pwm(value) for value in samples]

    assert converted == sorted(converted)


def test_master_scaling_skips_frozen_sources() -> None:
    scaled = scale_by_master({"A": 0.8, "B": 0.4}, 0.5, frozenset({"B"}))

    assert scaled == pytest.approx({"A": 0.4, "B": 0.4})


def test_master_scaling_keeps_frozen_current_value() -> None:
    scaled = scale_by_master(
        {"A": 0.8, "B": 0.4}, 2.0, frozenset({"B"}), current={"A": 0.1, "B": 0.6}
    )

    assert scaled == pytest.approx({"A": 1.0, "B": 0.6})


def test_master_scaling_frozen_source_missing_from_current_uses_base() -> None:
    scaled = scale_by_master({"A": 0.8, "B": 0.4}, 0.5, frozenset({"B"}), current={"A": 0.2})

    assert scaled == pytest.approx({"A": 0.4, "B": 0.4})


def test_initial_values_hide_zero_power_sources() -> None:
    profile = _profile()

    assert [source.name for source in active_sources(profile)] == ["Red", "Blue"]
    assert initial_slider_values(profile) == pytest.approx({"Red": 1.0, "Blue": 0.4})


def test_slider_value_falls_back_to_initial_power() -> None:
    profile = _profile()

    assert slider_value({"Red": 0.25}, profile, "Red") == 0.25
    assert slider_value({}, profile, "Blue") == pytest.approx(0.4)
    assert slider_value({}, profile, "Missing") == 0.0
