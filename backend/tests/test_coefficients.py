from __future__ import annotations

import pytest
import yaml

from derive.core.coefficients import DEFAULT_PATH, load_coefficients, parse_coefficients
from derive.core.errors import CoefficientsLoadError
from ingestion.core.categories import Category


def _raw() -> dict:
    return yaml.safe_load(DEFAULT_PATH.read_text(encoding="utf-8"))


def test_default_coefficients_load():
    c = load_coefficients()
    assert c.version == "2025.1"
    assert (c.alpha, c.beta, c.gamma) == (0.3, 0.5, 0.2)
    assert sum(c.dimension_blend.values()) == pytest.approx(1.0)
    assert c.category_weight(Category.COMMUNICATION) == 0.25
    assert c.as_dict()["category_weights"]["general"] == 0.05


def test_missing_category_uses_general_weight():
    raw = _raw()
    del raw["category_weights"]["design"]
    c = parse_coefficients(raw)
    assert c.category_weight(Category.DESIGN) == c.category_weight(Category.GENERAL)


def test_coefficients_are_read_only():
    c = load_coefficients()
    with pytest.raises(TypeError):
        c.dimension_blend["throughput"] = 1.0  # type: ignore[index]


@pytest.mark.parametrize(
    "mutate",
    [
        lambda r: r.pop("version"),
        lambda r: r.update(calibration="oops"),
        lambda r: r["calibration"].pop("gamma"),
        lambda r: r["calibration"].update(alpha="high"),
        lambda r: r["dimension_blend"].update(throughput=0.9),
        lambda r: r["category_weights"].update(telepathy=0.1),
        lambda r: r["category_weights"].update(support=1.5),
        lambda r: r["category_weights"].pop("general"),
    ],
)
def test_invalid_coefficients_are_rejected(mutate):
    raw = _raw()
    mutate(raw)
    with pytest.raises(CoefficientsLoadError):
        parse_coefficients(raw)


def test_non_mapping_is_rejected():
    with pytest.raises(CoefficientsLoadError):
        parse_coefficients(["not", "a", "mapping"])


def test_load_from_custom_path(tmp_path):
    raw = _raw()
    raw["version"] = "2026.2-test"
    raw["calibration"]["gamma"] = 0.4
    path = tmp_path / "coefficients.yaml"
    path.write_text(yaml.safe_dump(raw), encoding="utf-8")

    c = load_coefficients(path)
    assert c.version == "2026.2-test"
    assert c.gamma == 0.4


def test_unreadable_path_is_a_load_error(tmp_path):
    with pytest.raises(CoefficientsLoadError):
        load_coefficients(tmp_path / "missing.yaml")
    broken = tmp_path / "broken.yaml"
    broken.write_text("version: [unclosed", encoding="utf-8")
    with pytest.raises(CoefficientsLoadError):
        load_coefficients(broken)
