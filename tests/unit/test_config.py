from __future__ import annotations

import pytest

from soft_align.config import SoftAlignConfig, build_soft_align_config, load_soft_align_config


def test_defaults_and_overrides() -> None:
    config = build_soft_align_config({"query_size": 4, "input_size": 0}, focus_batch_size="3")
    assert config.query_policy == "learned"
    assert config.encoder_gradients is True
    assert config.focus_batch_size == 3
    assert not config.priming

    primed = build_soft_align_config(config, query_policy="priming")
    assert primed.priming
    assert primed.query_size == 4
    assert config.query_policy == "learned"


def test_to_dict_round_trips() -> None:
    config = build_soft_align_config(query_size=2, input_size=5, encoder_gradients=False)
    assert build_soft_align_config(config.to_dict()) == config


@pytest.mark.parametrize(
    "payload",
    [
        {"query_size": 2},
        {"query_size": 2, "input_size": 1, "window": 3},
        {"query_size": 0, "input_size": 1},
        {"query_size": 2, "input_size": -1},
        {"query_size": 2, "input_size": 1, "focus_batch_size": 0},
        {"query_size": 2, "input_size": 1, "query_policy": "random"},
    ],
)
def test_invalid_configs_are_rejected(payload) -> None:
    with pytest.raises(ValueError):
        build_soft_align_config(payload)


def test_yaml_with_section(tmp_path) -> None:
    path = tmp_path / "model.yaml"
    path.write_text(
        "soft_align:\n  query_size: 3\n  input_size: 2\n  query_policy: priming\n",
        encoding="utf-8",
    )
    config = load_soft_align_config(path, encoder_gradients=False)
    assert config == SoftAlignConfig(
        query_size=3, input_size=2, query_policy="priming", encoder_gradients=False
    )


def test_yaml_without_section(tmp_path) -> None:
    path = tmp_path / "flat.yaml"
    path.write_text("query_size: 5\ninput_size: 1\n", encoding="utf-8")
    assert load_soft_align_config(path).query_size == 5


def test_yaml_must_be_mapping(tmp_path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_soft_align_config(path)


def test_package_exports_resolve_lazily() -> None:
    import soft_align

    assert soft_align.SoftAlignConfig is SoftAlignConfig
    assert set(soft_align.__all__) <= set(dir(soft_align))
    for name in soft_align.__all__:
        assert getattr(soft_align, name) is not None
    with pytest.raises(AttributeError):
        soft_align.Missing  # noqa: B018
