from pathlib import Path

import pytest

from scanflow.config import DEFAULT_ENDPOINT, PipelineConfig, default_max_workers
from scanflow.models import Language, OptimizeOptions, ProcessingOptions


def test_worker_count_follows_device_class():
    assert default_max_workers(False) == 2
    assert default_max_workers(True) == 1
    assert PipelineConfig().max_workers == 2
    assert PipelineConfig(constrained_device=True).max_workers == 1
    assert PipelineConfig(constrained_device=True, max_workers=3).max_workers == 3


@pytest.mark.parametrize("kwargs", [{"max_workers": 0}, {"request_timeout": 0}, {"language": "klingon"}])
def test_invalid_values_are_rejected(kwargs):
    with pytest.raises(ValueError):
        PipelineConfig(**kwargs)


def test_dict_round_trip(tmp_path):
    cfg = PipelineConfig(
        api_key="k",
        max_workers=4,
        output_dir=tmp_path / "derived",
        language="pt",
        optimize=OptimizeOptions(max_width=1024, max_height=1024, quality=0.7, target_size_bytes=200_000),
        processing=ProcessingOptions.quick(),
    )

    d = cfg.to_dict()
    assert d["output_dir"] == str(tmp_path / "derived")
    assert d["language"] == "pt"
    assert "log_queue" not in d

    restored = PipelineConfig.from_dict(d)
    assert restored == cfg


def test_from_dict_treats_none_as_default(tmp_path):
    cfg = PipelineConfig.from_dict({
        "endpoint_url": None,
        "language": None,
        "output_dir": str(tmp_path),
        "log_performance": True,
    })

    assert cfg.endpoint_url == DEFAULT_ENDPOINT
    assert cfg.language is Language.AUTO
    assert cfg.output_dir == Path(tmp_path)
    assert cfg.performance_log_path == Path(tmp_path) / "scanflow_performance_log.jsonl"
