import logging
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from drift_registration.utils.config import load_config, AppConfig
from drift_registration.utils.logging import configure_logging, setup_logger
from drift_registration.utils.config import LoggingConfig


def test_default_yaml_matches_model_defaults():
    cfg: AppConfig = load_config(None)
    assert cfg == AppConfig()
    assert cfg.index.backend == "flat"
    assert cfg.index.query_mode == "parallel"
    assert cfg.estimator.rank_deficient_policy == "reject"
    assert cfg.estimator.min_correspondences == 3
    # Continuous drift correction unless a bound is configured
    assert cfg.loop.max_iterations is None
    assert cfg.loop.convergence_translation_epsilon is None
    assert cfg.loop.output_blend == 1.0


def test_bounded_profile():
    cfg = load_config(Path(__file__).parent.parent / "config" / "profiles" / "bounded.yaml")
    assert cfg.loop.max_iterations == 60
    assert cfg.loop.convergence_translation_epsilon == pytest.approx(1e-5)
    assert cfg.estimator.max_correspondence_distance == pytest.approx(0.5)
    # Omitted sections fall back to defaults
    assert cfg.svd.max_sweeps is None


def test_partial_yaml(tmp_path):
    cfg_file = tmp_path / "partial.yaml"
    cfg_file.write_text("index:\n  backend: sklearn\n", encoding="utf-8")

    cfg = load_config(cfg_file)

    assert cfg.index.backend == "sklearn"
    assert cfg.index.chunk_size == 4096
    assert cfg.loop == AppConfig().loop


def test_empty_yaml_gives_defaults(tmp_path):
    cfg_file = tmp_path / "empty.yaml"
    cfg_file.write_text("", encoding="utf-8")
    assert load_config(cfg_file) == AppConfig()


@pytest.mark.parametrize(
    "content",
    [
        "index:\n  backend: octree\n",
        "estimator:\n  min_correspondences: 2\n",
        "loop:\n  output_blend: 0.0\n",
        "estimator:\n  rank_deficient_policy: ignore\n",
    ],
)
def test_invalid_values_rejected(tmp_path, content):
    cfg_file = tmp_path / "bad.yaml"
    cfg_file.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(cfg_file)


def test_missing_file(tmp_path):
    missing = tmp_path / "nope.yaml"
    assert load_config(missing) == AppConfig()
    with pytest.raises(FileNotFoundError):
        load_config(missing, allow_missing=False)


def test_setup_logger_does_not_duplicate_handlers():
    first = setup_logger("drift_registration.test_logger")
    second = setup_logger("drift_registration.test_logger")
    assert first is second
    assert len(second.handlers) == 1


def test_configure_logging_sets_level_and_file(tmp_path):
    logger = setup_logger("drift_registration.test_configure")
    log_file = tmp_path / "logs" / "registration.log"

    try:
        configure_logging(LoggingConfig(level="DEBUG", file=str(log_file)))
        assert logger.level == logging.DEBUG
        logger.debug("hello from the registration loop")
        for handler in logger.handlers:
            handler.flush()

        assert "hello from the registration loop" in log_file.read_text(encoding="utf-8")
    finally:
        for other in list(logging.root.manager.loggerDict.values()):
            if not isinstance(other, logging.Logger):
                continue
            for h in list(other.handlers):
                if isinstance(h, logging.FileHandler):
                    other.removeHandler(h)
                    h.close()
        configure_logging(LoggingConfig(level="INFO"))
