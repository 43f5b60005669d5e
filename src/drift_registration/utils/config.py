"""
Configuration management for drift-registration.

Provides a typed pydantic model and YAML loader with sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Literal, Any, Dict

from pydantic import BaseModel, Field, ValidationError
import yaml


# -----------------------
# Typed config structures
# -----------------------


class IndexConfig(BaseModel):
    backend: Literal["flat", "kdtree", "sklearn"] = Field(
        default="flat",
        description="Spatial index over the reference cloud: 'flat' (arena tree, batch kernels), "
                    "'kdtree' (owned-node tree, serial queries) or 'sklearn' (scikit-learn KD-tree)",
    )
    query_mode: Literal["serial", "parallel", "threads"] = Field(
        default="parallel",
        description="Batch query strategy for the flat tree: single-threaded kernel, "
                    "numba prange kernel, or chunks dispatched to a thread pool",
    )
    n_workers: Optional[int] = Field(
        default=None,
        description="Worker count for the flat tree's 'threads' mode (None = cpu_count - 1) "
                    "and n_jobs for the sklearn backend (None = single job)",
    )
    chunk_size: int = Field(default=4096, description="Query points per chunk in 'threads' mode")


class SVDConfig(BaseModel):
    max_sweeps: Optional[int] = Field(
        default=None,
        description="Jacobi sweep budget (None = max(5 * n_columns, 12))",
    )


class EstimatorConfig(BaseModel):
    max_correspondence_distance: Optional[float] = Field(
        default=None,
        description="Reject correspondences farther than this distance (None = keep all)",
    )
    min_correspondences: int = Field(default=3, ge=3, description="Minimum kept correspondences for an update")
    rank_deficient_policy: Literal["reject", "accept"] = Field(
        default="reject",
        description="What to do when the covariance has effective rank < 2",
    )
    rank_tolerance: float = Field(
        default=1e-6,
        description="Second singular value below rank_tolerance * first marks the covariance rank-deficient",
    )


class LoopConfig(BaseModel):
    max_iterations: Optional[int] = Field(
        default=None,
        description="Stop after this many iterations (None = run while active)",
    )
    convergence_translation_epsilon: Optional[float] = Field(
        default=None,
        description="Translation step below which an iteration counts as converged (None = disabled)",
    )
    convergence_rotation_epsilon_deg: Optional[float] = Field(
        default=None,
        description="Rotation step (degrees) below which an iteration counts as converged (None = disabled)",
    )
    output_blend: float = Field(
        default=1.0,
        gt=0.0,
        le=1.0,
        description="Fraction of the way the published transform moves toward each new estimate",
    )
    divergence_translation_limit: Optional[float] = Field(
        default=10000.0,
        description="Reset the estimate when its translation moves farther than this from the "
                    "initial translation (None = never)",
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    file: Optional[str] = Field(default=None)


class AppConfig(BaseModel):
    index: IndexConfig = Field(default_factory=IndexConfig)
    svd: SVDConfig = Field(default_factory=SVDConfig)
    estimator: EstimatorConfig = Field(default_factory=EstimatorConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# -----------------------
# Loader
# -----------------------


def _project_root() -> Path:
    """
    Resolve the repository root directory.

    File is at: repo_root/src/drift_registration/utils/config.py
    parents sequence:
      0 -> .../src/drift_registration/utils
      1 -> .../src/drift_registration
      2 -> .../src
      3 -> repo_root
    """
    return Path(__file__).resolve().parents[3]


def load_config(path: Optional[str | Path] = None, *, allow_missing: bool = True) -> AppConfig:
    """
    Load configuration from YAML into a typed AppConfig.

    Search order when path is None:
    1) repo_root/config/default.yaml
    2) if missing and allow_missing=True: return default AppConfig()

    Args:
        path: Explicit YAML file path.
        allow_missing: If True, returns defaults when file missing; otherwise raises.

    Returns:
        AppConfig instance
    """
    cfg_path: Path
    if path is None:
        cfg_path = _project_root() / "config" / "default.yaml"
    else:
        cfg_path = Path(path)

    if not cfg_path.exists():
        if allow_missing:
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    with cfg_path.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        # Re-raise with context to help users fix the YAML
        raise ValueError(f"Invalid configuration in {cfg_path}: {e}")
